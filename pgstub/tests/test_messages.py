# Copyright (c) "Neo4j,"
# Neo4j Sweden AB [https://neo4j.com]
#
# This file is part of Neo4j.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.



import pytest

from ..errors import (
    MessageDecodeError,
    ProtocolError,
)
from ..messages import (
    AuthenticationOk,
    BACKEND_MESSAGES,
    BackendKeyData,
    Bind,
    CancelRequest,
    Close,
    DataRow,
    decode_backend,
    decode_frontend,
    decode_startup,
    Describe,
    ErrorResponse,
    FieldDescription,
    FRONTEND_MESSAGES,
    GSSEncRequest,
    Query,
    ReadyForQuery,
    RowDescription,
    SSLRequest,
    StartupMessage,
    Sync,
)


def split(encoded):
    return encoded[:1], encoded[5:]


class TestEncoding:
    def test_ready_for_query(self):
        assert ReadyForQuery(tx_status="T").encode() == b"Z\x00\x00\x00\x05T"

    def test_authentication_ok(self):
        assert (AuthenticationOk().encode()
                == b"R\x00\x00\x00\x08\x00\x00\x00\x00")

    def test_sync_has_empty_body(self):
        assert Sync().encode() == b"S\x00\x00\x00\x04"

    def test_query(self):
        assert (Query(string="SELECT 1").encode()
                == b"Q\x00\x00\x00\x0dSELECT 1\x00")

    def test_startup_message_has_no_tag(self):
        encoded = StartupMessage(parameters={"user": "u"}).encode()

        assert encoded == (b"\x00\x00\x00\x10\x00\x03\x00\x00"
                           b"user\x00u\x00\x00")

    def test_data_row_with_null(self):
        encoded = DataRow(values=[b"ab", None]).encode()

        assert encoded == (b"D\x00\x00\x00\x10\x00\x02"
                           b"\x00\x00\x00\x02ab\xff\xff\xff\xff")

    def test_error_response_skips_empty_fields(self):
        encoded = ErrorResponse(severity="ERROR", code="42P01",
                                position=7).encode()

        assert encoded[5:] == b"SERROR\x00C42P01\x00P7\x00\x00"


class TestDecoding:
    def test_backend_message_by_tag(self):
        tag, body = split(BackendKeyData(process_id=1,
                                         secret_key=2).encode())

        assert decode_backend(tag, body) == BackendKeyData(process_id=1,
                                                           secret_key=2)

    def test_same_tag_differs_per_direction(self):
        assert isinstance(decode_frontend(b"D", b"P\x00"), Describe)
        assert isinstance(decode_backend(b"D", b"\x00\x00"), DataRow)
        assert isinstance(decode_frontend(b"C", b"S\x00"), Close)

    def test_bind(self):
        msg = Bind(prepared_statement="s1", parameter_format_codes=[0, 1],
                   parameters=[b"42", None, b"\x00\x01"],
                   result_format_codes=[1])

        assert decode_frontend(*split(msg.encode())) == msg

    def test_row_description(self):
        msg = RowDescription(fields_=[FieldDescription(
            name="n", data_type_oid=23, data_type_size=4, type_modifier=-1,
        )])

        assert decode_backend(*split(msg.encode())) == msg

    def test_error_response_integer_fields(self):
        msg = decode_backend(b"E", b"SERROR\x00L12\x00Xignored\x00\x00")

        assert msg == ErrorResponse(severity="ERROR", line=12)

    def test_error_response_bad_integer(self):
        with pytest.raises(ProtocolError):
            decode_backend(b"E", b"Pfoo\x00\x00")

    def test_unknown_tag(self):
        with pytest.raises(ProtocolError, match="unknown message type"):
            decode_frontend(b"?", b"")

    @pytest.mark.parametrize("body", [
        b"",
        b"\x00",
        b"\x00\x00\x00\x05",
    ])
    def test_truncated_body(self, body):
        with pytest.raises(ProtocolError):
            decode_backend(b"K", body)

    def test_unterminated_string(self):
        with pytest.raises(ProtocolError, match="unterminated"):
            decode_frontend(b"Q", b"SELECT 1")

    def test_non_trust_authentication_is_rejected(self):
        with pytest.raises(ProtocolError, match="authentication"):
            decode_backend(b"R", b"\x00\x00\x00\x03")


class TestStartupDecoding:
    def test_startup_message(self):
        body = StartupMessage(parameters={"user": "u",
                                          "database": "d"}).encode()[4:]

        msg = decode_startup(body)

        assert msg == StartupMessage(parameters={"user": "u",
                                                 "database": "d"})

    @pytest.mark.parametrize("cls", [SSLRequest, GSSEncRequest])
    def test_encryption_requests(self, cls):
        assert isinstance(decode_startup(cls().encode()[4:]), cls)

    def test_cancel_request(self):
        body = CancelRequest(process_id=5, secret_key=6).encode()[4:]

        assert decode_startup(body) == CancelRequest(process_id=5,
                                                     secret_key=6)

    def test_unsupported_version(self):
        with pytest.raises(ProtocolError, match="protocol version 2.0"):
            decode_startup(b"\x00\x02\x00\x00\x00")

    def test_too_short(self):
        with pytest.raises(ProtocolError):
            decode_startup(b"\x00\x03")


class TestJson:
    def test_defaults(self):
        assert Describe.from_json({}) == Describe(object_type="S", name_="")

    def test_to_json_carries_type(self):
        assert ReadyForQuery().to_json() == {"Type": "ReadyForQuery",
                                             "TxStatus": "I"}

    def test_str_is_script_line(self):
        assert str(Sync()) == 'F{"Type": "Sync"}'

    def test_values_representation(self):
        msg = DataRow.from_json({"Values": [
            {"text": "1"}, {"binary": "00ff"}, None,
        ]})

        assert msg.values == [b"1", b"\x00\xff", None]
        assert msg.to_json()["Values"] == [
            {"text": "1"}, {"binary": "00ff"}, None,
        ]

    def test_bad_field_names_its_key(self):
        with pytest.raises(MessageDecodeError) as exc:
            BackendKeyData.from_json({"ProcessID": -1})

        assert exc.value.field == "ProcessID"
        assert str(exc.value).startswith("ProcessID: ")

    def test_nul_in_strings_is_rejected(self):
        with pytest.raises(MessageDecodeError) as exc:
            Query.from_json({"String": "a\x00b"})

        assert exc.value.field == "String"

    def test_nul_in_string_map_is_rejected(self):
        with pytest.raises(MessageDecodeError):
            StartupMessage.from_json({"Parameters": {"user": "a\x00"}})

    def test_booleans_are_not_integers(self):
        with pytest.raises(MessageDecodeError):
            BackendKeyData.from_json({"SecretKey": True})

    def test_lenient_decoding_skips_bad_fields(self):
        msg = Query.from_json({"String": ["x"]}, strict=False)

        assert msg == Query(string="")

    def test_payload_must_be_object(self):
        with pytest.raises(MessageDecodeError):
            Query.from_json(["SELECT 1"])

    def test_unexpected_constructor_arguments(self):
        with pytest.raises(TypeError, match="nope"):
            Query(nope=1)

    def test_registries(self):
        assert BACKEND_MESSAGES["AuthenticationOK"] is AuthenticationOk
        assert FRONTEND_MESSAGES["Query"] is Query
        assert "SSLRequest" not in FRONTEND_MESSAGES
        assert "Query" not in BACKEND_MESSAGES
