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


"""
PostgreSQL frontend/backend protocol (v3) messages.

Every message has two representations: the JSON object used in stub scripts
(``{"Type": "Query", "String": "SELECT 1"}``) and the binary wire format.
Both directions are implemented for every message so that the stub server
and test clients can share this module.
"""


import json
from struct import error as struct_error
from struct import pack as struct_pack
from struct import unpack_from as struct_unpack_from

from .errors import (
    MessageDecodeError,
    ProtocolError,
)

PROTOCOL_VERSION_NUMBER = 196608  # 3.0
SSL_REQUEST_CODE = 80877103
GSS_ENC_REQUEST_CODE = 80877104
CANCEL_REQUEST_CODE = 80877102


class Packer:

    def __init__(self):
        self.data = bytearray()

    def pack_raw(self, data):
        self.data.extend(data)

    def pack_byte(self, value):
        self.data.extend(value.encode("latin-1"))

    def pack_int16(self, value):
        self.data.extend(struct_pack(">h", value))

    def pack_uint16(self, value):
        self.data.extend(struct_pack(">H", value))

    def pack_int32(self, value):
        self.data.extend(struct_pack(">i", value))

    def pack_uint32(self, value):
        self.data.extend(struct_pack(">I", value))

    def pack_cstring(self, value):
        self.data.extend(value.encode("utf-8"))
        self.data.append(0)

    def pack_values(self, values):
        self.pack_uint16(len(values))
        for value in values:
            if value is None:
                self.pack_int32(-1)
            else:
                self.pack_int32(len(value))
                self.pack_raw(value)


class Unpacker:

    def __init__(self, data, name):
        self._data = bytes(data)
        self._pos = 0
        self._name = name

    def _unpack(self, fmt, size):
        try:
            value, = struct_unpack_from(fmt, self._data, self._pos)
        except struct_error:
            raise ProtocolError(
                "{} message body too short".format(self._name)
            )
        self._pos += size
        return value

    @property
    def remaining(self):
        return len(self._data) - self._pos

    def read(self, n):
        if n > self.remaining:
            raise ProtocolError(
                "{} message body too short".format(self._name)
            )
        data = self._data[self._pos:self._pos + n]
        self._pos += n
        return data

    def read_byte(self):
        return self.read(1).decode("latin-1")

    def read_int16(self):
        return self._unpack(">h", 2)

    def read_uint16(self):
        return self._unpack(">H", 2)

    def read_int32(self):
        return self._unpack(">i", 4)

    def read_uint32(self):
        return self._unpack(">I", 4)

    def read_cstring(self):
        end = self._data.find(b"\x00", self._pos)
        if end < 0:
            raise ProtocolError(
                "{} message contains an unterminated string"
                .format(self._name)
            )
        value = self._data[self._pos:end]
        self._pos = end + 1
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(
                "{} message contains invalid UTF-8".format(self._name)
            ) from e

    def read_values(self):
        values = []
        for _ in range(self.read_uint16()):
            size = self.read_int32()
            values.append(None if size < 0 else self.read(size))
        return values


def lookup_field(payload, key):
    # keys are matched case-insensitively, exact matches win
    if key in payload:
        return True, payload[key]
    lowered = key.lower()
    for k, v in payload.items():
        if k.lower() == lowered:
            return True, v
    return False, None


class Field:
    def __init__(self, key, attr):
        self.key = key
        self.attr = attr

    def default(self):
        return None

    def from_json(self, value):
        return value

    def to_json(self, value):
        return value


class String(Field):
    def default(self):
        return ""

    def from_json(self, value):
        if not isinstance(value, str):
            raise TypeError("expected a string, got {!r}".format(value))
        # sent NUL-terminated
        if "\x00" in value:
            raise ValueError("string contains NUL: {!r}".format(value))
        return value


class Char(Field):
    def __init__(self, key, attr, default):
        super().__init__(key, attr)
        self._default = default

    def default(self):
        return self._default

    def from_json(self, value):
        if not isinstance(value, str) or len(value) != 1:
            raise ValueError(
                "expected a single character, got {!r}".format(value)
            )
        if ord(value) > 0xFF:
            raise ValueError(
                "{!r} does not fit in a single byte".format(value)
            )
        return value


class Integer(Field):
    def __init__(self, key, attr, bits=32, signed=True, default=0):
        super().__init__(key, attr)
        if signed:
            self.min = -(2 ** (bits - 1))
            self.max = 2 ** (bits - 1) - 1
        else:
            self.min = 0
            self.max = 2 ** bits - 1
        self._default = default

    def default(self):
        return self._default

    def check(self, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError("expected an integer, got {!r}".format(value))
        if not self.min <= value <= self.max:
            raise ValueError("{} out of range [{}, {}]"
                             .format(value, self.min, self.max))
        return value

    def from_json(self, value):
        return self.check(value)


class IntegerList(Integer):
    def default(self):
        return []

    def from_json(self, value):
        if value is None:
            return []
        if not isinstance(value, list):
            raise TypeError("expected a list, got {!r}".format(value))
        return [self.check(v) for v in value]

    def to_json(self, value):
        return list(value)


class StringMap(Field):
    def default(self):
        return {}

    def from_json(self, value):
        if value is None:
            return {}
        if not isinstance(value, dict) or not all(
            isinstance(v, str) for v in value.values()
        ):
            raise TypeError("expected a string map, got {!r}".format(value))
        if any("\x00" in s for item in value.items() for s in item):
            raise ValueError("string map contains NUL: {!r}".format(value))
        return dict(value)

    def to_json(self, value):
        return dict(value)


class Values(Field):
    """List of column or parameter values, ``None`` being SQL NULL.

    In scripts each value is written as ``{"text": "..."}``,
    ``{"binary": "<hex>"}`` or ``null``.
    """

    def default(self):
        return []

    @staticmethod
    def _value_from_json(value):
        if value is None:
            return None
        if not isinstance(value, dict):
            raise TypeError(
                "expected a value object, got {!r}".format(value)
            )
        if "text" in value:
            if not isinstance(value["text"], str):
                raise TypeError("text value must be a string")
            return value["text"].encode("utf-8")
        if "binary" in value:
            return bytes.fromhex(value["binary"])
        raise ValueError("unknown protocol representation {!r}"
                         .format(value))

    @staticmethod
    def _value_to_json(value):
        if value is None:
            return None
        if all(b >= 32 for b in value):
            try:
                return {"text": value.decode("utf-8")}
            except UnicodeDecodeError:
                pass
        return {"binary": value.hex()}

    def from_json(self, value):
        if value is None:
            return []
        if not isinstance(value, list):
            raise TypeError("expected a list, got {!r}".format(value))
        return [self._value_from_json(v) for v in value]

    def to_json(self, value):
        return [self._value_to_json(v) for v in value]


class Record:
    fields = ()

    def __init__(self, **kwargs):
        for field in self.fields:
            if field.attr in kwargs:
                value = kwargs.pop(field.attr)
            else:
                value = field.default()
            setattr(self, field.attr, value)
        if kwargs:
            raise TypeError("{} got unexpected fields {}".format(
                self.__class__.__name__, ", ".join(sorted(kwargs))
            ))

    @classmethod
    def from_json(cls, payload, strict=True):
        if not isinstance(payload, dict):
            raise MessageDecodeError(
                "expected a JSON object, got {!r}".format(payload)
            )
        obj = cls()
        for field in cls.fields:
            found, value = lookup_field(payload, field.key)
            if not found:
                continue
            try:
                setattr(obj, field.attr, field.from_json(value))
            except (TypeError, ValueError) as e:
                if strict:
                    raise MessageDecodeError(str(e), field.key) from e
        return obj

    def to_json(self):
        return {field.key: field.to_json(getattr(self, field.attr))
                for field in self.fields}

    def _values(self):
        return tuple(getattr(self, field.attr) for field in self.fields)

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return self._values() == other._values()

    __hash__ = None

    def __repr__(self):
        return "{}({})".format(self.__class__.__name__, ", ".join(
            "{}={!r}".format(field.attr, getattr(self, field.attr))
            for field in self.fields
        ))


class FieldDescription(Record):
    fields = (
        String("Name", "name"),
        Integer("TableOID", "table_oid", 32, signed=False),
        Integer("TableAttributeNumber", "table_attribute_number", 16,
                signed=False),
        Integer("DataTypeOID", "data_type_oid", 32, signed=False),
        Integer("DataTypeSize", "data_type_size", 16),
        Integer("TypeModifier", "type_modifier", 32),
        Integer("Format", "format", 16),
    )


class FieldDescriptions(Field):
    def default(self):
        return []

    def from_json(self, value):
        if value is None:
            return []
        if not isinstance(value, list):
            raise TypeError("expected a list, got {!r}".format(value))
        try:
            return [FieldDescription.from_json(v) for v in value]
        except MessageDecodeError as e:
            raise ValueError(str(e)) from e

    def to_json(self, value):
        return [v.to_json() for v in value]


class Message(Record):
    #: name used as ``Type`` in scripts
    name = None
    #: wire type byte, ``None`` for messages of the startup phase
    tag = None
    #: script direction prefix
    direction = None
    #: whether scripts may contain this message
    scriptable = True

    def to_json(self):
        return {"Type": self.name, **super().to_json()}

    def encode(self):
        packer = Packer()
        self.pack_body(packer)
        body = bytes(packer.data)
        header = struct_pack(">I", len(body) + 4)
        if self.tag is None:
            return header + body
        return self.tag + header + body

    def pack_body(self, packer):
        pass

    @classmethod
    def unpack_body(cls, unpacker):
        return cls()

    @classmethod
    def decode(cls, body):
        return cls.unpack_body(Unpacker(body, cls.name))

    def __str__(self):
        return self.direction + json.dumps(self.to_json())


class BackendMessage(Message):
    direction = "B"


class FrontendMessage(Message):
    direction = "F"


# Backend messages


class AuthenticationOk(BackendMessage):
    name = "AuthenticationOK"
    tag = b"R"

    def pack_body(self, packer):
        packer.pack_uint32(0)

    @classmethod
    def unpack_body(cls, unpacker):
        auth_type = unpacker.read_uint32()
        if auth_type != 0:
            raise ProtocolError(
                "unsupported authentication request type {}"
                .format(auth_type)
            )
        return cls()


class BackendKeyData(BackendMessage):
    name = "BackendKeyData"
    tag = b"K"
    fields = (
        Integer("ProcessID", "process_id", 32, signed=False),
        Integer("SecretKey", "secret_key", 32, signed=False),
    )

    def pack_body(self, packer):
        packer.pack_uint32(self.process_id)
        packer.pack_uint32(self.secret_key)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(process_id=unpacker.read_uint32(),
                   secret_key=unpacker.read_uint32())


class ParseComplete(BackendMessage):
    name = "ParseComplete"
    tag = b"1"


class BindComplete(BackendMessage):
    name = "BindComplete"
    tag = b"2"


class CloseComplete(BackendMessage):
    name = "CloseComplete"
    tag = b"3"


class NoData(BackendMessage):
    name = "NoData"
    tag = b"n"


class EmptyQueryResponse(BackendMessage):
    name = "EmptyQueryResponse"
    tag = b"I"


class ParameterStatus(BackendMessage):
    name = "ParameterStatus"
    tag = b"S"
    fields = (
        String("Name", "name_"),
        String("Value", "value"),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.name_)
        packer.pack_cstring(self.value)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(name_=unpacker.read_cstring(),
                   value=unpacker.read_cstring())


class ParameterDescription(BackendMessage):
    name = "ParameterDescription"
    tag = b"t"
    fields = (
        IntegerList("ParameterOIDs", "parameter_oids", 32, signed=False),
    )

    def pack_body(self, packer):
        packer.pack_uint16(len(self.parameter_oids))
        for oid in self.parameter_oids:
            packer.pack_uint32(oid)

    @classmethod
    def unpack_body(cls, unpacker):
        count = unpacker.read_uint16()
        return cls(parameter_oids=[unpacker.read_uint32()
                                   for _ in range(count)])


class RowDescription(BackendMessage):
    name = "RowDescription"
    tag = b"T"
    fields = (
        FieldDescriptions("Fields", "fields_"),
    )

    def pack_body(self, packer):
        packer.pack_uint16(len(self.fields_))
        for field in self.fields_:
            packer.pack_cstring(field.name)
            packer.pack_uint32(field.table_oid)
            packer.pack_uint16(field.table_attribute_number)
            packer.pack_uint32(field.data_type_oid)
            packer.pack_int16(field.data_type_size)
            packer.pack_int32(field.type_modifier)
            packer.pack_int16(field.format)

    @classmethod
    def unpack_body(cls, unpacker):
        fields = []
        for _ in range(unpacker.read_uint16()):
            fields.append(FieldDescription(
                name=unpacker.read_cstring(),
                table_oid=unpacker.read_uint32(),
                table_attribute_number=unpacker.read_uint16(),
                data_type_oid=unpacker.read_uint32(),
                data_type_size=unpacker.read_int16(),
                type_modifier=unpacker.read_int32(),
                format=unpacker.read_int16(),
            ))
        return cls(fields_=fields)


class ReadyForQuery(BackendMessage):
    name = "ReadyForQuery"
    tag = b"Z"
    fields = (
        Char("TxStatus", "tx_status", "I"),
    )

    def pack_body(self, packer):
        packer.pack_byte(self.tx_status)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(tx_status=unpacker.read_byte())


class DataRow(BackendMessage):
    name = "DataRow"
    tag = b"D"
    fields = (
        Values("Values", "values"),
    )

    def pack_body(self, packer):
        packer.pack_values(self.values)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(values=unpacker.read_values())


class CommandComplete(BackendMessage):
    name = "CommandComplete"
    tag = b"C"
    fields = (
        String("CommandTag", "command_tag"),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.command_tag)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(command_tag=unpacker.read_cstring())


class ErrorResponse(BackendMessage):
    name = "ErrorResponse"
    tag = b"E"
    fields = (
        String("Severity", "severity"),
        String("SeverityUnlocalized", "severity_unlocalized"),
        String("Code", "code"),
        String("Message", "message"),
        String("Detail", "detail"),
        String("Hint", "hint"),
        Integer("Position", "position"),
        Integer("InternalPosition", "internal_position"),
        String("InternalQuery", "internal_query"),
        String("Where", "where"),
        String("SchemaName", "schema_name"),
        String("TableName", "table_name"),
        String("ColumnName", "column_name"),
        String("DataTypeName", "data_type_name"),
        String("ConstraintName", "constraint_name"),
        String("File", "file"),
        Integer("Line", "line"),
        String("Routine", "routine"),
    )

    # wire field codes, in the order the server emits them
    codes = {
        "S": "severity",
        "V": "severity_unlocalized",
        "C": "code",
        "M": "message",
        "D": "detail",
        "H": "hint",
        "P": "position",
        "p": "internal_position",
        "q": "internal_query",
        "W": "where",
        "s": "schema_name",
        "t": "table_name",
        "c": "column_name",
        "d": "data_type_name",
        "n": "constraint_name",
        "F": "file",
        "L": "line",
        "R": "routine",
    }
    int_attrs = {"position", "internal_position", "line"}

    def pack_body(self, packer):
        for code, attr in self.codes.items():
            value = getattr(self, attr)
            if not value:
                continue
            packer.pack_byte(code)
            packer.pack_cstring(str(value))
        packer.pack_raw(b"\x00")

    @classmethod
    def unpack_body(cls, unpacker):
        values = {}
        while True:
            code = unpacker.read_byte()
            if code == "\x00":
                break
            value = unpacker.read_cstring()
            attr = cls.codes.get(code)
            if attr is None:
                continue
            if attr in cls.int_attrs:
                try:
                    value = int(value)
                except ValueError as e:
                    raise ProtocolError(
                        "ErrorResponse field {} is not an integer: {!r}"
                        .format(code, value)
                    ) from e
            values[attr] = value
        return cls(**values)


# Frontend messages


class StartupMessage(FrontendMessage):
    name = "StartupMessage"
    fields = (
        Integer("ProtocolVersion", "protocol_version", 32, signed=False,
                default=PROTOCOL_VERSION_NUMBER),
        StringMap("Parameters", "parameters"),
    )

    def pack_body(self, packer):
        packer.pack_uint32(self.protocol_version)
        for key, value in self.parameters.items():
            packer.pack_cstring(key)
            packer.pack_cstring(value)
        packer.pack_raw(b"\x00")

    @classmethod
    def unpack_body(cls, unpacker):
        protocol_version = unpacker.read_uint32()
        parameters = {}
        while unpacker.remaining:
            key = unpacker.read_cstring()
            if not key:
                break
            parameters[key] = unpacker.read_cstring()
        return cls(protocol_version=protocol_version, parameters=parameters)


class SSLRequest(FrontendMessage):
    name = "SSLRequest"
    scriptable = False

    def pack_body(self, packer):
        packer.pack_uint32(SSL_REQUEST_CODE)


class GSSEncRequest(FrontendMessage):
    name = "GSSEncRequest"
    scriptable = False

    def pack_body(self, packer):
        packer.pack_uint32(GSS_ENC_REQUEST_CODE)


class CancelRequest(FrontendMessage):
    name = "CancelRequest"
    scriptable = False
    fields = (
        Integer("ProcessID", "process_id", 32, signed=False),
        Integer("SecretKey", "secret_key", 32, signed=False),
    )

    def pack_body(self, packer):
        packer.pack_uint32(CANCEL_REQUEST_CODE)
        packer.pack_uint32(self.process_id)
        packer.pack_uint32(self.secret_key)

    @classmethod
    def unpack_body(cls, unpacker):
        unpacker.read_uint32()  # request code
        return cls(process_id=unpacker.read_uint32(),
                   secret_key=unpacker.read_uint32())


class Parse(FrontendMessage):
    name = "Parse"
    tag = b"P"
    fields = (
        String("Name", "name_"),
        String("Query", "query"),
        IntegerList("ParameterOIDs", "parameter_oids", 32, signed=False),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.name_)
        packer.pack_cstring(self.query)
        packer.pack_uint16(len(self.parameter_oids))
        for oid in self.parameter_oids:
            packer.pack_uint32(oid)

    @classmethod
    def unpack_body(cls, unpacker):
        name = unpacker.read_cstring()
        query = unpacker.read_cstring()
        count = unpacker.read_uint16()
        return cls(name_=name, query=query,
                   parameter_oids=[unpacker.read_uint32()
                                   for _ in range(count)])


class Query(FrontendMessage):
    name = "Query"
    tag = b"Q"
    fields = (
        String("String", "string"),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.string)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(string=unpacker.read_cstring())


class Describe(FrontendMessage):
    name = "Describe"
    tag = b"D"
    fields = (
        Char("ObjectType", "object_type", "S"),
        String("Name", "name_"),
    )

    def pack_body(self, packer):
        packer.pack_byte(self.object_type)
        packer.pack_cstring(self.name_)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(object_type=unpacker.read_byte(),
                   name_=unpacker.read_cstring())


class Close(Describe):
    name = "Close"
    tag = b"C"


class Sync(FrontendMessage):
    name = "Sync"
    tag = b"S"


class Flush(FrontendMessage):
    name = "Flush"
    tag = b"H"


class Terminate(FrontendMessage):
    name = "Terminate"
    tag = b"X"


class Bind(FrontendMessage):
    name = "Bind"
    tag = b"B"
    fields = (
        String("DestinationPortal", "destination_portal"),
        String("PreparedStatement", "prepared_statement"),
        IntegerList("ParameterFormatCodes", "parameter_format_codes", 16),
        Values("Parameters", "parameters"),
        IntegerList("ResultFormatCodes", "result_format_codes", 16),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.destination_portal)
        packer.pack_cstring(self.prepared_statement)
        packer.pack_uint16(len(self.parameter_format_codes))
        for code in self.parameter_format_codes:
            packer.pack_int16(code)
        packer.pack_values(self.parameters)
        packer.pack_uint16(len(self.result_format_codes))
        for code in self.result_format_codes:
            packer.pack_int16(code)

    @classmethod
    def unpack_body(cls, unpacker):
        portal = unpacker.read_cstring()
        statement = unpacker.read_cstring()
        parameter_format_codes = [unpacker.read_int16()
                                  for _ in range(unpacker.read_uint16())]
        parameters = unpacker.read_values()
        result_format_codes = [unpacker.read_int16()
                               for _ in range(unpacker.read_uint16())]
        return cls(destination_portal=portal, prepared_statement=statement,
                   parameter_format_codes=parameter_format_codes,
                   parameters=parameters,
                   result_format_codes=result_format_codes)


class Execute(FrontendMessage):
    name = "Execute"
    tag = b"E"
    fields = (
        String("Portal", "portal"),
        Integer("MaxRows", "max_rows", 32, signed=False),
    )

    def pack_body(self, packer):
        packer.pack_cstring(self.portal)
        packer.pack_uint32(self.max_rows)

    @classmethod
    def unpack_body(cls, unpacker):
        return cls(portal=unpacker.read_cstring(),
                   max_rows=unpacker.read_uint32())


def _subclasses(cls):
    for sub in cls.__subclasses__():
        yield sub
        yield from _subclasses(sub)


def _by_tag(base):
    return {sub.tag: sub for sub in _subclasses(base) if sub.tag is not None}


def _by_name(base):
    return {sub.name: sub for sub in _subclasses(base) if sub.scriptable}


#: script ``Type`` names accepted on ``B`` lines
BACKEND_MESSAGES = _by_name(BackendMessage)
#: script ``Type`` names accepted on ``F`` lines
FRONTEND_MESSAGES = _by_name(FrontendMessage)

_BACKEND_TAGS = _by_tag(BackendMessage)
_FRONTEND_TAGS = _by_tag(FrontendMessage)


def _decode(table, tag, body):
    try:
        cls = table[bytes(tag)]
    except KeyError:
        raise ProtocolError(
            "unknown message type {!r}".format(bytes(tag))
        )
    return cls.decode(body)


def decode_backend(tag, body):
    return _decode(_BACKEND_TAGS, tag, body)


def decode_frontend(tag, body):
    return _decode(_FRONTEND_TAGS, tag, body)


def decode_startup(body):
    """Decode a startup-phase packet (body without the length prefix)."""
    if len(body) < 4:
        raise ProtocolError("startup message too short")
    code, = struct_unpack_from(">I", body)
    if code == SSL_REQUEST_CODE:
        return SSLRequest()
    if code == GSS_ENC_REQUEST_CODE:
        return GSSEncRequest()
    if code == CANCEL_REQUEST_CODE:
        return CancelRequest.decode(body)
    if code >> 16 != PROTOCOL_VERSION_NUMBER >> 16:
        raise ProtocolError(
            "unsupported protocol version {}.{}".format(code >> 16,
                                                        code & 0xFFFF)
        )
    return StartupMessage.decode(body)
