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

from .. import (
    ACCEPT_UNAUTHENTICATED_CONN_STEPS,
    parsing,
)
from ..errors import (
    ScriptEmptyError,
    ScriptWarning,
)
from ..messages import (
    Bind,
    DataRow,
    Query,
    ReadyForQuery,
    Sync,
)
from ..script import (
    ExpectStep,
    SendStep,
)


def scripted_steps(script):
    return script.steps[len(ACCEPT_UNAUTHENTICATED_CONN_STEPS):]


@pytest.mark.parametrize("text", [
    "",
    "\n",
    "\n\n\r\n",
    "X\n",
    "# just a comment\n  B{\"Type\": \"ReadyForQuery\"}\n",
])
def test_empty_script_keeps_prefix(text):
    script = parsing.parse(text)

    assert script.is_empty
    assert script.steps == list(ACCEPT_UNAUTHENTICATED_CONN_STEPS)


def test_get_script_reports_empty_script(tmp_path):
    path = tmp_path / "empty.txt"
    path.write_text("X\n\n")

    with pytest.raises(ScriptEmptyError) as exc:
        parsing.get_script(str(path))

    assert exc.value.script is not None
    assert exc.value.script.steps == list(ACCEPT_UNAUTHENTICATED_CONN_STEPS)
    assert str(path) in str(exc.value)


def test_get_script_returns_script(tmp_path):
    path = tmp_path / "query.txt"
    path.write_text('F{"Type": "Query", "String": "SELECT 1"}\n')

    script = parsing.get_script(str(path))

    assert script.filename == str(path)
    assert scripted_steps(script) == [ExpectStep(Query(string="SELECT 1"))]


def test_backend_line_becomes_send_step():
    script = parsing.parse('B{"Type":"ReadyForQuery"}')

    steps = scripted_steps(script)
    assert len(steps) == 1
    assert isinstance(steps[0], SendStep)
    assert steps[0].message == ReadyForQuery(tx_status="I")


def test_frontend_line_becomes_expect_step():
    script = parsing.parse('F{"Type":"Sync"}')

    steps = scripted_steps(script)
    assert len(steps) == 1
    assert isinstance(steps[0], ExpectStep)
    assert steps[0].message == Sync()


def test_steps_keep_file_order():
    script = parsing.parse(
        'F{"Type":"Query","String":"SELECT 1"}\n'
        "\n"
        'B{"Type":"DataRow","Values":[{"text":"1"},null]}\n'
        'B{"Type":"ReadyForQuery","TxStatus":"T"}\n'
    )

    assert [step.message for step in scripted_steps(script)] == [
        Query(string="SELECT 1"),
        DataRow(values=[b"1", None]),
        ReadyForQuery(tx_status="T"),
    ]


def test_steps_remember_their_line():
    script = parsing.parse('\n\nB{"Type":"ReadyForQuery"}\n')

    step, = scripted_steps(script)
    assert step.line.line_number == 3
    assert "(  3)" in str(step)


def test_keys_are_case_insensitive():
    script = parsing.parse('B{"type":"ReadyForQuery","txstatus":"E"}')

    step, = scripted_steps(script)
    assert step.message == ReadyForQuery(tx_status="E")


def test_carriage_returns_are_stripped():
    script = parsing.parse('F{"Type":"Sync"}\r\nB{"Type":"NoData"}\r\n')

    assert len(scripted_steps(script)) == 2


@pytest.mark.parametrize("line", ["X", "B", "F", "", " ", "Z{}"])
def test_short_and_foreign_lines_are_skipped(line):
    script = parsing.parse(line + "\n" + 'F{"Type":"Sync"}\n' + line)

    assert scripted_steps(script) == [ExpectStep(Sync())]


@pytest.mark.parametrize("direction", ["B", "F"])
def test_unknown_type_fails(direction):
    text = (
        'F{"Type":"Sync"}\n'
        + direction + '{"Type":"Bogus"}\n'
        'B{"Type":"ReadyForQuery"}\n'
    )

    with pytest.raises(parsing.UnknownMessageTypeError) as exc:
        parsing.parse(text)

    assert exc.value.side == direction
    assert exc.value.type_name == "Bogus"
    assert "{}: unknown type `Bogus`".format(direction) in str(exc.value)
    assert exc.value.line.line_number == 2


def test_missing_type_fails():
    with pytest.raises(parsing.UnknownMessageTypeError) as exc:
        parsing.parse('B{"TxStatus":"I"}')

    assert exc.value.type_name == ""


def test_startup_phase_requests_are_not_scriptable():
    with pytest.raises(parsing.UnknownMessageTypeError):
        parsing.parse('F{"Type":"SSLRequest"}')


@pytest.mark.parametrize("line", [
    "B[1, 2]",
    "Bnot json",
    'F"Sync"',
])
def test_payload_must_be_json_object(line):
    with pytest.raises(parsing.LineError, match="JSON object"):
        parsing.parse(line)


def test_malformed_backend_fields_fail():
    with pytest.raises(parsing.LineError,
                       match="malformed ReadyForQuery message"):
        parsing.parse('B{"Type":"ReadyForQuery","TxStatus":"IDLE"}')


def test_backend_char_must_fit_one_byte():
    with pytest.raises(parsing.LineError,
                       match="malformed ReadyForQuery message"):
        parsing.parse('B{"Type":"ReadyForQuery","TxStatus":"\u20ac"}')


def test_latin1_char_is_accepted():
    script = parsing.parse('B{"Type":"ReadyForQuery","TxStatus":"\u00e9"}')

    step, = scripted_steps(script)
    assert step.message.encode() == b"Z\x00\x00\x00\x05\xe9"


def test_backend_string_must_not_contain_nul():
    with pytest.raises(parsing.LineError,
                       match="malformed CommandComplete message"):
        parsing.parse(
            r'B{"Type":"CommandComplete","CommandTag":"A\u0000B"}'
        )


def test_malformed_frontend_fields_warn_and_default():
    with pytest.warns(ScriptWarning, match="Query"):
        script = parsing.parse('F{"Type":"Query","String":5}')

    step, = scripted_steps(script)
    assert step.message == Query(string="")


def test_malformed_frontend_fields_keep_good_fields():
    with pytest.warns(ScriptWarning):
        script = parsing.parse(
            'F{"Type":"Bind","PreparedStatement":"s1",'
            '"Parameters":[{"weird":"1"}]}'
        )

    step, = scripted_steps(script)
    assert step.message == Bind(prepared_statement="s1")


def test_parse_accepts_readable_objects(tmp_path):
    path = tmp_path / "script.txt"
    path.write_text('F{"Type":"Sync"}\n')

    with open(str(path)) as fd:
        script = parsing.parse(fd)

    assert scripted_steps(script) == [ExpectStep(Sync())]


def test_parse_file_names_broken_file(tmp_path, capsys):
    path = tmp_path / "broken.txt"
    path.write_text('B{"Type":"Bogus"}\n')

    with pytest.raises(parsing.LineError):
        parsing.parse_file(str(path))

    assert str(path) in capsys.readouterr().err


def test_parsing_is_repeatable():
    text = (
        'F{"Type":"Parse","Query":"SELECT $1","ParameterOIDs":[23]}\n'
        'B{"Type":"ParseComplete"}\n'
        'F{"Type":"Sync"}\n'
        'B{"Type":"ReadyForQuery"}\n'
    )

    first = parsing.parse(text)
    second = parsing.parse(text)

    assert first is not second
    assert first == second
    assert ([step.message for step in first.steps]
            == [step.message for step in second.steps])
