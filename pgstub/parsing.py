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


import abc
import json
import sys
import warnings
from os import path

import lark

from .errors import (
    MessageDecodeError,
    ScriptEmptyError,
    ScriptWarning,
)
from .messages import (
    BACKEND_MESSAGES,
    FRONTEND_MESSAGES,
    lookup_field,
)
from .script import (
    ExpectStep,
    Script,
    SendStep,
)


def load_parser():
    grammar_path = path.join(path.dirname(__file__), "grammar.lark")
    with open(grammar_path, "r", encoding="utf-8") as fd:
        return lark.Lark(fd, parser="lalr", propagate_positions=True)


parser = load_parser()


class LineError(lark.GrammarError):
    def __init__(self, line, *args, **kwargs):
        assert isinstance(line, Line)
        self.line = line
        if args and isinstance(args[0], str):
            args = (args[0] + ": " + str(line),) + args[1:]
        else:
            args = (str(line),) + args
        super().__init__(*args, **kwargs)


class UnknownMessageTypeError(LineError):
    def __init__(self, line, type_name):
        self.side = line.direction
        self.type_name = type_name
        super().__init__(
            line, "{}: unknown type `{}`".format(line.direction, type_name)
        )


class Line(str, abc.ABC):
    direction = None
    message_types = {}

    def __new__(cls, line_number: int, raw_line):
        obj = super(Line, cls).__new__(cls, raw_line)
        obj.line_number = line_number
        obj.content = raw_line[1:]
        return obj

    def __str__(self):
        return "({:3}) {}".format(self.line_number,
                                  super(Line, self).__str__())

    def __repr__(self):
        return "<{}>{}".format(self.__class__.__name__, self.__str__())

    def __getnewargs__(self):
        return self.line_number, super(Line, self).__str__()

    def _decode_payload(self):
        try:
            payload = json.loads(self.content)
        except json.JSONDecodeError as e:
            raise LineError(self, "message payload must be a JSON object") \
                from e
        if not isinstance(payload, dict):
            raise LineError(self, "message payload must be a JSON object")
        return payload

    def _message_class(self, payload):
        _, type_name = lookup_field(payload, "Type")
        if type_name is None:
            type_name = ""
        elif not isinstance(type_name, str):
            type_name = json.dumps(type_name)
        try:
            return self.message_types[type_name]
        except KeyError:
            raise UnknownMessageTypeError(self, type_name)

    @abc.abstractmethod
    def to_step(self):
        pass


class BackendLine(Line):
    direction = "B"
    message_types = BACKEND_MESSAGES

    def to_step(self):
        payload = self._decode_payload()
        cls = self._message_class(payload)
        try:
            msg = cls.from_json(payload)
        except MessageDecodeError as e:
            raise LineError(
                self, "malformed {} message ({})".format(cls.name, e)
            ) from e
        return SendStep(msg, line=self)


class FrontendLine(Line):
    direction = "F"
    message_types = FRONTEND_MESSAGES

    def to_step(self):
        payload = self._decode_payload()
        cls = self._message_class(payload)
        try:
            msg = cls.from_json(payload)
        except MessageDecodeError as e:
            # Fields the client message cannot hold are dropped; the step
            # then expects their default values.
            warnings.warn(
                "ignoring malformed {} field ({}): {}".format(cls.name, e,
                                                             str(self)),
                ScriptWarning,
            )
            msg = cls.from_json(payload, strict=False)
        return ExpectStep(msg, line=self)


class ScriptTransformer(lark.Transformer):
    @staticmethod
    def _line(line_cls, meta, children):
        raw_line = str(children[0])
        if raw_line.endswith("\r"):
            raw_line = raw_line[:-1]
        if len(raw_line) < 2:
            return None
        return line_cls(meta.line, raw_line).to_step()

    @lark.v_args(meta=True)
    def backend_line(self, meta, children):
        return self._line(BackendLine, meta, children)

    @lark.v_args(meta=True)
    def frontend_line(self, meta, children):
        return self._line(FrontendLine, meta, children)

    def start(self, children):
        return [child for child in children if child is not None]


def parse(script, filename=None) -> Script:
    """Parse stub script text (a string or a readable text object).

    The returned script always starts with the steps accepting an
    unauthenticated connection. Use :attr:`.Script.is_empty` (or
    :func:`get_script`) to find out whether the text added anything.
    """
    if hasattr(script, "read"):
        script = script.read()
    steps = ScriptTransformer().transform(parser.parse(script))
    return Script(steps, filename=filename)


def parse_file(filename):
    with open(filename, encoding="utf-8") as fd:
        try:
            script = parse(fd.read(), filename=filename)
        except Exception:
            print("Error while parsing %s" % filename, file=sys.stderr)
            raise
    return script


def get_script(filename):
    """Load a script file, refusing scripts without any scripted step.

    :raises ScriptEmptyError: carrying the parsed (usable) script if the
        file contains nothing but blank or ignored lines
    """
    script = parse_file(filename)
    if script.is_empty:
        raise ScriptEmptyError(script)
    return script
