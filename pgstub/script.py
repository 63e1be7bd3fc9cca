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
import difflib
import json
from typing import (
    Iterable,
    Optional,
)

from .messages import (
    AuthenticationOk,
    BackendKeyData,
    Message,
    ReadyForQuery,
    StartupMessage,
)


class ScriptFailure(RuntimeError):
    pass


class ScriptMismatch(ScriptFailure):
    def __init__(self, step: "Step", received: Message):
        super().__init__(step, received)
        self.step = step
        self.received = received

    @property
    def expected(self):
        return self.step.message

    def diff(self):
        def dump(msg):
            return json.dumps(msg.to_json(), indent=2).splitlines()

        return "\n".join(difflib.unified_diff(
            dump(self.expected), dump(self.received),
            fromfile="expected", tofile="received", lineterm=""
        ))

    def __str__(self):
        res = "Expected:\n" + str(self.step)
        res += "\n\nReceived:\n" + str(self.received)
        diff = self.diff()
        if diff:
            res += "\n\n" + diff
        return res


class Step(abc.ABC):
    def __init__(self, message: Message, line=None):
        self.message = message
        self.line = line

    @abc.abstractmethod
    def run(self, channel):
        pass

    def __eq__(self, other):
        if type(self) is not type(other):
            return NotImplemented
        return self.message == other.message

    __hash__ = None

    def __str__(self):
        if self.line is not None:
            return str(self.line)
        return str(self.message)

    def __repr__(self):
        return "<{}>{}".format(self.__class__.__name__, self.message)


class SendStep(Step):
    def run(self, channel):
        channel.send(self.message)


class ExpectStep(Step):
    def _receive(self, channel):
        if isinstance(self.message, StartupMessage):
            return channel.receive_startup_message()
        return channel.receive()

    def matches(self, received):
        return received == self.message

    def run(self, channel):
        received = self._receive(channel)
        if not self.matches(received):
            raise ScriptMismatch(self, received)


class ExpectAnyStep(ExpectStep):
    """Accept any message of the same kind, regardless of its fields."""

    def matches(self, received):
        return type(received) is type(self.message)


#: steps every script starts with: accept the client's startup without
#: asking for authentication and report the server ready
ACCEPT_UNAUTHENTICATED_CONN_STEPS = (
    ExpectAnyStep(StartupMessage()),
    SendStep(AuthenticationOk()),
    SendStep(BackendKeyData(process_id=0, secret_key=0)),
    SendStep(ReadyForQuery(tx_status="I")),
)


class Script:
    def __init__(self, steps: Optional[Iterable[Step]] = None,
                 filename=None):
        self.steps = [*ACCEPT_UNAUTHENTICATED_CONN_STEPS, *(steps or ())]
        self.filename = filename or ""

    @property
    def is_empty(self):
        return len(self.steps) <= len(ACCEPT_UNAUTHENTICATED_CONN_STEPS)

    def run(self, channel):
        for step in self.steps:
            step.run(channel)

    def __eq__(self, other):
        if not isinstance(other, Script):
            return NotImplemented
        return self.steps == other.steps

    __hash__ = None

    def __repr__(self):
        return "<Script {!r} ({} steps)>".format(self.filename,
                                                 len(self.steps))
