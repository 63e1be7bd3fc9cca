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


from struct import unpack as struct_unpack

from .errors import ProtocolError
from .messages import (
    decode_frontend,
    decode_startup,
    GSSEncRequest,
    SSLRequest,
)

# upper bound for a single message, guards against reading garbage lengths
MAX_MESSAGE_SIZE = 1 << 30


def hex_repr(b):
    return " ".join("{:02X}".format(x) for x in b)


class Channel:
    # This class is the glue between a stub script, the socket, and the
    # postgres protocol (server side).

    def __init__(self, wire, log_cb=None):
        self.wire = wire
        self.log = log_cb

    def _log(self, *args, **kwargs):
        if self.log:
            self.log(*args, **kwargs)

    def _read_length(self):
        header = self.wire.read(4)
        size, = struct_unpack(">i", header)
        if not 4 <= size <= MAX_MESSAGE_SIZE:
            raise ProtocolError(
                "invalid message length {} ({})".format(size,
                                                        hex_repr(header))
            )
        return size - 4

    def receive_startup_message(self):
        # Encryption is never offered. Clients that ask for it are told so
        # and are expected to continue with a plain startup packet.
        while True:
            body = self.wire.read(self._read_length())
            msg = decode_startup(body)
            self._log("C: %s", msg)
            if not isinstance(msg, (SSLRequest, GSSEncRequest)):
                return msg
            self.send_raw(b"N")

    def receive(self):
        tag = bytes(self.wire.read(1))
        body = self.wire.read(self._read_length())
        msg = decode_frontend(tag, body)
        self._log("C: %s", msg)
        return msg

    def send_raw(self, b):
        self._log("S: <RAW> %s", hex_repr(b))
        self.wire.write(b)
        self.wire.send()

    def send(self, msg):
        self._log("S: %s", msg)
        self.wire.write(msg.encode())
        self.wire.send()
