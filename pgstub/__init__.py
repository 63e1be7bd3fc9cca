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


import traceback
from logging import getLogger
from queue import Queue
from socket import SHUT_RDWR
from socketserver import (
    BaseRequestHandler,
    TCPServer,
)
from threading import Thread

from .channel import Channel
from .errors import (
    ProtocolError,
    ScriptEmptyError,
)
from .messages import (
    ErrorResponse,
    ReadyForQuery,
    Sync,
)
from .parsing import (
    get_script,
    parse,
    parse_file,
)
from .script import (
    ACCEPT_UNAUTHENTICATED_CONN_STEPS,
    Script,
    ScriptFailure,
    ScriptMismatch,
)
from .wiring import (
    Address,
    Wire,
    WireError,
)

__all__ = [
    "ACCEPT_UNAUTHENTICATED_CONN_STEPS",
    "get_script",
    "parse",
    "parse_file",
    "PgStubService",
    "Script",
    "ScriptEmptyError",
    "ScriptFailure",
    "ScriptMismatch",
]

log = getLogger(__name__)


class PgStubServer(TCPServer):

    allow_reuse_address = True

    timed_out = False

    def __init__(self, address, *args, **kwargs):
        self.address_family = address.family
        super().__init__(tuple(address), *args, **kwargs)

    def handle_timeout(self):
        self.timed_out = True


class PgStubService:
    """Fake postgres server replaying one script to exactly one client.

    :meth:`start` returns two queues: ``done`` receives ``None`` when the
    client went through the whole script, ``errors`` receives the exception
    that ended the connection otherwise. Exactly one of them receives
    exactly one item.
    """

    default_listen_addr = "localhost:0"

    default_timeout = 30

    default_deadline = 1.0

    default_drain_attempts = 10

    diff_prefix = "pgstub: diff:\n"

    def __init__(self, listen_addr=None, timeout=None, deadline=None,
                 drain_attempts=None):
        listen_addr = Address.parse(listen_addr or self.default_listen_addr)
        self.timeout = timeout or self.default_timeout
        self.deadline = deadline or self.default_deadline
        if drain_attempts is None:
            drain_attempts = self.default_drain_attempts
        self.drain_attempts = drain_attempts
        self.script = None
        self.ever_acted = False
        self.done = Queue()
        self.errors = Queue()
        self._thread = None
        self._shutting_down = False
        service = self

        class PgStubRequestHandler(BaseRequestHandler):
            wire = None
            client_address = None
            server_address = None

            def setup(self):
                self.wire = Wire(self.request)
                self.client_address = self.wire.remote_address
                self.server_address = self.wire.local_address
                log.info("[#%04X>#%04X]  S: <ACCEPT> %s -> %s",
                         self.client_address.port_number,
                         self.server_address.port_number,
                         self.client_address, self.server_address)

            def handle(self) -> None:
                service.ever_acted = True
                try:
                    self.wire.set_deadline(service.deadline)
                except (OSError, ValueError) as e:
                    log.error("[#%04X>#%04X]  S: <DEADLINE> %r",
                              self.client_address.port_number,
                              self.server_address.port_number, e)
                    service.errors.put(e)
                    return
                actor = PgStubActor(service.script, self.wire, service)
                try:
                    actor.play()
                except (ScriptFailure, ProtocolError, OSError) as e:
                    actor.log_error("S: <FAILURE> %s", e)
                    actor.recover(e)
                    service.errors.put(e)
                except Exception as e:
                    traceback.print_exc()
                    actor.recover(e)
                    service.errors.put(e)
                else:
                    service.done.put(None)

            def finish(self):
                log.info("[#%04X>#%04X]  S: <HANGUP>",
                         self.client_address.port_number,
                         self.server_address.port_number)
                try:
                    self.wire.close()
                except OSError:
                    pass
                except AttributeError:
                    pass

        self.server = PgStubServer(
            Address((listen_addr.host, listen_addr.port_number,
                     *listen_addr[2:])),
            PgStubRequestHandler
        )
        self.server.timeout = self.timeout
        self.address = Address(self.server.server_address)

    def start(self, script: Script):
        """Serve ``script`` to the next client in a background thread.

        Returns immediately with the ``(done, errors)`` queues.
        """
        if self._thread is not None:
            raise RuntimeError("PgStubService serves a single connection")
        self.script = script
        self._thread = Thread(target=self._serve, daemon=True)
        self._thread.start()
        return self.done, self.errors

    def _serve(self):
        error = None
        try:
            self.server.handle_request()
        except (OSError, ValueError) as e:
            if not self._shutting_down:
                log.warning("Listener failed", exc_info=e)
            error = e
        finally:
            self.server.server_close()
        if self.ever_acted:
            return
        if error is None:
            if self.server.timed_out:
                error = WireError(
                    "no connection within {} seconds".format(self.timeout)
                )
            else:
                error = WireError("failed to accept a connection")
        self.errors.put(error)

    def stop(self):
        self._shutting_down = True
        try:
            # wakes up a pending accept
            self.server.socket.shutdown(SHUT_RDWR)
        except OSError:
            pass
        self.server.socket.close()

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout=timeout)


class PgStubActor:

    def __init__(self, script: Script, wire, service: PgStubService):
        self.script = script
        self.wire = wire
        self.drain_attempts = service.drain_attempts
        self.diff_prefix = service.diff_prefix
        self.channel = Channel(wire, log_cb=self.log)

    def play(self):
        self.script.run(self.channel)
        self.log("Script finished")

    def recover(self, error):
        """Leave the client with a protocol error instead of a hang.

        Skip what the client already sent up to its next Sync, report the
        error twice, each time followed by ReadyForQuery, then reset the
        connection.
        """
        self._drain()
        self._report(self.diff_prefix + str(error))
        self._report(str(error))
        self.log("S: <RESET>")
        self.wire.abort()

    def _drain(self):
        for _ in range(self.drain_attempts):
            try:
                msg = self.channel.receive()
            except (OSError, ProtocolError) as e:
                self.log("S: <DRAIN> ignored %r", e)
                continue
            if isinstance(msg, Sync):
                break

    def _report(self, text):
        error = ErrorResponse(severity="ERROR", severity_unlocalized="ERROR",
                              message=text)
        for msg in (error, ReadyForQuery(tx_status="I")):
            try:
                self.channel.send(msg)
            except OSError as e:
                self.log_error("S: <BROKEN> %r", e)
                return

    def log(self, text, *args):
        log.info("[#%04X>#%04X]  " + text,
                 self.wire.remote_address.port_number,
                 self.wire.local_address.port_number,
                 *args)

    def log_error(self, text, *args):
        log.error("[#%04X>#%04X]  " + text,
                  self.wire.remote_address.port_number,
                  self.wire.local_address.port_number,
                  *args)
