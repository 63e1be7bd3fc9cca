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
Low-level module for network communication.

This module provides a convenience socket wrapper class (:class:`.Wire`)
with an absolute I/O deadline as well as classes for modelling IP
addresses, based on tuples.
"""


from functools import cached_property
from socket import (
    AF_INET,
    AF_INET6,
    getservbyname,
    SO_LINGER,
    SOL_SOCKET,
    timeout,
)
import struct
from time import monotonic

POSTGRES_PORT_NUMBER = 5432


class Address(tuple):
    """Address of a machine on a network."""

    @classmethod
    def parse(cls, s, default_host=None, default_port=None):
        """Parse ``host:port`` or ``[host]:port``; the port may be named."""
        if not isinstance(s, str):
            raise TypeError("Address.parse requires a string argument")
        if s.startswith("["):
            host, _, port = s[1:].rpartition("]")
            port = port.lstrip(":")
            flow = (0, 0)
        else:
            host, _, port = s.partition(":")
            flow = ()
        if port.isdigit():
            port = int(port)
        return cls((host or default_host or "localhost",
                    port or default_port or 0, *flow))

    def __new__(cls, iterable):
        if isinstance(iterable, cls):
            return iterable
        n_parts = len(iterable)
        inst = tuple.__new__(cls, iterable)
        if n_parts == 2:
            inst.__class__ = IPv4Address
        elif n_parts == 4:
            inst.__class__ = IPv6Address
        else:
            raise ValueError("Addresses must consist of either "
                             "two parts (IPv4) or four parts (IPv6)")
        return inst

    #: Address family (AF_INET or AF_INET6)
    family = None

    def __repr__(self):
        return "{}({!r})".format(self.__class__.__name__, tuple(self))

    @property
    def host(self):
        return self[0]

    @property
    def port(self):
        return self[1]

    @property
    def port_number(self):
        if self.port in ("postgres", "postgresql"):
            return POSTGRES_PORT_NUMBER
        try:
            return getservbyname(self.port)
        except (OSError, TypeError):
            # OSError: service/proto not found
            # TypeError: getservbyname() argument 1 must be str, not X
            try:
                return int(self.port)
            except (TypeError, ValueError) as e:
                raise type(e)("Unknown port value %r" % self.port)


class IPv4Address(Address):
    """Address subclass, specifically for IPv4 addresses."""

    family = AF_INET

    def __str__(self):
        return "{}:{}".format(*self)


class IPv6Address(Address):
    """Address subclass, specifically for IPv6 addresses."""

    family = AF_INET6

    def __str__(self):
        return "[{}]:{}".format(*self[:2])


class Wire(object):
    """Buffered socket wrapper for reading and writing bytes.

    Once :meth:`set_deadline` has been called, every read and send fails
    with :class:`DeadlineExceededError` after the deadline has passed. The
    deadline is absolute: it bounds the whole remaining lifetime of the
    connection, not single operations.
    """

    _closed = False

    _broken = False

    def __init__(self, s):
        s.settimeout(None)
        self._socket = s
        self._input = bytearray()
        self._output = bytearray()
        self._deadline = None

    def set_deadline(self, seconds):
        """Fail all I/O from ``seconds`` from now on."""
        self._socket.settimeout(seconds)
        self._deadline = monotonic() + seconds

    def _apply_deadline(self):
        if self._deadline is None:
            return
        remaining = self._deadline - monotonic()
        if remaining <= 0:
            raise DeadlineExceededError("I/O deadline exceeded")
        self._socket.settimeout(remaining)

    def read(self, n):
        """Read bytes from the network."""
        while len(self._input) < n:
            required = n - len(self._input)
            requested = max(required, 8192)
            self._apply_deadline()
            try:
                received = self._socket.recv(requested)
            except timeout:
                raise DeadlineExceededError("I/O deadline exceeded")
            except OSError:
                self._broken = True
                raise BrokenWireError("Broken")
            else:
                if received:
                    self._input.extend(received)
                else:
                    self._broken = True
                    raise BrokenWireError("Network read incomplete "
                                          "(received %d of %d bytes)" %
                                          (len(self._input), n))
        data = self._input[:n]
        self._input[:n] = []
        return data

    def write(self, b):
        """Write bytes to the output buffer."""
        self._output.extend(b)

    def send(self):
        """Send the contents of the output buffer to the network."""
        if self._closed:
            raise WireError("Closed")
        sent = 0
        while self._output:
            self._apply_deadline()
            try:
                n = self._socket.send(self._output)
            except timeout:
                raise DeadlineExceededError("I/O deadline exceeded")
            except OSError:
                self._broken = True
                raise BrokenWireError("Broken")
            else:
                self._output[:n] = []
                sent += n
        return sent

    def close(self):
        """Close the connection."""
        try:
            self._socket.close()
        except OSError:
            self._broken = True
            raise BrokenWireError("Broken")
        else:
            self._closed = True

    def abort(self):
        """Close the connection without a graceful shutdown.

        Unsent data is discarded and the peer receives a reset instead of
        an orderly end of stream.
        """
        self._output.clear()
        try:
            self._socket.setsockopt(SOL_SOCKET, SO_LINGER,
                                    struct.pack("ii", 1, 0))
        except OSError:
            self._broken = True
        self.close()

    @property
    def closed(self):
        """Flag indicating whether this connection has been closed locally."""
        return self._closed

    @property
    def broken(self):
        """Flag indicating whether this connection has been closed remotely."""
        return self._broken

    @cached_property
    def local_address(self):
        """Get the local address to which this connection is bound.

        :rtype: Address
        """
        return Address(self._socket.getsockname())

    @cached_property
    def remote_address(self):
        """Get the remote address to which this connection is bound.

        :rtype: Address
        """
        return Address(self._socket.getpeername())


class WireError(OSError):
    """Raised when a connection error occurs."""


class BrokenWireError(WireError):
    """Raised when a connection is broken by the network or remote peer."""


class DeadlineExceededError(WireError):
    """Raised when I/O is attempted after the connection deadline."""