#!/usr/bin/env python3
"""
UDP session with the UUT bridge.

One UutSession owns one socket for one dispatch cycle: the request is sent
from it and every listener of that cycle reads acknowledgements from it.
Sessions are never shared between cycles, so an ack that arrives late for
one test cannot be read by the listeners of the next.

Usage:
    from uut_client import UutSession

    with UutSession("192.168.1.177", 54321) as session:
        session.send(datagram)
        data = session.receive()   # None if nothing arrived within poll_interval
"""

import logging
import socket
import threading

from errors import TransportError
from protocol import hex_str

POLL_INTERVAL = 0.1  # seconds a receive call blocks before returning None
RECV_BUFSIZE = 512  # larger than any ack, so oversize datagrams arrive whole

log = logging.getLogger("hwtest.uut_client")


class UutSession:
    def __init__(self, host, port, poll_interval=POLL_INTERVAL, bind_addr=("", 0)):
        self.host = host
        self.port = port
        self.poll_interval = poll_interval
        self.bind_addr = bind_addr
        self.last_peer = None
        self._sock = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def open(self):
        """Create and bind the UDP socket."""
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            sock.bind(self.bind_addr)
            sock.settimeout(self.poll_interval)
        except OSError as e:
            raise TransportError(f"Cannot open UDP socket: {e}") from e
        with self._lock:
            self._sock = sock
            self._closed = False
        log.debug("Session socket bound to %s:%d", *sock.getsockname())
        return self

    def close(self):
        """Close the socket. Blocked receivers return on their next poll."""
        with self._lock:
            self._closed = True
            sock = self._sock
            self._sock = None
        if sock:
            sock.close()

    def __enter__(self):
        if self._sock is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _socket(self):
        with self._lock:
            sock = self._sock
        if not sock:
            raise TransportError("UUT session is not open")
        return sock

    def send(self, data):
        """Send one datagram to the UUT. Raises TransportError on failure."""
        sock = self._socket()
        try:
            sent = sock.sendto(data, (self.host, self.port))
        except OSError as e:
            raise TransportError(f"Send to {self.host}:{self.port} failed: {e}") from e
        if sent != len(data):
            raise TransportError(f"Incomplete send: {sent} of {len(data)} bytes")
        log.debug("Sent %d bytes to %s:%d: %s", sent, self.host, self.port, hex_str(data))

    def receive(self):
        """Return the next datagram, or None if none arrived within poll_interval.

        Returns None as well once the session has been closed; callers check
        `closed` to tell the two apart. Raises TransportError on socket errors.
        """
        with self._lock:
            sock = self._sock
        if not sock:
            return None
        try:
            data, peer = sock.recvfrom(RECV_BUFSIZE)
        except socket.timeout:
            return None
        except OSError as e:
            if self._closed:
                return None
            raise TransportError(f"Receive failed: {e}") from e
        self.last_peer = peer
        log.debug("Received %d bytes from %s:%d: %s", len(data), peer[0], peer[1], hex_str(data))
        return data
