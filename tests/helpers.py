"""Shared test helpers for hardware tester tests."""

import queue

from protocol import TEST_SUCCESS, Acknowledgement, decode_request, encode_ack


def make_ack(test_id, peripheral, result_code=TEST_SUCCESS):
    return encode_ack(Acknowledgement(test_id, peripheral, result_code))


class FakeSession:
    """In-memory stand-in for UutSession.

    ``responder(request)`` returns the raw datagrams the "UUT" sends back,
    in arrival order. Set ``send_error`` to make send() raise it.
    """

    def __init__(self, responder=None, send_error=None, receive_error=None):
        self.responder = responder or (lambda request: [])
        self.send_error = send_error
        self.receive_error = receive_error
        self.sent = []
        self.opened = False
        self._closed = False
        self._inbox = queue.Queue()

    @property
    def closed(self):
        return self._closed

    def open(self):
        self.opened = True
        return self

    def close(self):
        self._closed = True

    def send(self, data):
        if self.send_error:
            raise self.send_error
        self.sent.append(data)
        for datagram in self.responder(decode_request(data)):
            self._inbox.put(datagram)

    def inject(self, datagram):
        self._inbox.put(datagram)

    def receive(self):
        if self.receive_error:
            raise self.receive_error
        try:
            return self._inbox.get(timeout=0.01)
        except queue.Empty:
            return None


class FakeClock:
    """Fake monotonic clock; advance with ``clock.advance(seconds)``."""

    def __init__(self, start=0.0):
        self._now = start

    def __call__(self):
        return self._now

    def advance(self, seconds):
        self._now += seconds
