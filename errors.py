"""
Error types raised by the test harness.

Every failure reaches the caller as one of these; nothing is retried
inside the harness. TransportError and StoreError end the current
dispatch cycle without a record. MalformedAck only discards the
offending datagram.
"""


class HarnessError(Exception):
    """Base class for all harness errors."""


class UsageError(HarnessError, ValueError):
    """Invalid caller input: mask, iteration count, payload or CLI flags."""


class TransportError(HarnessError, ConnectionError):
    """Socket create/send/receive failure."""


class MalformedDatagram(HarnessError, ValueError):
    """A datagram that does not match its fixed layout."""


class MalformedAck(MalformedDatagram):
    """An acknowledgement datagram that could not be decoded."""


class StoreError(HarnessError):
    """Result store could not be opened or could not allocate an id."""


class StoreWriteError(StoreError):
    """A completed test record could not be written."""


class NotFound(HarnessError, LookupError):
    """No record exists for the requested test id."""

    def __init__(self, test_id):
        super().__init__(f"No test record found for test id {test_id}")
        self.test_id = test_id
