#!/usr/bin/env python3
"""
Dispatcher - runs one peripheral test cycle against the UUT.

A cycle allocates a test id, sends one request datagram, waits for one
acknowledgement per requested peripheral and logs the verdict:

    IDLE -> ID_ALLOCATED -> SENT -> AWAITING_ACKS -> AGGREGATED -> LOGGED
                 |                        |               |
                 +------------------------+---------------+--> FAILED

Invariant: acks are matched to peripherals by the peripheral field of the
decoded datagram, never by which listener read it or when it arrived. The
UUT answers each peripheral independently and UDP does not preserve order.

A peripheral whose ack never arrives before the deadline counts as failed,
and the cycle is still logged. Transport and store errors end the cycle
without a record.

This module has NO dependencies on the CLI or the HTTP server.
"""

import logging
import threading
import time

import config
from errors import MalformedAck, StoreError, TransportError, UsageError
from protocol import (
    MAX_ITERATIONS,
    TEST_SUCCESS,
    Request,
    as_payload,
    decode_ack,
    describe_ack,
    encode_request,
    peripheral_name,
    peripherals_in,
    validate_mask,
)
from result_store import TestRecord
from uut_client import UutSession

log = logging.getLogger("hwtest.dispatch")

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

IDLE = "idle"
ID_ALLOCATED = "id_allocated"
SENT = "sent"
AWAITING_ACKS = "awaiting_acks"
AGGREGATED = "aggregated"
LOGGED = "logged"
FAILED = "failed"


class AckRouter:
    """Per-peripheral result slots for one test id.

    Any listener may deliver any ack; the ack lands in the slot named by its
    own peripheral field. Each slot is claimed at most once.
    """

    def __init__(self, test_id, peripherals):
        self.test_id = test_id
        self._cond = threading.Condition()
        self._results = {p: None for p in peripherals}

    def deliver(self, ack):
        """Claim the slot for ack.peripheral. Returns False if the ack was ignored."""
        if ack.test_id != self.test_id:
            log.warning("Ignoring stale ack for test #%d (waiting for #%d)", ack.test_id, self.test_id)
            return False
        with self._cond:
            if ack.peripheral not in self._results:
                log.warning("Ignoring ack for unrequested peripheral %s", peripheral_name(ack.peripheral))
                return False
            if self._results[ack.peripheral] is not None:
                log.warning("Ignoring duplicate %s ack for test #%d", peripheral_name(ack.peripheral), ack.test_id)
                return False
            self._results[ack.peripheral] = ack.result_code
            self._cond.notify_all()
        log.info(describe_ack(ack))
        return True

    def claimed(self, peripheral):
        with self._cond:
            return self._results[peripheral] is not None

    def results(self):
        """Snapshot: {peripheral: result_code or None if never acknowledged}."""
        with self._cond:
            return dict(self._results)

    def all_success(self):
        """AND over every requested peripheral; a missing ack counts as failure."""
        return all(code == TEST_SUCCESS for code in self.results().values())


class Listener(threading.Thread):
    """Waits for the ack of one peripheral on the cycle's shared session.

    Every datagram this listener reads is routed through the AckRouter, so
    an ack meant for another peripheral still reaches that peripheral's slot.
    """

    def __init__(self, peripheral, session, router, deadline, clock=time.monotonic):
        super().__init__(name=f"listener-{peripheral_name(peripheral)}", daemon=True)
        self.peripheral = peripheral
        self.session = session
        self.router = router
        self.deadline = deadline
        self.clock = clock
        self.error = None

    def run(self):
        try:
            self._listen()
        except TransportError as e:
            self.error = e
            self.session.close()

    def _listen(self):
        while not self.router.claimed(self.peripheral):
            if self.session.closed:
                return
            if self.clock() >= self.deadline:
                log.warning("No %s ack for test #%d before the deadline",
                            peripheral_name(self.peripheral), self.router.test_id)
                return
            data = self.session.receive()
            if data is None:
                continue
            try:
                ack = decode_ack(data)
            except MalformedAck as e:
                log.warning("Discarding malformed ack: %s", e)
                continue
            self.router.deliver(ack)


class Dispatcher:
    """Runs dispatch cycles and logs them to a ResultStore.

    One Dispatcher runs one cycle at a time; run() holds a lock for the
    whole cycle. Separate Dispatchers may share a store, and each cycle
    opens its own UDP session.
    """

    def __init__(self, store, session_factory=None, ack_timeout=None, clock=time.monotonic):
        self.store = store
        self.session_factory = session_factory or default_session_factory
        self.ack_timeout = config.get("ack_timeout") if ack_timeout is None else ack_timeout
        self._clock = clock
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = IDLE
        self._session = None
        self._running = False
        self._cancelled = False
        self.test_id = None
        self.per_peripheral = {}
        self.last_error = None

    @property
    def state(self):
        return self._state

    @property
    def busy(self):
        return self._run_lock.locked()

    def _transition(self, new_state):
        with self._state_lock:
            log.debug("Test #%s: %s -> %s", self.test_id, self._state, new_state)
            self._state = new_state

    def _fail(self, exc):
        self.last_error = exc
        self._transition(FAILED)
        log.error("Test #%s failed: %s", self.test_id, exc)

    def run(self, peripheral_mask, iteration_count=1, payload=b""):
        """Run one cycle and return the logged TestRecord.

        Raises UsageError before anything is allocated or sent; TransportError
        or StoreError if the cycle fails.
        """
        validate_mask(peripheral_mask)
        if not 0 <= iteration_count <= MAX_ITERATIONS:
            raise UsageError(f"Iteration count {iteration_count} outside 0-{MAX_ITERATIONS}")
        payload = as_payload(payload)

        with self._run_lock:
            self.test_id = None
            self.per_peripheral = {}
            self.last_error = None
            self._transition(IDLE)
            with self._state_lock:
                self._running = True
                self._cancelled = False
            try:
                return self._run_cycle(peripheral_mask, iteration_count, payload)
            finally:
                with self._state_lock:
                    self._running = False

    def _run_cycle(self, peripheral_mask, iteration_count, payload):
        try:
            self.test_id = self.store.allocate_next_id()
        except StoreError as e:
            self._fail(e)
            raise
        self._transition(ID_ALLOCATED)

        peripherals = peripherals_in(peripheral_mask)
        request = Request(self.test_id, peripheral_mask, iteration_count, payload)
        session = self.session_factory()
        try:
            session.open()
            wall_started_at = time.strftime(TIMESTAMP_FORMAT)
            started_at = self._clock()
            session.send(encode_request(request))
            with self._state_lock:
                self._session = session
                cancelled = self._cancelled
            self._transition(SENT)
            if cancelled:
                log.warning("Test #%d was cancelled before its request went out", self.test_id)
                session.close()
            log.info("Sent test #%d to %s (n=%d, %d-byte payload)", self.test_id,
                     "|".join(peripheral_name(p) for p in peripherals), iteration_count, len(payload))

            router = AckRouter(self.test_id, peripherals)
            listeners = self._start_listeners(peripherals, session, router, started_at)
            self._transition(AWAITING_ACKS)
            for listener in listeners:
                listener.join()
        except TransportError as e:
            self._fail(e)
            raise
        finally:
            with self._state_lock:
                self._session = None
            session.close()

        errors = [listener.error for listener in listeners if listener.error is not None]
        if errors:
            self._fail(errors[0])
            raise errors[0]

        self.per_peripheral = router.results()
        all_success = router.all_success()
        duration = self._clock() - started_at
        self._transition(AGGREGATED)

        record = TestRecord(self.test_id, wall_started_at, duration, all_success)
        try:
            self.store.insert_record(record)
        except StoreError as e:
            self._fail(e)
            raise
        self._transition(LOGGED)
        log.info("Test #%d %s in %.3fs", self.test_id, "passed" if all_success else "failed", duration)
        return record

    def _start_listeners(self, peripherals, session, router, started_at):
        deadline = started_at + self.ack_timeout
        listeners = [Listener(p, session, router, deadline, clock=self._clock) for p in peripherals]
        for listener in listeners:
            listener.start()
        return listeners

    def cancel(self):
        """Stop waiting for acks. Unacknowledged peripherals count as failed.

        A cancel that arrives before the request is sent takes effect as soon
        as it is, so the cancelled cycle is still logged.
        """
        with self._state_lock:
            if not self._running:
                return False
            self._cancelled = True
            session = self._session
        log.warning("Cancelling test #%s", self.test_id)
        if session is not None:
            session.close()
        return True

    def get(self, test_id):
        return self.store.lookup(test_id)

    def export(self):
        return self.store.export_all()


def default_session_factory():
    return UutSession(config.get("uut_host"), config.get("uut_port"))
