#!/usr/bin/env python3
"""
UUT Emulator - stands in for the embedded bridge on the bench.

Listens for request datagrams and answers each with one acknowledgement per
requested peripheral, sent back to the requester's address. Useful for
exercising the harness without the board attached, and for reproducing the
network conditions the harness must survive (reordering, loss, stale ids).

Usage:
  python3 mock_uut.py                       # listen on 0.0.0.0:54321, all pass
  python3 mock_uut.py --port 6000           # other port
  python3 mock_uut.py --fail spi            # SPI reports failure
  python3 mock_uut.py --drop i2c            # I2C never answers
  python3 mock_uut.py --reverse             # answer in I2C, SPI, UART order
  python3 mock_uut.py --delay 0.2           # wait before each ack
"""

import argparse
import logging
import socket
import threading
import time

from errors import MalformedDatagram
from protocol import (
    NAME_TO_PERIPHERAL,
    TEST_FAILED,
    TEST_SUCCESS,
    UUT_PORT,
    Acknowledgement,
    decode_request,
    describe_ack,
    encode_ack,
    hex_str,
    peripheral_name,
    peripherals_in,
)

log = logging.getLogger("hwtest.mock_uut")


class MockUut:
    """UDP emulator of the UUT bridge, served from a background thread."""

    def __init__(self, host="127.0.0.1", port=0):
        self.host = host
        self.port = port
        self.sock = None
        self.running = False
        self.received = []        # decoded requests, in arrival order
        self.failing = set()      # peripherals that report TEST_FAILED
        self.dropped = set()      # peripherals that never answer
        self.reverse = False      # answer highest peripheral first
        self.delay = 0.0          # seconds before each ack
        self.stale_offset = 0     # added to test_id in acks (non-zero = stale ack)
        self.extra_datagrams = []  # raw datagrams sent before the acks
        self.request_event = threading.Event()
        self._thread = None

    @property
    def address(self):
        return self.sock.getsockname() if self.sock else (self.host, self.port)

    def start(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind((self.host, self.port))
        self.sock.settimeout(0.2)
        self.port = self.sock.getsockname()[1]
        self.running = True
        self._thread = threading.Thread(target=self._run, name="mock-uut", daemon=True)
        self._thread.start()
        log.info("Mock UUT listening on %s:%d", self.host, self.port)
        return self

    def stop(self):
        self.running = False
        if self._thread:
            self._thread.join(timeout=2.0)
        if self.sock:
            self.sock.close()
            self.sock = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def _run(self):
        while self.running:
            try:
                data, peer = self.sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError:
                break
            try:
                request = decode_request(data)
            except MalformedDatagram as e:
                log.warning("Bad request from %s:%d: %s (%s)", peer[0], peer[1], e, hex_str(data))
                continue
            self.received.append(request)
            self.request_event.set()
            log.info("Request #%d for %s, n=%d, payload=%r", request.test_id,
                     "|".join(peripheral_name(p) for p in peripherals_in(request.peripheral_mask)),
                     request.iteration_count, request.payload)
            self._respond(request, peer)

    def acks_for(self, request):
        """Acks this emulator would send for request, in send order."""
        peripherals = peripherals_in(request.peripheral_mask)
        if self.reverse:
            peripherals = tuple(reversed(peripherals))
        acks = []
        for p in peripherals:
            if p in self.dropped:
                continue
            code = TEST_FAILED if p in self.failing else TEST_SUCCESS
            acks.append(Acknowledgement(request.test_id + self.stale_offset, p, code))
        return acks

    def _respond(self, request, peer):
        for raw in self.extra_datagrams:
            self.sock.sendto(raw, peer)
        for ack in self.acks_for(request):
            if self.delay:
                time.sleep(self.delay)
            self.sock.sendto(encode_ack(ack), peer)
            log.info("Sent ack: %s", describe_ack(ack))


def _peripheral_set(names):
    return {NAME_TO_PERIPHERAL[n.lower()] for n in names or []}


def main():
    parser = argparse.ArgumentParser(description='Emulate the UUT bridge over UDP')
    parser.add_argument('--host', default='0.0.0.0', help='Address to bind (default: 0.0.0.0)')
    parser.add_argument('--port', '-p', type=int, default=UUT_PORT,
                        help=f'UDP port (default: {UUT_PORT})')
    parser.add_argument('--fail', nargs='*', choices=sorted(NAME_TO_PERIPHERAL),
                        help='Peripherals that report failure')
    parser.add_argument('--drop', nargs='*', choices=sorted(NAME_TO_PERIPHERAL),
                        help='Peripherals that never answer')
    parser.add_argument('--reverse', action='store_true',
                        help='Answer in reverse peripheral order')
    parser.add_argument('--delay', type=float, default=0.0,
                        help='Seconds to wait before each ack')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s: %(message)s")

    uut = MockUut(args.host, args.port)
    uut.failing = _peripheral_set(args.fail)
    uut.dropped = _peripheral_set(args.drop)
    uut.reverse = args.reverse
    uut.delay = args.delay
    uut.start()
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        pass
    uut.stop()


if __name__ == "__main__":
    main()
