#!/usr/bin/env python3
"""
UUT Test Protocol Library

Shared constants and functions for encoding/decoding the datagrams exchanged
with the unit under test (UUT) bridge.

Request (host -> UUT), 7 + payload_len bytes:
    test_id (u32) | peripheral_mask (u8) | iteration_count (u8) | payload_len (u8) | payload

Acknowledgement (UUT -> host), always 6 bytes:
    test_id (u32) | peripheral (u8) | result_code (u8)

Multi-byte fields are little-endian, the native order of both ends.
"""

import struct
from collections import namedtuple

from errors import MalformedAck, MalformedDatagram, UsageError

UUT_ADDR = '192.168.1.177'
UUT_PORT = 54321

# Peripheral codes (bit values in the request mask)
TEST_UART = 0x02
TEST_SPI = 0x04
TEST_I2C = 0x08

PERIPHERALS = (TEST_UART, TEST_SPI, TEST_I2C)
ALL_PERIPHERALS = TEST_UART | TEST_SPI | TEST_I2C

PERIPHERAL_NAMES = {
    TEST_UART: 'UART',
    TEST_SPI: 'SPI',
    TEST_I2C: 'I2C',
}
NAME_TO_PERIPHERAL = {name.lower(): code for code, name in PERIPHERAL_NAMES.items()}

# Result codes reported by the UUT
TEST_SUCCESS = 0x01
TEST_FAILED = 0xFF

REQUEST_HEADER = struct.Struct('<IBBB')
ACK_FORMAT = struct.Struct('<IBB')

REQUEST_HEADER_SIZE = REQUEST_HEADER.size  # 7
ACK_SIZE = ACK_FORMAT.size                 # 6
MAX_PAYLOAD = 255
MAX_REQUEST_SIZE = REQUEST_HEADER_SIZE + MAX_PAYLOAD
MAX_TEST_ID = 0xFFFFFFFF
MAX_ITERATIONS = 255

Request = namedtuple('Request', ['test_id', 'peripheral_mask', 'iteration_count', 'payload'])
Acknowledgement = namedtuple('Acknowledgement', ['test_id', 'peripheral', 'result_code'])


def peripherals_in(mask):
    """Return the peripheral codes set in mask, in UART, SPI, I2C order."""
    return tuple(p for p in PERIPHERALS if mask & p)


def peripheral_name(code):
    return PERIPHERAL_NAMES.get(code, f'0x{code:02X}')


def build_mask(names):
    """Build a peripheral mask from names like ['uart', 'spi']."""
    mask = 0
    for name in names:
        code = NAME_TO_PERIPHERAL.get(name.lower())
        if code is None:
            raise UsageError(f"Unknown peripheral '{name}'. Known: {', '.join(NAME_TO_PERIPHERAL)}")
        mask |= code
    return mask


def validate_mask(mask):
    """Raise UsageError unless mask selects at least one known peripheral and nothing else."""
    if not isinstance(mask, int) or mask <= 0 or mask & ~ALL_PERIPHERALS:
        raise UsageError(f"Invalid peripheral mask {mask!r}: use UART=2, SPI=4, I2C=8")
    return mask


def as_payload(payload):
    """Return payload as bytes. Strings are UTF-8 encoded."""
    if isinstance(payload, str):
        payload = payload.encode('utf-8')
    payload = bytes(payload)
    if len(payload) > MAX_PAYLOAD:
        raise UsageError(f"Payload is {len(payload)} bytes, maximum is {MAX_PAYLOAD}")
    return payload


def encode_request(req):
    """Build a complete request datagram."""
    validate_mask(req.peripheral_mask)
    if not 0 <= req.test_id <= MAX_TEST_ID:
        raise UsageError(f"Test id {req.test_id} does not fit in 32 bits")
    if not 0 <= req.iteration_count <= MAX_ITERATIONS:
        raise UsageError(f"Iteration count {req.iteration_count} outside 0-{MAX_ITERATIONS}")
    payload = as_payload(req.payload)
    header = REQUEST_HEADER.pack(req.test_id, req.peripheral_mask, req.iteration_count, len(payload))
    return header + payload


def decode_request(data):
    """Parse a request datagram. Raises MalformedDatagram on a length mismatch."""
    if len(data) < REQUEST_HEADER_SIZE:
        raise MalformedDatagram(f"Request too short: {len(data)} bytes")
    test_id, mask, n_iter, p_len = REQUEST_HEADER.unpack_from(data)
    if len(data) != REQUEST_HEADER_SIZE + p_len:
        raise MalformedDatagram(
            f"Request length {len(data)} does not match payload_len {p_len}")
    return Request(test_id, mask, n_iter, bytes(data[REQUEST_HEADER_SIZE:]))


def encode_ack(ack):
    """Build an acknowledgement datagram (UUT side, used by the emulator)."""
    return ACK_FORMAT.pack(ack.test_id, ack.peripheral, ack.result_code)


def decode_ack(data):
    """Parse an acknowledgement datagram. Raises MalformedAck if it is not valid.

    Any result code other than TEST_SUCCESS is a failure, so it is kept as is.
    """
    if len(data) != ACK_SIZE:
        raise MalformedAck(f"Expected {ACK_SIZE} bytes, got {len(data)}: {hex_str(data)}")
    test_id, peripheral, result_code = ACK_FORMAT.unpack(data)
    if peripheral not in PERIPHERALS:
        raise MalformedAck(f"Unknown peripheral 0x{peripheral:02X} in ack for test #{test_id}")
    return Acknowledgement(test_id, peripheral, result_code)


def hex_str(data):
    """Format bytes as hex string."""
    return ' '.join(f'{b:02X}' for b in data)


def describe_ack(ack):
    """Human-readable one-liner for an acknowledgement."""
    result = 'success' if ack.result_code == TEST_SUCCESS else 'failed'
    return f"Test #{ack.test_id} | {peripheral_name(ack.peripheral)} | {result}"
