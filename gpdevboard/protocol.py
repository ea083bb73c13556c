"""
Framed packet protocol spoken by the dev board firmware.

Physical packet (64 bytes, one interrupt transfer):
    [0]     sequence A (forward index, starts at 1)
    [1]     sequence B (reverse index, starts at 0, counts down)
    [2]     packet type
    [3]     payload length (0-60)
    [4..63] payload, zero padded

DataFrame is the logical view of one packet. Callers never touch the byte
layout; only encode()/decode() below know about it.
"""

import logging
from typing import Iterator, Optional

from .errors import MalformedResponse, UnexpectedAck

logger = logging.getLogger(__name__)

PACKET_SIZE = 64
HEADER_SIZE = 4
MAX_PAYLOAD = PACKET_SIZE - HEADER_SIZE

# Packet types
WRITE_BITSTREAM_NVRAM = 0x01
READ_BITSTREAM_START = 0x02
WRITE_BITSTREAM_SRAM = 0x03
CONFIG_IO = 0x04
RESET = 0x05
READ_BITSTREAM_CONT = 0x07
WRITE_BITSTREAM_SRAM_ACK1 = 0x07
WRITE_BITSTREAM_NVRAM_ACK1 = 0x07
CONFIG_SIGGEN = 0x08
ENABLE_SIGGEN = 0x09
GET_STATUS = 0x0a
WRITE_BITSTREAM_NVRAM_ACK2 = 0x11
READ_BITSTREAM_ACK = 0x13
WRITE_BITSTREAM_SRAM_ACK2 = 0x1a
SET_STATUS_LED = 0x21
SET_PART = 0x25
CONFIG_ADC_MUX = 0x33
GET_OSC_FREQ = 0x42
READ_ADC = 0x47
TRIM_OSC = 0x49

PACKET_TYPES = {
    WRITE_BITSTREAM_NVRAM, READ_BITSTREAM_START, WRITE_BITSTREAM_SRAM,
    CONFIG_IO, RESET, READ_BITSTREAM_CONT, CONFIG_SIGGEN, ENABLE_SIGGEN,
    GET_STATUS, WRITE_BITSTREAM_NVRAM_ACK2, READ_BITSTREAM_ACK,
    WRITE_BITSTREAM_SRAM_ACK2, SET_STATUS_LED, SET_PART, CONFIG_ADC_MUX,
    GET_OSC_FREQ, READ_ADC, TRIM_OSC,
}


class DataFrame:
    """
    Logical view of a data packet on the wire.

    Not the actual byte ordering, but contains all the data.
    """

    def __init__(self, type: int = 0, payload: bytes = b'',
                 sequence_a: Optional[int] = None, sequence_b: int = 0):
        self.type = type
        # A typed frame is the first of a transfer; an untyped one is a blank
        # receive buffer
        if sequence_a is None:
            sequence_a = 1 if type else 0
        self.sequence_a = sequence_a
        self.sequence_b = sequence_b
        self.payload = bytearray()
        for b in payload:
            self.push_back(b)

    def __repr__(self):
        return (f"DataFrame(type=0x{self.type:02x}, seq=({self.sequence_a}, "
                f"{self.sequence_b}), payload={bytes(self.payload).hex()})")

    def __eq__(self, other):
        if not isinstance(other, DataFrame):
            return NotImplemented
        return (self.type, self.sequence_a, self.sequence_b, self.payload) == \
            (other.type, other.sequence_a, other.sequence_b, other.payload)

    def is_empty(self) -> bool:
        return len(self.payload) == 0

    def is_full(self) -> bool:
        return len(self.payload) == MAX_PAYLOAD

    def push_back(self, b: int):
        if self.is_full():
            raise OverflowError(f"Frame payload is limited to {MAX_PAYLOAD} bytes")
        self.payload.append(b)

    def extend(self, data: bytes):
        for b in data:
            self.push_back(b)

    def next(self) -> 'DataFrame':
        """Successor frame of a multi-frame transfer (same type, empty payload)."""
        return DataFrame(self.type,
                         sequence_a=self.sequence_a + 1,
                         sequence_b=self.sequence_b - 1)

    # ===== Wire encoding =====

    def encode(self) -> bytes:
        packet = bytearray(PACKET_SIZE)
        packet[0] = self.sequence_a & 0xFF
        packet[1] = self.sequence_b & 0xFF
        packet[2] = self.type
        packet[3] = len(self.payload)
        packet[HEADER_SIZE:HEADER_SIZE + len(self.payload)] = self.payload
        return bytes(packet)

    @classmethod
    def decode(cls, packet: bytes) -> 'DataFrame':
        if len(packet) < HEADER_SIZE:
            raise MalformedResponse(f"Short packet ({len(packet)} bytes)")
        length = packet[3]
        if length > MAX_PAYLOAD or HEADER_SIZE + length > len(packet):
            raise MalformedResponse(
                f"Bad payload length {length} in {len(packet)}-byte packet")
        if packet[2] not in PACKET_TYPES:
            raise MalformedResponse(f"Unknown packet type 0x{packet[2]:02x}")
        seq_b = packet[1]
        if seq_b >= 0x80:
            seq_b -= 0x100
        return cls(packet[2], packet[HEADER_SIZE:HEADER_SIZE + length],
                   sequence_a=packet[0], sequence_b=seq_b)

    # ===== I/O =====

    def send(self, transport):
        logger.debug("TX %r", self)
        transport.send(self.encode())

    @classmethod
    def receive(cls, transport) -> 'DataFrame':
        frame = cls.decode(transport.receive())
        logger.debug("RX %r", frame)
        return frame

    def roundtrip(self, transport, ack_type: Optional[int] = None) -> 'DataFrame':
        """
        Send this frame and wait for the board's answer.

        Args:
            transport: Open transport (UsbTransport or MockBoard)
            ack_type: If given, the response type that must come back

        Returns:
            Response frame
        """
        self.send(transport)
        reply = DataFrame.receive(transport)
        if ack_type is not None and reply.type != ack_type:
            raise UnexpectedAck(ack_type, reply.type)
        return reply


def send(transport, frame: DataFrame):
    frame.send(transport)


def receive(transport) -> DataFrame:
    return DataFrame.receive(transport)


def roundtrip(transport, frame: DataFrame, ack_type: Optional[int] = None) -> DataFrame:
    return frame.roundtrip(transport, ack_type)


def chunk_frames(type: int, data: bytes) -> Iterator[DataFrame]:
    """
    Split data into a chain of frames linked by next().

    Every yielded frame but the last is full. Empty data yields nothing.
    """
    frame = DataFrame(type)
    for b in data:
        if frame.is_full():
            yield frame
            frame = frame.next()
        frame.push_back(b)
    if not frame.is_empty():
        yield frame
