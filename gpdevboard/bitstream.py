"""
Bitstream intelligence: classification, patching and part detection.

Bits are numbered the way the vendor tools number register cells: bit n lives
in byte n // 8 at position n % 8 (LSB first). Every part-specific offset sits
in BITSTREAM_FIELDS; adding a part only means adding a row there.
"""

import binascii
import dataclasses
import enum
import logging
import re
from pathlib import Path
from typing import Tuple

from .board import (DownloadMode, IOConfig, TP_FLIMSY_PULLDOWN)
from .errors import NoPartDetected, WrongPartDetected
from .parts import Part, bitstream_bytes, bitstream_length, part_name

logger = logging.getLogger(__name__)

# reg<2047:2040> on a programmed NVM
PROGRAMMED_MARKER = 0xa5


class BitstreamKind(enum.Enum):
    UNRECOGNIZED = 0
    EMPTY = 1
    PROGRAMMED = 2


@dataclasses.dataclass(frozen=True)
class BitField:
    offset: int     # first (least significant) bit
    width: int


@dataclasses.dataclass(frozen=True)
class PartFields:
    osc_trim: BitField
    pattern_id: BitField
    read_protect: BitField
    marker: BitField
    # Byte an erased NVM reads back as
    empty_fill: int = 0x00


_SLG4662X_FIELDS = PartFields(
    osc_trim=BitField(2016, 8),         # reg<2023:2016>
    pattern_id=BitField(2031, 8),       # reg<2038:2031>
    read_protect=BitField(2039, 1),     # reg<2039>
    marker=BitField(2040, 8),           # reg<2047:2040>
)

BITSTREAM_FIELDS = {
    Part.SLG46140V: PartFields(
        osc_trim=BitField(992, 8),      # reg<999:992>
        pattern_id=BitField(1007, 8),   # reg<1014:1007>
        read_protect=BitField(1015, 1), # reg<1015>
        marker=BitField(1016, 8),       # reg<1023:1016>
    ),
    Part.SLG46620V: _SLG4662X_FIELDS,
    Part.SLG46621V: _SLG4662X_FIELDS,
    Part.SLG4662XV: _SLG4662X_FIELDS,
}

# Parts probed by detect_part(), in order
DETECTION_ORDER = (Part.SLG46140V, Part.SLG4662XV)

# Pin 14 is VDD2 on SLG46621V and a plain I/O on SLG46620V
SLG4662X_PROBE_PIN = 14
SLG4662X_VDD2_THRESHOLD = 0.5


def get_bits(bitstream: bytes, field: BitField) -> int:
    value = 0
    for i in range(field.width):
        bit = field.offset + i
        if bitstream[bit // 8] & (1 << (bit % 8)):
            value |= 1 << i
    return value


def set_bits(bitstream: bytearray, field: BitField, value: int):
    if value >> field.width:
        raise ValueError(f"Value {value} does not fit in {field.width} bits")
    for i in range(field.width):
        bit = field.offset + i
        if value & (1 << i):
            bitstream[bit // 8] |= 1 << (bit % 8)
        else:
            bitstream[bit // 8] &= ~(1 << (bit % 8)) & 0xff


def _fields(part: Part) -> PartFields:
    try:
        return BITSTREAM_FIELDS[part]
    except KeyError:
        raise ValueError(f"No bitstream layout for part {part_name(part)}") from None


def empty_bitstream(part: Part) -> bytes:
    """What an erased part reads back as."""
    return bytes([_fields(part).empty_fill]) * bitstream_bytes(part)


def classify_bitstream(part: Part, bitstream: bytes) -> Tuple[BitstreamKind, int]:
    """
    Work out what a read-back bitstream holds.

    Args:
        part: Part the bitstream was read from
        bitstream: Bitstream bytes

    Returns:
        Tuple of (kind, pattern_id); pattern_id is 0 unless PROGRAMMED
    """
    if part not in BITSTREAM_FIELDS or len(bitstream) != bitstream_bytes(part):
        return BitstreamKind.UNRECOGNIZED, 0
    fields = BITSTREAM_FIELDS[part]
    if bytes(bitstream) == empty_bitstream(part):
        return BitstreamKind.EMPTY, 0
    if get_bits(bitstream, fields.marker) == PROGRAMMED_MARKER:
        return BitstreamKind.PROGRAMMED, get_bits(bitstream, fields.pattern_id)
    return BitstreamKind.UNRECOGNIZED, 0


def tweak_bitstream(bitstream: bytearray, part: Part, osc_trim: int,
                    pattern_id: int, read_protect: bool):
    """
    Patch the calibration and identity fields in place.

    Every bit outside the trim, pattern id and read protect fields is left
    untouched.
    """
    fields = _fields(part)
    if len(bitstream) != bitstream_bytes(part):
        raise ValueError(
            f"{part_name(part)} bitstream must be {bitstream_bytes(part)} bytes, "
            f"got {len(bitstream)}")
    set_bits(bitstream, fields.osc_trim, osc_trim)
    set_bits(bitstream, fields.pattern_id, pattern_id)
    set_bits(bitstream, fields.read_protect, 1 if read_protect else 0)


def bitstream_from_hex(text: str) -> bytes:
    """Strict hex decode: no whitespace, even length, hex digits only."""
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid hex bitstream: {e}") from e


_BIT_LINE = re.compile(r'^\s*(\d+)\s+([01])\b')


def read_bitstream(path, part: Part) -> bytes:
    """
    Load a GreenPAK Designer text bitstream.

    The file has a header line followed by one "index value" line per
    register bit; anything after the value (comments) is ignored.
    """
    nbits = bitstream_length(part)
    bitstream = bytearray(nbits // 8)
    seen = set()
    text = Path(path).read_text(encoding='ascii', errors='replace')
    for lineno, line in enumerate(text.splitlines(), 1):
        m = _BIT_LINE.match(line)
        if not m:
            continue
        index, value = int(m.group(1)), int(m.group(2))
        if index >= nbits:
            raise ValueError(f"{path}:{lineno}: bit {index} out of range for {part_name(part)}")
        if value:
            bitstream[index // 8] |= 1 << (index % 8)
        seen.add(index)
    if len(seen) != nbits:
        raise ValueError(
            f"{path}: found {len(seen)} of {nbits} bits expected for {part_name(part)}")
    return bytes(bitstream)


def distinguish_slg4662x(board) -> Part:
    """
    Tell SLG46620V from SLG46621V.

    Both share the family code; on SLG46621V pin 14 is the VDD2 supply and
    stays up against a very weak pull-down, on SLG46620V it is an unconfigured
    I/O and follows the pull-down.
    """
    config = IOConfig()
    config.driver_configs[SLG4662X_PROBE_PIN] = TP_FLIMSY_PULLDOWN
    board.set_io_config(config)
    voltage = board.single_read_adc(SLG4662X_PROBE_PIN)
    board.set_io_config(IOConfig())
    part = Part.SLG46621V if voltage > SLG4662X_VDD2_THRESHOLD else Part.SLG46620V
    logger.debug("Pin %d reads %.3f V: %s", SLG4662X_PROBE_PIN, voltage, part_name(part))
    board.set_part(part)
    return part


def detect_part(board) -> Tuple[Part, bytes, BitstreamKind]:
    """
    Find out which part is in the socket.

    Returns:
        Tuple of (part, NVM bitstream, classification)
    """
    for part in DETECTION_ORDER:
        logger.debug("Trying part %s", part_name(part))
        board.set_part(part)
        bitstream = board.download_bitstream(DownloadMode.PROGRAMMING, part)
        kind, pattern_id = classify_bitstream(part, bitstream)
        if kind is BitstreamKind.UNRECOGNIZED:
            continue
        if part is Part.SLG4662XV:
            part = distinguish_slg4662x(board)
        if kind is BitstreamKind.PROGRAMMED:
            logger.info("Detected %s, programmed with pattern ID %d", part_name(part), pattern_id)
        else:
            logger.info("Detected %s, empty", part_name(part))
        return part, bitstream, kind
    raise NoPartDetected("No supported part detected in the socket")


def verify_device_present(board, expected_part: Part):
    """Raise unless exactly `expected_part` is detected."""
    part, _, _ = detect_part(board)
    if part is not expected_part:
        raise WrongPartDetected(expected_part, part)
