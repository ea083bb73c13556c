"""Supported GreenPAK parts and their bitstream sizes."""

from enum import IntEnum


class Part(IntEnum):
    """
    Part numbers.

    Low 4 bits: dev board specific data; high 8 bits: actual bitstream coding.
    """
    SLG46140V = 0x140
    SLG46620V = 0x620
    SLG46621V = 0x621
    SLG4662XV = 0x62f
    UNRECOGNIZED = 0xfff


_PART_NAMES = {
    Part.SLG46140V: "SLG46140V",
    Part.SLG46620V: "SLG46620V",
    Part.SLG46621V: "SLG46621V",
    Part.SLG4662XV: "SLG4662xV",
    Part.UNRECOGNIZED: "unrecognized",
}

# Bitstream length in bits
_BITSTREAM_BITS = {
    Part.SLG46140V: 1024,
    Part.SLG46620V: 2048,
    Part.SLG46621V: 2048,
    Part.SLG4662XV: 2048,
}


def part_name(part: Part) -> str:
    return _PART_NAMES.get(part, f"<0x{int(part):03x}>")


def bitstream_length(part: Part) -> int:
    """Bitstream length of `part` in bits."""
    try:
        return _BITSTREAM_BITS[part]
    except KeyError:
        raise ValueError(f"No bitstream length for part {part_name(part)}") from None


def bitstream_bytes(part: Part) -> int:
    """Bitstream length of `part` in bytes."""
    return bitstream_length(part) // 8


def wire_index(part: Part) -> bytes:
    """Encoding of `part` in a SET_PART payload (big-endian part code)."""
    return int(part).to_bytes(2, 'big')
