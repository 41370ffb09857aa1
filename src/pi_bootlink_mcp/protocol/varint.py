"""Variable-length integer encoding for packet header fields.

Values are split into 7-bit groups, most-significant group first. Every
group except the last has bit 0x80 set::

    0x7F  -> 7F
    0x80  -> 81 00
    16384 -> 81 80 00

This is the MIDI style big-endian varint, not the little-endian protobuf one.
"""

from __future__ import annotations

MAX_VARINT_VALUE = 0xFFFFFFFF


def encode_varint(value: int) -> bytes:
    """Encode an unsigned 32-bit value.

    Raises:
        ValueError: If ``value`` is negative or does not fit in 32 bits.
    """
    if not 0 <= value <= MAX_VARINT_VALUE:
        raise ValueError(f"Varint value must be 0-0xFFFFFFFF, got {value}")

    groups = [value & 0x7F]
    value >>= 7
    while value:
        groups.append((value & 0x7F) | 0x80)
        value >>= 7
    groups.reverse()
    return bytes(groups)


def accumulate_varint(value: int, byte: int) -> tuple[int, bool]:
    """Fold one encoded byte into a partially decoded value.

    Returns:
        The updated value (wrapped to 32 bits) and whether it is complete.
    """
    value = ((value << 7) | (byte & 0x7F)) & MAX_VARINT_VALUE
    return value, not byte & 0x80


def decode_varint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode one varint from ``data`` starting at ``offset``.

    Returns:
        The decoded value and the offset just past it.

    Raises:
        ValueError: If the data ends before the final group.
    """
    value = 0
    pos = offset
    while pos < len(data):
        value, complete = accumulate_varint(value, data[pos])
        pos += 1
        if complete:
            return value, pos
    raise ValueError(f"Truncated varint at offset {offset}")
