"""CRC-32 used to checksum packets on the serial link.

Standard reflected CRC-32 (Ethernet / ZIP, polynomial 0x04C11DB7), driven
incrementally so the encoder and the byte-at-a-time decoder can fold in one
byte at a time::

    crc = crc32_start()
    for b in data:
        crc = crc32_update(crc, b)
    value = crc32_finish(crc)
"""

from __future__ import annotations

CRC32_POLYNOMIAL = 0x04C11DB7
CRC32_INIT = 0xFFFFFFFF


def _reflect(value: int, width: int) -> int:
    result = 0
    for i in range(width):
        if value & (1 << i):
            result |= 1 << (width - 1 - i)
    return result


def _build_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        entry = _reflect(i, 8) << 24
        for _ in range(8):
            if entry & 0x80000000:
                entry = ((entry << 1) ^ CRC32_POLYNOMIAL) & 0xFFFFFFFF
            else:
                entry = (entry << 1) & 0xFFFFFFFF
        table.append(_reflect(entry, 32))
    return tuple(table)


CRC32_TABLE = _build_table()


def crc32_start() -> int:
    """Return a fresh accumulator."""
    return CRC32_INIT


def crc32_update(crc: int, byte: int) -> int:
    """Fold a single byte into the accumulator."""
    return (crc >> 8) ^ CRC32_TABLE[(crc ^ byte) & 0xFF]


def crc32_update_bytes(crc: int, data: bytes) -> int:
    """Fold a run of bytes into the accumulator."""
    for byte in data:
        crc = (crc >> 8) ^ CRC32_TABLE[(crc ^ byte) & 0xFF]
    return crc


def crc32_finish(crc: int) -> int:
    """Produce the final CRC value from an accumulator."""
    return crc ^ 0xFFFFFFFF


def crc32(data: bytes) -> int:
    """Calculate the CRC-32 of ``data`` in one shot.

    Args:
        data: The bytes to checksum.

    Returns:
        The 32-bit CRC (same value as ``zlib.crc32``).
    """
    return crc32_finish(crc32_update_bytes(crc32_start(), data))
