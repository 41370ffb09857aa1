"""Packet encoder for the serial link.

Frame layout::

    +----------------+-----------+---------+---------+---------+-----------+----------+------------+
    | Signal         | Separator | Seq     | Command | Length  | Payload   | CRC-32   | Terminator |
    | AA AA AA (raw) | 00        | varint  | varint  | varint  | Length B  | 4 B, BE  | 55 (raw)   |
    +----------------+-----------+---------+---------+---------+-----------+----------+------------+

- Signal: start of packet; three in a row always restart the decoder
- Separator through CRC are escaped: two consecutive 0xAA bytes are always
  followed by a 0x00 stuffing byte, so the signal can never appear inside a
  frame
- CRC-32 covers separator, header and payload including stuffing bytes; the
  CRC bytes themselves are escaped but not checksummed
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from ..utils.crc import crc32_finish, crc32_start, crc32_update
from .varint import encode_varint

SIGNAL_BYTE = 0xAA
SEPARATOR_BYTE = 0x00
STUFF_BYTE = 0x00
TERMINATOR_BYTE = 0x55
SIGNAL_LENGTH = 3
MAX_PACKET_SIZE = 4096  # payload capacity of the bootloader's receive buffer

ByteSink = Callable[[int], None]


@dataclass
class Packet:
    """A decoded or to-be-encoded packet."""

    sequence: int
    command: int
    payload: bytes = b""

    def __repr__(self) -> str:
        return (
            f"Packet(sequence={self.sequence}, command={self.command}, "
            f"payload={self.payload.hex(' ') if self.payload else '(empty)'})"
        )


class StuffingWriter:
    """Writes frame body bytes to a sink, escaping and checksumming them."""

    def __init__(self, sink: ByteSink) -> None:
        self._sink = sink
        self._signal_bytes = 0
        self.crc = crc32_start()

    def write(self, byte: int, checksum: bool = True) -> None:
        """Write one byte, inserting a stuffing byte after a pair of signals.

        Args:
            byte: The byte to write.
            checksum: Whether the byte (and any stuffing it causes) is
                folded into the running CRC.
        """
        self._sink(byte)
        if checksum:
            self.crc = crc32_update(self.crc, byte)

        if byte != SIGNAL_BYTE:
            self._signal_bytes = 0
            return

        if self._signal_bytes == 1:
            self._sink(STUFF_BYTE)
            if checksum:
                self.crc = crc32_update(self.crc, STUFF_BYTE)
            self._signal_bytes = 0
        else:
            self._signal_bytes += 1

    def write_bytes(self, data: bytes) -> None:
        for byte in data:
            self.write(byte)

    def finish(self) -> int:
        """Write the finished CRC, most-significant byte first, and return it."""
        crc = crc32_finish(self.crc)
        for shift in (24, 16, 8, 0):
            self.write((crc >> shift) & 0xFF, checksum=False)
        return crc


def encode_packet(
    sink: ByteSink, sequence: int, command: int, payload: bytes = b""
) -> None:
    """Write a complete frame to ``sink`` one byte at a time.

    Args:
        sink: Callable receiving each encoded byte.
        sequence: Correlation id, echoed by the device in its reply.
        command: Packet id.
        payload: Packet data.

    Raises:
        ValueError: If sequence, command or payload length exceed 32 bits.
    """
    header = encode_varint(sequence) + encode_varint(command) + encode_varint(len(payload))

    for _ in range(SIGNAL_LENGTH):
        sink(SIGNAL_BYTE)

    writer = StuffingWriter(sink)
    writer.write(SEPARATOR_BYTE)
    writer.write_bytes(header)
    writer.write_bytes(payload)
    writer.finish()

    sink(TERMINATOR_BYTE)


def build_packet(sequence: int, command: int, payload: bytes = b"") -> bytes:
    """Encode a frame into a ``bytes`` object ready to write to the port."""
    buf = bytearray()
    encode_packet(buf.append, sequence, command, payload)
    return bytes(buf)
