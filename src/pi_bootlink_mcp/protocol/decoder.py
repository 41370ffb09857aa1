"""Byte-at-a-time packet decoder.

The decoder is a state machine fed one byte at a time from the serial read
loop. All progress lives on the :class:`PacketDecoder` instance so it can be
driven from any polling loop with nothing kept on the stack between bytes.

Three consecutive signal bytes always restart decoding, whatever state the
decoder is in, so the link resynchronises on the next frame after any
corruption. Decode failures are reported through the optional ``on_error``
callback and never raised.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Callable, Optional

from ..utils.crc import crc32_finish, crc32_start, crc32_update
from .framing import (
    MAX_PACKET_SIZE,
    SEPARATOR_BYTE,
    SIGNAL_BYTE,
    SIGNAL_LENGTH,
    STUFF_BYTE,
    TERMINATOR_BYTE,
    Packet,
)
from .varint import accumulate_varint

logger = logging.getLogger(__name__)

PacketCallback = Callable[[int, int, Optional[bytes], int], None]
ErrorCallback = Callable[["PacketError"], None]


class DecodeState(IntEnum):
    """Decoder states, in frame order."""

    WAITING_SIGNAL = 0
    EXPECT_SEPARATOR = 1
    EXPECT_SEQ = 2
    EXPECT_CMD = 3
    EXPECT_LENGTH = 4
    EXPECT_DATA = 5
    EXPECT_CRC = 6
    EXPECT_TERMINATOR = 7


class PacketError(IntEnum):
    """Decode error codes (same numbering the device reports)."""

    NONE = 0
    NEW_PACKET = 1
    INVALID_STUFF_BYTE = 2
    INVALID_SEPARATOR_BYTE = 3
    TOO_LARGE = 4
    CHECKSUM_MISMATCH = 5
    INVALID_TERMINATOR = 6


class PacketDecoder:
    """Decoder context for one link.

    Usage::

        decoder = PacketDecoder(bytearray(4096), on_packet, on_error)
        for byte in data:
            decoder.decode(byte)

    Args:
        buffer: Caller-owned buffer the payload is assembled into.
        on_packet: Called as ``on_packet(sequence, command, payload, length)``
            once per validated frame. ``payload`` is ``None`` for an empty
            packet, otherwise a copy of the payload bytes.
        on_error: Optional, called with a :class:`PacketError` for every
            discarded frame.
        capacity: Largest accepted payload, defaults to ``len(buffer)``.

    Raises:
        ValueError: If ``capacity`` exceeds the buffer size.
    """

    def __init__(
        self,
        buffer: bytearray,
        on_packet: PacketCallback,
        on_error: ErrorCallback | None = None,
        capacity: int | None = None,
    ) -> None:
        if capacity is None:
            capacity = len(buffer)
        if not 0 <= capacity <= len(buffer):
            raise ValueError(
                f"Capacity must be 0-{len(buffer)} for this buffer, got {capacity}"
            )

        self._buffer = buffer
        self._capacity = capacity
        self.on_packet = on_packet
        self.on_error = on_error

        self.state = DecodeState.WAITING_SIGNAL
        self.signal_bytes_seen = 0
        self.count = 0
        self.sequence = 0
        self.command = 0
        self.length = 0
        self.crc_received = 0
        self.crc_calculated = 0

    @classmethod
    def with_capacity(
        cls,
        capacity: int,
        on_packet: PacketCallback,
        on_error: ErrorCallback | None = None,
    ) -> PacketDecoder:
        """Create a decoder that owns a freshly allocated buffer."""
        return cls(bytearray(capacity), on_packet, on_error)

    @property
    def capacity(self) -> int:
        return self._capacity

    def reset(self) -> None:
        """Drop any partial frame and wait for the next signal."""
        self.state = DecodeState.WAITING_SIGNAL
        self.signal_bytes_seen = 0
        self.count = 0

    def feed(self, data: bytes) -> None:
        """Decode a chunk of received bytes in order."""
        for byte in data:
            self.decode(byte)

    def _fail(self, error: PacketError) -> None:
        self.state = DecodeState.WAITING_SIGNAL
        logger.debug("Packet discarded: %s", error.name)
        if self.on_error is not None:
            self.on_error(error)

    def decode(self, byte: int) -> None:
        """Advance the state machine by one received byte."""
        # Signal detection runs in every state
        if byte == SIGNAL_BYTE:
            if self.signal_bytes_seen < SIGNAL_LENGTH:
                self.signal_bytes_seen += 1
            if self.signal_bytes_seen == SIGNAL_LENGTH:
                if self.state != DecodeState.WAITING_SIGNAL:
                    self._fail(PacketError.NEW_PACKET)
                self.state = DecodeState.EXPECT_SEPARATOR
                self.count = 0
                return
        else:
            if self.signal_bytes_seen == SIGNAL_LENGTH - 1:
                # Byte after two signals must be stuffing
                self.signal_bytes_seen = 0
                if byte != STUFF_BYTE:
                    self._fail(PacketError.INVALID_STUFF_BYTE)
                elif self.state != DecodeState.EXPECT_CRC or self.count == 0:
                    self.crc_calculated = crc32_update(self.crc_calculated, byte)
                return
            self.signal_bytes_seen = 0

        state = self.state

        if state == DecodeState.WAITING_SIGNAL:
            return

        if state == DecodeState.EXPECT_SEPARATOR:
            if byte != SEPARATOR_BYTE:
                self._fail(PacketError.INVALID_SEPARATOR_BYTE)
                return
            self.state = DecodeState.EXPECT_SEQ
            self.sequence = 0
            self.command = 0
            self.length = 0
            self.crc_received = 0
            self.crc_calculated = crc32_update(crc32_start(), byte)

        elif state == DecodeState.EXPECT_SEQ:
            self.crc_calculated = crc32_update(self.crc_calculated, byte)
            self.sequence, complete = accumulate_varint(self.sequence, byte)
            if complete:
                self.state = DecodeState.EXPECT_CMD

        elif state == DecodeState.EXPECT_CMD:
            self.crc_calculated = crc32_update(self.crc_calculated, byte)
            self.command, complete = accumulate_varint(self.command, byte)
            if complete:
                self.state = DecodeState.EXPECT_LENGTH

        elif state == DecodeState.EXPECT_LENGTH:
            self.crc_calculated = crc32_update(self.crc_calculated, byte)
            self.length, complete = accumulate_varint(self.length, byte)
            if not complete:
                return
            if self.length > self._capacity:
                logger.debug(
                    "Declared length %d exceeds capacity %d",
                    self.length,
                    self._capacity,
                )
                self._fail(PacketError.TOO_LARGE)
                return
            self.count = 0
            if self.length == 0:
                self.state = DecodeState.EXPECT_CRC
            else:
                self.state = DecodeState.EXPECT_DATA

        elif state == DecodeState.EXPECT_DATA:
            self.crc_calculated = crc32_update(self.crc_calculated, byte)
            self._buffer[self.count] = byte
            self.count += 1
            if self.count == self.length:
                self.state = DecodeState.EXPECT_CRC
                self.count = 0

        elif state == DecodeState.EXPECT_CRC:
            self.crc_received = ((self.crc_received << 8) | byte) & 0xFFFFFFFF
            self.count += 1
            if self.count == 4:
                expected = crc32_finish(self.crc_calculated)
                if expected != self.crc_received:
                    logger.debug(
                        "CRC mismatch (recv: 0x%08X expected: 0x%08X)",
                        self.crc_received,
                        expected,
                    )
                    self._fail(PacketError.CHECKSUM_MISMATCH)
                else:
                    self.state = DecodeState.EXPECT_TERMINATOR

        elif state == DecodeState.EXPECT_TERMINATOR:
            if byte != TERMINATOR_BYTE:
                self._fail(PacketError.INVALID_TERMINATOR)
                return
            self.state = DecodeState.WAITING_SIGNAL
            payload = bytes(self._buffer[: self.length]) if self.length else None
            self.on_packet(self.sequence, self.command, payload, self.length)


def decode(decoder: PacketDecoder, byte: int) -> None:
    """Feed one byte to ``decoder``."""
    decoder.decode(byte)


def decode_stream(
    data: bytes, capacity: int = MAX_PACKET_SIZE
) -> tuple[list[Packet], list[PacketError]]:
    """Decode a captured byte stream in one go.

    Returns:
        Every valid frame as a :class:`Packet` and the errors raised along
        the way, each in arrival order.
    """
    packets: list[Packet] = []
    errors: list[PacketError] = []

    def on_packet(sequence, command, payload, length):
        packets.append(Packet(sequence, command, payload or b""))

    decoder = PacketDecoder.with_capacity(capacity, on_packet, errors.append)
    decoder.feed(data)
    return packets, errors
