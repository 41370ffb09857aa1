"""Packet identifiers and request payload builders.

Each request is one packet whose ``command`` field is a :class:`PacketId`.
Payload structures are packed little-endian, strings are UTF-8 and NUL
terminated.
"""

from __future__ import annotations

import struct
from enum import IntEnum

DEFAULT_START_ADDRESS = 0xFFFFFFFF  # device picks 0x8000 / 0x80000 by arch
FAT_ATTR_ARCHIVE = 0x20

_U32_MAX = 0xFFFFFFFF


class PacketId(IntEnum):
    """Packet identifiers shared by host and bootloader."""

    PING = 0
    ACK = 1
    ERROR = 2
    DATA = 3
    GO = 4
    REQUEST_BAUD = 5
    COMMAND = 6
    STDOUT = 7
    STDERR = 8
    PULL = 9
    PULL_HEADER = 10
    PULL_DATA = 11
    PUSH_DATA = 12
    PUSH_COMMIT = 13


PUSH_DATA_HEADER_SIZE = 8  # token + offset
DATA_HEADER_SIZE = 4  # address


def _check_u32(name: str, value: int) -> None:
    if not 0 <= value <= _U32_MAX:
        raise ValueError(f"{name} must be 0-0xFFFFFFFF, got {value}")


def _cstring(text: str) -> bytes:
    encoded = text.encode("utf-8")
    if b"\x00" in encoded:
        raise ValueError(f"String must not contain NUL characters: {text!r}")
    return encoded + b"\x00"


def build_data(address: int, data: bytes) -> bytes:
    """Build a Data payload: program bytes to copy to ``address``.

    Args:
        address: Load address in device memory.
        data: Program bytes.
    """
    _check_u32("Address", address)
    return struct.pack("<I", address) + data


def build_go(start_address: int = DEFAULT_START_ADDRESS, delay_ms: int = 0) -> bytes:
    """Build a Go payload that starts the loaded program.

    Args:
        start_address: Entry point, or ``DEFAULT_START_ADDRESS``.
        delay_ms: Delay on the device before jumping.
    """
    _check_u32("Start address", start_address)
    _check_u32("Delay", delay_ms)
    return struct.pack("<II", start_address, delay_ms)


def build_request_baud(baud: int, reset_timeout_ms: int, cpu_freq: int = 0) -> bytes:
    """Build a RequestBaud payload.

    The device reverts to its default baud rate if no packet arrives for
    ``reset_timeout_ms``. A ``cpu_freq`` of 0 leaves the clock unchanged.
    """
    if baud <= 0:
        raise ValueError(f"Baud rate must be positive, got {baud}")
    _check_u32("Baud rate", baud)
    _check_u32("Reset timeout", reset_timeout_ms)
    _check_u32("CPU frequency", cpu_freq)
    return struct.pack("<III", baud, reset_timeout_ms, cpu_freq)


def build_command(cwd: str, command: str) -> bytes:
    """Build a Command payload: run ``command`` in the device shell from ``cwd``."""
    return _cstring(cwd) + _cstring(command)


def build_pull(filename: str) -> bytes:
    """Build a Pull payload requesting the content of a device file."""
    return _cstring(filename)


def build_push_data(token: int, offset: int, data: bytes) -> bytes:
    """Build a PushData payload carrying one chunk of a file.

    Args:
        token: Continuation token identifying the push; a chunk at offset 0
            starts a new push.
        offset: File offset of ``data``.
        data: File content.
    """
    _check_u32("Token", token)
    _check_u32("Offset", offset)
    return struct.pack("<II", token, offset) + data


def build_push_commit(
    token: int,
    size: int,
    fat_time: int,
    fat_date: int,
    name: str,
    attr: int = FAT_ATTR_ARCHIVE,
    overwrite: bool = True,
) -> bytes:
    """Build a PushCommit payload that moves the pushed data into place.

    Args:
        token: Token used for the PushData chunks.
        size: Total number of bytes pushed.
        fat_time: Modification time in FAT format.
        fat_date: Modification date in FAT format.
        name: Target path on the device.
        attr: FAT attribute byte.
        overwrite: Replace an existing file (otherwise the device fails).
    """
    _check_u32("Token", token)
    _check_u32("Size", size)
    if not 0 <= fat_time <= 0xFFFF or not 0 <= fat_date <= 0xFFFF:
        raise ValueError("FAT time and date must be 16-bit values")
    if not 0 <= attr <= 0xFF:
        raise ValueError(f"Attribute must be 0-255, got {attr}")
    header = struct.pack(
        "<IIHHBB", token, size, fat_time, fat_date, attr, 1 if overwrite else 0
    )
    return header + _cstring(name)
