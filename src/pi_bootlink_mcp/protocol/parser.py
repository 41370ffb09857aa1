"""Parsing of device replies."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from datetime import datetime

from ..models.fat_time import to_datetime
from ..models.pi_model import PiModel, pi_model_from_revision

_PING_FORMAT = struct.Struct("<4BIIIQIIII")
_PULL_HEADER_FORMAT = struct.Struct("<IHHB")

_LS_LINE = re.compile(
    r"^([-d][-r][-s][-h][-a])\s+(\d\d)/(\d\d)/(\d\d\d\d)\s+"
    r"(\d\d):(\d\d):(\d\d)\s+(\d+)\s+(.*)$"
)


def _cstring(data: bytes) -> str:
    return data.split(b"\x00")[0].decode("utf-8", errors="replace")


@dataclass
class PingResponse:
    """Parsed Ping acknowledgement describing the bootloader and board."""

    version: tuple[int, int, int, int]
    raspi: int
    aarch: int
    board_revision: int
    board_serial: int
    max_packet_size: int
    cpu_freq: int
    min_cpu_freq: int
    max_cpu_freq: int

    @property
    def model(self) -> PiModel:
        return pi_model_from_revision(self.board_revision)

    @property
    def version_string(self) -> str:
        return ".".join(str(v) for v in self.version[:3])

    def to_dict(self) -> dict:
        return {
            "model": self.model.name,
            "serial": f"{self.board_serial >> 32:08x}-{self.board_serial & 0xFFFFFFFF:08x}",
            "board_revision": f"0x{self.board_revision:08X}",
            "bootloader": f"rpi{self.raspi}-aarch{self.aarch} v{self.version_string}",
            "max_packet_size": self.max_packet_size,
            "cpu_mhz": self.cpu_freq / 1_000_000,
            "min_cpu_mhz": self.min_cpu_freq / 1_000_000,
            "max_cpu_mhz": self.max_cpu_freq / 1_000_000,
        }


@dataclass
class CommandAck:
    """Final acknowledgement of a shell command."""

    exit_code: int
    cwd: str


@dataclass
class PullHeader:
    """First reply to a Pull request, describing the file."""

    size: int
    fat_time: int
    fat_date: int
    attr: int
    filename: str

    @property
    def mtime(self) -> datetime | None:
        return to_datetime(self.fat_date, self.fat_time)


@dataclass
class PullData:
    """One chunk of pulled file content."""

    offset: int
    data: bytes


@dataclass
class DirEntry:
    """A line of ``ls -l`` output from the device shell."""

    attr: str
    mtime: datetime
    size: int
    name: str

    @property
    def is_dir(self) -> bool:
        return self.attr.startswith("d")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "size": self.size,
            "is_dir": self.is_dir,
            "attr": self.attr,
            "mtime": self.mtime.isoformat(),
        }


def parse_ping(payload: bytes) -> PingResponse:
    """Parse the payload of a Ping acknowledgement.

    Raises:
        ValueError: If the payload is too short.
    """
    if len(payload) < _PING_FORMAT.size:
        raise ValueError(
            f"Ping response must be {_PING_FORMAT.size} bytes, got {len(payload)}"
        )
    fields = _PING_FORMAT.unpack_from(payload)
    return PingResponse(tuple(fields[:4]), *fields[4:])


def parse_command_ack(payload: bytes) -> CommandAck:
    """Parse the acknowledgement that ends a Command request."""
    if len(payload) < 4:
        raise ValueError(f"Command ack too short: {len(payload)} bytes")
    (exit_code,) = struct.unpack_from("<i", payload)
    return CommandAck(exit_code=exit_code, cwd=_cstring(payload[4:]))


def parse_pull_header(payload: bytes) -> PullHeader:
    """Parse a PullHeader packet."""
    if len(payload) < _PULL_HEADER_FORMAT.size:
        raise ValueError(f"Pull header too short: {len(payload)} bytes")
    size, fat_time, fat_date, attr = _PULL_HEADER_FORMAT.unpack_from(payload)
    return PullHeader(
        size=size,
        fat_time=fat_time,
        fat_date=fat_date,
        attr=attr,
        filename=_cstring(payload[_PULL_HEADER_FORMAT.size :]),
    )


def parse_pull_data(payload: bytes) -> PullData:
    """Parse a PullData packet."""
    if len(payload) < 4:
        raise ValueError(f"Pull data too short: {len(payload)} bytes")
    (offset,) = struct.unpack_from("<I", payload)
    return PullData(offset=offset, data=payload[4:])


def parse_result_code(payload: bytes) -> int:
    """Parse the signed result code carried by Pull / Push acknowledgements.

    An empty acknowledgement means success.
    """
    if not payload:
        return 0
    if len(payload) < 4:
        raise ValueError(f"Result code too short: {len(payload)} bytes")
    return struct.unpack_from("<i", payload)[0]


def parse_ls_output(text: str) -> list[DirEntry]:
    """Parse ``ls -l`` output (``drsha dd/mm/yyyy hh:mm:ss size name``).

    Lines that don't look like entries (totals, blank lines) are skipped.
    """
    entries = []
    for line in text.splitlines():
        m = _LS_LINE.match(line.rstrip("\r"))
        if not m:
            continue
        day, month, year, hour, minute, second = (int(m.group(i)) for i in range(2, 8))
        entries.append(DirEntry(
            attr=m.group(1),
            mtime=datetime(year, month, day, hour, minute, second),
            size=int(m.group(8)),
            name=m.group(9),
        ))
    return entries
