"""FAT file system timestamps and attributes."""

from __future__ import annotations

from datetime import datetime

FAT_EPOCH_YEAR = 1980

ATTR_READ_ONLY = 0x01
ATTR_HIDDEN = 0x02
ATTR_SYSTEM = 0x04
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20


def pack_fat_time(hour: int, minute: int, second: int) -> int:
    """Pack a time of day into a FAT time word (2 second resolution)."""
    return (hour << 11) | (minute << 5) | (second // 2)


def pack_fat_date(year: int, month: int, day: int) -> int:
    """Pack a calendar date into a FAT date word.

    Raises:
        ValueError: If the year is outside 1980-2107.
    """
    if not FAT_EPOCH_YEAR <= year <= FAT_EPOCH_YEAR + 127:
        raise ValueError(f"FAT dates cover 1980-2107, got {year}")
    return ((year - FAT_EPOCH_YEAR) << 9) | (month << 5) | day


def unpack_fat_time(fat_time: int) -> tuple[int, int, int]:
    return (fat_time >> 11) & 0x1F, (fat_time >> 5) & 0x3F, (fat_time & 0x1F) * 2


def unpack_fat_date(fat_date: int) -> tuple[int, int, int]:
    return ((fat_date >> 9) & 0x7F) + FAT_EPOCH_YEAR, (fat_date >> 5) & 0x0F, fat_date & 0x1F


def to_datetime(fat_date: int, fat_time: int) -> datetime | None:
    """Convert FAT date/time words to a naive local ``datetime``.

    Returns ``None`` for words that do not form a valid date (e.g. zeroed
    timestamps on files written without a clock).
    """
    year, month, day = unpack_fat_date(fat_date)
    hour, minute, second = unpack_fat_time(fat_time)
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


def from_datetime(value: datetime) -> tuple[int, int]:
    """Convert a ``datetime`` to ``(fat_date, fat_time)``."""
    return (
        pack_fat_date(value.year, value.month, value.day),
        pack_fat_time(value.hour, value.minute, value.second),
    )


def format_attr(attr: int) -> str:
    """Render an attribute byte the way the device shell lists it (``rhsda``)."""
    return "".join(
        flag if attr & bit else "-"
        for flag, bit in (
            ("r", ATTR_READ_ONLY),
            ("h", ATTR_HIDDEN),
            ("s", ATTR_SYSTEM),
            ("d", ATTR_DIRECTORY),
            ("a", ATTR_ARCHIVE),
        )
    )
