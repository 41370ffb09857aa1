"""Raspberry Pi board identification from the revision code."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath


@dataclass(frozen=True)
class PiModel:
    """A Raspberry Pi board family."""

    name: str
    major: int
    led_pin: int  # negative pins are active low

    def to_dict(self) -> dict:
        return {"name": self.name, "major": self.major, "led_pin": self.led_pin}


UNKNOWN_MODEL = PiModel("Unknown", 0, 0)

# New-style revision codes (bit 23 set), keyed by the type field (bits 4-11)
NEW_STYLE_MODELS: dict[int, PiModel] = {
    0: PiModel("Raspberry Pi Model A", 1, -16),
    1: PiModel("Raspberry Pi Model B R2", 1, -16),
    2: PiModel("Raspberry Pi Model A+", 1, 47),
    3: PiModel("Raspberry Pi Model B+", 1, 47),
    4: PiModel("Raspberry Pi 2 Model B", 2, 47),
    6: PiModel("Compute Module", 1, 47),
    8: PiModel("Raspberry Pi 3 Model B", 3, 0),
    9: PiModel("Raspberry Pi Zero", 1, -47),
    10: PiModel("Compute Module 3", 3, 0),
    12: PiModel("Raspberry Pi Zero W", 1, -47),
    13: PiModel("Raspberry Pi 3 Model B+", 3, 29),
    14: PiModel("Raspberry Pi 3 Model A+", 3, 29),
    16: PiModel("Compute Module 3+", 3, 0),
    17: PiModel("Raspberry Pi 4 Model B", 4, 42),
    18: PiModel("Raspberry Pi Zero 2 W", 3, -29),
    19: PiModel("Raspberry Pi 400", 4, 42),
    20: PiModel("Compute Module 4", 4, 42),
    21: PiModel("Compute Module 4S", 4, 0),
}

_B_R1 = PiModel("Raspberry Pi Model B R1", 1, -16)
_B_R2 = PiModel("Raspberry Pi Model B R2", 1, -16)
_A = PiModel("Raspberry Pi Model A", 1, -16)
_B_PLUS = PiModel("Raspberry Pi Model B+", 1, 47)
_A_PLUS = PiModel("Raspberry Pi Model A+", 1, 47)
_CM = PiModel("Compute Module", 1, 47)

# Legacy revision codes
OLD_STYLE_MODELS: dict[int, PiModel] = {
    0x02: _B_R1,
    0x03: _B_R1,
    0x04: _B_R2,
    0x05: _B_R2,
    0x06: _B_R2,
    0x07: _A,
    0x08: _A,
    0x09: _A,
    0x0D: _B_R2,
    0x0E: _B_R2,
    0x0F: _B_R2,
    0x10: _B_PLUS,
    0x11: _CM,
    0x12: _A_PLUS,
    0x13: _B_PLUS,
    0x14: _CM,
    0x15: _A_PLUS,
}


def pi_model_from_revision(revision: int) -> PiModel:
    """Look up the board model for a revision code."""
    if revision & (1 << 23):
        return NEW_STYLE_MODELS.get((revision >> 4) & 0xFF, UNKNOWN_MODEL)
    return OLD_STYLE_MODELS.get(revision, UNKNOWN_MODEL)


def expected_kernel_names(model: PiModel, aarch: int) -> list[str]:
    """Kernel image name prefixes the board's firmware boots."""
    if model.major == 1:
        return ["kernel."]
    if model.major == 2:
        return ["kernel7."]
    if model.major == 3:
        return ["kernel7.", "kernel8-32."] if aarch == 32 else ["kernel8."]
    if model.major == 4:
        return ["kernel7l."] if aarch == 32 else ["kernel8-rpi4."]
    return []


def check_kernel_name(filename: str, model: PiModel, aarch: int) -> None:
    """Check a kernel image name suits the board.

    Files whose name does not contain ``kernel`` are not checked.

    Raises:
        ValueError: If the name is a kernel image for a different board.
    """
    name = PurePath(filename).name
    if "kernel" not in name:
        return
    allowed = expected_kernel_names(model, aarch)
    if not allowed or any(prefix in name for prefix in allowed):
        return
    raise ValueError(
        f"Image name mismatch: '{name}' is not one of "
        f"{' or '.join(p + '[img|hex]' for p in allowed)} ({model.name}, aarch{aarch})"
    )
