"""Host-side tools for the Raspberry Pi serial bootloader."""

__version__ = "0.1.0"
