"""Serial connection to the bootloader.

The link runs 8N1 at 115200 baud by default. The baud rate can be switched
mid-session after the device has acknowledged a RequestBaud packet.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import serial
from serial.tools import list_ports as serial_list_ports

logger = logging.getLogger(__name__)

DEFAULT_BAUD = 115200
READ_TIMEOUT = 0.05  # seconds per read call
REOPEN_DELAY = 0.02


@dataclass
class PortInfo:
    """Description of the open serial port."""

    port: str = ""
    baud: int = DEFAULT_BAUD
    description: str = ""


def list_ports() -> list[PortInfo]:
    """List the serial ports present on this machine."""
    return [
        PortInfo(port=p.device, description=p.description or "")
        for p in serial_list_ports.comports()
    ]


class SerialConnection:
    """Manages the serial port used to talk to the bootloader.

    Usage::

        conn = SerialConnection("/dev/ttyUSB0")
        conn.open()
        conn.write(packet_bytes)
        data = conn.read(256)
        conn.close()
    """

    def __init__(self, port: str, baud: int = DEFAULT_BAUD) -> None:
        self._port_name = port
        self._baud = baud
        self._serial: serial.Serial | None = None

    @property
    def connected(self) -> bool:
        return self._serial is not None and self._serial.is_open

    @property
    def baud(self) -> int:
        return self._baud

    @property
    def port_info(self) -> PortInfo:
        return PortInfo(port=self._port_name, baud=self._baud)

    def open(self) -> PortInfo:
        """Open the serial port.

        Raises:
            ConnectionError: If the port cannot be opened.
        """
        if self.connected:
            return self.port_info
        try:
            self._serial = serial.Serial(
                port=self._port_name,
                baudrate=self._baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=READ_TIMEOUT,
            )
        except serial.SerialException as e:
            raise ConnectionError(
                f"Failed to open serial port {self._port_name}: {e}"
            ) from e

        logger.info("Opened %s at %d baud", self._port_name, self._baud)
        return self.port_info

    def close(self) -> None:
        """Flush and close the port."""
        if self._serial is None:
            return
        try:
            if self._serial.is_open:
                self._serial.flush()
            self._serial.close()
        except serial.SerialException as e:
            logger.warning("Error closing serial port: %s", e)
        finally:
            self._serial = None
            logger.info("Closed %s", self._port_name)

    def _require_open(self) -> serial.Serial:
        if not self.connected:
            raise ConnectionError("Serial port is not open")
        return self._serial

    def switch_baud(self, baud: int) -> None:
        """Change the baud rate, reconfiguring the port if it is open."""
        if baud == self._baud:
            return
        logger.info("Switching %s to %d baud", self._port_name, baud)
        self._baud = baud
        if self.connected:
            self._serial.flush()
            time.sleep(REOPEN_DELAY)
            self._serial.baudrate = baud

    def write(self, data: bytes) -> int:
        """Write bytes and wait until they have been transmitted.

        Raises:
            ConnectionError: If the port is not open.
        """
        port = self._require_open()
        logger.debug("send: %s", data.hex())
        written = port.write(data)
        port.flush()
        return written or 0

    def read(self, size: int = 256, timeout: float | None = None) -> bytes:
        """Read up to ``size`` bytes.

        Returns whatever arrived before the timeout, possibly ``b""``.

        Raises:
            ConnectionError: If the port is not open.
        """
        port = self._require_open()
        if timeout is not None:
            port.timeout = timeout
        data = port.read(min(size, port.in_waiting) or 1)
        if data:
            logger.debug("recv: %s", data.hex())
        return data

    def send_magic(self, magic: str, baud: int | None = None) -> None:
        """Send a reboot magic string, optionally at a different baud rate.

        The running program listens for the magic at its own (user) baud
        rate and reboots into the bootloader when it sees it.
        """
        if baud is not None:
            self.switch_baud(baud)
        logger.info("Sending reboot magic %r", magic)
        self.write(magic.encode("utf-8"))

    def read_output(self, seconds: float, baud: int | None = None) -> bytes:
        """Collect what the device prints for ``seconds``.

        Used to watch the bootloader's trace output at the default rate, or
        a running program's output at its own (user) baud rate.

        Raises:
            ConnectionError: If the port is not open.
        """
        if baud is not None:
            self.switch_baud(baud)
        chunks = []
        deadline = time.monotonic() + seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            chunks.append(self.read(4096, timeout=min(remaining, READ_TIMEOUT)))
        return b"".join(chunks)
