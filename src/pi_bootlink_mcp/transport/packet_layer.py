"""Request / acknowledgement layer on top of the packet codec.

Every request carries a fresh sequence number; the device answers with an
ACK packet echoing it. Long running requests (shell commands, file pulls)
stream STDOUT / STDERR / PULL_HEADER / PULL_DATA packets with the same
sequence number before their ACK.
"""

from __future__ import annotations

import logging
import os
import posixpath
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..models.file_formats import ProgramImage, load_image
from ..models.fat_time import from_datetime
from ..models.pi_model import check_kernel_name
from ..protocol.commands import (
    DATA_HEADER_SIZE,
    DEFAULT_START_ADDRESS,
    PUSH_DATA_HEADER_SIZE,
    PacketId,
    build_command,
    build_data,
    build_go,
    build_pull,
    build_push_commit,
    build_push_data,
    build_request_baud,
)
from ..protocol.decoder import PacketDecoder, PacketError
from ..protocol.framing import MAX_PACKET_SIZE, Packet, build_packet
from ..protocol.parser import (
    DirEntry,
    PingResponse,
    PullHeader,
    parse_command_ack,
    parse_ls_output,
    parse_ping,
    parse_pull_data,
    parse_pull_header,
    parse_result_code,
)
from .serial_connection import DEFAULT_BAUD

logger = logging.getLogger(__name__)

FIRST_SEQUENCE = 101
READ_CHUNK = 256
POLL_INTERVAL = 0.05
BAUD_RESET_GUARD = 0.05  # seconds either side of the device's reset timeout
FR_EXIST = 8  # FatFs "file exists" result

StreamHandler = Callable[[int, bytes], None]
TextCallback = Optional[Callable[[str], None]]


def _packet_name(command: int) -> str:
    try:
        return PacketId(command).name
    except ValueError:
        return f"packet {command}"


class LinkError(RuntimeError):
    """The device answered in a way the protocol doesn't allow."""


class DeviceError(LinkError):
    """The device reported a failure result code."""

    def __init__(self, message: str, code: int) -> None:
        super().__init__(f"{message} (err: {code})")
        self.code = code


@dataclass
class LinkOptions:
    """Tuning for a packet layer session."""

    max_packet_size: int = MAX_PACKET_SIZE
    ack_timeout: float = 0.3  # seconds
    command_timeout: float = 10.0  # seconds of silence allowed mid-command
    ping_attempts: int = 20
    expected_version: tuple[int, int, int] | None = None
    flash_baud: int | None = 1_000_000
    reset_timeout_ms: int = 500
    cpu_boost: str = "auto"  # "yes", "no" or "auto" (yes above 1M baud)


@dataclass
class CommandResult:
    """Outcome of a shell command run on the device."""

    exit_code: int
    cwd: str
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> dict:
        return {
            "exit_code": self.exit_code,
            "cwd": self.cwd,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class LinkStats:
    packets_sent: int = 0
    packets_received: int = 0
    decode_errors: dict[str, int] = field(default_factory=dict)


class PacketLayer:
    """Sends requests to the bootloader and waits for their acknowledgements.

    ``connection`` needs ``write(data)``, ``read(size, timeout)``,
    ``switch_baud(baud)`` and a ``baud`` attribute, as provided by
    :class:`~pi_bootlink_mcp.transport.serial_connection.SerialConnection`.

    Usage::

        layer = PacketLayer(conn)
        info = layer.ping()
        layer.flash_file("kernel8.img")
    """

    def __init__(self, connection, options: LinkOptions | None = None) -> None:
        self._connection = connection
        self.options = options or LinkOptions()
        self._next_sequence = FIRST_SEQUENCE
        self._received: deque[Packet] = deque()
        self._decoder = PacketDecoder.with_capacity(
            self.options.max_packet_size, self._on_packet, self._on_error
        )
        self.stats = LinkStats()
        self.device: PingResponse | None = None
        self._last_sent = time.monotonic()

    @property
    def connection(self):
        return self._connection

    # ─── DECODER CALLBACKS ───────────────────────────────────────────

    def _on_packet(self, sequence: int, command: int, payload: bytes | None, length: int) -> None:
        self.stats.packets_received += 1
        self._received.append(Packet(sequence, command, payload or b""))

    def _on_error(self, error: PacketError) -> None:
        errors = self.stats.decode_errors
        errors[error.name] = errors.get(error.name, 0) + 1
        logger.warning("Packet decode error: %s", error.name)

    def _handle_unsolicited(self, packet: Packet) -> None:
        if packet.command == PacketId.PING:
            logger.info("Ping! (device alive)")
        elif packet.command == PacketId.ERROR:
            logger.error("Device packet error: %d", parse_result_code(packet.payload))
        else:
            logger.warning(
                "Unexpected packet: seq#:%d cmd:%d len:%d",
                packet.sequence,
                packet.command,
                len(packet.payload),
            )

    # ─── REQUESTS ────────────────────────────────────────────────────

    def _follow_baud_reset(self) -> None:
        """Return to the default baud rate if the device has timed out of a switched one.

        The device reverts once ``reset_timeout_ms`` passes without a packet.
        Close to that deadline it is unclear which rate the device is on, so
        wait until it has certainly reverted.
        """
        timeout = self.options.reset_timeout_ms / 1000
        if not timeout or self._connection.baud == DEFAULT_BAUD:
            return
        idle = time.monotonic() - self._last_sent
        if idle < timeout - BAUD_RESET_GUARD:
            return
        if idle < timeout + BAUD_RESET_GUARD:
            time.sleep(timeout + BAUD_RESET_GUARD - idle)
        logger.info(
            "Device idle for %.2fs, following it back to %d baud", idle, DEFAULT_BAUD
        )
        self._connection.switch_baud(DEFAULT_BAUD)
        self._decoder.reset()

    def _allocate_sequence(self) -> int:
        sequence = self._next_sequence
        self._next_sequence = (self._next_sequence + 1) & 0xFFFFFFFF
        return sequence

    def send(
        self,
        command: int,
        payload: bytes = b"",
        handler: StreamHandler | None = None,
        timeout: float | None = None,
    ) -> bytes:
        """Send a request and wait for its acknowledgement.

        Args:
            command: Packet id of the request.
            payload: Request payload.
            handler: Receives ``(command, payload)`` of the packets the device
                streams for this request before its ACK.
            timeout: Seconds to wait for the ACK, restarted whenever a
                streamed packet arrives. Defaults to ``options.ack_timeout``.

        Returns:
            The ACK payload (``b""`` if empty).

        Raises:
            TimeoutError: If no ACK arrives in time.
            LinkError: If an ACK for a different sequence number arrives.
        """
        if timeout is None:
            timeout = self.options.ack_timeout

        if self._received:
            logger.debug("Dropping %d stale packets", len(self._received))
            self._received.clear()

        self._follow_baud_reset()
        sequence = self._allocate_sequence()
        self._connection.write(build_packet(sequence, command, payload))
        self._last_sent = time.monotonic()
        self.stats.packets_sent += 1

        deadline = time.monotonic() + timeout
        while True:
            while self._received:
                packet = self._received.popleft()
                if packet.command == PacketId.ACK:
                    if packet.sequence != sequence:
                        raise LinkError(
                            f"Invalid sequence number in ack response "
                            f"(got {packet.sequence}, expected {sequence})"
                        )
                    return packet.payload
                if packet.sequence == sequence and handler is not None:
                    handler(packet.command, packet.payload)
                    deadline = time.monotonic() + timeout
                else:
                    self._handle_unsolicited(packet)

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(
                    f"Timeout awaiting ack response to {_packet_name(command)} "
                    f"(seq {sequence})"
                )
            self._decoder.feed(
                self._connection.read(READ_CHUNK, timeout=min(remaining, POLL_INTERVAL))
            )

    def ping(self) -> PingResponse:
        """Ping until the device answers and check it suits this session.

        Raises:
            TimeoutError: If every attempt fails.
            LinkError: If the device's packet size or version doesn't match.
        """
        for attempt in range(1, self.options.ping_attempts + 1):
            try:
                response = parse_ping(self.send(PacketId.PING))
            except (TimeoutError, LinkError, ValueError) as e:
                logger.debug("Ping attempt %d failed: %s", attempt, e)
                continue
            break
        else:
            raise TimeoutError(
                f"Failed to ping device after {self.options.ping_attempts} attempts"
            )

        logger.info(
            "Found device: %s, bootloader rpi%d-aarch%d v%s",
            response.model.name,
            response.raspi,
            response.aarch,
            response.version_string,
        )

        if self.options.max_packet_size > response.max_packet_size:
            raise LinkError(
                f"Packet size too large: requested {self.options.max_packet_size}, "
                f"supported {response.max_packet_size}"
            )

        expected = self.options.expected_version
        if expected is not None and tuple(response.version[:3]) != tuple(expected):
            raise LinkError(
                f"Bootloader version mismatch: device v{response.version_string}, "
                f"expected v{'.'.join(str(v) for v in expected)}"
            )

        self.device = response
        return response

    def switch_baud(self, baud: int, reset_timeout_ms: int | None = None, cpu_freq: int = 0) -> None:
        """Ask the device to change baud rate (and CPU clock), then follow it."""
        if reset_timeout_ms is None:
            reset_timeout_ms = self.options.reset_timeout_ms
        logger.info("Requesting %d baud (cpu freq %d)", baud, cpu_freq)
        self.send(PacketId.REQUEST_BAUD, build_request_baud(baud, reset_timeout_ms, cpu_freq))
        self._connection.switch_baud(baud)
        self._decoder.reset()

    def boost(self) -> None:
        """Switch to the flashing baud rate, boosting the CPU clock if configured."""
        self._follow_baud_reset()
        baud = self.options.flash_baud
        if not baud or baud == self._connection.baud:
            return
        boost = self.options.cpu_boost
        cpu_freq = 0
        if self.device is not None and (boost == "yes" or (boost == "auto" and baud > 1_000_000)):
            cpu_freq = self.device.max_cpu_freq
        self.switch_baud(baud, cpu_freq=cpu_freq)

    def send_data(self, address: int, data: bytes) -> None:
        """Load program bytes at ``address``."""
        self.send(PacketId.DATA, build_data(address, data))

    def send_go(self, start_address: int = DEFAULT_START_ADDRESS, delay_ms: int = 0) -> None:
        """Start the loaded program."""
        logger.info("Sending go command 0x%08X with delay %dms", start_address, delay_ms)
        self.send(PacketId.GO, build_go(start_address, delay_ms))

    def flash(self, image: ProgramImage, go: bool = True, go_delay_ms: int = 300) -> int:
        """Send a program image and optionally start it.

        Returns:
            Number of program bytes transferred.
        """
        limit = self.options.max_packet_size - DATA_HEADER_SIZE
        started = time.monotonic()
        sent = 0
        for address, data in image.chunks:
            if len(data) > limit:
                raise ValueError(f"Chunk at 0x{address:08X} exceeds packet size ({len(data)} > {limit})")
            self.send_data(address, data)
            sent += len(data)
        logger.info("Transferred %d bytes in %.1f seconds", sent, time.monotonic() - started)

        if go:
            self.send_go(image.start_address, go_delay_ms)
        return sent

    def flash_file(
        self,
        path: str | Path,
        go: bool = True,
        go_delay_ms: int = 300,
        check_kernel: bool = True,
        start_address: int | None = None,
    ) -> ProgramImage:
        """Load a .hex / .img file and flash it to the pinged device.

        Raises:
            LinkError: If the device hasn't been pinged.
            ValueError: On a bad image file or a kernel name for another board.
        """
        if self.device is None:
            raise LinkError("Device must be pinged before flashing")
        if check_kernel:
            check_kernel_name(str(path), self.device.model, self.device.aarch)

        image = load_image(
            path, self.device.aarch, self.options.max_packet_size - DATA_HEADER_SIZE
        )
        if start_address is not None:
            image.start_address = start_address
        self.flash(image, go=go, go_delay_ms=go_delay_ms)
        return image

    # ─── SHELL AND FILES ─────────────────────────────────────────────

    def exec_command(
        self,
        cwd: str,
        command: str,
        on_stdout: TextCallback = None,
        on_stderr: TextCallback = None,
    ) -> CommandResult:
        """Run a command in the device shell."""
        stdout: list[bytes] = []
        stderr: list[bytes] = []

        def handler(packet_id: int, payload: bytes) -> None:
            if packet_id == PacketId.STDOUT:
                stdout.append(payload)
                if on_stdout:
                    on_stdout(payload.decode("utf-8", errors="replace"))
            elif packet_id == PacketId.STDERR:
                stderr.append(payload)
                if on_stderr:
                    on_stderr(payload.decode("utf-8", errors="replace"))
            else:
                logger.warning("Unexpected packet %d during command", packet_id)

        ack = parse_command_ack(
            self.send(
                PacketId.COMMAND,
                build_command(cwd, command),
                handler=handler,
                timeout=self.options.command_timeout,
            )
        )
        return CommandResult(
            exit_code=ack.exit_code,
            cwd=ack.cwd,
            stdout=b"".join(stdout).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr).decode("utf-8", errors="replace"),
        )

    def list_directory(self, path: str, cwd: str = "/") -> list[DirEntry]:
        """List a device directory via the shell's ``ls``.

        Raises:
            DeviceError: If ``ls`` fails.
        """
        result = self.exec_command(cwd, f'ls -al "{path}"')
        if result.exit_code != 0:
            raise DeviceError(f"Failed to list files '{path}'", result.exit_code)
        return parse_ls_output(result.stdout)

    def pull_file(self, remote_path: str, local_path: str | Path, overwrite: bool = True) -> PullHeader:
        """Copy a file from the device.

        Raises:
            FileExistsError: If ``local_path`` exists and ``overwrite`` is false.
            LinkError: If data chunks arrive out of order.
            DeviceError: If the device fails to read the file.
        """
        local_path = Path(local_path)
        header: PullHeader | None = None
        expected_offset = 0

        with open(local_path, "wb" if overwrite else "xb") as f:

            def handler(packet_id: int, payload: bytes) -> None:
                nonlocal header, expected_offset
                if packet_id == PacketId.PULL_HEADER:
                    header = parse_pull_header(payload)
                elif packet_id == PacketId.PULL_DATA:
                    chunk = parse_pull_data(payload)
                    if chunk.offset != expected_offset:
                        raise LinkError(
                            f"File packet offset mismatch (got {chunk.offset}, "
                            f"expected {expected_offset})"
                        )
                    f.write(chunk.data)
                    expected_offset += len(chunk.data)

            try:
                code = parse_result_code(
                    self.send(
                        PacketId.PULL,
                        build_pull(remote_path),
                        handler=handler,
                        timeout=self.options.command_timeout,
                    )
                )
            except Exception:
                f.close()
                local_path.unlink(missing_ok=True)
                raise

        if code or header is None:
            local_path.unlink(missing_ok=True)
            raise DeviceError(f"Failed to pull file '{remote_path}'", code)

        if header.mtime is not None:
            stamp = header.mtime.timestamp()
            os.utime(local_path, (stamp, stamp))
        logger.info("Pulled %s (%d bytes)", remote_path, expected_offset)
        return header

    def push_file(self, local_path: str | Path, remote_path: str, overwrite: bool = True) -> int:
        """Copy a local file to the device.

        Returns:
            Number of bytes pushed.

        Raises:
            DeviceError: If the device rejects a chunk or the commit.
        """
        local_path = Path(local_path)
        chunk_size = self.options.max_packet_size - PUSH_DATA_HEADER_SIZE
        token = int(time.time() * 1000) & 0x7FFFFFFF or 1
        offset = 0

        with open(local_path, "rb") as f:
            while True:
                data = f.read(chunk_size)
                code = parse_result_code(
                    self.send(PacketId.PUSH_DATA, build_push_data(token, offset, data))
                )
                if code:
                    raise DeviceError("Failed to push file data", code)
                offset += len(data)
                if len(data) < chunk_size:
                    break

        fat_date, fat_time = from_datetime(datetime.fromtimestamp(local_path.stat().st_mtime))
        code = parse_result_code(
            self.send(
                PacketId.PUSH_COMMIT,
                build_push_commit(
                    token, offset, fat_time, fat_date, remote_path, overwrite=overwrite
                ),
            )
        )
        if code == FR_EXIST:
            raise DeviceError(f"File already exists: '{remote_path}'", code)
        if code:
            raise DeviceError("Failed to commit pushed file", code)

        logger.info("Pushed %s => %s (%d bytes)", local_path, remote_path, offset)
        return offset

    def pull_dir(self, remote_path: str, local_path: str | Path, overwrite: bool = True) -> list[Path]:
        """Copy a device directory tree, creating local directories as needed.

        Returns:
            The local paths of the pulled files.
        """
        local_path = Path(local_path)
        local_path.mkdir(parents=True, exist_ok=True)
        pulled: list[Path] = []
        for entry in self.list_directory(remote_path):
            if entry.name in (".", ".."):
                continue
            remote = posixpath.join(remote_path, entry.name)
            if entry.is_dir:
                pulled.extend(self.pull_dir(remote, local_path / entry.name, overwrite))
            else:
                self.pull_file(remote, local_path / entry.name, overwrite=overwrite)
                pulled.append(local_path / entry.name)
        return pulled

    def push_dir(self, local_path: str | Path, remote_path: str, overwrite: bool = True) -> list[str]:
        """Copy a local directory tree to the device.

        Remote directories are not created; they must already exist.

        Returns:
            The device paths of the pushed files.
        """
        pushed: list[str] = []
        for entry in sorted(Path(local_path).iterdir()):
            remote = posixpath.join(remote_path, entry.name)
            if entry.is_dir():
                pushed.extend(self.push_dir(entry, remote, overwrite))
            else:
                self.push_file(entry, remote, overwrite=overwrite)
                pushed.append(remote)
        return pushed
