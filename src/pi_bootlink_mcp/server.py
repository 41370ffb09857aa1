"""MCP server entry point for the Raspberry Pi serial bootloader.

Exposes tools, resources, and prompts via the Model Context Protocol
using the official Python MCP SDK with stdio transport.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from mcp.server.fastmcp import FastMCP

from .models.fat_time import format_attr
from .models.pi_model import NEW_STYLE_MODELS
from .protocol.commands import DEFAULT_START_ADDRESS, PacketId
from .protocol.decoder import decode_stream
from .protocol.framing import MAX_PACKET_SIZE
from .transport.packet_layer import LinkOptions, PacketLayer
from .transport.serial_connection import DEFAULT_BAUD, SerialConnection, list_ports

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "pi-bootlink",
    instructions="MCP server for flashing and managing a Raspberry Pi over its serial bootloader",
)

# Global connection state
_connection: SerialConnection | None = None
_layer: PacketLayer | None = None

MAX_PAYLOAD_PREVIEW = 64
MAX_READ_SECONDS = 60


def _get_layer() -> PacketLayer:
    """Get the active packet layer, raising if not connected."""
    if _layer is None or _connection is None or not _connection.connected:
        raise RuntimeError(
            "Not connected to device. Use the 'connect' tool first."
        )
    return _layer


def _ensure_device(layer: PacketLayer) -> None:
    """Ping at the default baud rate if the session hasn't found the device yet."""
    if layer.device is None:
        layer.connection.switch_baud(DEFAULT_BAUD)
        layer.ping()


# ─── CONNECTION TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def list_serial_ports() -> dict[str, Any]:
    """List the serial ports available on this machine."""
    return {
        "ports": [
            {"port": p.port, "description": p.description} for p in list_ports()
        ]
    }


@mcp.tool()
def connect(
    port: str,
    packet_size: int = MAX_PACKET_SIZE,
    flash_baud: int = 1_000_000,
    ping_attempts: int = 20,
) -> dict[str, Any]:
    """Open the serial port and ping the bootloader.

    Args:
        port: Serial port of the device (e.g. /dev/ttyUSB0 or COM3).
        packet_size: Data chunk size for transfers (max 4096).
        flash_baud: Baud rate used while flashing or copying files.
        ping_attempts: How many times to ping before giving up.
    """
    global _connection, _layer
    if not 1 <= packet_size <= MAX_PACKET_SIZE:
        return {"error": f"Packet size must be 1-{MAX_PACKET_SIZE}"}

    if _connection is not None and _connection.connected:
        _connection.close()

    _connection = SerialConnection(port, DEFAULT_BAUD)
    _connection.open()
    _layer = PacketLayer(
        _connection,
        LinkOptions(
            max_packet_size=packet_size,
            flash_baud=flash_baud,
            ping_attempts=ping_attempts,
        ),
    )

    info = _layer.ping()
    result: dict[str, Any] = {"connected": True, "port": port}
    result.update(info.to_dict())
    return result


@mcp.tool()
def disconnect() -> dict[str, bool]:
    """Close the serial connection."""
    global _connection, _layer
    if _connection is not None:
        _connection.close()
    _connection = None
    _layer = None
    return {"disconnected": True}


@mcp.tool()
def get_device_status() -> dict[str, Any]:
    """Ping the bootloader at the default baud rate and report board details."""
    layer = _get_layer()
    layer.connection.switch_baud(DEFAULT_BAUD)
    return layer.ping().to_dict()


@mcp.tool()
def switch_baud(baud: int, cpu_freq: int = 0) -> dict[str, Any]:
    """Switch the link to a different baud rate.

    The device reverts to the default rate if it receives nothing for the
    session's reset timeout.

    Args:
        baud: New baud rate.
        cpu_freq: Optional CPU clock in Hz (0 leaves it unchanged).
    """
    if baud <= 0:
        return {"error": "Baud rate must be positive"}
    layer = _get_layer()
    layer.switch_baud(baud, cpu_freq=cpu_freq)
    return {"baud": baud}


@mcp.tool()
def send_reboot_magic(magic: str, user_baud: int = DEFAULT_BAUD) -> dict[str, Any]:
    """Send a magic string that makes the running program reboot into the bootloader.

    Args:
        magic: The reboot magic string the program listens for.
        user_baud: Baud rate the running program uses.
    """
    if not magic:
        return {"error": "Magic string must not be empty"}
    layer = _get_layer()
    layer.connection.send_magic(magic, baud=user_baud)
    layer.device = None
    return {"sent": True, "baud": user_baud}


# ─── PROGRAM LOADING TOOLS ────────────────────────────────────────────

@mcp.tool()
def flash_image(
    image_path: str,
    go: bool = True,
    go_delay_ms: int = 300,
    start_address: int | None = None,
    check_kernel: bool = True,
) -> dict[str, Any]:
    """Flash a .hex or .img kernel image to the device's memory and start it.

    Args:
        image_path: Path to the .hex or .img file.
        go: Start the image once loaded.
        go_delay_ms: Delay before the device jumps to the image.
        start_address: Override the image's start address.
        check_kernel: Check the kernel file name matches the board.
    """
    path = Path(image_path)
    if not path.exists():
        return {"error": f"File not found: {image_path}"}
    if path.suffix.lower() not in (".hex", ".img"):
        return {"error": "Image file must be a '.hex' or '.img' file"}

    layer = _get_layer()
    _ensure_device(layer)
    layer.boost()
    image = layer.flash_file(
        path,
        go=go,
        go_delay_ms=go_delay_ms,
        check_kernel=check_kernel,
        start_address=start_address,
    )
    if go:
        layer.device = None

    result = image.to_dict()
    result["flashed"] = True
    result["started"] = go
    return result


@mcp.tool()
def go(start_address: int = DEFAULT_START_ADDRESS, delay_ms: int = 0) -> dict[str, Any]:
    """Start the loaded program.

    Args:
        start_address: Entry point (0xFFFFFFFF for the platform default).
        delay_ms: Delay before the device jumps.
    """
    layer = _get_layer()
    layer.send_go(start_address, delay_ms)
    layer.device = None
    return {"started": True, "start_address": f"0x{start_address:08X}"}


# ─── SHELL AND FILE TOOLS ─────────────────────────────────────────────

@mcp.tool()
def exec_command(command: str, cwd: str = "/") -> dict[str, Any]:
    """Execute a shell command on the device.

    Args:
        command: The shell command to execute.
        cwd: Working directory on the device.
    """
    if not command.strip():
        return {"error": "Command must not be empty"}
    layer = _get_layer()
    _ensure_device(layer)
    return layer.exec_command(cwd, command).to_dict()


@mcp.tool()
def list_directory(path: str = "/", cwd: str = "/") -> dict[str, Any]:
    """List files in a directory on the device.

    Args:
        path: The directory and/or files to list.
        cwd: Working directory on the device.
    """
    layer = _get_layer()
    _ensure_device(layer)
    entries = layer.list_directory(path, cwd=cwd)
    return {"path": path, "entries": [e.to_dict() for e in entries]}


@mcp.tool()
def pull_file(remote_path: str, local_path: str, overwrite: bool = True) -> dict[str, Any]:
    """Copy a file from the device.

    Args:
        remote_path: File path on the device.
        local_path: Where to save it.
        overwrite: Replace an existing local file.
    """
    if not overwrite and Path(local_path).exists():
        return {"error": f"File exists: {local_path}"}
    layer = _get_layer()
    _ensure_device(layer)
    layer.boost()
    header = layer.pull_file(remote_path, local_path, overwrite=overwrite)
    return {
        "pulled": True,
        "path": str(local_path),
        "size": header.size,
        "attr": format_attr(header.attr),
        "mtime": header.mtime.isoformat() if header.mtime else None,
    }


@mcp.tool()
def push_file(local_path: str, remote_path: str, overwrite: bool = True) -> dict[str, Any]:
    """Copy a local file to the device.

    Args:
        local_path: File to send.
        remote_path: Target path on the device.
        overwrite: Replace an existing file on the device.
    """
    if not Path(local_path).is_file():
        return {"error": f"File not found: {local_path}"}
    layer = _get_layer()
    _ensure_device(layer)
    layer.boost()
    size = layer.push_file(local_path, remote_path, overwrite=overwrite)
    return {"pushed": True, "path": remote_path, "size": size}


@mcp.tool()
def pull_directory(remote_path: str, local_path: str, overwrite: bool = True) -> dict[str, Any]:
    """Copy a directory tree from the device.

    Args:
        remote_path: Directory on the device.
        local_path: Local directory to copy into (created if missing).
        overwrite: Replace existing local files.
    """
    layer = _get_layer()
    _ensure_device(layer)
    layer.boost()
    pulled = layer.pull_dir(remote_path, local_path, overwrite=overwrite)
    return {"pulled": True, "files": [str(p) for p in pulled], "count": len(pulled)}


@mcp.tool()
def push_directory(local_path: str, remote_path: str, overwrite: bool = True) -> dict[str, Any]:
    """Copy a local directory tree to the device.

    The target directories must already exist on the device.

    Args:
        local_path: Directory to send.
        remote_path: Target directory on the device.
        overwrite: Replace existing files on the device.
    """
    if not Path(local_path).is_dir():
        return {"error": f"Directory not found: {local_path}"}
    layer = _get_layer()
    _ensure_device(layer)
    layer.boost()
    pushed = layer.push_dir(local_path, remote_path, overwrite=overwrite)
    return {"pushed": True, "files": pushed, "count": len(pushed)}


# ─── DIAGNOSTIC TOOLS ─────────────────────────────────────────────────

@mcp.tool()
def read_output(seconds: float = 2.0, baud: int = DEFAULT_BAUD) -> dict[str, Any]:
    """Read what the device prints on the serial port.

    At the default baud rate this shows the bootloader's trace messages;
    at the program's own baud rate it monitors a running program.

    Args:
        seconds: How long to listen (max 60).
        baud: Baud rate to listen at.
    """
    if not 0 < seconds <= MAX_READ_SECONDS:
        return {"error": f"Seconds must be 0-{MAX_READ_SECONDS}"}
    if baud <= 0:
        return {"error": "Baud rate must be positive"}
    layer = _get_layer()
    data = layer.connection.read_output(seconds, baud=baud)
    if baud != DEFAULT_BAUD:
        # Bootloader must be found again before the next request
        layer.device = None
    return {
        "baud": baud,
        "bytes": len(data),
        "text": data.decode("utf-8", errors="replace"),
    }


@mcp.tool()
def decode_capture(capture_path: str, hex_text: bool = False) -> dict[str, Any]:
    """Decode a captured serial byte stream offline.

    Args:
        capture_path: File holding the raw bytes, or hex text.
        hex_text: Treat the file as whitespace separated hex.
    """
    path = Path(capture_path)
    if not path.exists():
        return {"error": f"File not found: {capture_path}"}

    if hex_text:
        try:
            data = bytes.fromhex("".join(path.read_text().split()))
        except ValueError as e:
            return {"error": f"Invalid hex capture: {e}"}
    else:
        data = path.read_bytes()

    packets, errors = decode_stream(data)
    decoded = []
    for packet in packets:
        try:
            name = PacketId(packet.command).name
        except ValueError:
            name = str(packet.command)
        decoded.append({
            "sequence": packet.sequence,
            "command": name,
            "length": len(packet.payload),
            "payload": packet.payload[:MAX_PAYLOAD_PREVIEW].hex(" "),
        })
    return {
        "bytes": len(data),
        "packets": decoded,
        "errors": [e.name for e in errors],
    }


# ─── MCP RESOURCES ───────────────────────────────────────────────────

@mcp.resource("bootlink://device/status")
def resource_device_status() -> str:
    """Connection state and the last ping response."""
    if _connection is None or not _connection.connected or _layer is None:
        return json.dumps({"connected": False})

    status: dict[str, Any] = {
        "connected": True,
        "port": _connection.port_info.port,
        "baud": _connection.baud,
        "packets_sent": _layer.stats.packets_sent,
        "packets_received": _layer.stats.packets_received,
        "decode_errors": _layer.stats.decode_errors,
    }
    if _layer.device is not None:
        status["device"] = _layer.device.to_dict()
    return json.dumps(status)


@mcp.resource("bootlink://catalog/packet-ids")
def resource_packet_ids() -> str:
    """Packet identifiers understood by the bootloader."""
    return json.dumps({"packet_ids": {p.name: p.value for p in PacketId}})


@mcp.resource("bootlink://catalog/pi-models")
def resource_pi_models() -> str:
    """Board models keyed by new-style revision type code."""
    models = [
        {"type": code, **model.to_dict()} for code, model in NEW_STYLE_MODELS.items()
    ]
    return json.dumps({"models": models, "count": len(models)})


# ─── MCP PROMPTS ─────────────────────────────────────────────────────

@mcp.prompt()
def flash_kernel(port: str, image_path: str) -> str:
    """Guide the AI through flashing a kernel image and checking it boots.

    Args:
        port: Serial port of the device.
        image_path: The .hex or .img kernel image.
    """
    return f"""Flash {image_path} to the Raspberry Pi on {port}.
Steps:
- Use connect with port {port} and report the board model and bootloader version
- If the device doesn't answer, ask whether a reboot magic string is needed
  and use send_reboot_magic
- Use flash_image; if the kernel name check fails, explain which image name
  the board expects rather than disabling the check
- Summarise the bytes transferred and the start address"""


# ─── ENTRY POINT ─────────────────────────────────────────────────────

def main():
    """Run the MCP server with stdio transport."""
    logging.basicConfig(level=logging.INFO)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
