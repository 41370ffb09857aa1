"""Program image loaders for .hex and .img files.

.hex: Intel HEX records (types 00-05), rechunked to packet-sized blocks
.img: Raw kernel image loaded at the platform's default address
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..protocol.commands import DEFAULT_START_ADDRESS

IMG_LOAD_ADDRESS_32 = 0x8000
IMG_LOAD_ADDRESS_64 = 0x80000

HEX_DATA = 0x00
HEX_EOF = 0x01
HEX_EXTENDED_SEGMENT = 0x02
HEX_START_SEGMENT = 0x03
HEX_EXTENDED_LINEAR = 0x04
HEX_START_LINEAR = 0x05


@dataclass
class ProgramImage:
    """Program bytes to load, as ``(address, data)`` chunks."""

    chunks: list[tuple[int, bytes]] = field(default_factory=list)
    start_address: int = DEFAULT_START_ADDRESS

    @property
    def size(self) -> int:
        return sum(len(data) for _, data in self.chunks)

    def to_dict(self) -> dict:
        return {
            "chunks": len(self.chunks),
            "size": self.size,
            "start_address": f"0x{self.start_address:08X}",
        }


@dataclass
class HexRecord:
    """A single Intel HEX record."""

    type: int
    address: int
    data: bytes


def parse_hex_record(line: str, line_number: int = 0) -> HexRecord:
    """Parse one ``:LLAAAATT...CC`` line.

    Raises:
        ValueError: On malformed hex, wrong length or a bad checksum.
    """
    try:
        raw = bytes.fromhex(line[1:])
    except ValueError as e:
        raise ValueError(f"Line {line_number}: invalid hex data") from e

    if len(raw) < 5:
        raise ValueError(f"Line {line_number}: record too short")
    length = raw[0]
    if len(raw) != length + 5:
        raise ValueError(
            f"Line {line_number}: record length {length} does not match "
            f"{len(raw) - 5} data bytes"
        )
    if sum(raw) & 0xFF:
        raise ValueError(f"Line {line_number}: checksum error")

    return HexRecord(
        type=raw[3],
        address=(raw[1] << 8) | raw[2],
        data=raw[4 : 4 + length],
    )


def _append_chunked(
    chunks: list[tuple[int, bytes]], address: int, data: bytes, chunk_size: int
) -> None:
    """Append ``data`` at ``address``, merging with the last chunk if contiguous."""
    while data:
        if chunks:
            last_addr, last_data = chunks[-1]
            room = chunk_size - len(last_data)
            if last_addr + len(last_data) == address and room > 0:
                chunks[-1] = (last_addr, last_data + data[:room])
                address += min(room, len(data))
                data = data[room:]
                continue
        chunks.append((address, data[:chunk_size]))
        address += min(chunk_size, len(data))
        data = data[chunk_size:]


def parse_hex(text: str, chunk_size: int) -> ProgramImage:
    """Parse Intel HEX text into a :class:`ProgramImage`.

    Args:
        text: File content. Anything outside ``:`` records is ignored.
        chunk_size: Maximum data bytes per chunk.

    Raises:
        ValueError: On malformed records, data after EOF, a missing EOF
            record, or more than one start address.
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")

    image = ProgramImage()
    base = 0
    start_address = None
    eof = False

    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line.startswith(":"):
            continue
        if eof:
            raise ValueError(f"Line {line_number}: unexpected data after EOF record")

        record = parse_hex_record(line, line_number)
        if record.type == HEX_DATA:
            _append_chunked(image.chunks, base + record.address, record.data, chunk_size)
        elif record.type == HEX_EOF:
            eof = True
        elif record.type in (HEX_EXTENDED_SEGMENT, HEX_EXTENDED_LINEAR):
            if len(record.data) != 2:
                raise ValueError(f"Line {line_number}: unexpected length of address record")
            value = int.from_bytes(record.data, "big")
            base = value << 4 if record.type == HEX_EXTENDED_SEGMENT else value << 16
        elif record.type in (HEX_START_SEGMENT, HEX_START_LINEAR):
            if len(record.data) != 4:
                raise ValueError(f"Line {line_number}: unexpected length of start record")
            if start_address is not None:
                raise ValueError("Hex file contains multiple start addresses")
            if record.type == HEX_START_SEGMENT:
                cs = int.from_bytes(record.data[:2], "big")
                ip = int.from_bytes(record.data[2:], "big")
                start_address = (cs << 4) + ip
            else:
                start_address = int.from_bytes(record.data, "big")
        else:
            raise ValueError(f"Line {line_number}: unknown record type {record.type:02X}")

    if not eof:
        raise ValueError("Hex file didn't contain an EOF record")
    if start_address is not None:
        image.start_address = start_address
    return image


def load_hex(path: str | Path, chunk_size: int) -> ProgramImage:
    """Load an Intel HEX file."""
    return parse_hex(Path(path).read_text(encoding="ascii", errors="replace"), chunk_size)


def load_img(path: str | Path, aarch: int, chunk_size: int) -> ProgramImage:
    """Load a raw kernel image at the default address for ``aarch``.

    Args:
        path: The .img file.
        aarch: 32 or 64, as reported by the bootloader.
        chunk_size: Maximum data bytes per chunk.
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    load_address = IMG_LOAD_ADDRESS_64 if aarch == 64 else IMG_LOAD_ADDRESS_32
    data = Path(path).read_bytes()
    chunks = [
        (load_address + offset, data[offset : offset + chunk_size])
        for offset in range(0, len(data), chunk_size)
    ]
    return ProgramImage(chunks=chunks, start_address=load_address)


def load_image(path: str | Path, aarch: int, chunk_size: int) -> ProgramImage:
    """Load a .hex or .img file.

    Raises:
        ValueError: If the file is neither.
    """
    suffix = Path(path).suffix.lower()
    if suffix == ".hex":
        return load_hex(path, chunk_size)
    if suffix == ".img":
        return load_img(path, aarch, chunk_size)
    raise ValueError(f"Image file must be a '.hex' or '.img' file, got '{path}'")
