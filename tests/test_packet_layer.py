"""Tests for the request / acknowledgement layer against a simulated bootloader."""

import os
import struct
import time

import pytest

from pi_bootlink_mcp.models.file_formats import ProgramImage
from pi_bootlink_mcp.protocol.commands import PacketId
from pi_bootlink_mcp.protocol.decoder import PacketDecoder
from pi_bootlink_mcp.protocol.framing import build_packet
from pi_bootlink_mcp.transport.packet_layer import (
    DeviceError,
    LinkError,
    LinkOptions,
    PacketLayer,
)

PI3_REVISION = 0xA02082


def _ping_payload(packet_size=4096, version=(1, 0, 0), max_cpu_freq=1_200_000_000):
    return struct.pack(
        "<4BIIIQIIII",
        *version, 0,
        3, 64, PI3_REVISION, 0x1234,
        packet_size, 600_000_000, 600_000_000, max_cpu_freq,
    )


class FakeDevice:
    """Serial connection stand-in that answers requests like the bootloader.

    ``responder(sequence, command, payload)`` returns the replies to queue,
    each ``(command, payload)`` or ``(sequence, command, payload)``.
    """

    def __init__(self, responder=None):
        self.responder = responder or (lambda seq, cmd, payload: [(PacketId.ACK, b"")])
        self.requests = []
        self.baud = 115200
        self._incoming = bytearray()
        self._decoder = PacketDecoder.with_capacity(4096, self._on_packet)

    def _on_packet(self, sequence, command, payload, length):
        payload = payload or b""
        self.requests.append((sequence, command, payload))
        for reply in self.responder(sequence, command, payload):
            if len(reply) == 2:
                reply = (sequence,) + tuple(reply)
            self._incoming += build_packet(*reply)

    def write(self, data):
        self._decoder.feed(data)
        return len(data)

    def read(self, size, timeout=None):
        data = bytes(self._incoming[:size])
        del self._incoming[:size]
        return data

    def switch_baud(self, baud):
        self.baud = baud

    @property
    def commands(self):
        return [cmd for _, cmd, _ in self.requests]


def _pinging(handler=None, **ping_kwargs):
    """Responder answering pings, delegating everything else to ``handler``."""

    def respond(seq, cmd, payload):
        if cmd == PacketId.PING:
            return [(PacketId.ACK, _ping_payload(**ping_kwargs))]
        if handler is not None:
            return handler(seq, cmd, payload)
        return [(PacketId.ACK, b"")]

    return respond


def _layer(device, **options):
    options.setdefault("ack_timeout", 0.05)
    options.setdefault("command_timeout", 0.05)
    return PacketLayer(device, LinkOptions(**options))


# ─── PING ────────────────────────────────────────────────────────────

def test_ping():
    """A ping ack identifies the board; sequence numbers start at 101."""
    device = FakeDevice(_pinging())
    layer = _layer(device)
    info = layer.ping()
    assert info.model.name == "Raspberry Pi 3 Model B"
    assert layer.device is info
    assert device.requests == [(101, PacketId.PING, b"")]
    assert layer.stats.packets_sent == 1
    assert layer.stats.packets_received == 1


def test_ping_retries():
    """Unanswered pings are retried with fresh sequence numbers."""
    def respond(seq, cmd, payload):
        if seq < 103:
            return []
        return [(PacketId.ACK, _ping_payload())]

    device = FakeDevice(respond)
    layer = _layer(device, ack_timeout=0.01, ping_attempts=5)
    layer.ping()
    assert [seq for seq, _, _ in device.requests] == [101, 102, 103]


def test_ping_gives_up():
    device = FakeDevice(lambda seq, cmd, payload: [])
    layer = _layer(device, ack_timeout=0.01, ping_attempts=2)
    with pytest.raises(TimeoutError, match="2 attempts"):
        layer.ping()
    assert layer.device is None


def test_ping_packet_size_too_large():
    device = FakeDevice(_pinging(packet_size=1024))
    with pytest.raises(LinkError, match="Packet size"):
        _layer(device, max_packet_size=4096).ping()


def test_ping_version_mismatch():
    device = FakeDevice(_pinging(version=(1, 0, 0)))
    with pytest.raises(LinkError, match="version"):
        _layer(device, expected_version=(1, 1, 0)).ping()


# ─── SEND ────────────────────────────────────────────────────────────

def test_send_timeout():
    device = FakeDevice(lambda seq, cmd, payload: [])
    layer = _layer(device, ack_timeout=0.01)
    with pytest.raises(TimeoutError, match="GO"):
        layer.send_go()


def test_send_wrong_sequence_ack():
    device = FakeDevice(lambda seq, cmd, payload: [(seq + 1, PacketId.ACK, b"")])
    with pytest.raises(LinkError, match="sequence"):
        _layer(device).send(PacketId.DATA, b"\x00\x00\x00\x00")


def test_send_ignores_unsolicited_packets():
    """Packets for other requests are logged and skipped."""
    def respond(seq, cmd, payload):
        return [(5, PacketId.STDOUT, b"stray"), (0, PacketId.PING, b""), (PacketId.ACK, b"ok")]

    layer = _layer(FakeDevice(respond))
    assert layer.send(PacketId.DATA, b"\x00" * 4) == b"ok"


def test_send_drops_stale_packets():
    """Leftover packets from an earlier request are discarded."""
    def respond(seq, cmd, payload):
        return [(PacketId.ACK, b""), (PacketId.ACK, b"")]

    device = FakeDevice(respond)
    layer = _layer(device)
    layer.send(PacketId.DATA, b"\x00" * 4)
    # the duplicate ACK for 101 must not answer request 102
    assert layer.send(PacketId.DATA, b"\x00" * 4) == b""
    assert [seq for seq, _, _ in device.requests] == [101, 102]


def test_decode_errors_counted():
    """Corrupt frames are counted by error name."""
    device = FakeDevice(lambda seq, cmd, payload: [])
    layer = _layer(device, ack_timeout=0.01)
    device._incoming += b"\xAA\xAA\xAA\x01"
    with pytest.raises(TimeoutError):
        layer.send(PacketId.PING)
    assert layer.stats.decode_errors == {"INVALID_SEPARATOR_BYTE": 1}


# ─── LOADING ─────────────────────────────────────────────────────────

def test_flash_sends_data_then_go():
    device = FakeDevice()
    layer = _layer(device)
    image = ProgramImage(chunks=[(0x8000, b"\x01\x02"), (0x9000, b"\x03")], start_address=0x8000)
    assert layer.flash(image, go_delay_ms=300) == 3
    assert device.commands == [PacketId.DATA, PacketId.DATA, PacketId.GO]
    assert device.requests[0][2] == b"\x00\x80\x00\x00\x01\x02"
    assert device.requests[2][2] == struct.pack("<II", 0x8000, 300)


def test_flash_without_go():
    device = FakeDevice()
    _layer(device).flash(ProgramImage(chunks=[(0, b"\x00")]), go=False)
    assert device.commands == [PacketId.DATA]


def test_flash_rejects_oversized_chunk():
    layer = _layer(FakeDevice(), max_packet_size=8)
    with pytest.raises(ValueError, match="exceeds packet size"):
        layer.flash(ProgramImage(chunks=[(0, b"\x00" * 5)]))


def test_flash_file_requires_ping(tmp_path):
    path = tmp_path / "kernel8.img"
    path.write_bytes(b"\x00")
    with pytest.raises(LinkError, match="pinged"):
        _layer(FakeDevice()).flash_file(path)


def test_flash_file_img(tmp_path):
    """Raw images are split to the packet size and started at their load address."""
    path = tmp_path / "kernel8.img"
    path.write_bytes(bytes(100))
    device = FakeDevice(_pinging())
    layer = _layer(device, max_packet_size=64)
    layer.ping()
    image = layer.flash_file(path, go_delay_ms=0)
    assert image.chunks[0][0] == 0x80000
    assert [len(d) for _, d in image.chunks] == [60, 40]
    assert device.commands == [PacketId.PING, PacketId.DATA, PacketId.DATA, PacketId.GO]


def test_flash_file_wrong_kernel(tmp_path):
    path = tmp_path / "kernel7l.img"
    path.write_bytes(b"\x00")
    layer = _layer(FakeDevice(_pinging()))
    layer.ping()
    with pytest.raises(ValueError, match="mismatch"):
        layer.flash_file(path)


def test_switch_baud():
    """The host follows the device to the new rate once it acknowledges."""
    device = FakeDevice()
    layer = _layer(device, reset_timeout_ms=250)
    layer.switch_baud(921600)
    assert device.baud == 921600
    assert device.requests[0][1] == PacketId.REQUEST_BAUD
    assert struct.unpack("<III", device.requests[0][2]) == (921600, 250, 0)


def test_boost_raises_cpu_clock():
    """Above 1M baud the auto boost asks for the maximum CPU clock."""
    device = FakeDevice(_pinging(max_cpu_freq=1_400_000_000))
    layer = _layer(device, flash_baud=2_000_000)
    layer.ping()
    layer.boost()
    assert device.baud == 2_000_000
    assert struct.unpack("<III", device.requests[-1][2])[2] == 1_400_000_000


def test_boost_skipped_at_current_baud():
    device = FakeDevice()
    _layer(device, flash_baud=115200).boost()
    assert device.requests == []


# ─── SHELL AND FILES ─────────────────────────────────────────────────

def test_exec_command_collects_output():
    def respond(seq, cmd, payload):
        return [
            (PacketId.STDOUT, b"hello "),
            (PacketId.STDERR, b"warn"),
            (PacketId.STDOUT, b"world"),
            (PacketId.ACK, struct.pack("<i", 0) + b"/sd\x00"),
        ]

    device = FakeDevice(respond)
    seen = []
    result = _layer(device).exec_command("/", "echo hello world", on_stdout=seen.append)
    assert result.exit_code == 0
    assert result.cwd == "/sd"
    assert result.stdout == "hello world"
    assert result.stderr == "warn"
    assert seen == ["hello ", "world"]
    assert device.requests[0][2] == b"/\x00echo hello world\x00"


def test_list_directory():
    listing = b"d---- 01/09/2024 12:00:00 0 overlays\r\n----a 01/09/2024 12:00:00 5 a.txt\r\n"

    def respond(seq, cmd, payload):
        return [(PacketId.STDOUT, listing), (PacketId.ACK, struct.pack("<i", 0) + b"/\x00")]

    device = FakeDevice(respond)
    entries = _layer(device).list_directory("/boot")
    assert [e.name for e in entries] == ["overlays", "a.txt"]
    assert device.requests[0][2] == b'/\x00ls -al "/boot"\x00'


def test_list_directory_failure():
    def respond(seq, cmd, payload):
        return [(PacketId.ACK, struct.pack("<i", 4) + b"/\x00")]

    with pytest.raises(DeviceError) as excinfo:
        _layer(FakeDevice(respond)).list_directory("/missing")
    assert excinfo.value.code == 4


def _pull_header(size, name=b"config.txt"):
    return struct.pack("<IHHB", size, 0x6000, 0x5921, 0x20) + name + b"\x00"


def test_pull_file(tmp_path):
    def respond(seq, cmd, payload):
        return [
            (PacketId.PULL_HEADER, _pull_header(6)),
            (PacketId.PULL_DATA, struct.pack("<I", 0) + b"abc"),
            (PacketId.PULL_DATA, struct.pack("<I", 3) + b"def"),
            (PacketId.ACK, b""),
        ]

    device = FakeDevice(respond)
    local = tmp_path / "config.txt"
    header = _layer(device).pull_file("/config.txt", local)
    assert local.read_bytes() == b"abcdef"
    assert header.size == 6
    assert os.path.getmtime(local) == header.mtime.timestamp()
    assert device.requests[0][1:] == (PacketId.PULL, b"/config.txt\x00")


def test_pull_file_offset_mismatch(tmp_path):
    def respond(seq, cmd, payload):
        return [
            (PacketId.PULL_HEADER, _pull_header(6)),
            (PacketId.PULL_DATA, struct.pack("<I", 3) + b"def"),
            (PacketId.ACK, b""),
        ]

    local = tmp_path / "out.bin"
    with pytest.raises(LinkError, match="offset"):
        _layer(FakeDevice(respond)).pull_file("/x", local)
    assert not local.exists()


def test_pull_file_device_error(tmp_path):
    def respond(seq, cmd, payload):
        return [(PacketId.ACK, struct.pack("<i", 4))]

    local = tmp_path / "out.bin"
    with pytest.raises(DeviceError) as excinfo:
        _layer(FakeDevice(respond)).pull_file("/missing", local)
    assert excinfo.value.code == 4
    assert not local.exists()


def test_pull_file_no_overwrite(tmp_path):
    local = tmp_path / "out.bin"
    local.write_bytes(b"keep")
    with pytest.raises(FileExistsError):
        _layer(FakeDevice()).pull_file("/x", local, overwrite=False)
    assert local.read_bytes() == b"keep"


def test_push_file(tmp_path):
    """Files are sent in packet-sized chunks and then committed."""
    local = tmp_path / "data.bin"
    local.write_bytes(bytes(range(20)))
    device = FakeDevice()
    size = _layer(device, max_packet_size=16).push_file(local, "/data.bin")
    assert size == 20
    assert device.commands == [PacketId.PUSH_DATA] * 3 + [PacketId.PUSH_COMMIT]

    chunks = [struct.unpack_from("<II", p) + (p[8:],) for _, _, p in device.requests[:3]]
    assert [offset for _, offset, _ in chunks] == [0, 8, 16]
    assert b"".join(data for _, _, data in chunks) == bytes(range(20))
    tokens = {token for token, _, _ in chunks}
    assert len(tokens) == 1 and 0 not in tokens

    commit = device.requests[3][2]
    token, total = struct.unpack_from("<II", commit)
    assert (token, total) == (chunks[0][0], 20)
    assert commit[13] == 1
    assert commit[14:] == b"/data.bin\x00"


def test_push_file_exists(tmp_path):
    def respond(seq, cmd, payload):
        if cmd == PacketId.PUSH_COMMIT:
            return [(PacketId.ACK, struct.pack("<i", 8))]
        return [(PacketId.ACK, b"")]

    local = tmp_path / "a.txt"
    local.write_bytes(b"x")
    with pytest.raises(DeviceError, match="already exists") as excinfo:
        _layer(FakeDevice(respond)).push_file(local, "/a.txt", overwrite=False)
    assert excinfo.value.code == 8


def test_push_file_data_rejected(tmp_path):
    def respond(seq, cmd, payload):
        return [(PacketId.ACK, struct.pack("<i", 7))]

    local = tmp_path / "a.txt"
    local.write_bytes(b"x")
    device = FakeDevice(respond)
    with pytest.raises(DeviceError, match="file data"):
        _layer(device).push_file(local, "/a.txt")
    assert device.commands == [PacketId.PUSH_DATA]


def _listing_responder(listings, pulled=b"abcdef"):
    """Answer ``ls`` from ``listings`` (path -> output) and pull every file as ``pulled``."""

    def respond(seq, cmd, payload):
        if cmd == PacketId.COMMAND:
            path = payload.split(b"\x00")[1].decode()[len('ls -al "'):-1]
            return [
                (PacketId.STDOUT, listings[path]),
                (PacketId.ACK, struct.pack("<i", 0) + b"/\x00"),
            ]
        if cmd == PacketId.PULL:
            return [
                (PacketId.PULL_HEADER, _pull_header(len(pulled))),
                (PacketId.PULL_DATA, struct.pack("<I", 0) + pulled),
                (PacketId.ACK, b""),
            ]
        return [(PacketId.ACK, b"")]

    return respond


def test_pull_dir(tmp_path):
    """Directories are listed and walked; files land in a matching local tree."""
    listings = {
        "/boot": (
            b"d---- 01/09/2024 12:00:00 0 .\r\n"
            b"d---- 01/09/2024 12:00:00 0 overlays\r\n"
            b"----a 01/09/2024 12:00:00 6 config.txt\r\n"
        ),
        "/boot/overlays": b"----a 01/09/2024 12:00:00 6 a.dtbo\r\n",
    }
    device = FakeDevice(_listing_responder(listings))
    pulled = _layer(device).pull_dir("/boot", tmp_path / "boot")

    assert pulled == [tmp_path / "boot/overlays/a.dtbo", tmp_path / "boot/config.txt"]
    assert (tmp_path / "boot/overlays/a.dtbo").read_bytes() == b"abcdef"
    assert (tmp_path / "boot/config.txt").read_bytes() == b"abcdef"
    pulls = [payload for _, cmd, payload in device.requests if cmd == PacketId.PULL]
    assert pulls == [b"/boot/overlays/a.dtbo\x00", b"/boot/config.txt\x00"]


def test_pull_dir_no_overwrite(tmp_path):
    listings = {"/": b"----a 01/09/2024 12:00:00 6 config.txt\r\n"}
    (tmp_path / "config.txt").write_bytes(b"keep")
    with pytest.raises(FileExistsError):
        _layer(FakeDevice(_listing_responder(listings))).pull_dir("/", tmp_path, overwrite=False)
    assert (tmp_path / "config.txt").read_bytes() == b"keep"


def test_push_dir(tmp_path):
    """Every file under the tree is pushed to the same relative device path."""
    (tmp_path / "sub").mkdir()
    (tmp_path / "b.txt").write_bytes(b"bb")
    (tmp_path / "a.txt").write_bytes(b"a")
    (tmp_path / "sub" / "c.txt").write_bytes(b"ccc")
    device = FakeDevice()
    pushed = _layer(device).push_dir(tmp_path, "/dst")

    assert pushed == ["/dst/a.txt", "/dst/b.txt", "/dst/sub/c.txt"]
    commits = [payload for _, cmd, payload in device.requests if cmd == PacketId.PUSH_COMMIT]
    assert [c[14:] for c in commits] == [
        b"/dst/a.txt\x00", b"/dst/b.txt\x00", b"/dst/sub/c.txt\x00",
    ]
    assert [struct.unpack_from("<I", c, 4)[0] for c in commits] == [1, 2, 3]


# ─── BAUD RESET ──────────────────────────────────────────────────────

class RevertingDevice(FakeDevice):
    """FakeDevice whose line rate falls back to 115200 after an idle timeout.

    Bytes written while the host is on a different rate than the device
    are lost.
    """

    def __init__(self, responder=None):
        super().__init__(responder)
        self.device_baud = 115200
        self.reset_timeout = 0.0
        self.last_rx = time.monotonic()

    def _on_packet(self, sequence, command, payload, length):
        super()._on_packet(sequence, command, payload, length)
        if command == PacketId.REQUEST_BAUD:
            baud, timeout_ms, _ = struct.unpack("<III", payload)
            self.device_baud = baud
            self.reset_timeout = timeout_ms / 1000

    def write(self, data):
        now = time.monotonic()
        if self.reset_timeout and now - self.last_rx > self.reset_timeout:
            self.device_baud = 115200
        if self.baud != self.device_baud:
            return len(data)
        self.last_rx = now
        return super().write(data)


def _shell(seq, cmd, payload):
    if cmd == PacketId.COMMAND:
        return [(PacketId.ACK, struct.pack("<i", 0) + b"/\x00")]
    return [(PacketId.ACK, b"")]


def _boosted(**options):
    device = RevertingDevice(_pinging(_shell))
    options.setdefault("flash_baud", 921600)
    options.setdefault("reset_timeout_ms", 100)
    layer = _layer(device, **options)
    layer.ping()
    layer.boost()
    assert device.baud == device.device_baud == 921600
    return device, layer


def test_stays_switched_while_active():
    device, layer = _boosted()
    assert layer.exec_command("/", "ls").exit_code == 0
    assert device.baud == 921600


def test_follows_device_back_after_idle():
    """After the reset timeout the host returns to 115200 with the device."""
    device, layer = _boosted()
    time.sleep(0.2)
    assert layer.exec_command("/", "ls").exit_code == 0
    assert device.baud == device.device_baud == 115200


def test_boost_again_after_idle():
    device, layer = _boosted()
    time.sleep(0.2)
    layer.boost()
    assert layer.exec_command("/", "ls").exit_code == 0
    assert device.baud == device.device_baud == 921600
    assert device.commands.count(PacketId.REQUEST_BAUD) == 2


def test_waits_out_reset_boundary():
    """Near the timeout the host waits until the device has surely reverted."""
    device, layer = _boosted()
    time.sleep(0.1)
    assert layer.exec_command("/", "ls").exit_code == 0
    assert device.baud == device.device_baud == 115200


def test_no_reset_when_timeout_disabled():
    device, layer = _boosted(reset_timeout_ms=0)
    time.sleep(0.05)
    assert layer.exec_command("/", "ls").exit_code == 0
    assert device.baud == 921600
