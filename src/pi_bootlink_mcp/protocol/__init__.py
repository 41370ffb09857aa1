"""Protocol layer: packet framing, decoding, varints, command payloads and reply parsing."""

from .framing import Packet, build_packet, encode_packet
from .decoder import PacketDecoder, PacketError, decode
from .commands import PacketId
