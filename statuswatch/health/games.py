"""Game-server query protocols used by the ``game-query`` probe.

Two wire protocols cover the supported games:

- ``source``    Valve A2S_INFO over UDP (Counter-Strike, TF2, Garry's Mod,
                ARK, Rust, 7 Days to Die, Valheim)
- ``minecraft`` Java Edition server list ping over TCP

Each query returns a ``ServerState`` or raises ``GameQueryError``. Player
counts are informational; a parsed state payload is what makes a server
"up".
"""

from __future__ import annotations

import asyncio
import json
import struct
from dataclasses import dataclass, field
from typing import Any


class GameQueryError(Exception):
    """The server answered with something that is not a valid state payload."""


@dataclass
class GameSpec:
    protocol: str
    default_port: int


# game_type -> protocol + default query port
GAMES: dict[str, GameSpec] = {
    "minecraft": GameSpec("minecraft", 25565),
    "cs": GameSpec("source", 27015),
    "tf2": GameSpec("source", 27015),
    "garrysmod": GameSpec("source", 27015),
    "arkse": GameSpec("source", 27015),
    "rust": GameSpec("source", 28015),
    "7d2d": GameSpec("source", 26900),
    "valheim": GameSpec("source", 2457),  # query port = game port + 1
}


@dataclass
class ServerState:
    name: str = ""
    map: str = ""
    players: int = 0
    max_players: int = 0
    raw: dict[str, Any] = field(default_factory=dict)


# ── Valve A2S_INFO ───────────────────────────────────────────────────────────

A2S_INFO_REQUEST = b"\xff\xff\xff\xffTSource Engine Query\x00"
_SIMPLE_HEADER = b"\xff\xff\xff\xff"
_INFO_RESPONSE = 0x49  # 'I'
_CHALLENGE_RESPONSE = 0x41  # 'A'


class _DatagramCollector(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes] = asyncio.Queue()
        self.error: Exception | None = None

    def datagram_received(self, data: bytes, addr: Any) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.error = exc
        self.queue.put_nowait(b"")


def _read_cstring(data: bytes, offset: int) -> tuple[str, int]:
    end = data.find(b"\x00", offset)
    if end < 0:
        raise GameQueryError("Truncated A2S_INFO string")
    return data[offset:end].decode("utf-8", errors="replace"), end + 1


def parse_a2s_info(packet: bytes) -> ServerState:
    """Decode an A2S_INFO response (simple, single-packet form)."""
    if len(packet) < 6 or packet[:4] != _SIMPLE_HEADER or packet[4] != _INFO_RESPONSE:
        raise GameQueryError("Not an A2S_INFO response")

    offset = 6  # header + protocol byte
    name, offset = _read_cstring(packet, offset)
    map_name, offset = _read_cstring(packet, offset)
    folder, offset = _read_cstring(packet, offset)
    game, offset = _read_cstring(packet, offset)
    if len(packet) < offset + 5:
        raise GameQueryError("Truncated A2S_INFO payload")
    app_id, players, max_players, bots = struct.unpack_from("<hBBB", packet, offset)
    return ServerState(
        name=name,
        map=map_name,
        players=players,
        max_players=max_players,
        raw={"folder": folder, "game": game, "app_id": app_id, "bots": bots},
    )


async def query_source(host: str, port: int) -> ServerState:
    """A2S_INFO query, answering a challenge if the server sends one.

    The caller bounds this with a deadline; the UDP transport is always
    closed on the way out, including on cancellation.
    """
    loop = asyncio.get_running_loop()
    transport, proto = await loop.create_datagram_endpoint(
        _DatagramCollector, remote_addr=(host, port),
    )
    try:
        transport.sendto(A2S_INFO_REQUEST)
        packet = await proto.queue.get()
        if proto.error:
            raise proto.error
        if len(packet) >= 9 and packet[:4] == _SIMPLE_HEADER and packet[4] == _CHALLENGE_RESPONSE:
            transport.sendto(A2S_INFO_REQUEST + packet[5:9])
            packet = await proto.queue.get()
            if proto.error:
                raise proto.error
        return parse_a2s_info(packet)
    finally:
        transport.close()


# ── Minecraft server list ping ───────────────────────────────────────────────


def encode_varint(value: int) -> bytes:
    value &= 0xFFFFFFFF
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


async def close_writer(writer: asyncio.StreamWriter) -> None:
    """Close a stream and wait for the transport to release its socket."""
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        # Peer already reset the connection; the socket is closed either way.
        pass


async def _read_varint(reader: asyncio.StreamReader) -> int:
    result = 0
    for shift in range(0, 35, 7):
        byte = (await reader.readexactly(1))[0]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result
    raise GameQueryError("VarInt too long")


def _packet(payload: bytes) -> bytes:
    return encode_varint(len(payload)) + payload


def build_handshake(host: str, port: int) -> bytes:
    host_bytes = host.encode("utf-8")
    payload = (
        b"\x00"  # packet id: handshake
        + encode_varint(-1)  # protocol version: any
        + encode_varint(len(host_bytes)) + host_bytes
        + struct.pack(">H", port)
        + encode_varint(1)  # next state: status
    )
    return _packet(payload) + _packet(b"\x00")  # + status request


def parse_minecraft_status(body: str) -> ServerState:
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise GameQueryError(f"Invalid status JSON: {e}") from e
    if not isinstance(data, dict) or "version" not in data:
        raise GameQueryError("Status payload missing version")

    description = data.get("description", "")
    if isinstance(description, dict):
        description = description.get("text", "")
    players = data.get("players") or {}
    return ServerState(
        name=str(description),
        players=int(players.get("online", 0)),
        max_players=int(players.get("max", 0)),
        raw=data,
    )


async def query_minecraft(host: str, port: int) -> ServerState:
    reader, writer = await asyncio.open_connection(host, port)
    try:
        writer.write(build_handshake(host, port))
        await writer.drain()

        await _read_varint(reader)  # packet length
        packet_id = await _read_varint(reader)
        if packet_id != 0x00:
            raise GameQueryError(f"Unexpected packet id {packet_id:#x}")
        length = await _read_varint(reader)
        body = await reader.readexactly(length)
        return parse_minecraft_status(body.decode("utf-8"))
    except asyncio.IncompleteReadError as e:
        raise GameQueryError("Connection closed mid-response") from e
    finally:
        await close_writer(writer)


PROTOCOLS = {
    "source": query_source,
    "minecraft": query_minecraft,
}
