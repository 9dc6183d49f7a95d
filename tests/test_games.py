"""Tests for game-server query protocols."""

from __future__ import annotations

import asyncio
import json
import struct

import pytest

from statuswatch.health.games import (
    GAMES,
    GameQueryError,
    build_handshake,
    encode_varint,
    parse_a2s_info,
    parse_minecraft_status,
    query_minecraft,
    query_source,
)


def _a2s_info_packet(players: int = 5, max_players: int = 24) -> bytes:
    return (
        b"\xff\xff\xff\xffI\x11"
        + b"My Server\x00" + b"cp_badlands\x00" + b"tf\x00" + b"Team Fortress\x00"
        + struct.pack("<hBBB", 440, players, max_players, 0)
        + b"d\x00\x00\x00"
    )


class TestVarint:
    def test_small_values(self) -> None:
        assert encode_varint(0) == b"\x00"
        assert encode_varint(1) == b"\x01"
        assert encode_varint(127) == b"\x7f"
        assert encode_varint(128) == b"\x80\x01"
        assert encode_varint(25565) == b"\xdd\xc7\x01"

    def test_negative_one(self) -> None:
        assert encode_varint(-1) == b"\xff\xff\xff\xff\x0f"

    def test_handshake_layout(self) -> None:
        data = build_handshake("mc.test", 25565)
        # handshake packet: length prefix, id 0, protocol -1, host, port, next state 1
        assert data[1] == 0x00
        assert b"mc.test" in data
        assert struct.pack(">H", 25565) in data
        assert data.endswith(b"\x01\x00")  # status request packet


class TestA2SInfo:
    def test_parse(self) -> None:
        state = parse_a2s_info(_a2s_info_packet())
        assert state.name == "My Server"
        assert state.map == "cp_badlands"
        assert state.players == 5
        assert state.max_players == 24
        assert state.raw["app_id"] == 440

    def test_rejects_other_packets(self) -> None:
        with pytest.raises(GameQueryError):
            parse_a2s_info(b"\xff\xff\xff\xffA1234")

    def test_truncated(self) -> None:
        with pytest.raises(GameQueryError):
            parse_a2s_info(b"\xff\xff\xff\xffI\x11My Server")

    def test_query_answers_challenge(self) -> None:
        received: list[bytes] = []

        class Server(asyncio.DatagramProtocol):
            def connection_made(self, transport):
                self.transport = transport

            def datagram_received(self, data, addr):
                received.append(data)
                if len(received) == 1:
                    self.transport.sendto(b"\xff\xff\xff\xffA\x01\x02\x03\x04", addr)
                else:
                    self.transport.sendto(_a2s_info_packet(players=2), addr)

        async def run():
            loop = asyncio.get_running_loop()
            transport, _ = await loop.create_datagram_endpoint(Server, local_addr=("127.0.0.1", 0))
            port = transport.get_extra_info("sockname")[1]
            try:
                return await asyncio.wait_for(query_source("127.0.0.1", port), 2)
            finally:
                transport.close()

        state = asyncio.run(run())
        assert state.players == 2
        assert received[1].endswith(b"\x01\x02\x03\x04")


class TestMinecraftStatus:
    STATUS = {
        "version": {"name": "1.20.4", "protocol": 765},
        "players": {"max": 20, "online": 3},
        "description": {"text": "A Minecraft Server"},
    }

    def test_parse(self) -> None:
        state = parse_minecraft_status(json.dumps(self.STATUS))
        assert state.players == 3
        assert state.max_players == 20
        assert state.name == "A Minecraft Server"

    def test_plain_description(self) -> None:
        state = parse_minecraft_status(json.dumps({**self.STATUS, "description": "hi"}))
        assert state.name == "hi"

    def test_invalid_payload(self) -> None:
        with pytest.raises(GameQueryError):
            parse_minecraft_status("not json")
        with pytest.raises(GameQueryError):
            parse_minecraft_status(json.dumps({"players": {}}))

    def test_query_against_local_server(self) -> None:
        body = json.dumps(self.STATUS).encode()

        async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.read(1024)
            payload = b"\x00" + encode_varint(len(body)) + body
            writer.write(encode_varint(len(payload)) + payload)
            await writer.drain()
            writer.close()

        async def run():
            server = await asyncio.start_server(handle, "127.0.0.1", 0)
            port = server.sockets[0].getsockname()[1]
            async with server:
                return await asyncio.wait_for(query_minecraft("127.0.0.1", port), 2)

        state = asyncio.run(run())
        assert state.players == 3


class TestGameTable:
    def test_known_games_have_protocols(self) -> None:
        for name in ("minecraft", "cs", "tf2", "garrysmod", "arkse", "rust", "7d2d", "valheim"):
            assert GAMES[name].protocol in ("source", "minecraft")
