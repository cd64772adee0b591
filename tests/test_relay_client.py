"""Tests for the reconnecting relay client against a real websocket server."""

import asyncio

import pytest
import websockets

from conftest import ALICE
from lanlink.relay import client as relay_client
from lanlink.relay.client import RelayClient, backoff_delay
from lanlink.relay.envelope import ChatEnvelope, HeartbeatEnvelope, dump_envelope, parse_envelope
from lanlink.security.crypto import open_frame, seal_frame


def port_of(server) -> int:
    return list(server.sockets)[0].getsockname()[1]


def test_backoff_doubles_up_to_cap():
    assert [backoff_delay(n, base=1.0, cap=30.0) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]


def test_uri_carries_address_and_group(relay_key):
    client = RelayClient("ws://relay:8000/ws", relay_key, ALICE, group="red")
    assert client.uri == f"ws://relay:8000/ws?address={ALICE}&group=red"


@pytest.mark.asyncio
async def test_answers_heartbeat_and_delivers_envelopes(relay_key):
    inbound: asyncio.Queue = asyncio.Queue()
    delivered = []

    async def handler(ws):
        await ws.send(seal_frame(relay_key, dump_envelope(HeartbeatEnvelope())))
        await ws.send(seal_frame(relay_key, dump_envelope(ChatEnvelope(body="from relay"))))
        async for frame in ws:
            await inbound.put(parse_envelope(open_frame(relay_key, frame)))

    async def on_envelope(envelope):
        delivered.append(envelope)

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        client = RelayClient(
            f"ws://127.0.0.1:{port_of(server)}/ws", relay_key, ALICE, on_envelope=on_envelope
        )
        client.start()
        try:
            ack = await asyncio.wait_for(inbound.get(), 5)
            assert ack.type == "heartbeat-ack"

            await client.send(ChatEnvelope(body="from client"))
            chat = await asyncio.wait_for(inbound.get(), 5)
            assert chat.body == "from client"
        finally:
            await client.stop()

    assert [e.body for e in delivered] == ["from relay"]


@pytest.mark.asyncio
async def test_reconnects_after_drop(relay_key, monkeypatch):
    monkeypatch.setattr(relay_client, "backoff_delay", lambda attempt: 0.01)
    connections = 0

    async def handler(ws):
        nonlocal connections
        connections += 1
        await ws.close()

    async with websockets.serve(handler, "127.0.0.1", 0) as server:
        client = RelayClient(f"ws://127.0.0.1:{port_of(server)}/ws", relay_key, ALICE)
        client.start()
        try:
            for _ in range(200):
                if connections >= 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await client.stop()

    assert connections >= 3
