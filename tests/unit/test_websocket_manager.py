"""
Unit Tests for WebSocketConnectionManager

These tests verify that:
- Subscriptions on one URL share a single socket
- on_connect runs after every (re)connect so subscribe frames are re-sent
- Frames are routed by stream key, by bound channel id, or broadcast
- Malformed frames and failing callbacks do not kill the connection
- Disposing the last subscription closes the socket

Uses a fake connector, so no network access is needed.

Run with:
    pytest tests/unit/test_websocket_manager.py -v
"""

import asyncio
import json
from typing import Optional

import pytest
import pytest_asyncio

from core.adapter import ExchangeAdapter
from core.errors import TransportError
from core.schemas import StreamEnvelope
from core.websocket import WebSocketConnectionManager


class RoutingAdapter(ExchangeAdapter):
    """
    Frames:
        {"stream": key, "data": ...}              -> routed by key
        {"event": "bind", "chan": id, "key": k}   -> channel binding
        [id, data]                                -> routed by channel
        anything else                             -> broadcast
    """

    name = "routing"
    ws_url = "wss://stream.test/ws"

    def decode_frame(self, text: str) -> Optional[StreamEnvelope]:
        data = json.loads(text)
        if isinstance(data, list):
            return StreamEnvelope(channel_id=str(data[0]), data=data[1])
        if data.get("event") == "bind":
            return StreamEnvelope(bind=True, channel_id=str(data["chan"]), stream_key=data["key"])
        if data.get("event") == "ignore":
            return None
        if "stream" in data:
            return StreamEnvelope(stream_key=data["stream"], data=data["data"])
        return StreamEnvelope(data=data)


# ============================================
# Fixtures
# ============================================

@pytest_asyncio.fixture
async def manager(fake_connector):
    mgr = WebSocketConnectionManager(RoutingAdapter(), connector=fake_connector, backoff_base=0.01)
    yield mgr
    await mgr.close_all()


def subscribe_frame(key):
    async def on_connect(sub):
        await sub.send({"op": "subscribe", "key": key})
    return on_connect


# ============================================
# Connection Sharing
# ============================================

class TestConnectionSharing:

    @pytest.mark.asyncio
    async def test_one_socket_per_url(self, manager, fake_connector, waiter):
        await manager.subscribe("a", lambda d: None, subscribe_frame("a"))
        await manager.subscribe("b", lambda d: None, subscribe_frame("b"))
        await manager.subscribe("c", lambda d: None, url="wss://other.test/ws")

        await waiter(lambda: len(fake_connector.sockets) == 2)
        assert manager.connection_count() == 2
        assert sorted(fake_connector.urls) == ["wss://other.test/ws", "wss://stream.test/ws"]

    @pytest.mark.asyncio
    async def test_on_connect_runs_for_each_subscription(self, manager, fake_connector, waiter):
        await manager.subscribe("a", lambda d: None, subscribe_frame("a"))
        ws = await fake_connector.wait_for_socket()
        await waiter(lambda: len(ws.sent) == 1)

        # Joining an already open socket sends immediately
        await manager.subscribe("b", lambda d: None, subscribe_frame("b"))
        assert [m["key"] for m in ws.sent_json()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_send_when_not_connected(self, manager):
        with pytest.raises(TransportError):
            await manager.send("wss://nowhere.test", {"x": 1})

    @pytest.mark.asyncio
    async def test_subscribe_without_url(self, fake_connector):
        adapter = RoutingAdapter()
        adapter.ws_url = ""
        mgr = WebSocketConnectionManager(adapter, connector=fake_connector)
        with pytest.raises(TransportError):
            await mgr.subscribe("a", lambda d: None)


# ============================================
# Frame Routing
# ============================================

class TestRouting:

    @pytest.mark.asyncio
    async def test_routes_by_stream_key(self, manager, fake_connector, waiter):
        got_a, got_b = [], []
        await manager.subscribe("a", got_a.append)
        await manager.subscribe("b", got_b.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push({"stream": "a", "data": 1})
        ws.push({"stream": "b", "data": 2})
        ws.push({"stream": "a", "data": 3})

        await waiter(lambda: len(got_a) == 2 and len(got_b) == 1)
        assert got_a == [1, 3]
        assert got_b == [2]

    @pytest.mark.asyncio
    async def test_routes_by_bound_channel(self, manager, fake_connector, waiter):
        got = []
        await manager.subscribe("ticker:BTC", got.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        # Data before the binding has nowhere to go
        ws.push([17, "early"])
        ws.push({"event": "bind", "chan": 17, "key": "ticker:BTC"})
        ws.push([17, "late"])
        ws.push([99, "other"])

        await waiter(lambda: got == ["late"])
        await asyncio.sleep(0.02)
        assert got == ["late"]

    @pytest.mark.asyncio
    async def test_unkeyed_frames_broadcast(self, manager, fake_connector, waiter):
        got_a, got_b = [], []
        await manager.subscribe("a", got_a.append)
        await manager.subscribe("b", got_b.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push({"hello": "all"})
        await waiter(lambda: got_a and got_b)

    @pytest.mark.asyncio
    async def test_malformed_frame_dropped(self, manager, fake_connector, waiter):
        got = []
        await manager.subscribe("a", got.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push("{not json")
        ws.push({"event": "ignore"})
        ws.push({"stream": "a", "data": "ok"})

        await waiter(lambda: got == ["ok"])
        assert len(fake_connector.sockets) == 1

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_delivery(self, manager, fake_connector, waiter):
        got = []

        def flaky(data):
            if data == "boom":
                raise RuntimeError("callback bug")
            got.append(data)

        await manager.subscribe("a", flaky)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push({"stream": "a", "data": "boom"})
        ws.push({"stream": "a", "data": "after"})

        await waiter(lambda: got == ["after"])

    @pytest.mark.asyncio
    async def test_async_callback(self, manager, fake_connector, waiter):
        got = []

        async def on_message(data):
            await asyncio.sleep(0)
            got.append(data)

        await manager.subscribe("a", on_message)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push({"stream": "a", "data": 5})
        await waiter(lambda: got == [5])

    @pytest.mark.asyncio
    async def test_bytes_frames_decoded(self, manager, fake_connector, waiter):
        got = []
        await manager.subscribe("a", got.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push(b'{"stream": "a", "data": "bin"}')
        await waiter(lambda: got == ["bin"])


# ============================================
# Reconnect and Shutdown
# ============================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_reconnect_resends_subscriptions(self, manager, fake_connector, waiter):
        await manager.subscribe("a", lambda d: None, subscribe_frame("a"))
        await manager.subscribe("b", lambda d: None, subscribe_frame("b"))
        first = await fake_connector.wait_for_socket()
        await waiter(lambda: len(first.sent) == 2)

        first.drop()

        second = await fake_connector.wait_for_socket(2)
        await waiter(lambda: len(second.sent) == 2)
        assert sorted(m["key"] for m in second.sent_json()) == ["a", "b"]
        assert first.closed

    @pytest.mark.asyncio
    async def test_bindings_cleared_on_reconnect(self, manager, fake_connector, waiter):
        got = []
        await manager.subscribe("ticker:BTC", got.append)
        first = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)
        first.push({"event": "bind", "chan": 5, "key": "ticker:BTC"})
        first.push([5, "one"])
        await waiter(lambda: got == ["one"])

        first.drop()
        second = await fake_connector.wait_for_socket(2)
        await manager.wait_connected(timeout=1)

        # Old channel id means nothing on the new socket
        second.push([5, "stale"])
        second.push({"event": "bind", "chan": 6, "key": "ticker:BTC"})
        second.push([6, "two"])
        await waiter(lambda: got == ["one", "two"])

    @pytest.mark.asyncio
    async def test_failed_connect_retries(self, fake_connector, waiter):
        attempts = []

        async def flaky_connector(url):
            attempts.append(url)
            if len(attempts) < 3:
                raise OSError("connection refused")
            return await fake_connector(url)

        mgr = WebSocketConnectionManager(RoutingAdapter(), connector=flaky_connector, backoff_base=0.01)
        try:
            await mgr.subscribe("a", lambda d: None)
            await mgr.wait_connected(timeout=2)
            assert len(attempts) == 3
        finally:
            await mgr.close_all()

    @pytest.mark.asyncio
    async def test_dispose_keeps_socket_for_others(self, manager, fake_connector, waiter):
        got_b = []
        sub_a = await manager.subscribe("a", lambda d: None)
        await manager.subscribe("b", got_b.append)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        await sub_a.dispose()
        assert not sub_a.active
        assert manager.connection_count() == 1

        ws.push({"stream": "b", "data": 1})
        await waiter(lambda: got_b == [1])

    @pytest.mark.asyncio
    async def test_last_dispose_closes_socket(self, manager, fake_connector):
        sub = await manager.subscribe("a", lambda d: None)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        await sub.dispose()

        assert ws.closed
        assert manager.connection_count() == 0
        # No reconnect after an intentional close
        await asyncio.sleep(0.05)
        assert len(fake_connector.sockets) == 1

    @pytest.mark.asyncio
    async def test_dispose_twice_is_harmless(self, manager, fake_connector):
        sub = await manager.subscribe("a", lambda d: None)
        await fake_connector.wait_for_socket()
        await sub.dispose()
        await sub.dispose()
        assert manager.connection_count() == 0

    @pytest.mark.asyncio
    async def test_close_from_sync_callback(self, manager, fake_connector, waiter):
        holder = {}

        def on_message(data):
            holder["sub"].close()

        holder["sub"] = await manager.subscribe("a", on_message)
        ws = await fake_connector.wait_for_socket()
        await manager.wait_connected(timeout=1)

        ws.push({"stream": "a", "data": 1})
        await waiter(lambda: manager.connection_count() == 0)
        await waiter(lambda: ws.closed)

    @pytest.mark.asyncio
    async def test_close_all(self, manager, fake_connector):
        await manager.subscribe("a", lambda d: None)
        await manager.subscribe("b", lambda d: None, url="wss://other.test/ws")
        await fake_connector.wait_for_socket(2)

        await manager.close_all()

        assert manager.connection_count() == 0
        assert all(ws.closed for ws in fake_connector.sockets)
