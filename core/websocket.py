"""
WebSocket Connection Manager

Multiplexes any number of logical stream subscriptions over as few sockets as
possible: one physical connection per distinct URL, shared by every
subscription for that URL.

It handles:
- Automatic reconnection with exponential backoff
- Re-running every subscription's on_connect after a (re)connect, so
  subscribe/auth frames are re-sent
- Routing inbound frames to the matching subscriptions, either by logical
  stream key or by a server-assigned channel id announced earlier on the
  same socket (Bitfinex style "subscribed" events)
- Graceful shutdown when the last subscription on a URL is disposed

Frames are decoded by the adapter's decode_frame() hook. Delivery is
at-most-once: frames sent while disconnected are lost.

Reconnection Strategy:
    - Attempt 1: Wait 1 second
    - Attempt 2: Wait 2 seconds
    - Attempt 3: Wait 4 seconds
    - Attempt N: Wait min(2^(N-1), ws_max_reconnect_delay) seconds
    The attempt counter resets after every successful connect.

Usage:
    manager = WebSocketConnectionManager(adapter)

    async def on_connect(sub):
        await sub.send({"event": "subscribe", "channel": "ticker", "symbol": "tBTCUSD"})

    sub = await manager.subscribe("ticker:tBTCUSD", print, on_connect)
    ...
    await sub.dispose()
"""

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import websockets

from core.adapter import ExchangeAdapter
from core.config import settings
from core.errors import TransportError
from core.logging import get_logger, log_websocket_event
from core.schemas import StreamEnvelope


MessageCallback = Callable[[Any], Any]
ConnectCallback = Callable[["Subscription"], Any]
Connector = Callable[[str], Awaitable[Any]]


async def default_connector(url: str) -> Any:
    """Open a websocket with the websockets library (ping keeps it alive)."""
    return await websockets.connect(url, ping_interval=settings.ws_heartbeat)


class Subscription:
    """
    Handle for one logical stream on a shared connection.

    Attributes:
        stream_key: Logical stream id frames are routed by
        url: Socket URL the subscription lives on
        active: False once disposed
    """

    def __init__(
        self,
        manager: "WebSocketConnectionManager",
        stream_key: str,
        url: str,
        on_message: MessageCallback,
        on_connect: Optional[ConnectCallback],
        loop: asyncio.AbstractEventLoop
    ):
        self.manager = manager
        self.stream_key = stream_key
        self.url = url
        self.on_message = on_message
        self.on_connect = on_connect
        self.active = True
        self._loop = loop

    async def send(self, message: Any) -> None:
        """
        Send a frame on this subscription's socket.

        Dicts and lists are JSON encoded, strings are sent as-is.

        Raises:
            TransportError: If the socket is not connected
        """
        await self.manager.send(self.url, message)

    async def dispose(self) -> None:
        """Remove this subscription; closes the socket if it was the last one."""
        await self.manager.unsubscribe(self)

    def close(self) -> None:
        """Thread-safe, non-blocking dispose (usable from sync callbacks and other threads)."""
        if not self.active:
            return
        self._loop.call_soon_threadsafe(lambda: self._loop.create_task(self.dispose()))

    def __repr__(self) -> str:
        return f"<Subscription(stream_key='{self.stream_key}', active={self.active})>"


class _Connection:
    """State of one physical socket."""

    def __init__(self, url: str):
        self.url = url
        self.subscriptions: List[Subscription] = []
        self.bindings: Dict[str, str] = {}
        self.ws: Any = None
        self.task: Optional[asyncio.Task] = None
        self.callback_tasks: Set[asyncio.Task] = set()
        self.running = True
        self.connected = asyncio.Event()
        self.reconnect_attempt = 0


class WebSocketConnectionManager:
    """
    Shared, self-healing websocket connections for one exchange connection.

    Attributes:
        adapter: Exchange hooks (decode_frame, ws_url, name)
        max_reconnect_delay: Upper bound of the reconnect backoff in seconds
        backoff_base: Delay of the first reconnect attempt in seconds
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        connector: Optional[Connector] = None,
        max_reconnect_delay: Optional[float] = None,
        backoff_base: float = 1.0
    ):
        self.adapter = adapter
        self._connector = connector or default_connector
        self.max_reconnect_delay = max_reconnect_delay or settings.ws_max_reconnect_delay
        self.backoff_base = backoff_base
        self._connections: Dict[str, _Connection] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger(__name__)

    # ============================================
    # Subscription Management
    # ============================================

    async def subscribe(
        self,
        stream_key: str,
        on_message: MessageCallback,
        on_connect: Optional[ConnectCallback] = None,
        url: Optional[str] = None
    ) -> Subscription:
        """
        Add a logical stream subscription.

        Args:
            stream_key: Logical stream id (frames are routed by it)
            on_message: Called with each routed payload. Plain functions run
                        inline and must be quick; coroutine functions run as
                        separate tasks.
            on_connect: Called with the subscription after every (re)connect
                        (and immediately if the socket is already open)
            url: Socket URL (default: adapter.ws_url)

        Returns:
            Subscription handle
        """
        url = url or self.adapter.ws_url
        if not url:
            raise TransportError("No websocket URL configured", exchange=self.adapter.name)

        async with self._lock:
            conn = self._connections.get(url)
            if conn is None:
                conn = _Connection(url)
                self._connections[url] = conn
                conn.task = asyncio.create_task(self._run(conn))

            sub = Subscription(self, stream_key, url, on_message, on_connect, asyncio.get_running_loop())
            conn.subscriptions.append(sub)
            joined_open = conn.ws is not None

        log_websocket_event(self.adapter.name, "subscribed", stream_key)

        if joined_open:
            await self._run_on_connect(sub)

        return sub

    async def unsubscribe(self, sub: Subscription) -> None:
        """Remove one subscription; the last one on a URL closes the socket."""
        async with self._lock:
            if not sub.active:
                return
            sub.active = False

            conn = self._connections.get(sub.url)
            if conn is None:
                return

            if sub in conn.subscriptions:
                conn.subscriptions.remove(sub)

            if conn.subscriptions:
                log_websocket_event(self.adapter.name, "unsubscribed", sub.stream_key)
                return

            del self._connections[sub.url]
            conn.running = False

        log_websocket_event(self.adapter.name, "unsubscribed", sub.stream_key, "last subscription, closing socket")
        await self._shutdown(conn)

    async def send(self, url: str, message: Any) -> None:
        conn = self._connections.get(url)
        if conn is None or conn.ws is None:
            raise TransportError(f"Websocket {url} is not connected", exchange=self.adapter.name)

        text = message if isinstance(message, str) else json.dumps(message)
        await conn.ws.send(text)

    async def close_all(self) -> None:
        """Dispose every subscription and close every socket."""
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            for conn in connections:
                conn.running = False
                for sub in conn.subscriptions:
                    sub.active = False
                conn.subscriptions.clear()

        for conn in connections:
            await self._shutdown(conn)

    def connection_count(self) -> int:
        return len(self._connections)

    async def wait_connected(self, url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        """Wait until the socket for `url` is open."""
        conn = self._connections.get(url or self.adapter.ws_url)
        if conn is None:
            raise TransportError(f"No subscription on {url}", exchange=self.adapter.name)
        await asyncio.wait_for(conn.connected.wait(), timeout)

    # ============================================
    # Connection Loop with Auto-Reconnect
    # ============================================

    async def _run(self, conn: _Connection) -> None:
        name = self.adapter.name

        while conn.running:
            ws = None
            try:
                ws = await self._connector(conn.url)
                conn.reconnect_attempt = 0

                async with self._lock:
                    if not conn.running:
                        break
                    conn.ws = ws
                    conn.bindings.clear()
                    subscriptions = list(conn.subscriptions)
                    conn.connected.set()

                log_websocket_event(name, "connected", details=conn.url)

                for sub in subscriptions:
                    await self._run_on_connect(sub)

                while conn.running:
                    frame = await ws.recv()
                    self._dispatch(conn, frame)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                if conn.running:
                    log_websocket_event(name, "error", details=f"{conn.url}: {e}")

            finally:
                conn.ws = None
                conn.connected.clear()
                if ws is not None:
                    await self._close_socket(ws)

            # Reconnect logic with exponential backoff
            if conn.running:
                conn.reconnect_attempt += 1
                delay = min(self.backoff_base * 2 ** (conn.reconnect_attempt - 1), self.max_reconnect_delay)
                self.logger.warning(
                    f"{name} websocket {conn.url} reconnecting in {delay}s... "
                    f"(attempt {conn.reconnect_attempt})"
                )
                await asyncio.sleep(delay)

        log_websocket_event(name, "disconnected", details=conn.url)

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            self.logger.debug(f"Error while closing websocket: {e}")

    async def _shutdown(self, conn: _Connection) -> None:
        if conn.ws is not None:
            await self._close_socket(conn.ws)

        task = conn.task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ============================================
    # Frame Routing
    # ============================================

    def _dispatch(self, conn: _Connection, frame: Any) -> None:
        if isinstance(frame, bytes):
            frame = frame.decode("utf-8", errors="replace")

        try:
            envelope = self.adapter.decode_frame(frame)
        except Exception as e:
            self.logger.warning(f"{self.adapter.name} dropped malformed frame ({e}): {str(frame)[:100]}")
            return

        if envelope is None:
            return

        if envelope.bind:
            if envelope.channel_id is not None and envelope.stream_key is not None:
                conn.bindings[str(envelope.channel_id)] = envelope.stream_key
                self.logger.debug(f"{self.adapter.name} bound channel {envelope.channel_id} -> {envelope.stream_key}")
            return

        for sub in self._route(conn, envelope):
            self._deliver(conn, sub, envelope.data)

    def _route(self, conn: _Connection, envelope: StreamEnvelope) -> List[Subscription]:
        key = envelope.stream_key
        if key is None and envelope.channel_id is not None:
            key = conn.bindings.get(str(envelope.channel_id))
            if key is None:
                self.logger.debug(f"{self.adapter.name} frame for unbound channel {envelope.channel_id} dropped")
                return []

        if key is None:
            return list(conn.subscriptions)

        return [sub for sub in conn.subscriptions if sub.stream_key == key]

    def _deliver(self, conn: _Connection, sub: Subscription, data: Any) -> None:
        if not sub.active:
            return

        if inspect.iscoroutinefunction(sub.on_message):
            task = asyncio.create_task(self._guarded(sub, sub.on_message(data)))
            conn.callback_tasks.add(task)
            task.add_done_callback(conn.callback_tasks.discard)
            return

        try:
            sub.on_message(data)
        except Exception as e:
            self.logger.error(f"{self.adapter.name} callback for {sub.stream_key} failed: {e}")

    async def _guarded(self, sub: Subscription, coro: Awaitable[Any]) -> None:
        try:
            await coro
        except Exception as e:
            self.logger.error(f"{self.adapter.name} callback for {sub.stream_key} failed: {e}")

    async def _run_on_connect(self, sub: Subscription) -> None:
        if sub.on_connect is None or not sub.active:
            return
        try:
            result = sub.on_connect(sub)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.logger.error(f"{self.adapter.name} on_connect for {sub.stream_key} failed: {e}")

    def __repr__(self) -> str:
        return f"<WebSocketConnectionManager(exchange='{self.adapter.name}', connections={len(self._connections)})>"
