"""
Shared fixtures for unit tests.

Nothing here touches the network:
- FakeTransport answers HttpRequests from canned responses keyed by URL fragment
- FakeWebSocket / FakeConnector stand in for websockets.connect()
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from core.schemas import Credentials, HttpRequest, HttpResponse


# ============================================
# HTTP
# ============================================

class FakeTransport:
    """
    Canned HTTP responses.

    Routes are matched by substring of the request URL, most recently added
    first. Each route serves its responses in order and keeps repeating the
    last one. A response that is an exception instance is raised instead.
    """

    def __init__(self):
        self.requests: List[HttpRequest] = []
        self.routes: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, fragment: str, *bodies: Any, status: int = 200, headers: Optional[Dict[str, str]] = None):
        responses = [
            body if isinstance(body, (HttpResponse, Exception))
            else HttpResponse(status=status, headers=headers or {}, text=json.dumps(body))
            for body in bodies
        ]
        self.routes.insert(0, {"fragment": fragment, "responses": responses})
        return self

    def add_text(self, fragment: str, text: str, status: int = 200):
        return self.add(fragment, HttpResponse(status=status, text=text))

    def calls(self, fragment: str) -> List[HttpRequest]:
        return [r for r in self.requests if fragment in r.url]

    async def send(self, request: HttpRequest, timeout: Optional[float] = None) -> HttpResponse:
        self.requests.append(request)

        for route in self.routes:
            if route["fragment"] in request.url:
                responses = route["responses"]
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                return response

        raise AssertionError(f"Unexpected request: {request.method} {request.url}")

    async def close(self) -> None:
        self.closed = True


# ============================================
# WebSocket
# ============================================

class FakeWebSocket:
    """In-memory socket: push() queues inbound frames, sent collects outbound ones."""

    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, frame: Any) -> None:
        self._incoming.put_nowait(frame if isinstance(frame, (str, bytes, Exception)) else json.dumps(frame))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(ConnectionError("connection lost"))

    def sent_json(self) -> List[Any]:
        return [json.loads(text) for text in self.sent]

    async def send(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(text)

    async def recv(self) -> Any:
        frame = await self._incoming.get()
        if isinstance(frame, Exception):
            raise frame
        return frame

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(ConnectionError("socket closed"))


class FakeConnector:
    """
    Connector handing out a fresh FakeWebSocket per connect.

    Attributes:
        sockets: Every socket opened, in order
        urls: URL of every connect attempt
        opened: Set whenever a socket is handed out
    """

    def __init__(self):
        self.sockets: List[FakeWebSocket] = []
        self.urls: List[str] = []
        self.opened = asyncio.Event()

    async def __call__(self, url: str) -> FakeWebSocket:
        ws = FakeWebSocket()
        self.urls.append(url)
        self.sockets.append(ws)
        self.opened.set()
        return ws

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def wait_for_socket(self, count: int = 1, timeout: float = 2.0) -> FakeWebSocket:
        async def _wait():
            while len(self.sockets) < count:
                await asyncio.sleep(0.005)
        await asyncio.wait_for(_wait(), timeout)
        return self.sockets[count - 1]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true (used for background websocket tasks)."""
    async def _wait():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_wait(), timeout)


# ============================================
# Fixtures
# ============================================

@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_connector():
    return FakeConnector()


@pytest.fixture
def waiter():
    """Expose wait_until to tests without importing conftest."""
    return wait_until


@pytest.fixture
def credentials():
    # base64 private key so exchanges that decode the secret accept it
    return Credentials(public_key="test-key", private_key="c2VjcmV0LWtleQ==", passphrase="test-pass")
