"""
HTTP Transport

The pipeline never talks to the network directly; it hands an HttpRequest to
an HttpTransport and gets an HttpResponse back. Tests inject a fake transport,
production uses AiohttpTransport.

Usage:
    async with AiohttpTransport() as transport:
        response = await transport.send(HttpRequest(url="https://..."), timeout=10)
"""

from typing import Optional, Protocol, runtime_checkable

import aiohttp

from core.config import settings
from core.logging import get_logger
from core.schemas import HttpRequest, HttpResponse


@runtime_checkable
class HttpTransport(Protocol):
    """Anything that can deliver one HttpRequest."""

    async def send(self, request: HttpRequest, timeout: Optional[float] = None) -> HttpResponse:
        """
        Perform the request and return the raw response.

        Non-2xx statuses are returned, not raised. Network failures raise
        aiohttp.ClientError, asyncio.TimeoutError or OSError; the pipeline
        classifies them.
        """
        ...

    async def close(self) -> None:
        ...


class AiohttpTransport:
    """
    aiohttp-backed transport with one pooled ClientSession.

    The session is created lazily on first use (or on `async with`) so that
    it binds to the event loop that actually performs requests.

    Attributes:
        session: aiohttp ClientSession for HTTP requests
        user_agent: User-Agent header added to every request
    """

    def __init__(self, user_agent: Optional[str] = None):
        self.user_agent = user_agent or settings.user_agent
        self.session: Optional[aiohttp.ClientSession] = None
        self.logger = get_logger(__name__)

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={
                    "User-Agent": self.user_agent,
                    "Accept-Language": "en-US,en;q=0.5",
                }
            )
            self.logger.debug("HTTP session created")
        return self.session

    async def close(self) -> None:
        """Close the HTTP session. Safe to call multiple times."""
        if self.session and not self.session.closed:
            await self.session.close()
            self.logger.debug("HTTP session closed")

    # ============================================
    # Request Handling
    # ============================================

    async def send(self, request: HttpRequest, timeout: Optional[float] = None) -> HttpResponse:
        session = self._ensure_session()
        client_timeout = aiohttp.ClientTimeout(total=timeout) if timeout else None

        async with session.request(
            request.method,
            request.url,
            headers=request.headers,
            data=request.body.encode("utf-8") if request.body is not None else None,
            timeout=client_timeout
        ) as resp:
            text = await resp.text()
            return HttpResponse(
                status=resp.status,
                headers={key: value for key, value in resp.headers.items()},
                text=text
            )
