"""
Request Pipeline

Every REST call of an exchange connection goes through one RequestPipeline.
The pipeline owns the connection's nonce generator, rate gate and response
cache, and drives the adapter hooks in a fixed order:

    1. private calls: require credentials, put a fresh nonce into the payload
    2. adapter.build_url(url, payload, method)
    3. adapter.serialize(request, payload)
    4. adapter.sign(request, payload, credentials)     (private calls only)
    5. rate gate, then transport.send()
    6. adapter.process_response(response), status and body validation,
       adapter.validate_response(data)
    7. optional decode into a pydantic model (request_model)

Rate Limit Handling:
    - 429: Too many requests
    - 418: IP banned (temporary)
    - 503: Service unavailable

    Retried with a delay of 1.5s * (attempt + 1), up to
    settings.request_max_retries attempts. Each retry re-runs steps 1-5, so a
    signed request gets a fresh nonce. Exhausted retries raise TransportError.

Nothing exchange-reported is swallowed: auth rejections raise AuthError and
are never retried, business rejections raise DomainError with the exchange's
message verbatim.

Usage:
    pipeline = RequestPipeline(adapter, transport, credentials)
    data = await pipeline.request("/api/v3/ticker/bookTicker", payload={"symbol": "BTCUSDT"})
    order = await pipeline.request("/api/v3/order", payload=params, method="POST", private=True)
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional

import aiohttp
from pydantic import TypeAdapter, ValidationError

from core.adapter import ExchangeAdapter
from core.cache import ResponseCache, make_key
from core.config import settings
from core.errors import AuthError, DomainError, ExchangeError, IntegrityError, TransportError
from core.logging import get_logger, log_api_request, log_api_response
from core.nonce import NonceGenerator
from core.rate_gate import RateGate
from core.schemas import Credentials, HttpRequest, HttpResponse
from core.transport import AiohttpTransport, HttpTransport


RATE_LIMIT_STATUSES = (429, 418, 503)
AUTH_STATUSES = (401, 403)

# Request states reported to listeners
REQUEST_BEGIN = "begin"
REQUEST_FINISHED = "finished"
REQUEST_ERROR = "error"

RequestListener = Callable[[str, str, Any], None]


class RequestPipeline:
    """
    Signed, rate-limited, cached REST requests for one exchange connection.

    Attributes:
        adapter: Exchange hooks
        transport: HTTP boundary (AiohttpTransport unless injected)
        credentials: API keys (None for public-only connections)
        nonce: Nonce generator in the adapter's format
        gate: Rate gate sized from the adapter's rate limit
        cache: Response cache for cacheable public calls
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        transport: Optional[HttpTransport] = None,
        credentials: Optional[Credentials] = None,
        nonce: Optional[NonceGenerator] = None,
        gate: Optional[RateGate] = None,
        cache: Optional[ResponseCache] = None
    ):
        self.adapter = adapter
        self.transport = transport or AiohttpTransport()
        self.credentials = credentials
        self.nonce = nonce or NonceGenerator(adapter.nonce_format, adapter.nonce_offset_seconds)

        if gate is None:
            max_requests, per_seconds = adapter.get_rate_limit()
            gate = RateGate(max_requests, per_seconds)
        self.gate = gate

        self.cache = cache or ResponseCache()
        self.logger = get_logger(__name__)
        self._listeners: List[RequestListener] = []

    # ============================================
    # Request State Listeners
    # ============================================

    def add_listener(self, listener: RequestListener) -> None:
        """
        Register a callback invoked as listener(state, url, detail).

        States: "begin" (detail = method), "finished" (detail = parsed
        payload), "error" (detail = the exception).
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: RequestListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, state: str, url: str, detail: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(state, url, detail)
            except Exception as e:
                self.logger.warning(f"Request listener failed on '{state}' for {url}: {e}")

    # ============================================
    # Public API
    # ============================================

    async def request(
        self,
        path: str,
        *,
        base_url: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        method: Optional[str] = None,
        private: bool = False,
        cacheable: bool = False,
        cache_ttl: Optional[float] = None,
        timeout: Optional[float] = None
    ) -> Any:
        """
        Perform one REST call and return the validated JSON payload.

        Args:
            path: Endpoint path appended to the base URL
            base_url: Overrides the adapter's base URL
            payload: Parameters; never mutated
            method: HTTP verb (default GET, POST for private calls)
            private: Sign the request with the connection's credentials
            cacheable: Serve from the response cache (public GET only)
            cache_ttl: Cache lifetime in seconds (default markets_cache_ttl)
            timeout: Deadline covering rate gate wait and transport
                     (default settings.request_timeout)

        Returns:
            JSON value after adapter.validate_response()

        Raises:
            AuthError: Missing credentials, 401/403, or auth-related exchange error
            DomainError: Exchange-reported rejection
            TransportError: Network failure, timeout, exhausted rate-limit retries
            IntegrityError: Unparseable success response
        """
        method = (method or ("POST" if private else "GET")).upper()
        url = f"{base_url or self.adapter.base_url}{path}"
        payload = dict(payload or {})

        if cacheable and method == "GET" and not private:
            key = make_key(method, url=url, path=path, payload=json.dumps(payload, sort_keys=True, default=str))
            ttl = settings.markets_cache_ttl if cache_ttl is None else cache_ttl
            return await self.cache.get_or_compute(
                key, ttl, lambda: self._execute(url, path, payload, method, private, timeout)
            )

        return await self._execute(url, path, payload, method, private, timeout)

    async def request_model(self, shape: Any, path: str, **kwargs) -> Any:
        """
        Perform a request and decode the payload into `shape`.

        Args:
            shape: Pydantic model or type (e.g. List[Market])
            path: Endpoint path
            **kwargs: Passed through to request()

        Raises:
            IntegrityError: If the payload does not decode into `shape`
        """
        data = await self.request(path, **kwargs)
        try:
            return TypeAdapter(shape).validate_python(data)
        except ValidationError as e:
            raise IntegrityError(
                f"Response from {path} does not match {getattr(shape, '__name__', shape)}: {e}",
                exchange=self.adapter.name,
                raw=data
            )

    async def close(self) -> None:
        await self.transport.close()

    # ============================================
    # Request Execution with Retry Logic
    # ============================================

    def _build_request(
        self,
        url: str,
        path: str,
        payload: Dict[str, Any],
        method: str,
        private: bool
    ) -> HttpRequest:
        """Run the adapter hooks for one attempt (steps 1-4)."""
        attempt_payload = dict(payload)

        if private:
            if self.credentials is None:
                raise AuthError("Credentials are required for private requests", exchange=self.adapter.name)
            # Nonce first: some exchanges sign the form body in insertion order
            attempt_payload = {"nonce": self.nonce.next(), **attempt_payload}

        request = HttpRequest(
            method=method,
            url=self.adapter.build_url(url, attempt_payload, method),
            path=path,
        )
        self.adapter.serialize(request, attempt_payload)

        if private:
            self.adapter.sign(request, attempt_payload, self.credentials)

        log_api_request(self.adapter.name, method, path, attempt_payload, private=private)
        return request

    async def _execute(
        self,
        url: str,
        path: str,
        payload: Dict[str, Any],
        method: str,
        private: bool,
        timeout: Optional[float]
    ) -> Any:
        loop = asyncio.get_running_loop()
        budget = timeout if timeout is not None else settings.request_timeout
        deadline = loop.time() + budget
        max_retries = settings.request_max_retries

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise TransportError(f"Request to {path} timed out after {budget:.3f}s", exchange=self.adapter.name)
            return left

        self._notify(REQUEST_BEGIN, url, method)

        try:
            for attempt in range(max_retries):
                request = self._build_request(url, path, payload, method, private)

                await self.gate.acquire(timeout=remaining())
                response = await self._send(request, path, remaining())

                # Rate limit errors - retry with backoff
                if response.status in RATE_LIMIT_STATUSES:
                    if attempt + 1 >= max_retries:
                        self.logger.warning(
                            f"Rate limited (HTTP {response.status}) on {self.adapter.name} {path}. "
                            f"Retries exhausted ({max_retries}/{max_retries})"
                        )
                        continue

                    delay = 1.5 * (attempt + 1)
                    self.logger.warning(
                        f"Rate limited (HTTP {response.status}) on {self.adapter.name} {path}. "
                        f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{max_retries})"
                    )
                    await asyncio.sleep(min(delay, remaining()))
                    continue

                data = self._handle_response(response, path)
                self._notify(REQUEST_FINISHED, url, data)
                return data

            raise TransportError(
                f"Rate limited on {path} after {max_retries} attempts",
                exchange=self.adapter.name
            )

        except ExchangeError as e:
            self._notify(REQUEST_ERROR, url, e)
            raise

    async def _send(self, request: HttpRequest, path: str, timeout: float) -> HttpResponse:
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self.transport.send(request, timeout=timeout), timeout)
        except asyncio.TimeoutError:
            raise TransportError(f"Timeout on {path} after {timeout:.3f}s", exchange=self.adapter.name)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(f"Request failed on {path}: {e}", exchange=self.adapter.name)

        log_api_response(self.adapter.name, path, response.status, time.monotonic() - started)
        return response

    def _handle_response(self, response: HttpResponse, path: str) -> Any:
        """Status and body validation (step 6)."""
        name = self.adapter.name
        self.adapter.process_response(response)

        if response.status in AUTH_STATUSES:
            raise AuthError(response.text or f"HTTP {response.status} on {path}", exchange=name, raw=response.text)

        if response.status >= 500:
            raise TransportError(f"HTTP {response.status} on {path}: {response.text}", exchange=name, raw=response.text)

        try:
            data = json.loads(response.text) if response.text.strip() else None
        except ValueError:
            if response.status >= 400:
                raise DomainError(response.text, exchange=name, raw=response.text)
            raise IntegrityError(f"Response from {path} is not JSON: {response.text[:200]}", exchange=name,
                                 raw=response.text)

        if response.status >= 400:
            if data is not None:
                # Raises with the exchange's own message when it follows a convention
                self.adapter.validate_response(data)
            self.logger.error(f"HTTP {response.status} on {name} {path}: {response.text}")
            raise DomainError(response.text or f"HTTP {response.status} on {path}", exchange=name, raw=data)

        return self.adapter.validate_response(data)

    def __repr__(self) -> str:
        return f"<RequestPipeline(exchange='{self.adapter.name}', gate={self.gate!r})>"
