"""
Exchange Adapter: Hook Contract for All Exchanges

Every exchange plugs into the gateway through one adapter object. The
adapter is handed to RequestPipeline, WebSocketConnectionManager and
ExchangeClient as a value; the core never hard-codes exchange behavior.

Design Philosophy:
    "Program to an interface, not an implementation"

    The core calls hooks; adapters decide how their exchange spells URLs,
    bodies, signatures, errors, symbols and stream envelopes.

Hook points (request path, called by RequestPipeline in this order):
    build_url(url, payload, method)        -> final URL (query string, etc.)
    serialize(request, payload)            -> request.body / content type
    sign(request, payload, credentials)    -> signature headers or fields
    process_response(response)             -> look at headers (cursors, ...)
    validate_response(data)                -> unwrapped payload or raise

Metadata:
    name, base_url, ws_url, nonce_format, nonce_offset_seconds,
    rate_limit, symbols (SymbolNormalizer), capabilities

Stream hooks (called by WebSocketConnectionManager / ExchangeClient):
    decode_frame(text)                     -> StreamEnvelope or None
    ticker_stream(native_symbol)           -> StreamSpec
    fills_stream(credentials, nonce)       -> StreamSpec

Translation operations (async, receive the connection's RequestPipeline):
    fetch_markets, fetch_ticker, fetch_order_book, place_order,
    cancel_order, fetch_order, fetch_fills, parse_ticker_frame,
    parse_fill_frame

Capabilities System:
    Each adapter declares which operations it offers in `capabilities`.
    ExchangeClient checks the table before doing anything, so an unsupported
    operation fails with NotSupportedError without touching the network.

Example:
    class MyExchangeAdapter(ExchangeAdapter):
        name = "myexchange"
        base_url = "https://api.myexchange.com"
        capabilities = {**ExchangeAdapter.capabilities, "ticker": True}

        async def fetch_ticker(self, pipeline, native_symbol):
            data = await pipeline.request(f"/ticker/{native_symbol}")
            return Ticker(...)
"""

import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit

from pydantic import BaseModel

from core.config import settings
from core.errors import AuthError, DomainError, ExchangeError, IntegrityError, NotSupportedError
from core.schemas import (
    ConsolidatedOrder,
    Credentials,
    HttpRequest,
    HttpResponse,
    Market,
    Nonce,
    NonceFormat,
    OrderBook,
    OrderRequest,
    RawFill,
    StreamEnvelope,
    Ticker,
)
from core.symbols import AlgorithmicSymbolNormalizer, SymbolNormalizer


class StreamSpec(BaseModel):
    """
    Where and how to subscribe to one logical stream.

    Attributes:
        url: Socket endpoint (subscriptions with the same url share a socket)
        stream_key: Logical stream id used to route inbound frames
        messages: Frames to send on every (re)connect, in order
                  (auth frame first where the exchange requires one)
    """

    url: str
    stream_key: str
    messages: List[Any] = []


# Keys looked at by the default response convention
_ERROR_FIELDS = ("error", "errorCode", "error_code", "Error")
_STATUS_FIELDS = ("status", "Status")
_SUCCESS_FIELDS = ("success", "Success")
_PAYLOAD_FIELDS = ("result", "data", "return", "Result", "Data", "Return")


class ExchangeAdapter:
    """
    Base adapter with the most common exchange conventions built in.

    Adapters override only the hooks where their exchange differs. Defaults:
        - GET/DELETE payloads go into the query string
        - POST/PUT payloads are sent as a JSON body
        - Signing is not supported (override sign() for private endpoints)
        - Error convention: non-empty error field, status == "error",
          success == false, or a non-zero "code"; success payloads are
          unwrapped from result/data/return
    """

    # ============================================
    # Metadata (set by subclasses)
    # ============================================

    name: str = "generic"
    base_url: str = ""
    ws_url: str = ""

    nonce_format: NonceFormat = NonceFormat.UNIX_MILLISECONDS
    nonce_offset_seconds: float = 0.0

    # (max_requests, per_seconds); None uses settings
    rate_limit: Optional[Tuple[int, float]] = None

    content_type: str = "application/json"

    # When set, a "status" field outside these values is an error (e.g. ("ok",))
    ok_status_values: Optional[Tuple[str, ...]] = None

    # Lowercase substrings that identify a rejected signature/nonce/key
    auth_error_markers: Tuple[str, ...] = (
        "signature",
        "nonce",
        "api key",
        "api-key",
        "apikey",
        "unauthorized",
        "permission denied",
        "invalid key",
    )

    capabilities: Dict[str, bool] = {
        "markets": False,
        "ticker": False,
        "order_book": False,
        "place_order": False,
        "cancel_order": False,
        "order_details": False,
        "fills": False,
        "stream_tickers": False,
        "stream_fills": False,
    }

    def __init__(self, symbols: Optional[SymbolNormalizer] = None):
        self.symbols: SymbolNormalizer = symbols or AlgorithmicSymbolNormalizer(exchange=self.name)

    def supports(self, feature: str) -> bool:
        return self.capabilities.get(feature, False)

    def get_rate_limit(self) -> Tuple[int, float]:
        return self.rate_limit or (settings.rate_limit_requests, settings.rate_limit_seconds)

    # ============================================
    # Request Hooks
    # ============================================

    def build_url(self, url: str, payload: Dict[str, Any], method: str) -> str:
        """Move GET/DELETE payloads into the query string."""
        if method in ("GET", "DELETE") and payload:
            separator = "&" if urlsplit(url).query else "?"
            return f"{url}{separator}{urlencode(payload)}"
        return url

    def serialize(self, request: HttpRequest, payload: Dict[str, Any]) -> None:
        """Write POST/PUT payloads as the request body."""
        request.headers.setdefault("Content-Type", self.content_type)
        if request.method in ("POST", "PUT") and payload:
            if self.content_type == "application/x-www-form-urlencoded":
                request.body = urlencode(payload)
            else:
                request.body = json.dumps(payload, default=str, separators=(",", ":"))

    def sign(self, request: HttpRequest, payload: Dict[str, Any], credentials: Credentials) -> None:
        raise NotSupportedError("Signed requests are not supported", exchange=self.name)

    def process_response(self, response: HttpResponse) -> None:
        """Inspect raw response headers; default does nothing."""

    def validate_response(self, data: Any) -> Any:
        """
        Raise if `data` represents an error, otherwise return the payload.

        Arrays are returned untouched. Objects are checked against the common
        conventions and unwrapped from result/data/return when present.
        """
        if data is None:
            raise IntegrityError("No result from server", exchange=self.name)

        if not isinstance(data, dict):
            return data

        message = self._error_message(data)
        if message is not None:
            raise self.classify_error(message, data)

        for field in _PAYLOAD_FIELDS:
            if data.get(field) is not None:
                return data[field]

        return data

    def _error_message(self, data: Dict[str, Any]) -> Optional[str]:
        for field in _ERROR_FIELDS:
            value = data.get(field)
            if value not in (None, "", [], {}):
                return value if isinstance(value, str) else json.dumps(value, default=str)

        for field in _STATUS_FIELDS:
            if field not in data:
                continue
            status = str(data[field]).lower()
            if status == "error" or (self.ok_status_values is not None and status not in self.ok_status_values):
                return str(data.get("message") or data.get("msg") or json.dumps(data, default=str))

        for field in _SUCCESS_FIELDS:
            if field in data and data[field] is not True and str(data[field]).lower() != "true":
                return str(data.get("message") or data.get("msg") or json.dumps(data, default=str))

        code = data.get("code")
        if code not in (None, "", 0, "0", 200, "200") and ("msg" in data or "message" in data):
            return str(data.get("msg") or data.get("message"))

        return None

    def classify_error(self, message: str, raw: Any = None) -> ExchangeError:
        """Map an exchange error message to AuthError or DomainError."""
        lowered = message.lower()
        if any(marker in lowered for marker in self.auth_error_markers):
            return AuthError(message, exchange=self.name, raw=raw)
        return DomainError(message, exchange=self.name, raw=raw)

    # ============================================
    # Stream Hooks
    # ============================================

    def decode_frame(self, text: str) -> Optional[StreamEnvelope]:
        """
        Decode one inbound frame.

        Default: JSON object or array delivered to every subscription on the
        socket. Raises ValueError for malformed frames.
        """
        return StreamEnvelope(data=json.loads(text))

    def ticker_stream(self, native_symbol: str) -> StreamSpec:
        raise NotSupportedError("Ticker streams are not supported", exchange=self.name)

    def fills_stream(self, credentials: Credentials, nonce: Nonce) -> StreamSpec:
        raise NotSupportedError("Fill streams are not supported", exchange=self.name)

    def parse_ticker_frame(self, data: Any, native_symbol: str) -> Optional[Ticker]:
        raise NotSupportedError("Ticker streams are not supported", exchange=self.name)

    def parse_fill_frame(self, data: Any) -> List[RawFill]:
        raise NotSupportedError("Fill streams are not supported", exchange=self.name)

    # ============================================
    # Translation Operations
    # ============================================

    async def fetch_markets(self, pipeline) -> List[Market]:
        raise NotSupportedError("Market metadata is not supported", exchange=self.name)

    async def fetch_ticker(self, pipeline, native_symbol: str) -> Ticker:
        raise NotSupportedError("Tickers are not supported", exchange=self.name)

    async def fetch_order_book(self, pipeline, native_symbol: str, depth: int) -> OrderBook:
        raise NotSupportedError("Order books are not supported", exchange=self.name)

    async def place_order(self, pipeline, order: OrderRequest, native_symbol: str) -> ConsolidatedOrder:
        raise NotSupportedError("Placing orders is not supported", exchange=self.name)

    async def cancel_order(self, pipeline, order_id: str, native_symbol: Optional[str]) -> None:
        raise NotSupportedError("Canceling orders is not supported", exchange=self.name)

    async def fetch_order(
        self,
        pipeline,
        order_id: str,
        native_symbol: Optional[str]
    ) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        """Return the order as placed (no fills folded) plus its fills."""
        raise NotSupportedError("Order details are not supported", exchange=self.name)

    async def fetch_fills(self, pipeline, native_symbol: Optional[str]) -> List[RawFill]:
        raise NotSupportedError("Fill history is not supported", exchange=self.name)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}')>"

