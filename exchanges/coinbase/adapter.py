"""
Coinbase Exchange Adapter

Hooks and translations for the Coinbase Exchange (formerly GDAX / Coinbase
Pro) REST API and websocket feed.

API Documentation:
    https://docs.cloud.coinbase.com/exchange/reference

Endpoints Used:
    REST (public):
        - GET /products - Product metadata
        - GET /products/<id>/ticker - Best bid/ask and last trade
        - GET /products/<id>/book?level=2 - Aggregated order book
    REST (signed):
        - POST /orders - Place order
        - DELETE /orders/<id> - Cancel order
        - GET /orders/<id> - Order status
        - GET /fills - Fill history (by order_id or product_id)

    WebSocket:
        - wss://ws-feed.exchange.coinbase.com - "ticker" channel

Signing:
    CB-ACCESS-SIGN = base64(HMAC-SHA256(base64decode(secret),
                                        timestamp + METHOD + request_path + body))
    sent with CB-ACCESS-KEY, CB-ACCESS-TIMESTAMP (unix seconds, the nonce)
    and CB-ACCESS-PASSPHRASE.

Error Convention:
    HTTP 4xx with {"message": "Insufficient funds"}
"""

import base64
import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from core.adapter import ExchangeAdapter, StreamSpec
from core.errors import AuthError, DomainError
from core.logging import get_logger
from core.reconciler import open_order
from core.schemas import (
    ConsolidatedOrder,
    Credentials,
    HttpRequest,
    HttpResponse,
    Market,
    NonceFormat,
    OrderBook,
    OrderBookEntry,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    RawFill,
    StreamEnvelope,
    Ticker,
)
from core.symbols import AlgorithmicSymbolNormalizer, split_canonical
from core.utils.decimal import to_decimal, to_optional_decimal
from core.utils.time import to_utc_datetime


def parse_order_status(status: Optional[str], done_reason: Optional[str] = None) -> OrderStatus:
    """
    Map a Coinbase order status.

    "done" orders finish either filled or canceled, which done_reason tells
    apart. Anything unrecognized is UNKNOWN.
    """
    status = (status or "").lower()

    if status in ("pending", "open", "active", "received"):
        return OrderStatus.PENDING
    if status in ("done", "settled"):
        if (done_reason or "").lower() in ("canceled", "cancelled"):
            return OrderStatus.CANCELED
        return OrderStatus.FILLED
    if status in ("canceled", "cancelled"):
        return OrderStatus.CANCELED
    if status == "rejected":
        return OrderStatus.ERROR
    return OrderStatus.UNKNOWN


class CoinbaseAdapter(ExchangeAdapter):
    """
    Coinbase Exchange adapter.

    Credentials must include a passphrase.

    Attributes:
        last_cursor: CB-AFTER pagination cursor of the last response
    """

    name = "coinbase"
    base_url = "https://api.exchange.coinbase.com"
    ws_url = "wss://ws-feed.exchange.coinbase.com"

    nonce_format = NonceFormat.UNIX_SECONDS_STRING
    rate_limit = (10, 1.0)

    auth_error_markers = ExchangeAdapter.auth_error_markers + ("invalid passphrase", "request timestamp expired")

    capabilities = {
        **ExchangeAdapter.capabilities,
        "markets": True,
        "ticker": True,
        "order_book": True,
        "place_order": True,
        "cancel_order": True,
        "order_details": True,
        "fills": True,
        "stream_tickers": True,
    }

    def __init__(self, symbols=None):
        super().__init__(symbols or AlgorithmicSymbolNormalizer(separator="-", exchange=self.name))
        self.last_cursor: Optional[str] = None
        self.logger = get_logger(__name__)

    # ============================================
    # Request Hooks
    # ============================================

    def build_url(self, url: str, payload: Dict[str, Any], method: str) -> str:
        # The nonce is the CB-ACCESS-TIMESTAMP header, never a parameter
        params = {key: value for key, value in payload.items() if key != "nonce"}
        return super().build_url(url, params, method)

    def serialize(self, request: HttpRequest, payload: Dict[str, Any]) -> None:
        params = {key: value for key, value in payload.items() if key != "nonce"}
        super().serialize(request, params)

    def sign(self, request: HttpRequest, payload: Dict[str, Any], credentials: Credentials) -> None:
        if credentials.passphrase is None:
            raise AuthError("Coinbase credentials require a passphrase", exchange=self.name)

        timestamp = str(payload["nonce"])
        parts = urlsplit(request.url)
        request_path = f"{parts.path}?{parts.query}" if parts.query else parts.path
        message = f"{timestamp}{request.method}{request_path}{request.body or ''}"

        digest = hmac.new(
            base64.b64decode(credentials.private_key.get_secret_value()),
            message.encode("utf-8"),
            hashlib.sha256
        ).digest()

        request.headers["CB-ACCESS-KEY"] = credentials.public_key.get_secret_value()
        request.headers["CB-ACCESS-SIGN"] = base64.b64encode(digest).decode("utf-8")
        request.headers["CB-ACCESS-TIMESTAMP"] = timestamp
        request.headers["CB-ACCESS-PASSPHRASE"] = credentials.passphrase.get_secret_value()

    def process_response(self, response: HttpResponse) -> None:
        for key, value in response.headers.items():
            if key.upper() == "CB-AFTER":
                self.last_cursor = value

    def validate_response(self, data: Any) -> Any:
        # Errors are a bare {"message": ...} object
        if isinstance(data, dict) and "message" in data and "id" not in data and len(data) <= 2:
            raise self.classify_error(str(data["message"]), data)
        return super().validate_response(data)

    # ============================================
    # Parsing Helpers
    # ============================================

    def _parse_order(self, token: Dict[str, Any]) -> ConsolidatedOrder:
        """
        {"id": "d0c5340b-...", "price": "100.00", "size": "2.0", "product_id": "BTC-USD",
         "side": "buy", "type": "limit", "created_at": "2024-01-01T12:00:00.000Z",
         "fill_fees": "0.0", "filled_size": "0.0", "executed_value": "0.0",
         "status": "pending", "settled": false}
        """
        return open_order(
            order_id=str(token["id"]),
            symbol=self.symbols.to_canonical_symbol(token["product_id"]),
            side=OrderSide(token["side"].lower()),
            amount=to_optional_decimal(token.get("size")),
            price=to_optional_decimal(token.get("price")),
            order_date=to_utc_datetime(token["created_at"]) if token.get("created_at") else None,
            reported_status=parse_order_status(token.get("status"), token.get("done_reason")),
            message=token.get("reject_reason"),
        )

    def _parse_fill(self, token: Dict[str, Any]) -> RawFill:
        """
        {"trade_id": 74, "product_id": "BTC-USD", "price": "10.00", "size": "0.01",
         "order_id": "d50ec984-...", "created_at": "2014-11-07T22:19:28.578544Z",
         "liquidity": "T", "fee": "0.00025", "settled": true, "side": "buy"}
        """
        symbol = self.symbols.to_canonical_symbol(token["product_id"])
        _, quote = split_canonical(symbol, self.name)

        return RawFill(
            order_id=str(token["order_id"]),
            trade_id=str(token["trade_id"]) if token.get("trade_id") is not None else None,
            symbol=symbol,
            side=OrderSide(token["side"].lower()),
            amount=to_decimal(token["size"]),
            price=to_decimal(token["price"]),
            timestamp=to_utc_datetime(token["created_at"]) if token.get("created_at") else None,
            fee=to_optional_decimal(token.get("fee")) or to_decimal(0),
            fee_currency=quote,
        )

    # ============================================
    # Market Data
    # ============================================

    async def fetch_markets(self, pipeline) -> List[Market]:
        products = await pipeline.request("/products", cacheable=True)
        markets = []

        for product in products:
            markets.append(Market(
                symbol=self.symbols.to_canonical_symbol(product["id"]),
                native_symbol=product["id"],
                base_currency=product["base_currency"].upper(),
                quote_currency=product["quote_currency"].upper(),
                is_active=str(product.get("status", "online")).lower() == "online"
                and not product.get("trading_disabled", False),
                min_trade_size=to_optional_decimal(product.get("base_min_size")),
                max_trade_size=to_optional_decimal(product.get("base_max_size")),
                quantity_step_size=to_optional_decimal(product.get("base_increment")),
                price_step_size=to_optional_decimal(product.get("quote_increment")),
            ))

        self.logger.info(f"Fetched {len(markets)} Coinbase products")
        return markets

    async def fetch_ticker(self, pipeline, native_symbol: str) -> Ticker:
        data = await pipeline.request(f"/products/{native_symbol}/ticker")
        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bid=to_decimal(data["bid"]),
            ask=to_decimal(data["ask"]),
            last=to_decimal(data["price"]),
            base_volume=to_optional_decimal(data.get("volume")),
            timestamp=to_utc_datetime(data["time"]) if data.get("time") else None,
        )

    async def fetch_order_book(self, pipeline, native_symbol: str, depth: int) -> OrderBook:
        data = await pipeline.request(f"/products/{native_symbol}/book", payload={"level": 2})
        return OrderBook(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bids=[OrderBookEntry(price=to_decimal(e[0]), amount=to_decimal(e[1])) for e in data.get("bids", [])[:depth]],
            asks=[OrderBookEntry(price=to_decimal(e[0]), amount=to_decimal(e[1])) for e in data.get("asks", [])[:depth]],
            sequence=data.get("sequence"),
        )

    # ============================================
    # Orders
    # ============================================

    async def place_order(self, pipeline, order: OrderRequest, native_symbol: str) -> ConsolidatedOrder:
        payload: Dict[str, Any] = {
            "product_id": native_symbol,
            "side": order.side.value,
            "type": order.order_type.value,
            "size": str(order.amount),
        }
        if order.order_type == OrderType.LIMIT:
            payload["price"] = str(order.price)
            payload["time_in_force"] = "GTC"
        payload.update(order.extra_parameters)

        data = await pipeline.request("/orders", payload=payload, method="POST", private=True)
        return self._parse_order(data)

    async def cancel_order(self, pipeline, order_id: str, native_symbol: Optional[str]) -> None:
        await pipeline.request(f"/orders/{order_id}", method="DELETE", private=True)

    async def fetch_order(
        self,
        pipeline,
        order_id: str,
        native_symbol: Optional[str]
    ) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        data = await pipeline.request(f"/orders/{order_id}", method="GET", private=True)
        fills = await pipeline.request("/fills", payload={"order_id": order_id}, method="GET", private=True)
        return self._parse_order(data), [self._parse_fill(f) for f in fills]

    async def fetch_fills(self, pipeline, native_symbol: Optional[str]) -> List[RawFill]:
        if native_symbol is None:
            raise DomainError("Coinbase fill history requires a symbol", exchange=self.name)
        fills = await pipeline.request("/fills", payload={"product_id": native_symbol}, method="GET", private=True)
        return [self._parse_fill(f) for f in fills]

    # ============================================
    # Streams
    # ============================================

    def ticker_stream(self, native_symbol: str) -> StreamSpec:
        return StreamSpec(
            url=self.ws_url,
            stream_key=f"ticker:{native_symbol}",
            messages=[{"type": "subscribe", "product_ids": [native_symbol], "channels": ["ticker"]}],
        )

    def decode_frame(self, text: str) -> Optional[StreamEnvelope]:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Coinbase frames are JSON objects")

        frame_type = data.get("type")
        if frame_type == "error":
            self.logger.warning(f"Coinbase feed error: {data.get('message')} {data.get('reason', '')}")
            return None
        if frame_type == "ticker":
            return StreamEnvelope(stream_key=f"ticker:{data['product_id']}", data=data)

        # subscriptions, heartbeat, ...
        return None

    def parse_ticker_frame(self, data: Any, native_symbol: str) -> Optional[Ticker]:
        """
        {"type": "ticker", "product_id": "BTC-USD", "price": "100.5", "best_bid": "100.4",
         "best_ask": "100.6", "volume_24h": "1234.5", "time": "2024-01-01T12:00:00.000000Z"}
        """
        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(data["product_id"]),
            bid=to_decimal(data["best_bid"]),
            ask=to_decimal(data["best_ask"]),
            last=to_decimal(data["price"]),
            base_volume=to_optional_decimal(data.get("volume_24h")),
            timestamp=to_utc_datetime(data["time"]) if data.get("time") else None,
        )
