"""
Binance Spot Adapter

Hooks and translations for the Binance Spot REST API and market streams.

API Documentation:
    https://binance-docs.github.io/apidocs/spot/en/

Endpoints Used:
    REST (public):
        - GET /api/v3/exchangeInfo - Symbol metadata and trading filters
        - GET /api/v3/ticker/24hr - 24h ticker for one symbol
        - GET /api/v3/depth - Order book snapshot
    REST (signed):
        - POST /api/v3/order - Place order (newOrderRespType=FULL)
        - DELETE /api/v3/order - Cancel order
        - GET /api/v3/order - Query order
        - GET /api/v3/myTrades - Account trade history

    WebSocket:
        - wss://stream.binance.com:9443/ws - SUBSCRIBE <symbol>@ticker

Signing:
    Every signed call carries all parameters in the query string, starting
    with timestamp=<ms nonce> (plus recvWindow when configured). The query is
    signed with HMAC-SHA256 (hex) and appended as &signature=. The API key
    travels in the X-MBX-APIKEY header.

Error Convention:
    {"code": -1121, "msg": "Invalid symbol."}
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urlsplit

from core.adapter import ExchangeAdapter, StreamSpec
from core.config import settings
from core.errors import DomainError
from core.logging import get_logger
from core.reconciler import fold_all, open_order
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
from core.symbols import AlgorithmicSymbolNormalizer, join_canonical
from core.utils.decimal import to_decimal, to_optional_decimal
from core.utils.time import to_utc_datetime


ORDER_STATUS_MAP = {
    "NEW": OrderStatus.PENDING,
    "PARTIALLY_FILLED": OrderStatus.FILLED_PARTIALLY,
    "FILLED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELED,
    "PENDING_CANCEL": OrderStatus.CANCELED,
    "EXPIRED": OrderStatus.CANCELED,
    "REJECTED": OrderStatus.ERROR,
}


def parse_order_status(status: Optional[str]) -> OrderStatus:
    """Map a Binance order status; anything unrecognized is UNKNOWN."""
    return ORDER_STATUS_MAP.get((status or "").upper(), OrderStatus.UNKNOWN)


class BinanceAdapter(ExchangeAdapter):
    """
    Binance Spot adapter.

    Attributes:
        used_weight: Last X-MBX-USED-WEIGHT-1M header seen (None before any call)

    Example:
        >>> async with ExchangeClient(BinanceAdapter()) as client:
        ...     ticker = await client.get_ticker("BTC-USDT")
    """

    name = "binance"
    base_url = "https://api.binance.com/api/v3"
    ws_url = "wss://stream.binance.com:9443/ws"

    nonce_format = NonceFormat.UNIX_MILLISECONDS
    rate_limit = (10, 1.0)

    auth_error_markers = ExchangeAdapter.auth_error_markers + ("timestamp for this request", "recvwindow")

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
        super().__init__(symbols or AlgorithmicSymbolNormalizer(separator="", exchange=self.name))
        self.used_weight: Optional[int] = None
        self._subscribe_id = 0
        self.logger = get_logger(__name__)

    # ============================================
    # Request Hooks
    # ============================================

    def build_url(self, url: str, payload: Dict[str, Any], method: str) -> str:
        if "nonce" not in payload:
            return super().build_url(url, payload, method)

        # Signed: everything goes in the query string, timestamp first
        params = {"timestamp": payload["nonce"]}
        if settings.binance_recv_window_ms > 0:
            params["recvWindow"] = settings.binance_recv_window_ms
        params.update((key, value) for key, value in payload.items() if key != "nonce")

        separator = "&" if urlsplit(url).query else "?"
        return f"{url}{separator}{urlencode(params)}"

    def serialize(self, request: HttpRequest, payload: Dict[str, Any]) -> None:
        """Binance takes parameters from the query string only."""

    def sign(self, request: HttpRequest, payload: Dict[str, Any], credentials: Credentials) -> None:
        query = urlsplit(request.url).query
        signature = hmac.new(
            credentials.private_key.get_secret_value().encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256
        ).hexdigest()

        request.url = f"{request.url}&signature={signature}"
        request.headers["X-MBX-APIKEY"] = credentials.public_key.get_secret_value()

    def process_response(self, response: HttpResponse) -> None:
        # Track rate limit usage
        for key, value in response.headers.items():
            if key.upper() == "X-MBX-USED-WEIGHT-1M":
                self.used_weight = int(value)
                self.logger.debug(f"Binance used weight (1m): {self.used_weight}")

    # ============================================
    # Parsing Helpers
    # ============================================

    def _parse_order(self, token: Dict[str, Any]) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        symbol = self.symbols.to_canonical_symbol(token["symbol"])
        side = OrderSide(token["side"].lower())
        order_id = str(token["orderId"])
        price = to_decimal(token.get("price"), default=Decimal("0"))
        placed_at = token.get("time") or token.get("transactTime")

        order = open_order(
            order_id=order_id,
            symbol=symbol,
            side=side,
            amount=to_decimal(token["origQty"]),
            price=price if price > 0 else None,
            order_date=to_utc_datetime(placed_at) if placed_at else None,
            reported_status=parse_order_status(token.get("status")),
        )

        fills = [
            RawFill(
                order_id=order_id,
                trade_id=str(fill["tradeId"]) if fill.get("tradeId") is not None else None,
                symbol=symbol,
                side=side,
                amount=to_decimal(fill["qty"]),
                price=to_decimal(fill["price"]),
                fee=to_decimal(fill.get("commission"), default=Decimal("0")),
                fee_currency=fill.get("commissionAsset"),
            )
            for fill in token.get("fills") or []
        ]
        return order, fills

    def _parse_trade(self, token: Dict[str, Any]) -> RawFill:
        """
        Parse one /myTrades record.

        {"id": 28457, "orderId": 100234, "symbol": "BNBBTC", "price": "4.00000100",
         "qty": "12.00000000", "commission": "10.10000000", "commissionAsset": "BNB",
         "time": 1499865549590, "isBuyer": true, "isMaker": false}
        """
        return RawFill(
            order_id=str(token["orderId"]),
            trade_id=str(token["id"]),
            symbol=self.symbols.to_canonical_symbol(token["symbol"]),
            side=OrderSide.BUY if token.get("isBuyer") else OrderSide.SELL,
            amount=to_decimal(token["qty"]),
            price=to_decimal(token["price"]),
            timestamp=to_utc_datetime(token["time"]),
            fee=to_decimal(token.get("commission"), default=Decimal("0")),
            fee_currency=token.get("commissionAsset"),
        )

    # ============================================
    # Market Data
    # ============================================

    async def fetch_markets(self, pipeline) -> List[Market]:
        data = await pipeline.request("/exchangeInfo", cacheable=True)
        markets = []

        for token in data.get("symbols", []):
            if isinstance(self.symbols, AlgorithmicSymbolNormalizer):
                # exchangeInfo is authoritative for quotes outside the default list
                self.symbols.learn(token["symbol"], token["baseAsset"], token["quoteAsset"])

            filters = {f.get("filterType"): f for f in token.get("filters", [])}
            lot_size = filters.get("LOT_SIZE", {})
            price_filter = filters.get("PRICE_FILTER", {})

            markets.append(Market(
                symbol=join_canonical(token["baseAsset"], token["quoteAsset"]),
                native_symbol=token["symbol"],
                base_currency=token["baseAsset"].upper(),
                quote_currency=token["quoteAsset"].upper(),
                is_active=token.get("status", "").upper() == "TRADING",
                min_trade_size=to_optional_decimal(lot_size.get("minQty")),
                max_trade_size=to_optional_decimal(lot_size.get("maxQty")),
                quantity_step_size=to_optional_decimal(lot_size.get("stepSize")),
                min_price=to_optional_decimal(price_filter.get("minPrice")),
                max_price=to_optional_decimal(price_filter.get("maxPrice")),
                price_step_size=to_optional_decimal(price_filter.get("tickSize")),
            ))

        self.logger.info(f"Fetched {len(markets)} Binance markets")
        return markets

    async def fetch_ticker(self, pipeline, native_symbol: str) -> Ticker:
        data = await pipeline.request("/ticker/24hr", payload={"symbol": native_symbol})
        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bid=to_decimal(data["bidPrice"]),
            ask=to_decimal(data["askPrice"]),
            last=to_decimal(data["lastPrice"]),
            base_volume=to_optional_decimal(data.get("volume")),
            quote_volume=to_optional_decimal(data.get("quoteVolume")),
            timestamp=to_utc_datetime(data["closeTime"]) if data.get("closeTime") else None,
        )

    async def fetch_order_book(self, pipeline, native_symbol: str, depth: int) -> OrderBook:
        data = await pipeline.request("/depth", payload={"symbol": native_symbol, "limit": min(depth, 5000)})
        return OrderBook(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bids=[OrderBookEntry(price=to_decimal(p), amount=to_decimal(q)) for p, q in data.get("bids", [])[:depth]],
            asks=[OrderBookEntry(price=to_decimal(p), amount=to_decimal(q)) for p, q in data.get("asks", [])[:depth]],
            sequence=data.get("lastUpdateId"),
        )

    # ============================================
    # Orders
    # ============================================

    async def place_order(self, pipeline, order: OrderRequest, native_symbol: str) -> ConsolidatedOrder:
        payload: Dict[str, Any] = {
            "symbol": native_symbol,
            "side": order.side.value.upper(),
            "type": order.order_type.value.upper(),
            "quantity": str(order.amount),
            "newOrderRespType": "FULL",
        }
        if order.order_type == OrderType.LIMIT:
            payload["timeInForce"] = "GTC"
            payload["price"] = str(order.price)
        payload.update(order.extra_parameters)

        data = await pipeline.request("/order", payload=payload, method="POST", private=True)
        placed, fills = self._parse_order(data)
        return fold_all(fills, placed)

    async def cancel_order(self, pipeline, order_id: str, native_symbol: Optional[str]) -> None:
        if native_symbol is None:
            raise DomainError("Binance cancel requires a symbol", exchange=self.name)
        await pipeline.request(
            "/order", payload={"symbol": native_symbol, "orderId": order_id}, method="DELETE", private=True
        )

    async def fetch_order(
        self,
        pipeline,
        order_id: str,
        native_symbol: Optional[str]
    ) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        if native_symbol is None:
            raise DomainError("Binance order details require a symbol", exchange=self.name)

        data = await pipeline.request(
            "/order", payload={"symbol": native_symbol, "orderId": order_id}, method="GET", private=True
        )
        order, _ = self._parse_order(data)

        trades = await pipeline.request(
            "/myTrades", payload={"symbol": native_symbol, "orderId": order_id}, method="GET", private=True
        )
        return order, [self._parse_trade(t) for t in trades if str(t.get("orderId")) == order.order_id]

    async def fetch_fills(self, pipeline, native_symbol: Optional[str]) -> List[RawFill]:
        if native_symbol is None:
            raise DomainError("Binance trade history requires a symbol", exchange=self.name)
        trades = await pipeline.request("/myTrades", payload={"symbol": native_symbol}, method="GET", private=True)
        return [self._parse_trade(t) for t in trades]

    # ============================================
    # Streams
    # ============================================

    def ticker_stream(self, native_symbol: str) -> StreamSpec:
        stream = f"{native_symbol.lower()}@ticker"
        self._subscribe_id += 1
        return StreamSpec(
            url=self.ws_url,
            stream_key=stream,
            messages=[{"method": "SUBSCRIBE", "params": [stream], "id": self._subscribe_id}],
        )

    def decode_frame(self, text: str) -> Optional[StreamEnvelope]:
        data = json.loads(text)

        # Subscription acknowledgement: {"result": null, "id": 1}
        if isinstance(data, dict) and "id" in data and "result" in data:
            return None

        if isinstance(data, dict) and data.get("e") == "24hrTicker":
            return StreamEnvelope(stream_key=f"{data['s'].lower()}@ticker", data=data)

        return StreamEnvelope(data=data)

    def parse_ticker_frame(self, data: Any, native_symbol: str) -> Optional[Ticker]:
        """
        {"e": "24hrTicker", "E": 123456789, "s": "BNBBTC", "c": "0.0025",
         "b": "0.0024", "a": "0.0026", "v": "10000", "q": "18", ...}
        """
        if not isinstance(data, dict) or data.get("e") != "24hrTicker":
            return None

        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(data["s"]),
            bid=to_decimal(data["b"]),
            ask=to_decimal(data["a"]),
            last=to_decimal(data["c"]),
            base_volume=to_optional_decimal(data.get("v")),
            quote_volume=to_optional_decimal(data.get("q")),
            timestamp=to_utc_datetime(data["E"]) if data.get("E") else None,
        )
