"""
Bitfinex Adapter

Hooks and translations for the Bitfinex v2 API, including the authenticated
websocket used for live fills.

API Documentation:
    https://docs.bitfinex.com/docs

Endpoints Used:
    REST (public, GET):
        - /v1/symbols_details - Pair metadata (only available on v1)
        - /v2/ticker/{symbol} - Ticker
        - /v2/book/{symbol}/P0 - Order book
    REST (private, POST JSON):
        - /v2/auth/w/order/submit - Place order
        - /v2/auth/w/order/cancel - Cancel order
        - /v2/auth/r/orders - Active orders
        - /v2/auth/r/orders/hist - Closed orders
        - /v2/auth/r/order/{symbol}:{id}/trades - Trades of one order
        - /v2/auth/r/trades[/{symbol}]/hist - Trade history

    WebSocket:
        - wss://api-pub.bitfinex.com/ws/2 - ticker channel (chanId binding)
        - wss://api.bitfinex.com/ws/2 - account channel 0, "tu" trade updates

Symbols:
    Trading pairs carry a "t" prefix ("tBTCUSD"). Pairs with a currency
    longer than three letters use ':' ("tTESTBTC:TESTUSD"). Tether is spelled
    "UST". The v1 metadata endpoint uses lowercase pairs without the prefix.

Signing:
    bfx-signature = hex(HMAC-SHA384(secret, "/api" + path + nonce + body))
    sent with bfx-nonce and bfx-apikey. The nonce never appears in the body.

Error Convention:
    ["error", 10020, "symbol: invalid"] (usually with HTTP 500)
"""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from core.adapter import ExchangeAdapter, StreamSpec
from core.errors import UnknownSymbolError
from core.logging import get_logger
from core.reconciler import open_order
from core.schemas import (
    ConsolidatedOrder,
    Credentials,
    HttpRequest,
    HttpResponse,
    Market,
    Nonce,
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
from core.symbols import AlgorithmicSymbolNormalizer, join_canonical, split_canonical
from core.utils.decimal import to_decimal, to_optional_decimal
from core.utils.time import to_utc_datetime


# Book lengths accepted by /v2/book
BOOK_LENGTHS = (1, 25, 100, 250)

# Order status prefixes ("EXECUTED @ 107.6(-0.2)", "CANCELED was: PARTIALLY FILLED @ ...")
ORDER_STATUS_PREFIXES = (
    ("ACTIVE", OrderStatus.PENDING),
    ("EXECUTED", OrderStatus.FILLED),
    ("PARTIALLY FILLED", OrderStatus.FILLED_PARTIALLY),
    ("CANCELED", OrderStatus.CANCELED),
)


def parse_order_status(status: Optional[str]) -> OrderStatus:
    """Map a Bitfinex order status string by prefix; anything else is UNKNOWN."""
    text = (status or "").strip().upper()
    for prefix, mapped in ORDER_STATUS_PREFIXES:
        if text.startswith(prefix):
            return mapped
    return OrderStatus.UNKNOWN


class BitfinexSymbolNormalizer:
    """
    "tBTCUSD" <-> "BTC-USD".

    Example:
        >>> n = BitfinexSymbolNormalizer()
        >>> n.to_exchange_symbol("BTC-USDT")
        'tBTCUST'
        >>> n.to_canonical_symbol("tTESTBTC:TESTUSD")
        'TESTBTC-TESTUSD'
        >>> n.to_canonical_symbol("ethusd")
        'ETH-USD'
    """

    def __init__(self, exchange: Optional[str] = "bitfinex"):
        self.exchange = exchange
        self._currencies = AlgorithmicSymbolNormalizer(
            separator=":",
            currency_aliases={"UST": "USDT"},
            exchange=exchange,
        )

    def to_exchange_symbol(self, canonical: str) -> str:
        base, quote = self._currencies.to_exchange_symbol(canonical).split(":")
        if len(base) > 3 or len(quote) > 3:
            return f"t{base}:{quote}"
        return f"t{base}{quote}"

    def to_canonical_symbol(self, native: str) -> str:
        text = (native or "").strip()
        # v2 spelling is "t" + uppercase; v1 spelling is all lowercase
        if text[:1] == "t" and text[1:] and text[1:] == text[1:].upper():
            text = text[1:]

        if ":" not in text:
            if len(text) != 6:
                raise UnknownSymbolError(str(native), exchange=self.exchange, reason="expected six letters or ':'")
            text = f"{text[:3]}:{text[3:]}"

        return self._currencies.to_canonical_symbol(text)


class BitfinexAdapter(ExchangeAdapter):
    """Bitfinex spot adapter (REST + public/authenticated websocket)."""

    name = "bitfinex"
    base_url = "https://api.bitfinex.com"
    ws_url = "wss://api-pub.bitfinex.com/ws/2"
    private_ws_url = "wss://api.bitfinex.com/ws/2"

    nonce_format = NonceFormat.UNIX_MILLISECONDS_STRING
    rate_limit = (30, 60.0)

    auth_error_markers = ExchangeAdapter.auth_error_markers + ("apikey: invalid", "nonce: small")

    capabilities = {
        "markets": True,
        "ticker": True,
        "order_book": True,
        "place_order": True,
        "cancel_order": True,
        "order_details": True,
        "fills": True,
        "stream_tickers": True,
        "stream_fills": True,
    }

    def __init__(self, symbols=None):
        super().__init__(symbols or BitfinexSymbolNormalizer(exchange=self.name))
        self.logger = get_logger(__name__)

    # ============================================
    # Request Hooks
    # ============================================

    def serialize(self, request: HttpRequest, payload: Dict[str, Any]) -> None:
        """Private calls always send a JSON body (possibly "{}") without the nonce."""
        request.headers.setdefault("Content-Type", self.content_type)
        if request.method == "POST":
            body = {key: value for key, value in payload.items() if key != "nonce"}
            request.body = json.dumps(body, default=str, separators=(",", ":"))

    def sign(self, request: HttpRequest, payload: Dict[str, Any], credentials: Credentials) -> None:
        nonce = str(payload["nonce"])
        message = f"/api{urlsplit(request.url).path}{nonce}{request.body or ''}"

        signature = hmac.new(
            credentials.private_key.get_secret_value().encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha384
        ).hexdigest()

        request.headers["bfx-nonce"] = nonce
        request.headers["bfx-apikey"] = credentials.public_key.get_secret_value()
        request.headers["bfx-signature"] = signature

    def process_response(self, response: HttpResponse) -> None:
        # Business errors arrive as HTTP 500 with an error array
        if response.status >= 500 and response.text.lstrip().startswith('["error"'):
            try:
                data = json.loads(response.text)
            except ValueError:
                return
            self.validate_response(data)

    def validate_response(self, data: Any) -> Any:
        if isinstance(data, list) and data and data[0] == "error":
            message = str(data[2]) if len(data) > 2 else json.dumps(data)
            raise self.classify_error(message, data)
        return super().validate_response(data)

    # ============================================
    # Parsing Helpers
    # ============================================

    def _parse_order(self, token: List[Any]) -> ConsolidatedOrder:
        """
        [ID, GID, CID, SYMBOL, MTS_CREATE, MTS_UPDATE, AMOUNT, AMOUNT_ORIG, TYPE,
         TYPE_PREV, MTS_TIF, _, FLAGS, STATUS, _, _, PRICE, PRICE_AVG, ...]

        AMOUNT_ORIG is negative for sells.
        """
        amount = to_decimal(token[7])
        price = to_optional_decimal(token[16])

        return open_order(
            order_id=str(token[0]),
            symbol=self.symbols.to_canonical_symbol(token[3]),
            side=OrderSide.BUY if amount >= 0 else OrderSide.SELL,
            amount=abs(amount),
            price=price if price else None,
            order_date=to_utc_datetime(token[4]) if token[4] else None,
            reported_status=parse_order_status(token[13]),
            message=token[13],
        )

    def _parse_trade(self, token: List[Any]) -> RawFill:
        """
        [ID, SYMBOL, MTS_CREATE, ORDER_ID, EXEC_AMOUNT, EXEC_PRICE, ORDER_TYPE,
         ORDER_PRICE, MAKER, FEE, FEE_CURRENCY]

        EXEC_AMOUNT is negative for sells; FEE is negative when charged.
        """
        amount = to_decimal(token[4])
        fee = to_optional_decimal(token[9]) if len(token) > 9 else None
        fee_currency = token[10] if len(token) > 10 else None

        return RawFill(
            order_id=str(token[3]),
            trade_id=str(token[0]),
            symbol=self.symbols.to_canonical_symbol(token[1]),
            side=OrderSide.BUY if amount >= 0 else OrderSide.SELL,
            amount=abs(amount),
            price=to_decimal(token[5]),
            timestamp=to_utc_datetime(token[2]),
            fee=abs(fee) if fee is not None else Decimal("0"),
            fee_currency=self._fee_currency(fee_currency),
        )

    def _fee_currency(self, currency: Optional[str]) -> Optional[str]:
        if not currency:
            return None
        return "USDT" if currency.upper() == "UST" else currency.upper()

    def _ticker(self, token: List[Any], native_symbol: str) -> Ticker:
        """[BID, BID_SIZE, ASK, ASK_SIZE, DAILY_CHANGE, DAILY_CHANGE_RELATIVE, LAST_PRICE, VOLUME, HIGH, LOW]"""
        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bid=to_decimal(token[0]),
            ask=to_decimal(token[2]),
            last=to_decimal(token[6]),
            base_volume=to_optional_decimal(token[7]) if len(token) > 7 else None,
        )

    # ============================================
    # Market Data
    # ============================================

    async def fetch_markets(self, pipeline) -> List[Market]:
        """
        [{"pair": "btcusd", "price_precision": 5, "maximum_order_size": "2000.0",
          "minimum_order_size": "0.0006", "margin": true}, ...]
        """
        pairs = await pipeline.request("/v1/symbols_details", cacheable=True)
        markets = []

        for token in pairs:
            try:
                symbol = self.symbols.to_canonical_symbol(token["pair"])
            except UnknownSymbolError as e:
                self.logger.debug(f"Skipping Bitfinex pair {token.get('pair')}: {e}")
                continue

            base, quote = split_canonical(symbol, self.name)
            markets.append(Market(
                symbol=join_canonical(base, quote),
                native_symbol=self.symbols.to_exchange_symbol(symbol),
                base_currency=base,
                quote_currency=quote,
                min_trade_size=to_optional_decimal(token.get("minimum_order_size")),
                max_trade_size=to_optional_decimal(token.get("maximum_order_size")),
            ))

        self.logger.info(f"Fetched {len(markets)} Bitfinex markets")
        return markets

    async def fetch_ticker(self, pipeline, native_symbol: str) -> Ticker:
        token = await pipeline.request(f"/v2/ticker/{native_symbol}")
        return self._ticker(token, native_symbol)

    async def fetch_order_book(self, pipeline, native_symbol: str, depth: int) -> OrderBook:
        """Rows are [PRICE, COUNT, AMOUNT]; positive AMOUNT is a bid."""
        length = next((n for n in BOOK_LENGTHS if n >= depth), BOOK_LENGTHS[-1])
        rows = await pipeline.request(f"/v2/book/{native_symbol}/P0", payload={"len": length})

        bids = []
        asks = []
        for price, _, amount in rows:
            amount = to_decimal(amount)
            entry = OrderBookEntry(price=to_decimal(price), amount=abs(amount))
            (bids if amount > 0 else asks).append(entry)

        bids.sort(key=lambda e: e.price, reverse=True)
        asks.sort(key=lambda e: e.price)

        return OrderBook(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bids=bids[:depth],
            asks=asks[:depth],
        )

    # ============================================
    # Orders
    # ============================================

    async def place_order(self, pipeline, order: OrderRequest, native_symbol: str) -> ConsolidatedOrder:
        """
        Response notification:
            [MTS, "on-req", null, null, [[ORDER]], null, "SUCCESS", "Submitting 1 orders."]
        """
        amount = order.amount if order.side == OrderSide.BUY else -order.amount
        payload: Dict[str, Any] = {
            "type": "EXCHANGE LIMIT" if order.order_type == OrderType.LIMIT else "EXCHANGE MARKET",
            "symbol": native_symbol,
            "amount": str(amount),
        }
        if order.order_type == OrderType.LIMIT:
            payload["price"] = str(order.price)
        payload.update(order.extra_parameters)

        notification = await pipeline.request("/v2/auth/w/order/submit", payload=payload, private=True)

        status = str(notification[6]).upper() if len(notification) > 6 else ""
        if status in ("ERROR", "FAILURE"):
            raise self.classify_error(str(notification[7]), notification)

        token = notification[4]
        if token and isinstance(token[0], list):
            token = token[0]
        if not token:
            raise self.classify_error(f"Order submit returned no order: {notification}", notification)

        return self._parse_order(token)

    async def cancel_order(self, pipeline, order_id: str, native_symbol: Optional[str]) -> None:
        notification = await pipeline.request(
            "/v2/auth/w/order/cancel", payload={"id": int(order_id)}, private=True
        )
        if len(notification) > 6 and str(notification[6]).upper() in ("ERROR", "FAILURE"):
            raise self.classify_error(str(notification[7]), notification)

    async def fetch_order(
        self,
        pipeline,
        order_id: str,
        native_symbol: Optional[str]
    ) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        ids = {"id": [int(order_id)]}

        tokens = await pipeline.request("/v2/auth/r/orders", payload=ids, private=True)
        if not tokens:
            tokens = await pipeline.request("/v2/auth/r/orders/hist", payload=ids, private=True)
        if not tokens:
            raise self.classify_error(f"Order {order_id} not found", tokens)

        order = self._parse_order(tokens[0])
        trades = await pipeline.request(
            f"/v2/auth/r/order/{tokens[0][3]}:{order_id}/trades", private=True
        )
        return order, [self._parse_trade(t) for t in trades]

    async def fetch_fills(self, pipeline, native_symbol: Optional[str]) -> List[RawFill]:
        path = f"/v2/auth/r/trades/{native_symbol}/hist" if native_symbol else "/v2/auth/r/trades/hist"
        trades = await pipeline.request(path, payload={"limit": 250}, private=True)
        return [self._parse_trade(t) for t in trades]

    # ============================================
    # Streams
    # ============================================

    def ticker_stream(self, native_symbol: str) -> StreamSpec:
        return StreamSpec(
            url=self.ws_url,
            stream_key=f"ticker:{native_symbol}",
            messages=[{"event": "subscribe", "channel": "ticker", "symbol": native_symbol}],
        )

    def fills_stream(self, credentials: Credentials, nonce: Nonce) -> StreamSpec:
        payload = f"AUTH{nonce}"
        signature = hmac.new(
            credentials.private_key.get_secret_value().encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha384
        ).hexdigest()

        return StreamSpec(
            url=self.private_ws_url,
            stream_key="fills",
            messages=[{
                "event": "auth",
                "apiKey": credentials.public_key.get_secret_value(),
                "authSig": signature,
                "authPayload": payload,
                "authNonce": str(nonce),
                "filter": ["trading"],
            }],
        )

    def decode_frame(self, text: str) -> Optional[StreamEnvelope]:
        data = json.loads(text)

        if isinstance(data, dict):
            event = data.get("event")

            # {"event": "subscribed", "channel": "ticker", "chanId": 224555, "symbol": "tBTCUSD"}
            if event == "subscribed" and data.get("channel") == "ticker":
                return StreamEnvelope(
                    bind=True,
                    channel_id=str(data["chanId"]),
                    stream_key=f"ticker:{data['symbol']}",
                )

            if event == "auth":
                if str(data.get("status", "")).upper() == "OK":
                    self.logger.info("Bitfinex websocket authenticated")
                else:
                    self.logger.error(f"Bitfinex websocket auth failed: {data.get('msg')}")
                return None

            if event == "error":
                self.logger.warning(f"Bitfinex websocket error {data.get('code')}: {data.get('msg')}")

            return None

        if not isinstance(data, list) or len(data) < 2:
            return None

        # Heartbeat: [chanId, "hb"]
        if data[1] == "hb":
            return None

        # Account channel: [0, "tu", [trade]]; "te" is the unconfirmed twin
        if data[0] == 0:
            if data[1] == "tu" and len(data) > 2:
                return StreamEnvelope(stream_key="fills", data=data[2])
            return None

        return StreamEnvelope(channel_id=str(data[0]), data=data[1])

    def parse_ticker_frame(self, data: Any, native_symbol: str) -> Optional[Ticker]:
        if not isinstance(data, list) or len(data) < 7:
            return None
        return self._ticker(data, native_symbol)

    def parse_fill_frame(self, data: Any) -> List[RawFill]:
        if not isinstance(data, list) or not data:
            return []
        if isinstance(data[0], list):
            return [self._parse_trade(t) for t in data]
        return [self._parse_trade(data)]
