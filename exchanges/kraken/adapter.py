"""
Kraken Adapter

Hooks and translations for the Kraken REST API.

API Documentation:
    https://docs.kraken.com/rest/

Endpoints Used:
    REST (public, GET):
        - /0/public/AssetPairs - Pair metadata
        - /0/public/Ticker - Ticker for one pair
        - /0/public/Depth - Order book
    REST (private, POST form):
        - /0/private/AddOrder - Place order
        - /0/private/CancelOrder - Cancel order
        - /0/private/QueryOrders - Order status (with trade ids)
        - /0/private/QueryTrades - Trades by id
        - /0/private/TradesHistory - Trade history

Symbols:
    Kraken pair names cannot be derived from the currencies ("XXBTZUSD" is
    BTC-USD, "XETHXXBT" is ETH-BTC), so a fixed lookup table is used.
    Order descriptions use the short "altname" ("XBTUSD"), which is derived
    from the table.

Signing:
    The form body starts with nonce=<ms nonce>.
    API-Sign = base64(HMAC-SHA512(base64decode(secret),
                                  uri_path + SHA256(nonce + body)))
    sent with the API-Key header.

Error Convention:
    {"error": ["EOrder:Insufficient funds"], "result": {}}
"""

import base64
import hashlib
import hmac
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from core.adapter import ExchangeAdapter
from core.errors import UnknownSymbolError
from core.logging import get_logger
from core.reconciler import open_order
from core.schemas import (
    ConsolidatedOrder,
    Credentials,
    HttpRequest,
    Market,
    NonceFormat,
    OrderBook,
    OrderBookEntry,
    OrderRequest,
    OrderSide,
    OrderStatus,
    OrderType,
    RawFill,
    Ticker,
)
from core.symbols import TableSymbolNormalizer, split_canonical
from core.utils.decimal import to_decimal, to_optional_decimal
from core.utils.time import to_utc_datetime


# canonical -> Kraken pair name
KRAKEN_SYMBOLS = {
    "BTC-USD": "XXBTZUSD",
    "BTC-EUR": "XXBTZEUR",
    "BTC-GBP": "XXBTZGBP",
    "BTC-CAD": "XXBTZCAD",
    "BTC-JPY": "XXBTZJPY",
    "ETH-USD": "XETHZUSD",
    "ETH-EUR": "XETHZEUR",
    "ETH-BTC": "XETHXXBT",
    "ETC-BTC": "XETCXXBT",
    "LTC-USD": "XLTCZUSD",
    "LTC-EUR": "XLTCZEUR",
    "LTC-BTC": "XLTCXXBT",
    "XRP-USD": "XXRPZUSD",
    "XRP-EUR": "XXRPZEUR",
    "XRP-BTC": "XXRPXXBT",
    "XLM-BTC": "XXLMXXBT",
    "XMR-BTC": "XXMRXXBT",
    "ZEC-BTC": "XZECXXBT",
    "DOGE-BTC": "XXDGXXBT",
    "SOL-USD": "SOLUSD",
    "DOT-USD": "DOTUSD",
    "ADA-USD": "ADAUSD",
    "USDT-USD": "USDTZUSD",
}

ORDER_STATUS_MAP = {
    "pending": OrderStatus.PENDING,
    "open": OrderStatus.PENDING,
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "expired": OrderStatus.CANCELED,
}


def parse_order_status(status: Optional[str]) -> OrderStatus:
    return ORDER_STATUS_MAP.get((status or "").lower(), OrderStatus.UNKNOWN)


def altname(native: str) -> str:
    """
    Short pair name used in order descriptions.

    Example:
        >>> altname("XXBTZUSD")
        'XBTUSD'
    """
    if len(native) == 8 and native[0] in "XZ" and native[4] in "XZ":
        return native[1:4] + native[5:]
    return native


class KrakenAdapter(ExchangeAdapter):
    """Kraken spot adapter (REST only)."""

    name = "kraken"
    base_url = "https://api.kraken.com"

    nonce_format = NonceFormat.UNIX_MILLISECONDS
    rate_limit = (3, 1.0)
    content_type = "application/x-www-form-urlencoded"

    capabilities = {
        **ExchangeAdapter.capabilities,
        "markets": True,
        "ticker": True,
        "order_book": True,
        "place_order": True,
        "cancel_order": True,
        "order_details": True,
        "fills": True,
    }

    def __init__(self, symbols=None):
        super().__init__(symbols or TableSymbolNormalizer(KRAKEN_SYMBOLS, exchange=self.name))
        self._altnames = {altname(native).upper(): native for native in KRAKEN_SYMBOLS.values()}
        self.logger = get_logger(__name__)

    # ============================================
    # Request Hooks
    # ============================================

    def sign(self, request: HttpRequest, payload: Dict[str, Any], credentials: Credentials) -> None:
        nonce = str(payload["nonce"])
        body = request.body or ""

        sha = hashlib.sha256((nonce + body).encode("utf-8")).digest()
        mac = hmac.new(
            base64.b64decode(credentials.private_key.get_secret_value()),
            urlsplit(request.url).path.encode("utf-8") + sha,
            hashlib.sha512
        )

        request.headers["API-Key"] = credentials.public_key.get_secret_value()
        request.headers["API-Sign"] = base64.b64encode(mac.digest()).decode("utf-8")

    def validate_response(self, data: Any) -> Any:
        if isinstance(data, dict) and "error" in data:
            errors = data.get("error") or []
            if errors:
                message = ", ".join(str(e) for e in errors) if isinstance(errors, list) else str(errors)
                raise self.classify_error(message, data)
            return data.get("result")
        return super().validate_response(data)

    # ============================================
    # Parsing Helpers
    # ============================================

    def _canonical(self, pair: str) -> str:
        """Canonical symbol for a full pair name or an altname."""
        try:
            return self.symbols.to_canonical_symbol(pair)
        except UnknownSymbolError:
            native = self._altnames.get(pair.upper())
            if native is None:
                raise
            return self.symbols.to_canonical_symbol(native)

    def _parse_order(self, order_id: str, token: Dict[str, Any]) -> ConsolidatedOrder:
        """
        {"status": "open", "opentm": 1688666559.8974, "vol": "2.0", "vol_exec": "0.0",
         "descr": {"pair": "XBTUSD", "type": "buy", "ordertype": "limit", "price": "100.0"},
         "trades": ["TCCCTY-WE2O6-P3NB37"]}
        """
        descr = token.get("descr", {})
        price = to_optional_decimal(descr.get("price"))

        return open_order(
            order_id=order_id,
            symbol=self._canonical(descr["pair"]),
            side=OrderSide(descr["type"].lower()),
            amount=to_optional_decimal(token.get("vol")),
            price=price if price else None,
            order_date=to_utc_datetime(token["opentm"]) if token.get("opentm") else None,
            reported_status=parse_order_status(token.get("status")),
            message=token.get("reason"),
        )

    def _parse_trade(self, trade_id: str, token: Dict[str, Any]) -> RawFill:
        """
        {"ordertxid": "OQCLML-BW3P3-BUCMWZ", "pair": "XXBTZUSD", "time": 1688667796.8802,
         "type": "buy", "ordertype": "limit", "price": "100.0", "cost": "200.0",
         "fee": "0.32", "vol": "2.0"}
        """
        symbol = self._canonical(token["pair"])
        _, quote = split_canonical(symbol, self.name)

        return RawFill(
            order_id=token["ordertxid"],
            trade_id=trade_id,
            symbol=symbol,
            side=OrderSide(token["type"].lower()),
            amount=to_decimal(token["vol"]),
            price=to_decimal(token["price"]),
            timestamp=to_utc_datetime(token["time"]),
            fee=to_optional_decimal(token.get("fee")) or Decimal("0"),
            fee_currency=quote,
        )

    # ============================================
    # Market Data
    # ============================================

    async def fetch_markets(self, pipeline) -> List[Market]:
        pairs = await pipeline.request("/0/public/AssetPairs", cacheable=True)
        markets = []

        for native, token in pairs.items():
            try:
                symbol = self.symbols.to_canonical_symbol(native)
            except UnknownSymbolError:
                continue

            base, quote = split_canonical(symbol, self.name)
            tick_size = to_optional_decimal(token.get("tick_size"))
            if tick_size is None and token.get("pair_decimals") is not None:
                tick_size = Decimal(1).scaleb(-int(token["pair_decimals"]))

            markets.append(Market(
                symbol=symbol,
                native_symbol=native,
                base_currency=base,
                quote_currency=quote,
                is_active=str(token.get("status", "online")).lower() == "online",
                min_trade_size=to_optional_decimal(token.get("ordermin")),
                quantity_step_size=(
                    Decimal(1).scaleb(-int(token["lot_decimals"])) if token.get("lot_decimals") is not None else None
                ),
                price_step_size=tick_size,
            ))

        self.logger.info(f"Fetched {len(markets)} Kraken markets ({len(pairs) - len(markets)} unmapped pairs skipped)")
        return markets

    async def fetch_ticker(self, pipeline, native_symbol: str) -> Ticker:
        """
        Ticker result: {"XXBTZUSD": {"a": ["30300.1", "1", "1.000"], "b": ["30300.0", "1", "1.000"],
                                     "c": ["30303.2", "0.0001"], "v": ["2634.1", "3124.6"], ...}}
        """
        result = await pipeline.request("/0/public/Ticker", payload={"pair": native_symbol})
        token = next(iter(result.values()))
        return Ticker(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bid=to_decimal(token["b"][0]),
            ask=to_decimal(token["a"][0]),
            last=to_decimal(token["c"][0]),
            base_volume=to_optional_decimal(token["v"][1]) if token.get("v") else None,
        )

    async def fetch_order_book(self, pipeline, native_symbol: str, depth: int) -> OrderBook:
        result = await pipeline.request("/0/public/Depth", payload={"pair": native_symbol, "count": depth})
        token = next(iter(result.values()))
        return OrderBook(
            exchange=self.name,
            symbol=self.symbols.to_canonical_symbol(native_symbol),
            bids=[OrderBookEntry(price=to_decimal(e[0]), amount=to_decimal(e[1])) for e in token.get("bids", [])],
            asks=[OrderBookEntry(price=to_decimal(e[0]), amount=to_decimal(e[1])) for e in token.get("asks", [])],
        )

    # ============================================
    # Orders
    # ============================================

    async def place_order(self, pipeline, order: OrderRequest, native_symbol: str) -> ConsolidatedOrder:
        payload: Dict[str, Any] = {
            "pair": native_symbol,
            "type": order.side.value,
            "ordertype": order.order_type.value,
            "volume": str(order.amount),
        }
        if order.order_type == OrderType.LIMIT:
            payload["price"] = str(order.price)
        payload.update(order.extra_parameters)

        result = await pipeline.request("/0/private/AddOrder", payload=payload, private=True)
        txids = result.get("txid") or []
        if not txids:
            raise self.classify_error(f"AddOrder returned no order id: {result.get('descr')}", result)

        return open_order(
            order_id=txids[0],
            symbol=order.symbol,
            side=order.side,
            amount=order.amount,
            price=order.price,
            message=(result.get("descr") or {}).get("order"),
        )

    async def cancel_order(self, pipeline, order_id: str, native_symbol: Optional[str]) -> None:
        await pipeline.request("/0/private/CancelOrder", payload={"txid": order_id}, private=True)

    async def fetch_order(
        self,
        pipeline,
        order_id: str,
        native_symbol: Optional[str]
    ) -> Tuple[ConsolidatedOrder, List[RawFill]]:
        result = await pipeline.request(
            "/0/private/QueryOrders", payload={"txid": order_id, "trades": "true"}, private=True
        )
        if order_id not in result:
            raise self.classify_error(f"Unknown order {order_id}", result)

        token = result[order_id]
        order = self._parse_order(order_id, token)

        trade_ids = token.get("trades") or []
        if not trade_ids:
            return order, []

        trades = await pipeline.request(
            "/0/private/QueryTrades", payload={"txid": ",".join(trade_ids)}, private=True
        )
        return order, [self._parse_trade(tid, t) for tid, t in trades.items()]

    async def fetch_fills(self, pipeline, native_symbol: Optional[str]) -> List[RawFill]:
        result = await pipeline.request("/0/private/TradesHistory", private=True)
        fills = [self._parse_trade(tid, t) for tid, t in (result.get("trades") or {}).items()]

        if native_symbol is not None:
            symbol = self.symbols.to_canonical_symbol(native_symbol)
            fills = [f for f in fills if f.symbol == symbol]

        return fills
