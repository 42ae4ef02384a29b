"""
Normalized Data Schemas

This module defines Pydantic models for everything that crosses the gateway
boundary: credentials, the HTTP/websocket transport envelopes, and the
canonical, exchange-agnostic market and order data.

Key Principle:
    Regardless of which exchange the data comes from, adapters translate it
    into these schemas. Symbols in these models are always canonical
    (BASE-QUOTE, uppercase, '-' separator).

Models:
    - Credentials: API key material (SecretStr, never printed)
    - HttpRequest / HttpResponse: transport boundary
    - StreamEnvelope: one decoded inbound websocket frame
    - Market, Ticker, OrderBook: public market data
    - OrderRequest, RawFill, ConsolidatedOrder: private order data
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


# ============================================
# Enumerations
# ============================================

class NonceFormat(str, Enum):
    """Nonce spellings accepted by exchanges."""

    UNIX_SECONDS = "unix_seconds"
    UNIX_SECONDS_STRING = "unix_seconds_string"
    UNIX_MILLISECONDS = "unix_milliseconds"
    UNIX_MILLISECONDS_STRING = "unix_milliseconds_string"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"


class OrderStatus(str, Enum):
    """
    Consolidated order status.

    UNKNOWN is used for anything an adapter cannot recognize; it is never
    silently replaced by a more optimistic status.
    """

    UNKNOWN = "unknown"
    PENDING = "pending"
    FILLED_PARTIALLY = "filled_partially"
    FILLED = "filled"
    CANCELED = "canceled"
    ERROR = "error"


Nonce = Union[int, str]


# ============================================
# Credentials
# ============================================

class Credentials(BaseModel):
    """
    API key material for one exchange connection.

    All fields are SecretStr: repr(), str() and model_dump_json() print
    '**********'. Signing hooks call get_secret_value() at the moment of use.

    Example:
        >>> creds = Credentials(public_key="key", private_key="secret")
        >>> creds
        Credentials(public_key=SecretStr('**********'), ...)
    """

    model_config = ConfigDict(frozen=True)

    public_key: SecretStr
    private_key: SecretStr
    passphrase: Optional[SecretStr] = None


# ============================================
# Transport Envelopes
# ============================================

class HttpRequest(BaseModel):
    """
    One outbound HTTP request, mutated in place by adapter hooks.

    Attributes:
        method: HTTP verb in uppercase
        url: Full URL including any query string
        path: Endpoint path as requested by the caller (used in signatures)
        headers: Header map
        body: Serialized body (None for no body)
    """

    method: str = "GET"
    url: str
    path: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None


class HttpResponse(BaseModel):
    """One inbound HTTP response as seen by the pipeline."""

    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    text: str = ""


class StreamEnvelope(BaseModel):
    """
    A decoded inbound websocket frame.

    Attributes:
        stream_key: Logical stream the frame belongs to (if the frame names it)
        channel_id: Server-assigned channel id (if the frame only carries that)
        data: Payload for the subscriber
        bind: True when the frame announces channel_id -> stream_key
    """

    stream_key: Optional[str] = None
    channel_id: Optional[str] = None
    data: Any = None
    bind: bool = False


# ============================================
# Market Data
# ============================================

class Market(BaseModel):
    """
    Symbol metadata for one market.

    Example:
        >>> Market(symbol="BTC-USDT", base_currency="BTC", quote_currency="USDT",
        ...        native_symbol="BTCUSDT", price_step_size=Decimal("0.01"))
    """

    symbol: str = Field(..., description="Canonical symbol", examples=["BTC-USDT"])
    native_symbol: str = Field(..., description="Exchange spelling", examples=["BTCUSDT"])
    base_currency: str
    quote_currency: str
    is_active: bool = True
    min_trade_size: Optional[Decimal] = None
    max_trade_size: Optional[Decimal] = None
    quantity_step_size: Optional[Decimal] = None
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    price_step_size: Optional[Decimal] = None


class Ticker(BaseModel):
    """Best bid/ask and last trade for one symbol."""

    exchange: str
    symbol: str
    bid: Decimal
    ask: Decimal
    last: Decimal
    base_volume: Optional[Decimal] = None
    quote_volume: Optional[Decimal] = None
    timestamp: Optional[datetime] = None


class OrderBookEntry(BaseModel):
    price: Decimal
    amount: Decimal


class OrderBook(BaseModel):
    """
    Order book snapshot.

    Bids are sorted best (highest) first, asks best (lowest) first.
    """

    exchange: str
    symbol: str
    bids: List[OrderBookEntry] = Field(default_factory=list)
    asks: List[OrderBookEntry] = Field(default_factory=list)
    sequence: Optional[int] = None
    timestamp: Optional[datetime] = None


# ============================================
# Orders & Fills
# ============================================

class OrderRequest(BaseModel):
    """
    Order placement request in canonical terms.

    Attributes:
        symbol: Canonical symbol
        side: buy or sell
        amount: Requested base-currency amount
        price: Limit price (None for market orders)
        order_type: limit or market
        should_clamp: Round price/amount to the market's step sizes and bounds
        extra_parameters: Exchange specific fields passed through verbatim
    """

    symbol: str
    side: OrderSide
    amount: Decimal = Field(..., gt=0)
    price: Optional[Decimal] = Field(default=None, gt=0)
    order_type: OrderType = OrderType.LIMIT
    should_clamp: bool = True
    extra_parameters: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def limit_needs_price(self) -> "OrderRequest":
        """Limit orders must carry a price"""
        if self.order_type == OrderType.LIMIT and self.price is None:
            raise ValueError("A limit order requires a price")
        return self


class RawFill(BaseModel):
    """
    One exchange-reported execution of (part of) an order.

    Consumed immediately by OrderReconciler, never stored.
    """

    model_config = ConfigDict(frozen=True)

    order_id: str
    trade_id: Optional[str] = None
    symbol: str
    side: OrderSide
    amount: Decimal = Field(..., ge=0)
    price: Decimal = Field(..., ge=0)
    timestamp: Optional[datetime] = None
    fee: Decimal = Decimal("0")
    fee_currency: Optional[str] = None


class ConsolidatedOrder(BaseModel):
    """
    One order with all of its fills folded in.

    Attributes:
        order_id: Exchange order id
        symbol: Canonical symbol
        side: buy or sell
        amount: Requested amount (None when only trade history is known)
        amount_filled: Sum of fill amounts
        total_cost: Sum of price * amount over fills
        average_price: Volume-weighted average fill price
        price: Limit price, if the order had one
        status: Derived consolidated status
        reported_status: Terminal status reported by the exchange, if any
        fees: Fee totals keyed by fee currency ("" when unknown)
        order_date: Placement time or earliest fill time
        trade_ids: Trade ids already folded (duplicates are ignored)
        message: Exchange message (rejections, cancel reasons)
    """

    order_id: str
    symbol: str
    side: OrderSide
    amount: Optional[Decimal] = None
    amount_filled: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    average_price: Decimal = Decimal("0")
    price: Optional[Decimal] = None
    status: OrderStatus = OrderStatus.PENDING
    reported_status: Optional[OrderStatus] = None
    fees: Dict[str, Decimal] = Field(default_factory=dict)
    order_date: Optional[datetime] = None
    trade_ids: Set[str] = Field(default_factory=set)
    message: Optional[str] = None

    def __str__(self) -> str:
        return (
            f"[{self.order_date}] {self.side.value} {self.amount_filled} of "
            f"{self.amount if self.amount is not None else '?'} {self.symbol} "
            f"filled at {self.average_price} ({self.status.value})"
        )
