"""
Exchange Client: Caller-Facing Surface for One Exchange Connection

An ExchangeClient wires one adapter to its own nonce generator, rate gate,
response cache, request pipeline and websocket manager. Callers only ever
deal in canonical symbols and canonical models; the adapter translates.

Key Features:
    - Capability check before any network call (NotSupportedError)
    - Cached market metadata (settings.markets_cache_ttl)
    - Price/amount clamping to market bounds and step sizes before placing
    - Fills folded into ConsolidatedOrder by the order reconciler, for both
      REST history and the live fill stream
    - BlockingExchangeClient for synchronous callers

Usage:
    async with ExchangeClient(BinanceAdapter(), credentials) as client:
        ticker = await client.get_ticker("BTC-USDT")
        order = await client.place_order(
            OrderRequest(symbol="BTC-USDT", side="buy", amount="0.01", price="30000")
        )
        details = await client.get_order_details(order.order_id, "BTC-USDT")
"""

import asyncio
import concurrent.futures
import inspect
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.adapter import ExchangeAdapter
from core.config import settings
from core.errors import AuthError, NotSupportedError, TransportError, UnknownSymbolError
from core.logging import get_logger
from core.pipeline import RequestPipeline
from core.reconciler import fold, fold_all, group_by_order
from core.schemas import (
    ConsolidatedOrder,
    Credentials,
    Market,
    OrderBook,
    OrderRequest,
    OrderStatus,
    Ticker,
)
from core.transport import HttpTransport
from core.utils.decimal import clamp_decimal
from core.websocket import Connector, Subscription, WebSocketConnectionManager


MARKETS_CACHE_KEY = "markets"

# No further fills are expected once an order reaches one of these
FINISHED_STATUSES = (OrderStatus.FILLED, OrderStatus.CANCELED, OrderStatus.ERROR)


class ExchangeClient:
    """
    Async client for one exchange connection.

    Attributes:
        adapter: Exchange hooks and translation operations
        credentials: API keys (None for public data only)
        pipeline: REST request pipeline (owns nonce, gate and cache)
        streams: Websocket connection manager

    Example:
        >>> client = ExchangeClient(KrakenAdapter())
        >>> book = await client.get_order_book("BTC-USD", depth=10)
        >>> await client.close()
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        credentials: Optional[Credentials] = None,
        transport: Optional[HttpTransport] = None,
        connector: Optional[Connector] = None
    ):
        self.adapter = adapter
        self.credentials = credentials
        self.pipeline = RequestPipeline(adapter, transport=transport, credentials=credentials)
        self.streams = WebSocketConnectionManager(adapter, connector=connector)
        self.logger = get_logger(__name__)

        # Open orders seen by this connection, so stream fills fold onto known
        # requests; both maps hold at most settings.order_memory entries, oldest first
        self._orders: "OrderedDict[str, ConsolidatedOrder]" = OrderedDict()
        # Ids of orders that finished
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    @property
    def name(self) -> str:
        return self.adapter.name

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Close every websocket and the HTTP session."""
        await self.streams.close_all()
        await self.pipeline.close()
        self.logger.debug(f"{self.name} client closed")

    # ============================================
    # Internal Helpers
    # ============================================

    def _require(self, feature: str) -> None:
        if not self.adapter.supports(feature):
            raise NotSupportedError(f"{self.name} does not support '{feature}'", exchange=self.name)

    def _native(self, symbol: Optional[str]) -> Optional[str]:
        if symbol is None:
            return None
        return self.adapter.symbols.to_exchange_symbol(symbol)

    @staticmethod
    def _remember(entries: OrderedDict, key: str, value: Any) -> None:
        entries[key] = value
        entries.move_to_end(key)
        while len(entries) > settings.order_memory:
            entries.popitem(last=False)

    def _track(self, order: ConsolidatedOrder) -> ConsolidatedOrder:
        # A fill-derived FILLED without a known amount may still grow
        finished = order.status in FINISHED_STATUSES and (
            order.amount is not None or order.status != OrderStatus.FILLED
        )

        if finished:
            self._orders.pop(order.order_id, None)
            self._remember(self._finished, order.order_id, None)
        else:
            self._remember(self._orders, order.order_id, order)
        return order

    # ============================================
    # Market Data
    # ============================================

    async def get_markets(self) -> List[Market]:
        """All markets with symbol metadata (cached)."""
        self._require("markets")
        return await self.pipeline.cache.get_or_compute(
            MARKETS_CACHE_KEY,
            settings.markets_cache_ttl,
            lambda: self.adapter.fetch_markets(self.pipeline)
        )

    async def get_market(self, symbol: str) -> Market:
        """
        Metadata for one canonical symbol.

        Raises:
            UnknownSymbolError: If the exchange does not list the symbol
        """
        canonical = symbol.upper()
        for market in await self.get_markets():
            if market.symbol == canonical:
                return market
        raise UnknownSymbolError(symbol, exchange=self.name, reason="not listed")

    async def get_symbols(self) -> List[str]:
        return [market.symbol for market in await self.get_markets()]

    async def get_ticker(self, symbol: str) -> Ticker:
        self._require("ticker")
        return await self.adapter.fetch_ticker(self.pipeline, self._native(symbol))

    async def get_order_book(self, symbol: str, depth: int = 100) -> OrderBook:
        self._require("order_book")
        return await self.adapter.fetch_order_book(self.pipeline, self._native(symbol), depth)

    # ============================================
    # Orders
    # ============================================

    async def clamp_order(self, order: OrderRequest) -> OrderRequest:
        """Round price and amount to the market's bounds and step sizes."""
        market = await self.get_market(order.symbol)

        update: Dict[str, Any] = {
            "amount": clamp_decimal(
                order.amount, market.min_trade_size, market.max_trade_size, market.quantity_step_size
            )
        }
        if order.price is not None:
            update["price"] = clamp_decimal(order.price, market.min_price, market.max_price, market.price_step_size)

        return order.model_copy(update=update)

    async def place_order(self, order: OrderRequest) -> ConsolidatedOrder:
        """
        Place an order.

        Args:
            order: Canonical order request; clamped first when should_clamp
                   is set and the exchange publishes market metadata

        Returns:
            The order as acknowledged, with any fills reported at placement
        """
        self._require("place_order")

        if order.should_clamp and self.adapter.supports("markets"):
            order = await self.clamp_order(order)

        native = self._native(order.symbol)
        self.logger.info(
            f"{self.name} placing {order.order_type.value} {order.side.value} "
            f"{order.amount} {order.symbol} @ {order.price if order.price is not None else 'market'}"
        )

        result = await self.adapter.place_order(self.pipeline, order, native)
        self.logger.info(f"{self.name} order placed: {result}")
        return self._track(result)

    async def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        self._require("cancel_order")
        await self.adapter.cancel_order(self.pipeline, order_id, self._native(symbol))
        self._orders.pop(order_id, None)
        self.logger.info(f"{self.name} order {order_id} canceled")

    async def get_order_details(self, order_id: str, symbol: Optional[str] = None) -> ConsolidatedOrder:
        """One order with all of its fills reconciled."""
        self._require("order_details")
        order, fills = await self.adapter.fetch_order(self.pipeline, order_id, self._native(symbol))
        return self._track(fold_all(fills, order))

    async def get_fills(self, symbol: Optional[str] = None) -> List[ConsolidatedOrder]:
        """
        Trade history folded into one consolidated order per order id.

        Requested amounts are not part of trade history, so each order is
        reported with what actually filled.
        """
        self._require("fills")
        fills = await self.adapter.fetch_fills(self.pipeline, self._native(symbol))
        return list(group_by_order(fills).values())

    # ============================================
    # Streams
    # ============================================

    def _wrap_callback(self, transform: Callable[[Any], Iterable[Any]], callback: Callable[[Any], Any]):
        if inspect.iscoroutinefunction(callback):
            async def on_message(data: Any) -> None:
                for item in transform(data):
                    await callback(item)
        else:
            def on_message(data: Any) -> None:
                for item in transform(data):
                    callback(item)
        return on_message

    async def subscribe_tickers(self, symbols: List[str], callback: Callable[[Ticker], Any]) -> List[Subscription]:
        """
        Stream tickers for the given canonical symbols.

        Args:
            symbols: Canonical symbols
            callback: Receives Ticker objects (plain or coroutine function)

        Returns:
            One Subscription per symbol
        """
        self._require("stream_tickers")
        subscriptions = []

        for symbol in symbols:
            native = self._native(symbol)
            spec = self.adapter.ticker_stream(native)

            def transform(data: Any, native=native) -> List[Ticker]:
                ticker = self.adapter.parse_ticker_frame(data, native)
                return [ticker] if ticker is not None else []

            async def on_connect(sub: Subscription, spec=spec) -> None:
                for message in spec.messages:
                    await sub.send(message)

            subscriptions.append(await self.streams.subscribe(
                spec.stream_key, self._wrap_callback(transform, callback), on_connect, spec.url
            ))

        return subscriptions

    def _fold_stream_fills(self, data: Any) -> List[ConsolidatedOrder]:
        updates = []
        for fill in self.adapter.parse_fill_frame(data):
            if fill.order_id in self._finished:
                self.logger.debug(f"{self.name} fill {fill.trade_id} for finished order {fill.order_id} dropped")
                continue
            before = self._orders.get(fill.order_id)
            after = fold(before, fill)
            if after is not before:
                updates.append(self._track(after))
        return updates

    async def subscribe_fills(self, callback: Callable[[ConsolidatedOrder], Any]) -> Subscription:
        """
        Stream own fills, delivered as reconciled ConsolidatedOrder updates.

        Fills for orders placed or looked up through this client are folded
        onto the known order (so partial fills report filled_partially).
        A fill already seen by trade id, or one for an order that already
        finished, produces no update.
        """
        self._require("stream_fills")
        if self.credentials is None:
            raise AuthError("Credentials are required for the fill stream", exchange=self.name)

        spec = self.adapter.fills_stream(self.credentials, self.pipeline.nonce.next())

        async def on_connect(sub: Subscription) -> None:
            # Fresh auth frame (and nonce) on every reconnect
            current = self.adapter.fills_stream(self.credentials, self.pipeline.nonce.next())
            for message in current.messages:
                await sub.send(message)

        return await self.streams.subscribe(
            spec.stream_key, self._wrap_callback(self._fold_stream_fills, callback), on_connect, spec.url
        )

    def __repr__(self) -> str:
        return f"<ExchangeClient(exchange='{self.name}', private={self.credentials is not None})>"


class BlockingExchangeClient:
    """
    Synchronous facade over ExchangeClient.

    Runs a private event loop on a background thread; every call blocks until
    the coroutine finishes on that loop. Stream callbacks run on the loop
    thread.

    Example:
        >>> with BlockingExchangeClient(BinanceAdapter()) as client:
        ...     print(client.get_ticker("BTC-USDT").last)
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        credentials: Optional[Credentials] = None,
        transport: Optional[HttpTransport] = None,
        connector: Optional[Connector] = None,
        timeout: Optional[float] = None
    ):
        self.timeout = timeout
        self.exchange = adapter.name
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._loop.run_forever, name=f"{adapter.name}-client-loop", daemon=True
        )
        self._thread.start()

        async def create() -> ExchangeClient:
            return ExchangeClient(adapter, credentials, transport, connector)

        self.client: ExchangeClient = self._call(create())

    def _call(self, coro) -> Any:
        if self._loop.is_closed():
            coro.close()
            raise RuntimeError("BlockingExchangeClient is closed")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(self.timeout)
        except concurrent.futures.TimeoutError:
            # Stop the coroutine on the loop thread too
            future.cancel()
            raise TransportError(f"Call did not finish within {self.timeout}s", exchange=self.exchange)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def get_markets(self) -> List[Market]:
        return self._call(self.client.get_markets())

    def get_market(self, symbol: str) -> Market:
        return self._call(self.client.get_market(symbol))

    def get_symbols(self) -> List[str]:
        return self._call(self.client.get_symbols())

    def get_ticker(self, symbol: str) -> Ticker:
        return self._call(self.client.get_ticker(symbol))

    def get_order_book(self, symbol: str, depth: int = 100) -> OrderBook:
        return self._call(self.client.get_order_book(symbol, depth))

    def place_order(self, order: OrderRequest) -> ConsolidatedOrder:
        return self._call(self.client.place_order(order))

    def cancel_order(self, order_id: str, symbol: Optional[str] = None) -> None:
        return self._call(self.client.cancel_order(order_id, symbol))

    def get_order_details(self, order_id: str, symbol: Optional[str] = None) -> ConsolidatedOrder:
        return self._call(self.client.get_order_details(order_id, symbol))

    def get_fills(self, symbol: Optional[str] = None) -> List[ConsolidatedOrder]:
        return self._call(self.client.get_fills(symbol))

    def subscribe_tickers(self, symbols: List[str], callback: Callable[[Ticker], Any]) -> List[Subscription]:
        return self._call(self.client.subscribe_tickers(symbols, callback))

    def subscribe_fills(self, callback: Callable[[ConsolidatedOrder], Any]) -> Subscription:
        return self._call(self.client.subscribe_fills(callback))

    def close(self) -> None:
        """Close the client, stop the loop and join its thread. Safe to call twice."""
        if self._loop.is_closed():
            return
        try:
            self._call(self.client.close())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()
