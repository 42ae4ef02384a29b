"""
Unit Tests for the Bitfinex Adapter

These tests verify that BitfinexAdapter:
- Signs v2 authenticated calls with bfx-* headers (SHA384 hex)
- Turns HTTP 500 error arrays into domain/auth errors
- Maps tBTCUSD / tDOGE:USD / UST symbols
- Parses books, order notifications and trade arrays
- Binds ticker channels and routes account trade updates

Run with:
    pytest tests/unit/test_bitfinex_adapter.py -v
"""

import hashlib
import hmac
import json
from decimal import Decimal

import pytest
import pytest_asyncio

from core.client import ExchangeClient
from core.errors import AuthError, DomainError, UnknownSymbolError
from core.nonce import NonceGenerator
from core.pipeline import RequestPipeline
from core.schemas import NonceFormat, OrderRequest, OrderSide, OrderStatus, OrderType
from exchanges.bitfinex import BitfinexAdapter, BitfinexSymbolNormalizer, parse_order_status


NONCE = "1700000000000"


def order_token(order_id=123, symbol="tBTCUSD", amount=2, status="ACTIVE", price=100):
    return [order_id, None, 456, symbol, 1700000000000, 1700000000001, amount, amount,
            "EXCHANGE LIMIT", None, None, None, 0, status, None, None, price, 0]


def trade_token(trade_id, order_id=123, symbol="tBTCUSD", amount=1, price=100, fee=-0.1, fee_currency="USD"):
    return [trade_id, symbol, 1700000000500, order_id, amount, price, "EXCHANGE LIMIT", price, 1, fee, fee_currency]


@pytest.fixture
def adapter():
    return BitfinexAdapter()


@pytest_asyncio.fixture
async def pipeline(adapter, fake_transport, credentials):
    pipe = RequestPipeline(
        adapter,
        transport=fake_transport,
        credentials=credentials,
        nonce=NonceGenerator(NonceFormat.UNIX_MILLISECONDS_STRING, clock=lambda: 1700000000.0),
    )
    yield pipe
    await pipe.close()


# ============================================
# Symbols and Statuses
# ============================================

class TestSymbols:

    def test_to_exchange(self):
        n = BitfinexSymbolNormalizer()
        assert n.to_exchange_symbol("BTC-USD") == "tBTCUSD"
        assert n.to_exchange_symbol("BTC-USDT") == "tBTCUST"
        assert n.to_exchange_symbol("DOGE-USD") == "tDOGE:USD"

    def test_to_canonical(self):
        n = BitfinexSymbolNormalizer()
        assert n.to_canonical_symbol("tBTCUSD") == "BTC-USD"
        assert n.to_canonical_symbol("tBTCUST") == "BTC-USDT"
        assert n.to_canonical_symbol("tDOGE:USD") == "DOGE-USD"
        assert n.to_canonical_symbol("btcusd") == "BTC-USD"
        assert n.to_canonical_symbol("trxusd") == "TRX-USD"

    def test_bad_symbol(self):
        with pytest.raises(UnknownSymbolError):
            BitfinexSymbolNormalizer().to_canonical_symbol("tBTC")

    def test_status_prefixes(self):
        assert parse_order_status("ACTIVE") == OrderStatus.PENDING
        assert parse_order_status("EXECUTED @ 107.6(-0.2)") == OrderStatus.FILLED
        assert parse_order_status("PARTIALLY FILLED @ 107.6(-0.2)") == OrderStatus.FILLED_PARTIALLY
        assert parse_order_status("CANCELED was: PARTIALLY FILLED @ 1(1)") == OrderStatus.CANCELED
        assert parse_order_status("INSUFFICIENT MARGIN") == OrderStatus.UNKNOWN


# ============================================
# Request Signing and Errors
# ============================================

class TestRequests:

    @pytest.mark.asyncio
    async def test_signature(self, pipeline, fake_transport, credentials):
        fake_transport.add("/v2/auth/r/orders", [])

        await pipeline.request("/v2/auth/r/orders", payload={"id": [1]}, private=True)

        request = fake_transport.requests[0]
        assert request.body == '{"id":[1]}'

        expected = hmac.new(
            credentials.private_key.get_secret_value().encode(),
            f"/api/v2/auth/r/orders{NONCE}{request.body}".encode(),
            hashlib.sha384
        ).hexdigest()
        assert request.headers["bfx-signature"] == expected
        assert request.headers["bfx-nonce"] == NONCE
        assert request.headers["bfx-apikey"] == "test-key"

    @pytest.mark.asyncio
    async def test_empty_private_body(self, pipeline, fake_transport):
        fake_transport.add("/v2/auth/r/trades/hist", [])
        await pipeline.request("/v2/auth/r/trades/hist", private=True)
        assert fake_transport.requests[0].body == "{}"

    @pytest.mark.asyncio
    async def test_error_array_on_500(self, pipeline, fake_transport):
        fake_transport.add_text("/v2/auth/w/order/submit", '["error",10001,"Invalid order: minimum size"]', status=500)

        with pytest.raises(DomainError) as exc_info:
            await pipeline.request("/v2/auth/w/order/submit", payload={"amount": "0.0001"}, private=True)
        assert exc_info.value.message == "Invalid order: minimum size"

    @pytest.mark.asyncio
    async def test_invalid_key_on_500(self, pipeline, fake_transport):
        fake_transport.add_text("/v2/auth/r/orders", '["error",10100,"apikey: invalid"]', status=500)
        with pytest.raises(AuthError):
            await pipeline.request("/v2/auth/r/orders", private=True)


# ============================================
# Market Data
# ============================================

class TestMarketData:

    @pytest.mark.asyncio
    async def test_order_book_split_and_sorted(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v2/book/tBTCUSD/P0", [
            [99, 1, 1], [100, 2, 2.5], [102, 1, -1], [101, 3, -3],
        ])

        book = await adapter.fetch_order_book(pipeline, "tBTCUSD", 1)

        assert "len=25" in fake_transport.requests[0].url
        assert [e.price for e in book.bids] == [Decimal("100")]
        assert [e.price for e in book.asks] == [Decimal("101")]
        assert book.asks[0].amount == Decimal("3")

    @pytest.mark.asyncio
    async def test_markets(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v1/symbols_details", [
            {"pair": "btcusd", "price_precision": 5, "minimum_order_size": "0.0006",
             "maximum_order_size": "2000.0"},
            {"pair": "doge:usd", "minimum_order_size": "10", "maximum_order_size": "1000000"},
            {"pair": "weird", "minimum_order_size": "1"},
        ])

        markets = await adapter.fetch_markets(pipeline)

        assert [(m.symbol, m.native_symbol) for m in markets] == [
            ("BTC-USD", "tBTCUSD"), ("DOGE-USD", "tDOGE:USD"),
        ]
        assert markets[0].min_trade_size == Decimal("0.0006")

    @pytest.mark.asyncio
    async def test_ticker(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v2/ticker/tETHUSD", [1999, 5, 2001, 6, 10, 0.01, 2000, 1234.5, 2100, 1900])

        ticker = await adapter.fetch_ticker(pipeline, "tETHUSD")

        assert ticker.symbol == "ETH-USD"
        assert ticker.last == Decimal("2000")
        assert ticker.base_volume == Decimal("1234.5")


# ============================================
# Orders
# ============================================

class TestOrders:

    @pytest.mark.asyncio
    async def test_place_sell_order(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v2/auth/w/order/submit", [
            1700000000000, "on-req", None, None,
            [order_token(amount=-1.5, price=110)],
            None, "SUCCESS", "Submitting 1 orders.",
        ])
        request = OrderRequest(symbol="BTC-USD", side=OrderSide.SELL, order_type=OrderType.LIMIT,
                               amount=Decimal("1.5"), price=Decimal("110"))

        order = await adapter.place_order(pipeline, request, "tBTCUSD")

        body = json.loads(fake_transport.requests[0].body)
        assert body == {"type": "EXCHANGE LIMIT", "symbol": "tBTCUSD", "amount": "-1.5", "price": "110"}
        assert order.order_id == "123"
        assert order.side == OrderSide.SELL
        assert order.amount == Decimal("1.5")
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_place_order_failure_notification(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v2/auth/w/order/submit", [
            1700000000000, "on-req", None, None, [], None, "ERROR", "Invalid price.",
        ])
        request = OrderRequest(symbol="BTC-USD", side=OrderSide.BUY, order_type=OrderType.LIMIT,
                               amount=Decimal("1"), price=Decimal("1"))

        with pytest.raises(DomainError, match="Invalid price"):
            await adapter.place_order(pipeline, request, "tBTCUSD")

    @pytest.mark.asyncio
    async def test_order_details_from_history(self, fake_transport, credentials):
        fake_transport.add("/v2/auth/r/orders", [])
        fake_transport.add("/v2/auth/r/orders/hist", [order_token(status="EXECUTED @ 100.5(2.0)", symbol="tBTCUST")])
        fake_transport.add("/v2/auth/r/order/tBTCUST:123/trades", [
            trade_token(1, symbol="tBTCUST", amount=1, price=100, fee=-0.1, fee_currency="UST"),
            trade_token(2, symbol="tBTCUST", amount=1, price=101, fee=-0.1, fee_currency="UST"),
        ])

        async with ExchangeClient(BitfinexAdapter(), credentials=credentials, transport=fake_transport) as client:
            order = await client.get_order_details("123")

        assert order.symbol == "BTC-USDT"
        assert order.status == OrderStatus.FILLED
        assert order.amount_filled == Decimal("2")
        assert order.average_price == Decimal("100.5")
        assert order.fees == {"USDT": Decimal("0.2")}
        assert len(fake_transport.calls("/v2/auth/r/orders")) == 2

    @pytest.mark.asyncio
    async def test_order_not_found(self, adapter, pipeline, fake_transport):
        fake_transport.add("/v2/auth/r/orders", [])
        with pytest.raises(DomainError):
            await adapter.fetch_order(pipeline, "999", None)


# ============================================
# Websocket Frames
# ============================================

class TestFrames:

    def test_subscribed_binds_channel(self, adapter):
        envelope = adapter.decode_frame(json.dumps(
            {"event": "subscribed", "channel": "ticker", "chanId": 224555, "symbol": "tBTCUSD"}
        ))
        assert envelope.bind
        assert envelope.channel_id == "224555"
        assert envelope.stream_key == "ticker:tBTCUSD"

    def test_control_frames_dropped(self, adapter):
        assert adapter.decode_frame('{"event": "info", "version": 2}') is None
        assert adapter.decode_frame('{"event": "auth", "status": "OK"}') is None
        assert adapter.decode_frame('[224555, "hb"]') is None
        assert adapter.decode_frame('[0, "te", [1, "tBTCUSD"]]') is None
        assert adapter.decode_frame('[0, "os", []]') is None

    def test_trade_update_routed_to_fills(self, adapter):
        envelope = adapter.decode_frame(json.dumps([0, "tu", trade_token(7)]))
        assert envelope.stream_key == "fills"

        fills = adapter.parse_fill_frame(envelope.data)
        assert len(fills) == 1
        assert fills[0].trade_id == "7"
        assert fills[0].fee == Decimal("0.1")

    def test_channel_data(self, adapter):
        envelope = adapter.decode_frame("[224555, [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]]")
        assert envelope.channel_id == "224555"
        assert envelope.stream_key is None

    def test_auth_message(self, adapter, credentials):
        spec = adapter.fills_stream(credentials, NONCE)
        message = spec.messages[0]

        assert spec.url == adapter.private_ws_url
        assert message["authPayload"] == f"AUTH{NONCE}"
        assert message["authSig"] == hmac.new(
            credentials.private_key.get_secret_value().encode(), f"AUTH{NONCE}".encode(), hashlib.sha384
        ).hexdigest()
        assert "c2VjcmV0LWtleQ==" not in json.dumps(message)

    @pytest.mark.asyncio
    async def test_ticker_stream_end_to_end(self, fake_transport, fake_connector, waiter):
        tickers = []
        async with ExchangeClient(BitfinexAdapter(), transport=fake_transport, connector=fake_connector) as client:
            await client.subscribe_tickers(["BTC-USD"], tickers.append)
            ws = await fake_connector.wait_for_socket()
            await waiter(lambda: len(ws.sent) == 1)

            assert ws.sent_json()[0] == {"event": "subscribe", "channel": "ticker", "symbol": "tBTCUSD"}

            ws.push({"event": "subscribed", "channel": "ticker", "chanId": 7, "symbol": "tBTCUSD"})
            ws.push([7, [100, 1, 101, 1, 0, 0, 100.5, 10, 102, 99]])
            await waiter(lambda: len(tickers) == 1)

        assert tickers[0].symbol == "BTC-USD"
        assert tickers[0].bid == Decimal("100")
        assert tickers[0].last == Decimal("100.5")
