"""
Unit Tests for the Kraken Adapter

These tests verify that KrakenAdapter:
- Sends the nonce first in the form body and signs it with API-Sign
- Unwraps {"error": [], "result": ...} and classifies error lists
- Maps XXBTZUSD-style pair names (and their altnames) to canonical symbols
- Reconciles an order from QueryOrders + QueryTrades

Run with:
    pytest tests/unit/test_kraken_adapter.py -v
"""

import base64
import hashlib
import hmac
from decimal import Decimal

import pytest
import pytest_asyncio

from core.client import ExchangeClient
from core.errors import AuthError, DomainError
from core.nonce import NonceGenerator
from core.pipeline import RequestPipeline
from core.schemas import NonceFormat, OrderStatus
from exchanges.kraken import KrakenAdapter, altname, parse_order_status


def ok(result):
    return {"error": [], "result": result}


@pytest.fixture
def adapter():
    return KrakenAdapter()


@pytest_asyncio.fixture
async def pipeline(adapter, fake_transport, credentials):
    pipe = RequestPipeline(
        adapter,
        transport=fake_transport,
        credentials=credentials,
        nonce=NonceGenerator(NonceFormat.UNIX_MILLISECONDS, clock=lambda: 1700000000.0),
    )
    yield pipe
    await pipe.close()


class TestSigning:

    @pytest.mark.asyncio
    async def test_form_body_and_signature(self, pipeline, fake_transport, credentials):
        fake_transport.add("/0/private/CancelOrder", ok({"count": 1}))

        await pipeline.request("/0/private/CancelOrder", payload={"txid": "OABC"}, private=True)

        request = fake_transport.requests[0]
        assert request.method == "POST"
        assert request.body == "nonce=1700000000000&txid=OABC"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert request.headers["API-Key"] == "test-key"

        sha = hashlib.sha256(("1700000000000" + request.body).encode()).digest()
        expected = base64.b64encode(hmac.new(
            base64.b64decode(credentials.private_key.get_secret_value()),
            b"/0/private/CancelOrder" + sha,
            hashlib.sha512
        ).digest()).decode()
        assert request.headers["API-Sign"] == expected


class TestResponses:

    @pytest.mark.asyncio
    async def test_result_unwrapped(self, pipeline, fake_transport):
        fake_transport.add("/0/public/Time", ok({"unixtime": 1}))
        assert await pipeline.request("/0/public/Time") == {"unixtime": 1}

    @pytest.mark.asyncio
    async def test_error_list_is_domain_error(self, pipeline, fake_transport):
        fake_transport.add("/0/private/AddOrder", {"error": ["EOrder:Insufficient funds"]})
        with pytest.raises(DomainError) as exc_info:
            await pipeline.request("/0/private/AddOrder", payload={"pair": "XXBTZUSD"}, private=True)
        assert exc_info.value.message == "EOrder:Insufficient funds"

    @pytest.mark.asyncio
    async def test_invalid_nonce_is_auth_error(self, pipeline, fake_transport):
        fake_transport.add("/0/private/Balance", {"error": ["EAPI:Invalid nonce"]})
        with pytest.raises(AuthError):
            await pipeline.request("/0/private/Balance", private=True)


class TestSymbols:

    def test_altname(self):
        assert altname("XXBTZUSD") == "XBTUSD"
        assert altname("XETHXXBT") == "ETHXBT"
        assert altname("SOLUSD") == "SOLUSD"

    def test_status_map(self):
        assert parse_order_status("open") == OrderStatus.PENDING
        assert parse_order_status("closed") == OrderStatus.FILLED
        assert parse_order_status("expired") == OrderStatus.CANCELED
        assert parse_order_status("weird") == OrderStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_markets_skip_unmapped_pairs(self, adapter, pipeline, fake_transport):
        fake_transport.add("/0/public/AssetPairs", ok({
            "XXBTZUSD": {"altname": "XBTUSD", "lot_decimals": 8, "pair_decimals": 1, "ordermin": "0.0001"},
            "XETHXXBT": {"altname": "ETHXBT", "lot_decimals": 8, "tick_size": "0.00001"},
            "PEPEUSD": {"altname": "PEPEUSD", "lot_decimals": 0, "pair_decimals": 9},
        }))

        markets = await adapter.fetch_markets(pipeline)

        assert [m.symbol for m in markets] == ["BTC-USD", "ETH-BTC"]
        btc = markets[0]
        assert btc.native_symbol == "XXBTZUSD"
        assert btc.min_trade_size == Decimal("0.0001")
        assert btc.price_step_size == Decimal("0.1")
        assert btc.quantity_step_size == Decimal("1E-8")
        assert markets[1].price_step_size == Decimal("0.00001")

    @pytest.mark.asyncio
    async def test_ticker(self, adapter, pipeline, fake_transport):
        fake_transport.add("/0/public/Ticker", ok({"XXBTZUSD": {
            "a": ["30300.1", "1", "1.000"], "b": ["30300.0", "1", "1.000"],
            "c": ["30303.2", "0.0001"], "v": ["2634.1", "3124.6"],
        }}))

        ticker = await adapter.fetch_ticker(pipeline, "XXBTZUSD")

        assert "pair=XXBTZUSD" in fake_transport.requests[0].url
        assert ticker.symbol == "BTC-USD"
        assert ticker.bid == Decimal("30300.0")
        assert ticker.base_volume == Decimal("3124.6")


class TestOrders:

    @pytest_asyncio.fixture
    async def client(self, fake_transport, credentials):
        client = ExchangeClient(KrakenAdapter(), credentials=credentials, transport=fake_transport)
        yield client
        await client.close()

    @pytest.mark.asyncio
    async def test_order_details_reconciled(self, client, fake_transport):
        fake_transport.add("/0/private/QueryOrders", ok({"OABC-123": {
            "status": "closed", "opentm": 1688666559.8974, "vol": "2.0", "vol_exec": "2.0",
            "descr": {"pair": "XBTUSD", "type": "buy", "ordertype": "limit", "price": "100.0"},
            "trades": ["T1", "T2"],
        }}))
        fake_transport.add("/0/private/QueryTrades", ok({
            "T1": {"ordertxid": "OABC-123", "pair": "XXBTZUSD", "time": 1688667796.8, "type": "buy",
                   "ordertype": "limit", "price": "99.0", "cost": "99.0", "fee": "0.16", "vol": "1.0"},
            "T2": {"ordertxid": "OABC-123", "pair": "XXBTZUSD", "time": 1688667797.1, "type": "buy",
                   "ordertype": "limit", "price": "101.0", "cost": "101.0", "fee": "0.16", "vol": "1.0"},
        }))

        order = await client.get_order_details("OABC-123")

        assert order.symbol == "BTC-USD"
        assert order.amount == Decimal("2.0")
        assert order.amount_filled == Decimal("2.0")
        assert order.average_price == Decimal("100")
        assert order.status == OrderStatus.FILLED
        assert order.fees == {"USD": Decimal("0.32")}
        assert order.trade_ids == {"T1", "T2"}

        query_trades = fake_transport.calls("/0/private/QueryTrades")[0]
        assert "txid=T1%2CT2" in query_trades.body

    @pytest.mark.asyncio
    async def test_order_without_trades(self, client, fake_transport):
        fake_transport.add("/0/private/QueryOrders", ok({"OPEN-1": {
            "status": "open", "vol": "1.0", "vol_exec": "0.0",
            "descr": {"pair": "ETHXBT", "type": "sell", "ordertype": "limit", "price": "0.05"},
        }}))

        order = await client.get_order_details("OPEN-1")

        assert order.symbol == "ETH-BTC"
        assert order.status == OrderStatus.PENDING
        assert order.amount_filled == Decimal("0")
        assert fake_transport.calls("QueryTrades") == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, client, fake_transport):
        fake_transport.add("/0/private/QueryOrders", ok({}))
        with pytest.raises(DomainError):
            await client.get_order_details("NOPE")

    @pytest.mark.asyncio
    async def test_fills_filtered_by_symbol(self, client, fake_transport):
        fake_transport.add("/0/private/TradesHistory", ok({"trades": {
            "T1": {"ordertxid": "O1", "pair": "XXBTZUSD", "time": 1688667796.8, "type": "buy",
                   "price": "100.0", "fee": "0.1", "vol": "1.0"},
            "T2": {"ordertxid": "O2", "pair": "XETHZUSD", "time": 1688667796.9, "type": "sell",
                   "price": "2000.0", "fee": "0.2", "vol": "0.5"},
        }, "count": 2}))

        orders = await client.get_fills("ETH-USD")

        assert [o.order_id for o in orders] == ["O2"]
        assert orders[0].side.value == "sell"
