"""
Exchange Adapters Package

Each exchange has its own subfolder with an adapter.py holding its
ExchangeAdapter subclass: request hooks (URL, body, signature, error
convention), symbol normalizer, and translations into canonical models.

Adding an exchange:
    1. Create exchanges/<name>/adapter.py with a subclass of ExchangeAdapter
    2. Declare its capabilities
    3. Add it to BUILTIN_EXCHANGES below

The core never imports this package except through BUILTIN_EXCHANGES, so
adapters can be added without touching existing code.
"""

from exchanges.binance import BinanceAdapter
from exchanges.bitfinex import BitfinexAdapter
from exchanges.coinbase import CoinbaseAdapter
from exchanges.kraken import KrakenAdapter

# Exchange name -> adapter factory
BUILTIN_EXCHANGES = {
    "binance": BinanceAdapter,
    "bitfinex": BitfinexAdapter,
    "coinbase": CoinbaseAdapter,
    "kraken": KrakenAdapter,
}

__all__ = ["BUILTIN_EXCHANGES", "BinanceAdapter", "BitfinexAdapter", "CoinbaseAdapter", "KrakenAdapter"]
