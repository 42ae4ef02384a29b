"""
Coinbase Exchange Adapter

Coinbase Exchange (formerly GDAX): dash-separated symbols identical to the
canonical spelling, header HMAC signing with a passphrase, unix-seconds
timestamps and the "ticker" channel of the websocket feed.
"""

from .adapter import CoinbaseAdapter, parse_order_status

__all__ = ["CoinbaseAdapter", "parse_order_status"]
