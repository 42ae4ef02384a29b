"""
Binance Exchange Adapter

Binance Spot: separator-less symbols (BTCUSDT), query-string HMAC-SHA256
signing with the API key in the X-MBX-APIKEY header, and ticker streams
multiplexed over one socket with SUBSCRIBE frames.

Structure:
    exchanges/binance/
    ├── __init__.py          # This file
    └── adapter.py           # BinanceAdapter (hooks + translations)
"""

from .adapter import BinanceAdapter, parse_order_status

__all__ = ["BinanceAdapter", "parse_order_status"]
