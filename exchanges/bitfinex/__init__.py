"""
Bitfinex Exchange Adapter

Bitfinex v2 REST and websocket API: "t"-prefixed symbols, HMAC-SHA384
header signing, channel-id bound ticker streams and live trade updates on
the authenticated account channel.
"""

from .adapter import BitfinexAdapter, BitfinexSymbolNormalizer, parse_order_status

__all__ = ["BitfinexAdapter", "BitfinexSymbolNormalizer", "parse_order_status"]
