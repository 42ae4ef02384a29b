"""
Kraken Exchange Adapter

Kraken spot REST API: table-based symbol mapping, nonce-first form bodies
signed with SHA256 + HMAC-SHA512, and {"error": [...], "result": ...}
responses.
"""

from .adapter import KRAKEN_SYMBOLS, KrakenAdapter, altname, parse_order_status

__all__ = ["KRAKEN_SYMBOLS", "KrakenAdapter", "altname", "parse_order_status"]
