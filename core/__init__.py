"""
Core Package

Contains the exchange-agnostic core of the gateway:
- NonceGenerator, RateGate, ResponseCache: per-connection request state
- RequestPipeline: signed, rate-limited, cached REST calls through adapter hooks
- WebSocketConnectionManager: shared self-healing sockets with stream routing
- Symbol normalizers and the order reconciler
- ExchangeClient / ExchangeManager: the caller-facing surface
- Schemas: Pydantic models for canonical data (Ticker, OrderBook, orders, fills)

Exchanges plug in through ExchangeAdapter (core.adapter) and never change
anything in this package.
"""
