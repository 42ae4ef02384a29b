"""
Test Suite

Unit tests for the exchange gateway.

Structure:
- tests/unit/: Tests for individual components (nonce, rate gate, cache,
  pipeline, websocket manager, reconciler) and for each exchange adapter
  against canned responses

No test touches the network: HTTP goes through FakeTransport and websockets
through FakeConnector (see tests/unit/conftest.py).

Uses pytest with pytest-asyncio for testing async functionality.
"""
