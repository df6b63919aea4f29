"""
Test Suite

Structure:
- tests/unit/: Tests for individual components (registry, book, ledger,
  WebSocket session, OKX session parts)

Uses pytest with pytest-asyncio for testing async functionality.
"""
