"""
possync Test Suite.

This package contains:
- unit/: Unit tests (SQLite in temp dirs, no network)
- integration/: Integration tests (apply engine, aiohttp test server,
  httpx mock transport, in-memory feeds)
"""
