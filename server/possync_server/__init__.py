"""
possync server - canonical store and idempotent apply engine.

Devices send envelopes over HTTP; the server applies each opId exactly once
to a per-store SQLite database and pushes the resulting changes to other
devices of the same store.

Components:
- HTTP API (aiohttp): apply, apply-batch, changes, feed, ledger, health
- Applier: idempotent, per-entity ordered application
- SyncStore: entities, applied-operations ledger and change log
- Change feed: in-process fan-out to WebSocket subscribers

Usage:
    possync-server

Configuration is entirely via environment variables (see config.py).
"""

__version__ = "0.1.0"
