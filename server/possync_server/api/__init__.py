"""
API module for the possync server.

Provides the aiohttp HTTP/WebSocket API devices talk to.
"""

from .http_server import ApiContext, create_http_app, start_http_server

__all__ = [
    "ApiContext",
    "create_http_app",
    "start_http_server",
]
