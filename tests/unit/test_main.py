"""
Unit tests for the server entry point.
"""

import logging
import os

import json_log_formatter

from possync_server.config import ObservabilityConfig, ServerConfig, StorageConfig
from possync_server.main import Server, setup_logging


class TestServer:
    """Tests for Server wiring and logging setup."""

    def test_setup_builds_components(self, data_dir):
        target = os.path.join(data_dir, "stores")
        server = Server(ServerConfig(storage=StorageConfig(data_dir=target, wal_mode=False)))

        app = server.setup()

        assert os.path.isdir(target)
        assert server.applier.store is server.store
        assert server.applier.feed is server.feed
        paths = {route.resource.canonical for route in app.router.routes()}
        assert {"/v1/sync/apply", "/v1/sync/apply-batch", "/v1/feed"} <= paths

    def test_json_logging(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(ServerConfig(observability=ObservabilityConfig(log_level="DEBUG")))

            assert root.level == logging.DEBUG
            assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
