"""
Connectivity monitor: keeps SyncState.is_online current.

Probes the server health endpoint on a fixed interval. The dispatcher also
updates is_online from the outcome of real sends, so the probe only matters
while the device is idle.
"""

from __future__ import annotations

import asyncio
import logging

from .state import SyncState, init_sync_state
from .transport import SyncTransport

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    def __init__(
        self,
        transport: SyncTransport,
        interval_ms: int = 10_000,
        state: SyncState | None = None,
    ) -> None:
        self.transport = transport
        self.interval_ms = interval_ms
        self.state = state if state is not None else init_sync_state()
        self._task: asyncio.Task[None] | None = None

    async def check(self) -> bool:
        """Probe once and publish the result."""
        online = await self.transport.probe()
        if self.state.is_online.set(online):
            logger.info("Connectivity changed", extra={"online": online})
        return online

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="possync-connectivity")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Connectivity probe failed")
            await asyncio.sleep(self.interval_ms / 1000.0)
