"""Online/offline detection for the Jarvis voice session.

Polls a probe URL and reports transitions through a callback (normally
TurnController.set_online). Any HTTP answer counts as online; connect
failures and timeouts count as offline.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx
import structlog

from jarvis_voice.utils.config import ConnectivityConfig

logger = structlog.get_logger(__name__)


@dataclass
class ConnectivityMonitor:
    """Periodic reachability probe."""

    on_change: Callable[[bool], None]
    config: ConnectivityConfig = field(default_factory=ConnectivityConfig)
    transport: httpx.AsyncBaseTransport | None = None

    _online: bool | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def online(self) -> bool | None:
        """Last observed status, None before the first probe."""
        return self._online

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> bool:
        """Probe once and report a change of status."""
        async with httpx.AsyncClient(
            timeout=self.config.timeout_seconds, transport=self.transport
        ) as client:
            try:
                await client.head(self.config.probe_url)
                online = True
            except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as e:
                logger.debug("connectivity_probe_failed", error=str(e))
                online = False

        if online != self._online:
            self._online = online
            logger.info("connectivity_status", online=online)
            self.on_change(online)
        return online

    def start(self) -> None:
        if not self.config.enabled or self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="connectivity")

    async def _run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self.config.interval_seconds)

    async def stop(self) -> None:
        """Stop polling. Safe to call when never started."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
