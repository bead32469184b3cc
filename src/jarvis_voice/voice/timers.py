"""Cancellable one-shot timeout owned by the turn controller.

Arming a timeout always invalidates the previous one. When it fires, the
callback runs on the event loop; the callback itself re-checks whatever
condition it guards, so a timer that outlives its purpose is a no-op.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class CancellableTimeout:
    """A single re-armable deadline."""

    name: str
    _task: asyncio.Task | None = field(default=None, repr=False)
    _generation: int = field(default=0, repr=False)

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, seconds: float, callback: Callable[[], None]) -> None:
        """Schedule callback after seconds, replacing any pending deadline."""
        self.cancel()
        self._generation += 1
        self._task = asyncio.get_running_loop().create_task(
            self._fire(self._generation, seconds, callback),
            name=f"timeout:{self.name}",
        )
        logger.debug("timeout_armed", timer=self.name, seconds=seconds)

    def cancel(self) -> None:
        """Cancel the pending deadline. Safe to call when nothing is armed."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("timeout_cancelled", timer=self.name)
        self._task = None

    async def _fire(
        self, generation: int, seconds: float, callback: Callable[[], None]
    ) -> None:
        await asyncio.sleep(seconds)
        if generation != self._generation:
            return
        self._task = None
        logger.debug("timeout_fired", timer=self.name)
        callback()
