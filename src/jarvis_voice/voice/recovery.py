"""Retry and degradation support for remote voice services.

Implements retry with exponential backoff for the generation and synthesis
services, and tracks components that are temporarily running in a degraded
mode (e.g. remote synthesis skipped while a quota is exhausted).

Only transient failures are retried:
- HTTP-like status 429 or 500
- transport-level failures (connect, read, timeout)
Anything else propagates after a single attempt.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
import structlog

from jarvis_voice.voice.errors import CollaboratorError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Backoff configuration for one kind of remote request."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_factor: float = 2.0
    max_delay_seconds: float = 30.0

    def delays(self) -> list[float]:
        """Delays slept before attempts 2..max_attempts."""
        delays = []
        delay = self.initial_delay_seconds
        for _ in range(self.max_attempts - 1):
            delays.append(delay)
            delay = min(delay * self.backoff_factor, self.max_delay_seconds)
        return delays


def is_transient_error(error: BaseException) -> bool:
    """Classify an exception raised by a remote request."""
    if isinstance(error, CollaboratorError):
        return error.is_transient
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (429, 500)
    return isinstance(error, httpx.TransportError)


async def with_retry(
    operation: Callable[[], Coroutine[Any, Any, T]],
    policy: RetryPolicy,
    failure_type: str,
    sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
) -> T:
    """Run an async operation, retrying transient failures with backoff.

    Args:
        operation: Async callable performing one attempt.
        policy: Attempt bound and delays.
        failure_type: Name used in log events (e.g. "dispatch", "synthesis").
        sleep: Sleep coroutine, replaceable in tests.

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted, or the first
        non-transient exception immediately.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
        except Exception as e:
            if not is_transient_error(e) or attempt >= policy.max_attempts:
                logger.warning(
                    "retry_gave_up",
                    failure_type=failure_type,
                    attempts=attempt,
                    transient=is_transient_error(e),
                    error=str(e),
                )
                raise
            delay = delays[attempt - 1]
            logger.info(
                "retry_backoff",
                failure_type=failure_type,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error=str(e),
            )
            await sleep(delay)
            continue

        if attempt > 1:
            logger.info("retry_succeeded", failure_type=failure_type, attempts=attempt)
        return result


@dataclass
class DegradedModeTracker:
    """Tracks components running in degraded mode.

    A component may be degraded for a bounded cooldown, after which it is
    considered healthy again on the next check.
    """

    on_degraded_mode: Callable[[str, bool], None] | None = None
    clock: Callable[[], float] = time.monotonic

    _degraded_until: dict[str, float | None] = field(default_factory=dict, repr=False)

    @property
    def degraded_modes(self) -> set[str]:
        """Get currently active degraded modes."""
        return {c for c in list(self._degraded_until) if self.is_degraded(c)}

    def is_degraded(self, component: str) -> bool:
        """Check if a component is in degraded mode, expiring stale entries."""
        if component not in self._degraded_until:
            return False
        until = self._degraded_until[component]
        if until is not None and self.clock() >= until:
            self.exit_degraded_mode(component)
            return False
        return True

    def enter_degraded_mode(
        self,
        component: str,
        reason: str = "",
        cooldown_seconds: float | None = None,
    ) -> None:
        """Enter degraded mode for a component.

        Args:
            component: Component name (e.g. "synthesis")
            reason: Optional reason for degradation
            cooldown_seconds: Leave degraded mode automatically after this long
        """
        was_degraded = component in self._degraded_until
        until = self.clock() + cooldown_seconds if cooldown_seconds else None
        self._degraded_until[component] = until
        if was_degraded:
            return

        logger.warning(
            "degraded_mode_entered",
            component=component,
            reason=reason,
            cooldown_seconds=cooldown_seconds,
        )
        if self.on_degraded_mode:
            self.on_degraded_mode(component, True)

    def exit_degraded_mode(self, component: str) -> None:
        """Exit degraded mode for a component."""
        if component not in self._degraded_until:
            return
        del self._degraded_until[component]
        logger.info("degraded_mode_exited", component=component)
        if self.on_degraded_mode:
            self.on_degraded_mode(component, False)

    def reset_all(self) -> None:
        for component in list(self._degraded_until):
            self.exit_degraded_mode(component)
