"""Tests for retry and degraded mode support.

Tests:
- RetryPolicy backoff delays
- with_retry transient classification and attempt bounds
- DegradedModeTracker cooldowns and callbacks
"""

from __future__ import annotations

import httpx
import pytest

from jarvis_voice.errors.codes import ErrorCode
from jarvis_voice.voice.errors import GenerationError, SynthesisError
from jarvis_voice.voice.recovery import (
    DegradedModeTracker,
    RetryPolicy,
    is_transient_error,
    with_retry,
)


class Flaky:
    """Async operation that fails with the scripted errors, then succeeds."""

    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return _sleep


# =============================================================================
# RetryPolicy Tests
# =============================================================================


class TestRetryPolicy:
    """Test exponential backoff delays."""

    def test_dispatch_delays(self) -> None:
        assert RetryPolicy(max_attempts=3, initial_delay_seconds=1.0).delays() == [1.0, 2.0]

    def test_synthesis_delays(self) -> None:
        assert RetryPolicy(max_attempts=2, initial_delay_seconds=0.3).delays() == [0.3]

    def test_single_attempt_has_no_delays(self) -> None:
        assert RetryPolicy(max_attempts=1).delays() == []

    def test_delays_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, initial_delay_seconds=10.0, max_delay_seconds=15.0)
        assert policy.delays() == [10.0, 15.0, 15.0, 15.0]


class TestTransientClassification:
    """Test which failures are retried."""

    @pytest.mark.parametrize(
        "code,expected",
        [
            (ErrorCode.RATE_LIMITED, True),
            (ErrorCode.SERVER_ERROR, True),
            (ErrorCode.NETWORK_ERROR, True),
            (ErrorCode.BAD_REQUEST, False),
            (ErrorCode.EMPTY_PAYLOAD, False),
        ],
    )
    def test_collaborator_codes(self, code: ErrorCode, expected: bool) -> None:
        assert is_transient_error(GenerationError("x", code=code)) is expected

    def test_transport_errors_are_transient(self) -> None:
        assert is_transient_error(httpx.ConnectError("refused")) is True
        assert is_transient_error(httpx.ReadTimeout("slow")) is True

    @pytest.mark.parametrize("status,expected", [(429, True), (500, True), (503, False), (400, False)])
    def test_http_status_errors(self, status: int, expected: bool) -> None:
        request = httpx.Request("POST", "https://example.test")
        response = httpx.Response(status, request=request)
        error = httpx.HTTPStatusError("failed", request=request, response=response)

        assert is_transient_error(error) is expected

    def test_other_exceptions_not_transient(self) -> None:
        assert is_transient_error(ValueError("bug")) is False


# =============================================================================
# with_retry Tests
# =============================================================================


class TestWithRetry:
    """Test the retry loop."""

    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self, fake_sleep, sleeps) -> None:
        operation = Flaky()

        result = await with_retry(operation, RetryPolicy(), "dispatch", sleep=fake_sleep)

        assert result == "ok"
        assert operation.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_two_rate_limits_then_success(self, fake_sleep, sleeps) -> None:
        operation = Flaky(
            GenerationError("quota", code=ErrorCode.RATE_LIMITED, status_code=429),
            GenerationError("quota", code=ErrorCode.RATE_LIMITED, status_code=429),
        )

        result = await with_retry(operation, RetryPolicy(), "dispatch", sleep=fake_sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_last_error(self, fake_sleep, sleeps) -> None:
        last = SynthesisError("down", code=ErrorCode.SERVER_ERROR, status_code=500)
        operation = Flaky(
            SynthesisError("down", code=ErrorCode.SERVER_ERROR, status_code=500), last
        )

        with pytest.raises(SynthesisError) as exc_info:
            await with_retry(
                operation,
                RetryPolicy(max_attempts=2, initial_delay_seconds=0.3),
                "synthesis",
                sleep=fake_sleep,
            )

        assert exc_info.value is last
        assert operation.calls == 2
        assert sleeps == [0.3]

    @pytest.mark.asyncio
    async def test_non_transient_fails_immediately(self, fake_sleep, sleeps) -> None:
        operation = Flaky(GenerationError("bad", code=ErrorCode.BAD_REQUEST, status_code=400))

        with pytest.raises(GenerationError):
            await with_retry(operation, RetryPolicy(), "dispatch", sleep=fake_sleep)

        assert operation.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, fake_sleep) -> None:
        operation = Flaky(httpx.ConnectError("refused"))

        assert await with_retry(operation, RetryPolicy(), "dispatch", sleep=fake_sleep) == "ok"
        assert operation.calls == 2


# =============================================================================
# DegradedModeTracker Tests
# =============================================================================


class TestDegradedModeTracker:
    """Test degraded mode state management."""

    def test_initially_healthy(self) -> None:
        tracker = DegradedModeTracker()

        assert tracker.degraded_modes == set()
        assert tracker.is_degraded("synthesis") is False

    def test_cooldown_expires(self) -> None:
        now = [0.0]
        tracker = DegradedModeTracker(clock=lambda: now[0])

        tracker.enter_degraded_mode("synthesis", reason="quota", cooldown_seconds=60.0)
        now[0] = 59.9
        assert tracker.is_degraded("synthesis") is True

        now[0] = 60.0
        assert tracker.is_degraded("synthesis") is False
        assert tracker.degraded_modes == set()

    def test_without_cooldown_stays_degraded(self) -> None:
        now = [0.0]
        tracker = DegradedModeTracker(clock=lambda: now[0])

        tracker.enter_degraded_mode("recognition")
        now[0] = 10_000.0

        assert tracker.is_degraded("recognition") is True

    def test_callbacks_fire_on_transitions_only(self) -> None:
        events: list[tuple[str, bool]] = []
        tracker = DegradedModeTracker(on_degraded_mode=lambda c, d: events.append((c, d)))

        tracker.enter_degraded_mode("synthesis", cooldown_seconds=60.0)
        tracker.enter_degraded_mode("synthesis", cooldown_seconds=60.0)
        tracker.exit_degraded_mode("synthesis")
        tracker.exit_degraded_mode("synthesis")

        assert events == [("synthesis", True), ("synthesis", False)]

    def test_reset_all(self) -> None:
        tracker = DegradedModeTracker()
        tracker.enter_degraded_mode("synthesis")
        tracker.enter_degraded_mode("recognition")

        tracker.reset_all()

        assert tracker.degraded_modes == set()
