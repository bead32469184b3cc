"""Tests for the cancellable timeout."""

from __future__ import annotations

import asyncio

import pytest

from jarvis_voice.voice.timers import CancellableTimeout


class TestCancellableTimeout:
    """Test arming, re-arming and cancelling."""

    @pytest.mark.asyncio
    async def test_fires_once(self) -> None:
        fired: list[str] = []
        timer = CancellableTimeout("test")

        timer.arm(0.01, lambda: fired.append("a"))
        assert timer.is_armed
        await asyncio.sleep(0.05)

        assert fired == ["a"]
        assert not timer.is_armed

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self) -> None:
        fired: list[str] = []
        timer = CancellableTimeout("test")

        timer.arm(0.01, lambda: fired.append("a"))
        timer.cancel()
        await asyncio.sleep(0.05)

        assert fired == []

    @pytest.mark.asyncio
    async def test_rearm_replaces_previous_deadline(self) -> None:
        fired: list[str] = []
        timer = CancellableTimeout("test")

        timer.arm(0.01, lambda: fired.append("old"))
        timer.arm(0.03, lambda: fired.append("new"))
        await asyncio.sleep(0.02)
        assert fired == []

        await asyncio.sleep(0.04)
        assert fired == ["new"]

    @pytest.mark.asyncio
    async def test_cancel_when_idle(self) -> None:
        timer = CancellableTimeout("test")

        timer.cancel()
        timer.cancel()

        assert not timer.is_armed
