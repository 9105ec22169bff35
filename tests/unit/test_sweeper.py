"""Unit tests for the activity sweeper."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from llm_shield.security.cost_detector import CostDetector
from llm_shield.security.rate_limiter import AdaptiveRateLimiter
from llm_shield.security.sweeper import ActivitySweeper


class TestSweepOnce:
    """Tests for ActivitySweeper.sweep_once."""

    def test_evicts_idle_state(self, clock) -> None:
        limiter = AdaptiveRateLimiter(clock=clock)
        detector = CostDetector(clock=clock)
        limiter.check_rate_limit("u1", "1.1.1.1", 0)
        detector.analyze("hello", 2, "u1")
        clock.advance(3601)

        sweeper = ActivitySweeper(limiter, detector)
        assert sweeper.sweep_once() == 2
        stats = sweeper.stats
        assert stats.total_sweeps == 1
        assert stats.identities_removed == 2
        assert stats.histories_removed == 1
        assert stats.last_sweep is not None
        assert stats.to_dict()["last_error"] is None

    def test_blocked_identity_survives(self, clock) -> None:
        limiter = AdaptiveRateLimiter(clock=clock)
        limiter.block_user("u1", 10_000)
        clock.advance(3601)
        assert ActivitySweeper(limiter).sweep_once() == 0
        assert limiter.get_blocked_list().users[0].identity == "u1"

    def test_interval_defaults_to_config(self) -> None:
        limiter = AdaptiveRateLimiter()
        sweeper = ActivitySweeper(limiter)
        assert sweeper._interval == limiter.config.sweep_interval_seconds


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        sweeper = ActivitySweeper(AdaptiveRateLimiter(), interval_seconds=0.01)
        await sweeper.start()
        assert sweeper.is_running is True
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert sweeper.is_running is False
        assert sweeper.stats.total_sweeps >= 1

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self) -> None:
        sweeper = ActivitySweeper(AdaptiveRateLimiter(), interval_seconds=60)
        await sweeper.start()
        task = sweeper._task
        await sweeper.start()
        assert sweeper._task is task
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self) -> None:
        sweeper = ActivitySweeper(AdaptiveRateLimiter())
        await sweeper.stop()
        assert sweeper.is_running is False

    @pytest.mark.asyncio
    async def test_errors_do_not_kill_loop(self) -> None:
        limiter = MagicMock(spec=AdaptiveRateLimiter)
        calls: list[int] = []

        def cleanup() -> int:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        limiter.cleanup.side_effect = cleanup
        sweeper = ActivitySweeper(limiter, interval_seconds=0.01)
        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()
        assert sweeper.stats.last_error == "boom"
        assert limiter.cleanup.call_count >= 2
