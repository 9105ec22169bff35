"""Periodic eviction of idle rate-limit and cost-detector state."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from llm_shield.logging import get_logger
from llm_shield.security.cost_detector import CostDetector
from llm_shield.security.rate_limiter import AdaptiveRateLimiter

log = get_logger("llm_shield.security.sweeper")


@dataclass
class SweepStats:
    """Statistics about sweeper runs."""

    total_sweeps: int = 0
    identities_removed: int = 0
    histories_removed: int = 0
    last_sweep: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_sweeps": self.total_sweeps,
            "identities_removed": self.identities_removed,
            "histories_removed": self.histories_removed,
            "last_sweep": self.last_sweep.isoformat() if self.last_sweep else None,
            "last_error": self.last_error,
        }


class ActivitySweeper:
    """Background task that periodically runs limiter and detector cleanup.

    Blocked identities are never evicted; see
    :meth:`AdaptiveRateLimiter.cleanup`.
    """

    def __init__(
        self,
        rate_limiter: AdaptiveRateLimiter,
        cost_detector: CostDetector | None = None,
        *,
        interval_seconds: float | None = None,
    ) -> None:
        """Initialize the sweeper.

        Args:
            rate_limiter: Limiter whose idle identities are evicted.
            cost_detector: Detector whose expired history is purged.
            interval_seconds: Seconds between sweeps; defaults to the
                limiter's configured sweep interval.
        """
        self._rate_limiter = rate_limiter
        self._cost_detector = cost_detector
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else rate_limiter.config.sweep_interval_seconds
        )
        self._stats = SweepStats()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def stats(self) -> SweepStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._running

    def sweep_once(self) -> int:
        """Run one sweep now.

        Returns:
            Number of rate-limit identities removed.
        """
        removed = self._rate_limiter.cleanup()
        purged = self._cost_detector.purge_expired() if self._cost_detector else 0
        self._stats.total_sweeps += 1
        self._stats.identities_removed += removed
        self._stats.histories_removed += purged
        self._stats.last_sweep = datetime.now(UTC)
        log.debug("activity_sweep_complete", identities=removed, histories=purged)
        return removed

    async def start(self) -> None:
        """Start sweeping in the background."""
        if self._running:
            log.warning("sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        log.info("activity_sweeper_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the background task."""
        self._running = False
        task = self._task
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._task = None
        log.info("activity_sweeper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                self.sweep_once()
            except Exception as e:
                log.error("activity_sweep_error", error=str(e))
                self._stats.last_error = str(e)
