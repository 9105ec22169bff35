"""Attack record storage.

The pipeline writes one :class:`AttackRecord` per flagged or blocked
request. :class:`InMemoryAttackStore` keeps the most recent records in a
bounded, newest-first list; anything that satisfies
:class:`AttackRecordStore` can replace it.
"""

from __future__ import annotations

import threading
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from llm_shield.logging import get_logger

log = get_logger("llm_shield.store")

DEFAULT_MAX_RECORDS = 1000
_REASON_PREFIX_CHARS = 50


@dataclass
class AttackRecord:
    """One flagged or blocked request."""

    user_id: str
    ip: str
    prompt: str
    risk_score: float
    risk_level: str
    blocked: bool
    pattern_count: int = 0
    categories: list[str] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)
    sentiment_score: float | None = None
    sentiment_magnitude: float | None = None
    entity_count: int | None = None
    cost_attack_type: str | None = None
    cost_severity: str | None = None
    estimated_tokens: int | None = None
    id: str = ""
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user_id": self.user_id,
            "ip": self.ip,
            "prompt": self.prompt,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "blocked": self.blocked,
            "pattern_count": self.pattern_count,
            "categories": list(self.categories),
            "reasoning": list(self.reasoning),
            "sentiment_score": self.sentiment_score,
            "sentiment_magnitude": self.sentiment_magnitude,
            "entity_count": self.entity_count,
            "cost_attack_type": self.cost_attack_type,
            "cost_severity": self.cost_severity,
            "estimated_tokens": self.estimated_tokens,
        }


@dataclass
class AttackPage:
    """One page of :meth:`AttackRecordStore.list` results."""

    records: list[AttackRecord]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass
class AttackStats:
    """Aggregate view over stored records."""

    total_attacks: int = 0
    attacks_blocked: int = 0
    attacks_today: int = 0
    attacks_this_week: int = 0
    attacks_this_month: int = 0
    block_rate: float = 0.0  # Percent
    avg_risk_score: float = 0.0
    attacks_by_category: dict[str, int] = field(default_factory=dict)
    top_reasons: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_attacks": self.total_attacks,
            "attacks_blocked": self.attacks_blocked,
            "attacks_today": self.attacks_today,
            "attacks_this_week": self.attacks_this_week,
            "attacks_this_month": self.attacks_this_month,
            "block_rate": self.block_rate,
            "avg_risk_score": self.avg_risk_score,
            "attacks_by_category": dict(self.attacks_by_category),
            "top_reasons": [{"reason": r, "count": c} for r, c in self.top_reasons],
        }


class AttackRecordStore(Protocol):
    """Persistence seam for attack records."""

    def record(self, record: AttackRecord) -> AttackRecord: ...

    def get(self, record_id: str) -> AttackRecord | None: ...

    def list(
        self,
        *,
        blocked: bool | None = None,
        min_score: float | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> AttackPage: ...

    def stats(self) -> AttackStats: ...


class InMemoryAttackStore:
    """Bounded, newest-first, thread-safe attack record store."""

    def __init__(
        self,
        max_records: int = DEFAULT_MAX_RECORDS,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if max_records <= 0:
            raise ValueError("max_records must be positive")
        self._max_records = max_records
        self._now = now
        self._records: list[AttackRecord] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def record(self, record: AttackRecord) -> AttackRecord:
        """Store *record*, assigning an id and timestamp if missing."""
        if not record.id:
            record.id = f"attack_{uuid.uuid4().hex[:12]}"
        if record.timestamp is None:
            record.timestamp = self._now()
        with self._lock:
            self._records.insert(0, record)
            del self._records[self._max_records :]
        log.debug("attack_recorded", record_id=record.id, blocked=record.blocked)
        return record

    def get(self, record_id: str) -> AttackRecord | None:
        with self._lock:
            return next((r for r in self._records if r.id == record_id), None)

    def list(
        self,
        *,
        blocked: bool | None = None,
        min_score: float | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> AttackPage:
        """Return a filtered page of records, newest first."""
        if offset < 0 or limit <= 0:
            raise ValueError("offset must be >= 0 and limit must be positive")
        with self._lock:
            records = list(self._records)

        if blocked is not None:
            records = [r for r in records if r.blocked == blocked]
        if min_score is not None:
            records = [r for r in records if r.risk_score >= min_score]
        if start is not None:
            records = [r for r in records if r.timestamp and r.timestamp >= start]
        if end is not None:
            records = [r for r in records if r.timestamp and r.timestamp <= end]

        return AttackPage(
            records=records[offset : offset + limit],
            total=len(records),
            offset=offset,
            limit=limit,
        )

    def stats(self) -> AttackStats:
        """Summarize stored records."""
        with self._lock:
            records = list(self._records)
        if not records:
            return AttackStats()

        now = self._now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = now - timedelta(days=7)
        month = today.replace(day=1)

        def since(cutoff: datetime) -> int:
            return sum(1 for r in records if r.timestamp and r.timestamp >= cutoff)

        total = len(records)
        blocked = sum(1 for r in records if r.blocked)
        categories = Counter(c for r in records for c in r.categories)
        reasons = Counter(line[:_REASON_PREFIX_CHARS] for r in records for line in r.reasoning)

        return AttackStats(
            total_attacks=total,
            attacks_blocked=blocked,
            attacks_today=since(today),
            attacks_this_week=since(week),
            attacks_this_month=since(month),
            block_rate=round(blocked / total * 100, 1),
            avg_risk_score=round(sum(r.risk_score for r in records) / total, 1),
            attacks_by_category=dict(categories),
            top_reasons=reasons.most_common(10),
        )

    def clear_older_than(self, days: float = 30) -> int:
        """Drop records older than *days*.

        Returns:
            Number of records removed.
        """
        cutoff = self._now() - timedelta(days=days)
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.timestamp and r.timestamp >= cutoff]
            removed = before - len(self._records)
        if removed:
            log.info("attack_records_cleared", removed=removed)
        return removed
