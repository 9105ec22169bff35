"""Cost-attack detection.

Flags requests meant to burn compute or token budget:

- token exhaustion (a single oversized prompt)
- context-window stuffing (a large but not extreme prompt)
- prompt loops (the same prompt replayed within a short window)
- rapid fire (many requests in a few seconds)

Keeps a bounded per-identity request history, independent of the rate
limiter's state.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from llm_shield.config import CostConfig
from llm_shield.logging import get_logger
from llm_shield.security.models import (
    CostAnalysis,
    CostAttackType,
    RequestHistoryEntry,
    Severity,
)

log = get_logger("llm_shield.security.cost_detector")


def positional_similarity(first: str, second: str) -> float:
    """Return the fraction of aligned characters two prompts share.

    Both strings are lowercased and trimmed. Characters of the shorter
    string are compared with the same index of the longer one; the match
    count is divided by the longer length. Reordered or padded prompts
    score low.
    """
    a = first.lower().strip()
    b = second.lower().strip()
    if a == b:
        return 1.0
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    if not longer:
        return 1.0
    matches = sum(1 for x, y in zip(shorter, longer, strict=False) if x == y)
    return matches / len(longer)


@dataclass
class _LoopCheck:
    is_loop: bool
    count: int
    max_similarity: float


@dataclass
class UserCostStats:
    """Per-identity usage summary."""

    total_requests: int
    total_tokens: int
    avg_tokens_per_request: float
    requests_last_10_min: int


class CostDetector:
    """Stateful, per-identity cost-attack detector. Thread-safe."""

    def __init__(
        self,
        config: CostConfig | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the detector.

        Args:
            config: Detection thresholds.
            clock: Source of the current time in seconds.
        """
        self._config = config or CostConfig()
        self._clock = clock
        self._history: dict[str, deque[RequestHistoryEntry]] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> CostConfig:
        return self._config

    def analyze(
        self,
        prompt: str,
        estimated_tokens: int,
        identity: str = "anonymous",
    ) -> CostAnalysis:
        """Analyze one request and record it in the identity's history.

        Args:
            prompt: Prompt text.
            estimated_tokens: Token estimate for the prompt.
            identity: Identity whose history is consulted and updated.

        Returns:
            A :class:`CostAnalysis` for this request.
        """
        cfg = self._config
        result = CostAnalysis()

        if estimated_tokens > cfg.token_threshold:
            result.risk_score += cfg.token_exhaustion_points
            result.severity = Severity.CRITICAL
            result.attack_type = CostAttackType.TOKEN_EXHAUSTION
            result.reasoning.append(
                f"Extremely high token count: {estimated_tokens} tokens "
                f"(threshold: {cfg.token_threshold})"
            )
            result.reasoning.append("Potential token exhaustion attack detected")
        elif estimated_tokens > cfg.context_window_threshold:
            result.risk_score += cfg.context_window_points
            result.severity = result.severity.raise_to(Severity.HIGH)
            result.attack_type = CostAttackType.CONTEXT_WINDOW
            result.reasoning.append(
                f"Unusually long prompt: {estimated_tokens} tokens "
                f"(threshold: {cfg.context_window_threshold})"
            )
            result.reasoning.append("Possible context window attack")

        with self._lock:
            now = self._clock()
            history = self._history.get(identity)
            if history is None:
                history = deque(maxlen=cfg.history_cap)
                self._history[identity] = history

            loop = self._detect_loop(prompt, history, now)
            rapid_count = sum(
                1 for entry in history if now - entry.timestamp < cfg.rapid_fire_window_seconds
            )

            history.append(
                RequestHistoryEntry(prompt=prompt, timestamp=now, tokens=estimated_tokens)
            )
            self._prune(history, now)

        if loop.is_loop:
            result.is_loop = True
            result.loop_count = loop.count
            result.risk_score += cfg.loop_points
            loop_severity = (
                Severity.CRITICAL if loop.count > cfg.loop_critical_count else Severity.HIGH
            )
            result.severity = result.severity.raise_to(loop_severity)
            result.attack_type = CostAttackType.INFINITE_LOOP
            result.reasoning.append(
                f"Repeated similar prompts detected: {loop.count} times "
                f"in {cfg.loop_window_seconds:g}s"
            )
            result.reasoning.append(f"Similarity: {round(loop.max_similarity * 100)}%")

        if rapid_count >= cfg.rapid_fire_max_requests:
            result.is_rapid_fire = True
            result.risk_score += cfg.rapid_fire_points
            result.severity = result.severity.raise_to(Severity.MEDIUM)
            result.reasoning.append(
                f"Rapid fire detected: {rapid_count + 1} requests "
                f"in last {cfg.rapid_fire_window_seconds:g}s"
            )

        result.risk_score = min(100.0, result.risk_score)
        result.is_cost_attack = result.risk_score > 0
        result.should_block = (
            result.risk_score >= cfg.block_score or result.severity == Severity.CRITICAL
        )
        if not result.reasoning:
            result.reasoning.append("No cost-based attack patterns detected")
        elif result.is_cost_attack:
            log.info(
                "cost_attack_detected",
                identity=identity,
                attack_type=result.attack_type.value if result.attack_type else None,
                severity=result.severity.value,
                score=result.risk_score,
            )
        return result

    def _detect_loop(
        self, prompt: str, history: deque[RequestHistoryEntry], now: float
    ) -> _LoopCheck:
        cfg = self._config
        count = 0
        max_similarity = 0.0
        for entry in history:
            if now - entry.timestamp >= cfg.loop_window_seconds:
                continue
            similarity = positional_similarity(prompt, entry.prompt)
            max_similarity = max(max_similarity, similarity)
            if similarity >= cfg.similarity_threshold:
                count += 1
        return _LoopCheck(
            is_loop=count >= cfg.loop_min_count, count=count, max_similarity=max_similarity
        )

    def _prune(self, history: deque[RequestHistoryEntry], now: float) -> None:
        # Entries are appended in time order, so expired ones sit at the left
        horizon = now - self._config.history_retention_seconds
        while history and history[0].timestamp <= horizon:
            history.popleft()

    def purge_expired(self) -> int:
        """Drop expired entries for every identity and forget empty ones.

        Returns:
            Number of identities removed.
        """
        with self._lock:
            now = self._clock()
            removed = 0
            for identity in list(self._history):
                history = self._history[identity]
                self._prune(history, now)
                if not history:
                    del self._history[identity]
                    removed += 1
        if removed:
            log.debug("cost_history_purged", identities=removed)
        return removed

    def get_user_stats(self, identity: str) -> UserCostStats:
        """Summarize an identity's remembered requests."""
        with self._lock:
            now = self._clock()
            entries = list(self._history.get(identity, ()))
        total_tokens = sum(e.tokens for e in entries)
        return UserCostStats(
            total_requests=len(entries),
            total_tokens=total_tokens,
            avg_tokens_per_request=total_tokens / len(entries) if entries else 0.0,
            requests_last_10_min=sum(1 for e in entries if now - e.timestamp < 600),
        )

    def history_size(self, identity: str) -> int:
        with self._lock:
            return len(self._history.get(identity, ()))

    def reset(self) -> None:
        """Forget all history."""
        with self._lock:
            self._history.clear()
