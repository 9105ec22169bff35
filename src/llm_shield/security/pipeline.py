"""Request-level security pipeline.

Order of operations for every prompt:

1. Rate-limit gate (identity block state and tier quota), before any
   expensive work
2. Cost-attack detection against the user's recent history
3. Hybrid risk analysis (patterns, structure, context, semantic signal)
4. Merge of the cost score into the risk score, then the action

Blocked and flagged requests are counted against the caller's identities,
written to the attack record store and logged as forensic events.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from typing import Any

from llm_shield.config import EngineConfig, Settings, get_settings
from llm_shield.logging import get_logger
from llm_shield.security.cost_detector import CostDetector
from llm_shield.security.forensics import log_security_event
from llm_shield.security.models import (
    AttackCategory,
    CostAnalysis,
    CostAttackType,
    RateLimitDecision,
    RiskAssessment,
    Severity,
    ThreatAction,
)
from llm_shield.security.rate_limiter import AdaptiveRateLimiter
from llm_shield.security.risk_analyzer import RiskAnalyzer, risk_level_for
from llm_shield.security.semantic import NaturalLanguageClient
from llm_shield.store import AttackRecord, AttackRecordStore, InMemoryAttackStore

log = get_logger("llm_shield.security.pipeline")

_CHARS_PER_TOKEN = 4
_DEFAULT_RETRY_AFTER = 60
_LOOP_BLOCK_REASON = "User temporarily blocked after repeated identical prompts"


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / _CHARS_PER_TOKEN)


@dataclass
class ShieldDecision:
    """Outcome of :meth:`ShieldPipeline.evaluate` for one request."""

    action: ThreatAction
    rate_limit: RateLimitDecision
    risk: RiskAssessment | None = None
    cost: CostAnalysis | None = None
    estimated_tokens: int = 0
    request_id: str = ""
    record_id: str | None = None
    processing_time_ms: float = 0.0

    @property
    def allowed(self) -> bool:
        """Whether the request may proceed to generation."""
        return self.action in (ThreatAction.ALLOW, ThreatAction.FLAG)

    def headers(self) -> dict[str, str]:
        """HTTP headers an API layer should attach to the response."""
        headers = {"X-RateLimit-Tier": self.rate_limit.tier.value}
        if self.action == ThreatAction.RATE_LIMITED:
            headers["Retry-After"] = str(self.rate_limit.retry_after or _DEFAULT_RETRY_AFTER)
        return headers

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data: dict[str, Any] = {
            "request_id": self.request_id,
            "action": self.action.value,
            "allowed": self.allowed,
            "tier": self.rate_limit.tier.value,
            "estimated_tokens": self.estimated_tokens,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }
        if self.action == ThreatAction.RATE_LIMITED:
            data["reason"] = self.rate_limit.reason
            data["retry_after"] = self.rate_limit.retry_after
        if self.risk is not None:
            data["risk"] = self.risk.to_dict()
        if self.cost is not None and self.cost.is_cost_attack:
            data["cost_attack"] = {
                "attack_type": self.cost.attack_type.value if self.cost.attack_type else None,
                "severity": self.cost.severity.value,
                "risk_score": self.cost.risk_score,
            }
        if self.record_id is not None:
            data["record_id"] = self.record_id
        return data


class ShieldPipeline:
    """Orchestrate rate limiting, cost detection and risk scoring.

    All collaborators are injected so callers (and tests) control state and
    time; :meth:`from_settings` wires the default production graph.
    """

    def __init__(
        self,
        *,
        analyzer: RiskAnalyzer | None = None,
        cost_detector: CostDetector | None = None,
        rate_limiter: AdaptiveRateLimiter | None = None,
        store: AttackRecordStore | None = None,
        config: EngineConfig | None = None,
        semantic_client: NaturalLanguageClient | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            analyzer: Risk analyzer; built from *config* if omitted.
            cost_detector: Cost-attack detector.
            rate_limiter: Adaptive rate limiter.
            store: Attack record store; in-memory if omitted.
            config: Engine configuration used for defaults.
            semantic_client: Client owned by the pipeline and closed by
                :meth:`close`.
        """
        self._config = config or EngineConfig()
        self._analyzer = (
            analyzer if analyzer is not None else RiskAnalyzer(config=self._config.scoring)
        )
        self._cost_detector = (
            cost_detector if cost_detector is not None else CostDetector(self._config.cost)
        )
        self._rate_limiter = (
            rate_limiter
            if rate_limiter is not None
            else AdaptiveRateLimiter(self._config.rate_limit)
        )
        self._store: AttackRecordStore = store if store is not None else InMemoryAttackStore()
        self._semantic_client = semantic_client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ShieldPipeline:
        """Build a pipeline from process settings."""
        settings = settings or get_settings()
        config = EngineConfig.from_settings(settings)
        client = (
            NaturalLanguageClient(timeout=settings.semantic_timeout)
            if settings.semantic_enabled and settings.semantic_api_key is not None
            else None
        )
        analyzer = RiskAnalyzer(
            config=config.scoring,
            semantic=client,
            semantic_timeout=settings.semantic_timeout,
        )
        log.info(
            "shield_pipeline_initialized",
            semantic=client is not None,
            block_threshold=config.scoring.block_threshold,
        )
        return cls(analyzer=analyzer, config=config, semantic_client=client)

    @property
    def analyzer(self) -> RiskAnalyzer:
        return self._analyzer

    @property
    def cost_detector(self) -> CostDetector:
        return self._cost_detector

    @property
    def rate_limiter(self) -> AdaptiveRateLimiter:
        return self._rate_limiter

    @property
    def store(self) -> AttackRecordStore:
        return self._store

    async def evaluate(
        self,
        prompt: str,
        *,
        user_id: str,
        ip: str,
        request_id: str = "",
    ) -> ShieldDecision:
        """Run one prompt through the full pipeline.

        Args:
            prompt: Raw prompt text.
            user_id: Caller-supplied user id (trusted).
            ip: Caller-supplied IP address (trusted).
            request_id: Correlation id for logs; generated if empty.

        Returns:
            A :class:`ShieldDecision` with the action to take.
        """
        start = time.perf_counter()
        request_id = request_id or uuid.uuid4().hex

        gate = self._rate_limiter.check_rate_limit(user_id, ip, 0)
        if not gate.allowed:
            log.info(
                "request_rate_limited",
                request_id=request_id,
                user_id=user_id,
                ip=ip,
                tier=gate.tier.value,
                retry_after=gate.retry_after,
            )
            return ShieldDecision(
                action=ThreatAction.RATE_LIMITED,
                rate_limit=gate,
                request_id=request_id,
                processing_time_ms=(time.perf_counter() - start) * 1000,
            )

        tokens = estimate_tokens(prompt)
        cost = self._cost_detector.analyze(prompt, tokens, user_id)
        risk = await self._analyzer.analyze(prompt)
        self._merge_cost(risk, cost)
        self._rate_limiter.record_risk(user_id, risk.score)

        if risk.should_block:
            action = ThreatAction.BLOCK
            self._rate_limiter.record_attack(user_id, ip, blocked=True)
            if (
                cost.severity == Severity.CRITICAL
                and cost.attack_type == CostAttackType.INFINITE_LOOP
            ):
                self._rate_limiter.block_user(
                    user_id, self._config.cost.loop_block_seconds, reason=_LOOP_BLOCK_REASON
                )
        elif risk.score >= self._config.scoring.flag_threshold:
            action = ThreatAction.FLAG
            self._rate_limiter.record_attack(user_id, ip, blocked=False)
        else:
            action = ThreatAction.ALLOW

        decision = ShieldDecision(
            action=action,
            rate_limit=gate,
            risk=risk,
            cost=cost,
            estimated_tokens=tokens,
            request_id=request_id,
        )

        if action != ThreatAction.ALLOW:
            record = self._store.record(self._build_record(user_id, ip, prompt, decision))
            decision.record_id = record.id
            log_security_event(
                user_id=user_id,
                ip=ip,
                prompt=prompt,
                action=action,
                risk=risk,
                cost=cost,
                request_id=request_id,
            )

        decision.processing_time_ms = (time.perf_counter() - start) * 1000
        return decision

    def _merge_cost(self, risk: RiskAssessment, cost: CostAnalysis) -> None:
        if not cost.is_cost_attack:
            return
        risk.score = min(100.0, risk.score + cost.risk_score)
        risk.level = risk_level_for(risk.score, self._analyzer.config.thresholds)
        risk.categories.add(AttackCategory.COST_ATTACK)
        risk.reasoning.append("Cost attack analysis:")
        risk.reasoning.extend(cost.reasoning)
        risk.should_block = (
            risk.should_block or cost.should_block or risk.score >= self._analyzer.block_threshold
        )

    @staticmethod
    def _build_record(
        user_id: str, ip: str, prompt: str, decision: ShieldDecision
    ) -> AttackRecord:
        risk = decision.risk
        cost = decision.cost
        assert risk is not None and cost is not None  # nosec B101
        semantic = risk.semantic
        return AttackRecord(
            user_id=user_id,
            ip=ip,
            prompt=prompt,
            risk_score=risk.score,
            risk_level=risk.level.value,
            blocked=decision.action == ThreatAction.BLOCK,
            pattern_count=len(risk.matches),
            categories=sorted(c.value for c in risk.categories),
            reasoning=list(risk.reasoning),
            sentiment_score=semantic.sentiment.score if semantic else None,
            sentiment_magnitude=semantic.sentiment.magnitude if semantic else None,
            entity_count=len(semantic.entities) if semantic else None,
            cost_attack_type=(
                cost.attack_type.value if cost.is_cost_attack and cost.attack_type else None
            ),
            cost_severity=cost.severity.value if cost.is_cost_attack else None,
            estimated_tokens=decision.estimated_tokens,
        )

    async def close(self) -> None:
        """Release the semantic client, if the pipeline owns one."""
        if self._semantic_client is not None:
            await self._semantic_client.close()
