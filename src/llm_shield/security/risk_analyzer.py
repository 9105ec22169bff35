"""Hybrid risk scoring.

Combines pattern matches, structural heuristics, educational-context
dampening and an optional external semantic signal into a single 0-100
score, a discrete level and a block decision.

The analyzer holds no mutable per-request state; concurrent calls are safe.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from llm_shield.config import RiskThresholds, ScoringConfig, get_settings
from llm_shield.exceptions import ConfigurationError
from llm_shield.logging import get_logger
from llm_shield.security.context import is_educational
from llm_shield.security.models import (
    AttackCategory,
    DetectedMatch,
    RiskAssessment,
    RiskLevel,
    SemanticResult,
)
from llm_shield.security.patterns import PatternCatalog, match_patterns
from llm_shield.security.semantic import SemanticSignalProvider
from llm_shield.security.structural import analyze_structure

log = get_logger("llm_shield.security.risk_analyzer")


def risk_level_for(score: float, thresholds: RiskThresholds | None = None) -> RiskLevel:
    """Map a 0-100 score to its :class:`RiskLevel`."""
    thresholds = thresholds or RiskThresholds()
    if score >= thresholds.critical:
        return RiskLevel.CRITICAL
    if score >= thresholds.high:
        return RiskLevel.HIGH
    if score >= thresholds.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _dampening_note(factor: float) -> str:
    return f" [Educational context: -{round((1 - factor) * 100)}% risk]"


@dataclass
class _LocalScore:
    """Pattern + structural subtotal before semantic blending."""

    total: float = 0.0
    matches: list[DetectedMatch] = field(default_factory=list)
    categories: set[AttackCategory] = field(default_factory=set)
    reasoning: list[str] = field(default_factory=list)
    educational: bool = False
    keyword_count: int = 0
    high_risk_count: int = 0


class RiskAnalyzer:
    """Score prompts for malicious intent."""

    def __init__(
        self,
        *,
        catalog: PatternCatalog | None = None,
        config: ScoringConfig | None = None,
        semantic: SemanticSignalProvider | None = None,
        semantic_timeout: float | None = None,
        use_semantic: bool = True,
    ) -> None:
        """Initialize the analyzer.

        Args:
            catalog: Pattern catalog shared by reference; built-in by default.
            config: Scoring tunables.
            semantic: External semantic-signal provider. ``None`` disables
                the semantic contribution.
            semantic_timeout: Upper bound in seconds for one semantic call;
                defaults to ``SEMANTIC_TIMEOUT``.
            use_semantic: Initial value of the semantic toggle.
        """
        self._catalog = catalog if catalog is not None else PatternCatalog.default()
        self._config = config or ScoringConfig()
        self._semantic = semantic
        self._semantic_timeout = (
            semantic_timeout if semantic_timeout is not None else get_settings().semantic_timeout
        )
        self._use_semantic = use_semantic
        self._block_threshold = self._config.block_threshold

    @property
    def catalog(self) -> PatternCatalog:
        return self._catalog

    @property
    def config(self) -> ScoringConfig:
        return self._config

    @property
    def block_threshold(self) -> float:
        return self._block_threshold

    def set_block_threshold(self, threshold: float) -> None:
        """Change the block threshold.

        Raises:
            ConfigurationError: If *threshold* is outside 0-100.
        """
        if not 0 <= threshold <= 100:
            raise ConfigurationError(f"Block threshold must be between 0 and 100, got {threshold}")
        self._block_threshold = threshold

    def set_semantic_enabled(self, enabled: bool) -> None:
        """Toggle the semantic contribution for subsequent async analyses."""
        self._use_semantic = enabled

    @property
    def semantic_enabled(self) -> bool:
        return self._use_semantic and self._semantic is not None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze_sync(self, prompt: str) -> RiskAssessment:
        """Score *prompt* from patterns and structure only.

        Never calls the semantic service. Used on the fast path and for
        batch self-tests.
        """
        local = self._score_local(prompt)
        return self._finalize(prompt, local)

    async def analyze(self, prompt: str) -> RiskAssessment:
        """Score *prompt*, blending in the semantic signal when available.

        A failed or slow semantic call is logged and the assessment falls
        back to pattern/structural scoring for this request only.
        """
        local = self._score_local(prompt)
        if not self.semantic_enabled:
            return self._finalize(prompt, local)

        assert self._semantic is not None  # nosec B101
        semantic: SemanticResult | None = None
        try:
            semantic = await asyncio.wait_for(
                self._semantic.analyze(prompt), timeout=self._semantic_timeout
            )
        except TimeoutError:
            log.warning("semantic_analysis_timeout", timeout=self._semantic_timeout)
        except Exception as e:
            log.warning("semantic_analysis_failed", error=str(e))

        if semantic is None:
            local.reasoning.append(
                "Semantic analysis unavailable - using pattern and structural scoring only"
            )
            return self._finalize(prompt, local)

        return self._finalize(prompt, local, semantic)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _score_local(self, prompt: str) -> _LocalScore:
        cfg = self._config
        local = _LocalScore(educational=is_educational(prompt))
        if local.educational:
            local.reasoning.append("Educational context detected - applying reduced risk scoring")

        pattern_factor = cfg.pattern_dampening if local.educational else 1.0
        for detection in match_patterns(prompt, self._catalog):
            pattern = detection.pattern
            local.matches.append(detection)
            local.categories.add(pattern.category)
            local.total += pattern.severity * pattern_factor
            local.keyword_count += len(detection.matches)
            if pattern.severity >= cfg.high_severity:
                local.high_risk_count += 1
            note = _dampening_note(cfg.pattern_dampening) if local.educational else ""
            local.reasoning.append(
                f"Detected {pattern.name} ({pattern.category.value}): "
                f"{len(detection.matches)} match(es){note}"
            )

        structural = analyze_structure(prompt)
        structural_factor = cfg.structural_dampening if local.educational else 1.0
        local.total += structural.score * structural_factor
        note = _dampening_note(cfg.structural_dampening) if local.educational else ""
        local.reasoning.extend(f"{finding}{note}" for finding in structural.findings)

        return local

    def _finalize(
        self,
        prompt: str,
        local: _LocalScore,
        semantic: SemanticResult | None = None,
    ) -> RiskAssessment:
        cfg = self._config
        total = local.total
        reasoning = local.reasoning
        semantic_points = 0.0

        if semantic is not None:
            contribution = min(cfg.semantic_cap, max(0.0, semantic.risk_contribution))
            factor = cfg.semantic_dampening if local.educational else 1.0
            semantic_points = contribution * cfg.semantic_weight * factor
            total += semantic_points
            if semantic.reasoning:
                note = _dampening_note(cfg.semantic_dampening) if local.educational else ""
                reasoning.append("Semantic analysis:")
                reasoning.extend(f"{line}{note}" for line in semantic.reasoning)

        if not local.matches:
            reasoning.append("No malicious patterns detected")

        score = max(0.0, min(100.0, total))
        return RiskAssessment(
            score=score,
            level=risk_level_for(score, cfg.thresholds),
            matches=local.matches,
            categories=local.categories,
            should_block=score >= self._block_threshold,
            confidence=self._confidence(local),
            reasoning=reasoning,
            is_educational=local.educational,
            prompt_length=len(prompt),
            keyword_count=local.keyword_count,
            high_risk_pattern_count=local.high_risk_count,
            semantic=semantic,
            semantic_points=semantic_points,
        )

    @staticmethod
    def _confidence(local: _LocalScore) -> float:
        # Zero matches reads as a confident no-attack verdict
        pattern_count = len(local.matches)
        if pattern_count == 0:
            return 1.0
        confidence = 0.7
        if pattern_count > 2:
            confidence += 0.1
        if local.keyword_count > 3:
            confidence += 0.1
        if local.high_risk_count > 0:
            confidence += 0.1
        return min(1.0, round(confidence, 4))
