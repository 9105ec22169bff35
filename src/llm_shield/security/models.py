"""Data models for the risk-scoring and mitigation engine."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class AttackCategory(StrEnum):
    """Categories of attack signatures."""

    PROMPT_INJECTION = "prompt-injection"
    JAILBREAK = "jailbreak"
    DATA_EXFILTRATION = "data-exfiltration"
    PII = "pii"
    CODE_INJECTION = "code-injection"
    SYSTEM_ACCESS = "system-access"
    SOCIAL_ENGINEERING = "social-engineering"
    COST_ATTACK = "cost-attack"


class RiskLevel(StrEnum):
    """Discrete bucket derived from a risk score."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(StrEnum):
    """Severity of a cost attack."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def raise_to(self, other: Severity) -> Severity:
        """Return the more severe of ``self`` and ``other``."""
        return other if other.rank > self.rank else self


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class CostAttackType(StrEnum):
    """Kinds of resource-exhaustion attack."""

    TOKEN_EXHAUSTION = "token_exhaustion"  # nosec B105
    INFINITE_LOOP = "infinite_loop"
    CONTEXT_WINDOW = "context_window"


class RateLimitTier(StrEnum):
    """Behavior-derived rate-limit class."""

    NORMAL = "normal"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"


class IdentityKind(StrEnum):
    """Which map an identity lives in."""

    USER = "user"
    IP = "ip"


class ThreatAction(StrEnum):
    """Action to take for one request."""

    ALLOW = "allow"
    FLAG = "flag"  # Allow but log
    BLOCK = "block"  # Reject message
    RATE_LIMITED = "rate_limited"


# ---------------------------------------------------------------------------
# Pattern matching
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AttackPattern:
    """A named attack signature. Loaded once, never mutated."""

    id: str
    name: str
    category: AttackCategory
    keywords: tuple[str, ...]
    severity: float  # 0 - 100
    regex: re.Pattern[str] | None = None
    case_sensitive: bool = False
    description: str = ""


@dataclass
class DetectedMatch:
    """One pattern that fired on a prompt."""

    pattern: AttackPattern
    matches: list[str]  # Distinct literal matches, in discovery order
    confidence: float  # 0.0 - 1.0


@dataclass
class StructuralReport:
    """Findings from the structural analyzer."""

    score: float = 0.0
    findings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Semantic signal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SentimentResult:
    """Document sentiment from the semantic service."""

    score: float  # -1.0 (negative) to 1.0 (positive)
    magnitude: float  # 0.0 to +inf
    confidence: float  # 0.0 to 1.0


@dataclass(frozen=True)
class EntityResult:
    """A named entity with its salience."""

    name: str
    type: str
    salience: float


@dataclass
class SemanticResult:
    """Semantic analysis of one prompt and its raw risk contribution (0-50)."""

    sentiment: SentimentResult
    entities: list[EntityResult] = field(default_factory=list)
    risk_contribution: float = 0.0
    reasoning: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Assessments
# ---------------------------------------------------------------------------


@dataclass
class RiskAssessment:
    """Hybrid risk assessment for one prompt."""

    score: float  # 0 - 100, clamped
    level: RiskLevel
    matches: list[DetectedMatch] = field(default_factory=list)
    categories: set[AttackCategory] = field(default_factory=set)
    should_block: bool = False
    confidence: float = 1.0
    reasoning: list[str] = field(default_factory=list)
    is_educational: bool = False
    prompt_length: int = 0
    keyword_count: int = 0
    high_risk_pattern_count: int = 0
    semantic: SemanticResult | None = None
    semantic_points: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "risk_score": round(self.score, 2),
            "risk_level": self.level.value,
            "should_block": self.should_block,
            "confidence": round(self.confidence, 2),
            "categories": sorted(c.value for c in self.categories),
            "patterns": [
                {
                    "id": m.pattern.id,
                    "name": m.pattern.name,
                    "matches": m.matches,
                    "confidence": round(m.confidence, 2),
                }
                for m in self.matches
            ],
            "reasoning": list(self.reasoning),
            "is_educational": self.is_educational,
            "semantic_points": round(self.semantic_points, 2),
        }


@dataclass
class CostAnalysis:
    """Cost-attack verdict for one request."""

    is_cost_attack: bool = False
    attack_type: CostAttackType | None = None
    severity: Severity = Severity.LOW
    risk_score: float = 0.0
    reasoning: list[str] = field(default_factory=list)
    should_block: bool = False
    is_loop: bool = False
    loop_count: int = 0
    is_rapid_fire: bool = False


# ---------------------------------------------------------------------------
# Identity state
# ---------------------------------------------------------------------------


@dataclass
class IdentityActivity:
    """Rate-limit state for one user id or one IP."""

    window_start: float
    last_request: float
    request_count: int = 0
    attack_count: int = 0
    block_count: int = 0
    risk_score_sum: float = 0.0
    blocked: bool = False
    blocked_until: float = 0.0
    block_reason: str = ""


@dataclass(frozen=True)
class RequestHistoryEntry:
    """One request remembered by the cost detector."""

    prompt: str
    timestamp: float
    tokens: int


@dataclass
class RateLimitDecision:
    """Outcome of a rate-limit gate check."""

    allowed: bool
    tier: RateLimitTier
    reason: str | None = None
    retry_after: int | None = None  # Seconds


@dataclass(frozen=True)
class BlockedEntity:
    """A currently blocked identity, for the admin surface."""

    identity: str
    kind: IdentityKind
    blocked_until: float
    remaining_seconds: int
    attack_count: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "identity": self.identity,
            "kind": self.kind.value,
            "blocked_until": self.blocked_until,
            "remaining_seconds": self.remaining_seconds,
            "attack_count": self.attack_count,
        }


@dataclass
class BlockedList:
    """Currently blocked users and IPs."""

    users: list[BlockedEntity] = field(default_factory=list)
    ips: list[BlockedEntity] = field(default_factory=list)
