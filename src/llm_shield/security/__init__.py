"""Security package: risk scoring and adaptive mitigation.

Public API
----------
- :class:`ShieldPipeline`, :class:`ShieldDecision` - per-request orchestration
- :class:`RiskAnalyzer` - hybrid pattern/structural/semantic risk scoring
- :class:`CostDetector` - token exhaustion, loop and rapid-fire detection
- :class:`AdaptiveRateLimiter` - behavior-tiered rate limiting with auto-block
- :class:`PatternCatalog` - immutable attack signature catalog
"""

from llm_shield.security.cost_detector import CostDetector
from llm_shield.security.models import (
    AttackCategory,
    RiskAssessment,
    RiskLevel,
    ThreatAction,
)
from llm_shield.security.patterns import PatternCatalog
from llm_shield.security.pipeline import ShieldDecision, ShieldPipeline, estimate_tokens
from llm_shield.security.rate_limiter import AdaptiveRateLimiter
from llm_shield.security.risk_analyzer import RiskAnalyzer
from llm_shield.security.sweeper import ActivitySweeper

__all__ = [
    "ActivitySweeper",
    "AdaptiveRateLimiter",
    "AttackCategory",
    "CostDetector",
    "PatternCatalog",
    "RiskAnalyzer",
    "RiskAssessment",
    "RiskLevel",
    "ShieldDecision",
    "ShieldPipeline",
    "ThreatAction",
    "estimate_tokens",
]
