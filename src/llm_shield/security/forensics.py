"""Forensic logging for security events.

Events are emitted at WARNING so they survive production log levels and,
with file logging enabled, land in the rotating JSON log.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from llm_shield.logging import get_logger
from llm_shield.security.models import CostAnalysis, RiskAssessment, ThreatAction

log = get_logger("llm_shield.security.forensics")


def log_security_event(
    *,
    user_id: str,
    ip: str,
    prompt: str,
    action: ThreatAction,
    risk: RiskAssessment,
    cost: CostAnalysis,
    request_id: str,
) -> None:
    """Log a detailed forensic record for a flagged or blocked request."""
    content_hash = hashlib.sha256(prompt.encode("utf-8")).hexdigest()

    log.warning(
        "security_event",
        event_type="threat_detected",
        request_id=request_id,
        user_id=user_id,
        ip=ip,
        timestamp=datetime.now(UTC).isoformat(),
        action=action.value,
        risk_score=round(risk.score, 2),
        risk_level=risk.level.value,
        confidence=round(risk.confidence, 2),
        categories=sorted(c.value for c in risk.categories),
        patterns=[
            {
                "id": m.pattern.id,
                "name": m.pattern.name,
                "matched": [text[:100] for text in m.matches[:5]],
            }
            for m in risk.matches
        ],
        is_educational=risk.is_educational,
        cost_attack_type=cost.attack_type.value if cost.attack_type else None,
        cost_severity=cost.severity.value,
        content_hash=content_hash,
        content_length=len(prompt),
        content_preview=prompt[:200],
    )
