"""Educational-context detection.

A blunt, auditable predicate: when a prompt reads as an explanatory,
pedagogical or best-practice question, the risk analyzer scales its
pattern and structural contributions down.
"""

from __future__ import annotations

import re

_EDUCATIONAL_PHRASES: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        # Explanatory openers
        r"^explain\s+(?:this|the|how|what|why)\b",
        r"^what\s+(?:does|is|are)\s+.+\s+(?:do|mean)\b",
        r"^how\s+(?:does|do|can|to|should)\b",
        r"^can\s+you\s+(?:explain|show|teach|help\s+me\s+understand)\b",
        r"\bhelp\s+me\s+(?:understand|debug|learn)\b",
        # Pedagogical framing
        r"\bfor\s+(?:educational|learning|academic|research)\s+purposes\b",
        r"\bfor\s+(?:my|our|the)\s+(?:security|cyber|infosec)\s+(?:class|course)\b",
        r"\bfor\s+my\s+(?:paper|thesis|research|course|class)\b",
        r"\bi'?m\s+(?:teaching|learning|studying)\b",
        r"\bsecurity\s+(?:research|awareness|training|education)\b",
        r"\bto\s+prevent\s+(?:it|this|them)\b",
        r"\bi'?m\s+writing\s+(?:a\s+)?(?:novel|story|fiction)\b",
        # Code review
        r"\breview\s+(?:this|my)\s+code\b",
        r"\bwhat\s+(?:would|does)\s+.+\s+code\s+do\b",
        r"\bexplain\s+(?:this|the)\s+code\b",
        # Comparison / best practice
        r"\bbest\s+(?:way|practice|method|strategy|approach)\s+to\s+"
        r"(?:store|secure|protect|implement|handle|design)\b",
        r"\bwhat'?s\s+the\s+best\s+(?:way|practice|strategy|approach)\b",
        r"\bhow\s+(?:should|can)\s+i\s+(?:configure|set\s+up|implement|structure|handle|use)\b",
        r"\brecommended\s+(?:way|method|approach|practice)\b",
        r"\bwhat\s+are\s+the\s+(?:risks|benefits|differences)\b",
        r"\bdifference\s+between\b",
        r"\bcomparison\b",
        r"\bvs\.?\s+",
        # Security-education vocabulary
        r"\bowasp\b",
        r"\bthe\s+risks?\s+of\s+using\b",
        r"\bmost\s+common\s+(?:api|endpoints|vulnerabilities)\b",
        r"\b(?:devops|sysadmin|dba)\b",
    )
)


def is_educational(prompt: str) -> bool:
    """Return ``True`` if *prompt* is framed as a learning or explanatory request."""
    text = prompt.strip().lower()
    return any(phrase.search(text) for phrase in _EDUCATIONAL_PHRASES)
