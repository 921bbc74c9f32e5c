"""
Audit scoring

Deduction-based: every category starts at 100 and loses points per issue
(error 10, warning 3, notice/info 1, passed 0). The overall score is the
weighted sum of the category scores, clamped to 0-100.
"""
import math
from dataclasses import dataclass
from typing import Dict, Iterable

from .schemas import Issue

CATEGORY_WEIGHTS: Dict[str, float] = {
    "technical": 0.35,
    "performance": 0.30,
    "visual": 0.15,
    "accessibility": 0.20,
}

SEVERITY_DEDUCTIONS: Dict[str, int] = {
    "error": 10,
    "warning": 3,
    "notice": 1,
    "info": 1,
    "passed": 0,
}


@dataclass
class AuditScore:
    score: int
    category_scores: Dict[str, int]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def calculate_audit_score(issues: Iterable[Issue]) -> AuditScore:
    """Overall and per-category scores; unknown issue types count as technical"""
    category_scores = {name: 100 for name in CATEGORY_WEIGHTS}
    for issue in issues:
        category = issue.type if issue.type in CATEGORY_WEIGHTS else "technical"
        category_scores[category] -= SEVERITY_DEDUCTIONS.get(issue.severity, 0)

    category_scores = {name: _clamp(score) for name, score in category_scores.items()}
    overall = sum(category_scores[name] * weight for name, weight in CATEGORY_WEIGHTS.items())
    return AuditScore(score=_clamp(overall), category_scores=category_scores)
