from dataclasses import dataclass
from typing import Iterable, Protocol

from services.site_audit.enums import CheckCategory, CheckPriority, CheckStatus

PRIORITY_WEIGHTS = {
    CheckPriority.CRITICAL: 3,
    CheckPriority.RECOMMENDED: 2,
    CheckPriority.OPTIONAL: 1,
}


class ScoredCheck(Protocol):
    check_type: str
    priority: str
    status: str


@dataclass(frozen=True)
class AuditScores:
    overall: int
    seo: int
    ai_readiness: int
    technical: int
    failed_count: int
    warning_count: int
    passed_count: int

    def as_audit_values(self) -> dict:
        return {
            "overall_score": self.overall,
            "seo_score": self.seo,
            "ai_readiness_score": self.ai_readiness,
            "technical_score": self.technical,
            "failed_count": self.failed_count,
            "warning_count": self.warning_count,
            "passed_count": self.passed_count,
        }


def _round(x: float) -> int:
    # half up
    return int(x + 0.5)


def category_score(checks: list[ScoredCheck]) -> int:
    total = 0.0
    earned = 0.0
    for c in checks:
        weight = PRIORITY_WEIGHTS[CheckPriority(c.priority)]
        total += weight
        if c.status == CheckStatus.PASSED.value:
            earned += weight
        elif c.status == CheckStatus.WARNING.value:
            earned += weight / 2
    if total == 0:
        return 100
    return _round(earned / total * 100)


def score(checks: Iterable[ScoredCheck]) -> AuditScores:
    """Compute category and overall scores from stored check results.

    Critical checks weigh 3, recommended 2, optional 1. A warning earns half
    its weight. A category without checks scores 100. The overall score is the
    plain mean of the three category scores.
    """
    checks = list(checks)
    by_category = {
        cat: [c for c in checks if c.check_type == cat.value] for cat in CheckCategory
    }
    seo = category_score(by_category[CheckCategory.SEO])
    ai = category_score(by_category[CheckCategory.AI_READINESS])
    technical = category_score(by_category[CheckCategory.TECHNICAL])
    return AuditScores(
        overall=_round((seo + ai + technical) / 3),
        seo=seo,
        ai_readiness=ai,
        technical=technical,
        failed_count=sum(1 for c in checks if c.status == CheckStatus.FAILED.value),
        warning_count=sum(1 for c in checks if c.status == CheckStatus.WARNING.value),
        passed_count=sum(1 for c in checks if c.status == CheckStatus.PASSED.value),
    )
