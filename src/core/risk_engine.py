"""
Risk Engine.

Pure scoring of a notice against the user's compliance history. No I/O and no
clock access: `today` is always passed in, so the same inputs always give the
same assessment.
"""

from datetime import date
from typing import List, Optional

from src.core.models import (
    Category,
    ComplianceHistory,
    Notice,
    RiskAssessment,
    RiskLevel,
)

CATEGORY_MULTIPLIERS = {
    Category.TAX: 1.20,
    Category.CORPORATE: 1.15,
    Category.LABOR: 1.10,
    Category.ENVIRONMENTAL: 1.00,
    Category.TRADE: 1.00,
    Category.OTHER: 1.00,
}

# (max days remaining, points, factor)
PROXIMITY_BANDS = [
    (7, 40, "deadline_within_7_days"),
    (14, 30, "deadline_within_14_days"),
    (30, 20, "deadline_within_30_days"),
]
PROXIMITY_DEFAULT = 10

# (min amount, points, factor)
PENALTY_BANDS = [
    (100_000, 30, "penalty_at_least_100000"),
    (50_000, 20, "penalty_at_least_50000"),
    (10_000, 10, "penalty_at_least_10000"),
]
PENALTY_DEFAULT = 5

MISSED_DEADLINES_ADDEND = 15
REPEAT_VIOLATION_ADDEND = 10

# (min score, level), checked in order
LEVEL_THRESHOLDS = [
    (70, RiskLevel.CRITICAL),
    (50, RiskLevel.HIGH),
    (30, RiskLevel.MEDIUM),
]

IMMINENT_DEADLINE_DAYS = 7
CRITICAL_PENALTY_AMOUNT = 100_000


def _level_for(score: float) -> RiskLevel:
    for threshold, level in LEVEL_THRESHOLDS:
        if score >= threshold:
            return level
    return RiskLevel.LOW


def _floor(level: RiskLevel, minimum: RiskLevel) -> RiskLevel:
    return minimum if minimum.rank > level.rank else level


def score(
    notice: Notice,
    history: Optional[ComplianceHistory],
    today: date,
) -> RiskAssessment:
    """
    Score a notice.

    The governing deadline is the soonest non-expired deadline not yet past.
    Floors always dominate the score-derived level: an imminent deadline
    raises the level to at least High, a penalty of 100000 or more forces
    Critical.
    """
    factors: List[str] = []
    running = 0.0

    governing = notice.nearest_deadline(today)
    days_remaining = governing.compute_days_remaining(today) if governing else None

    proximity = PROXIMITY_DEFAULT
    if days_remaining is not None:
        for max_days, points, factor in PROXIMITY_BANDS:
            if days_remaining <= max_days:
                proximity = points
                factors.append(factor)
                break
    running += proximity

    amount = notice.penalty.amount if notice.penalty else None
    penalty_points = PENALTY_DEFAULT
    if amount is not None:
        for min_amount, points, factor in PENALTY_BANDS:
            if amount >= min_amount:
                penalty_points = points
                factors.append(factor)
                break
    running += penalty_points

    multiplier = CATEGORY_MULTIPLIERS.get(notice.category, 1.0)
    if multiplier != 1.0:
        factors.append(f"category_multiplier_{notice.category.value.lower()}")
    running *= multiplier

    # History is added after the multiplier
    if history is not None:
        if history.missed_deadlines_count > 0:
            running += MISSED_DEADLINES_ADDEND
            factors.append("missed_deadlines_history")
        if history.repeat_violation:
            running += REPEAT_VIOLATION_ADDEND
            factors.append("repeat_violation")

    final_score = round(running, 2)
    level = _level_for(final_score)

    if days_remaining is not None and days_remaining <= IMMINENT_DEADLINE_DAYS:
        floored = _floor(level, RiskLevel.HIGH)
        if floored != level:
            factors.append("floor_imminent_deadline")
        level = floored

    if amount is not None and amount >= CRITICAL_PENALTY_AMOUNT:
        floored = _floor(level, RiskLevel.CRITICAL)
        if floored != level:
            factors.append("floor_critical_penalty")
        level = floored

    return RiskAssessment(level=level, score=final_score, factors=factors)
