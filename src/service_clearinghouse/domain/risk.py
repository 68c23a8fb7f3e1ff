"""Intake risk heuristic for new job listings.

The score (0-100) is advisory: admins see it while approving listings.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

HIGH_RISK_CATEGORIES = frozenset({"electrical", "plumbing", "roofing", "gas"})
MAX_RISK_SCORE = 100


def calculate_risk_score(
    budget: Decimal,
    category: str,
    description: str,
    scheduled_at: datetime | None,
    now: datetime | None = None,
) -> int:
    """Score a listing from its budget, trade, description detail and urgency."""
    now = now or datetime.now(UTC)
    score = 0

    if budget > 5000:
        score += 30
    elif budget > 1000:
        score += 15

    if category.strip().lower() in HIGH_RISK_CATEGORIES:
        score += 25

    if len(description.strip()) < 50:
        score += 20

    if scheduled_at is not None:
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=UTC)
        if scheduled_at - now < timedelta(hours=48):
            score += 25

    return min(score, MAX_RISK_SCORE)
