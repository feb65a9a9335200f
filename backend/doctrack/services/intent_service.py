"""Intent scoring from send-to-first-open latency

The same thresholds back the lead lists, the CSV export and the dashboard.
"""
from datetime import datetime, timedelta
from typing import Optional

from doctrack.utils.business_time import ensure_utc

HIGH = "high"
MEDIUM = "medium"
LOW = "low"
UNOPENED = "unopened"

TIERS = (HIGH, MEDIUM, LOW, UNOPENED)

HIGH_WINDOW = timedelta(hours=24)
MEDIUM_WINDOW = timedelta(hours=72)

TIER_SCORES = {
    HIGH: 90,
    MEDIUM: 60,
    LOW: 30,
    UNOPENED: 0,
}

TIER_LABELS = {
    HIGH: "High",
    MEDIUM: "Medium",
    LOW: "Low",
    UNOPENED: "Unopened",
}


def score_intent(sent_at: datetime, first_open_at: Optional[datetime]) -> str:
    """Tier a lead by how quickly it was first opened after sending

    Args:
        sent_at: When the distribution was sent
        first_open_at: First open time, or None if never opened

    Returns:
        One of "high" (<=24h), "medium" (<=72h), "low" (>72h) or "unopened"
    """
    if first_open_at is None:
        return UNOPENED

    delta = ensure_utc(first_open_at) - ensure_utc(sent_at)
    if delta <= HIGH_WINDOW:
        return HIGH
    if delta <= MEDIUM_WINDOW:
        return MEDIUM
    return LOW


def tier_score(tier: str) -> int:
    return TIER_SCORES[tier]
