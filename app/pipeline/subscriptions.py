"""
Recurring-payment (subscription) detection.

Outflows are grouped by normalised merchant. A group is a subscription when
its average day gap matches a cadence and its amounts are stable.
"""

import re
import uuid
from collections import defaultdict
from datetime import date
from typing import Optional

from app.config import settings
from app.models.enums import Cadence, TxDirection
from app.pipeline.stats import mean, std_dev
from app.schemas.analysis import DetectedSubscription
from app.schemas.transactions import Transaction

# Average-gap windows in days, inclusive
CADENCE_WINDOWS = [
    (Cadence.WEEKLY, 6, 8),
    (Cadence.MONTHLY, 28, 32),
    (Cadence.ANNUAL, 360, 370),
]

# Days since last charge for a subscription to count as active
ACTIVE_WINDOW_DAYS = {
    Cadence.WEEKLY: 14,
    Cadence.MONTHLY: 45,
    Cadence.ANNUAL: 400,
}

MAX_AMOUNT_VARIATION = 0.1
MONTHLY_CONFIDENCE = 0.9
DEFAULT_CONFIDENCE = 0.7

_SUBSCRIPTION_NAMESPACE = uuid.UUID("7d4c1d38-3f3e-4d5b-9a57-2f0c8e6b1a90")


def normalize_merchant(value: str) -> str:
    """Lowercase, drop non-alphanumerics, collapse whitespace."""
    cleaned = re.sub(r"[^a-z0-9\s]", "", value.lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def group_by_merchant(transactions: list[Transaction]) -> dict[str, list[Transaction]]:
    groups: dict[str, list[Transaction]] = defaultdict(list)
    for t in transactions:
        if t.direction != TxDirection.OUTFLOW or t.is_internal_transfer:
            continue
        label = t.merchant or t.description
        if not label:
            continue
        key = normalize_merchant(label)
        if key:
            groups[key].append(t)
    return groups


def day_gaps(dates: list[date]) -> list[int]:
    """Gaps in days between consecutive (sorted) dates."""
    return [(b - a).days for a, b in zip(dates, dates[1:])]


def detect_cadence(gaps: list[int]) -> Optional[Cadence]:
    if not gaps:
        return None
    avg = mean(gaps)
    for cadence, low, high in CADENCE_WINDOWS:
        if low <= avg <= high:
            return cadence
    return None


def _subscription_id(user_id: Optional[int], merchant: str, cadence: Cadence) -> str:
    return str(uuid.uuid5(_SUBSCRIPTION_NAMESPACE, f"{user_id}:{merchant}:{cadence.value}"))


def detect_subscriptions(
    transactions: list[Transaction],
    user_id: Optional[int] = None,
    as_of: Optional[date] = None,
    min_occurrences: Optional[int] = None,
) -> list[DetectedSubscription]:
    """
    Detect recurring outflows.

    A merchant group qualifies when it has at least `min_occurrences`
    charges, the average gap falls in a cadence window, and the amount
    coefficient of variation is at most 0.1. Groups are keyed by the
    normalised merchant; the reported name is the earliest charge's label.
    """
    as_of = as_of or date.today()
    min_occurrences = min_occurrences or settings.SUBSCRIPTION_MIN_OCCURRENCES

    subscriptions = []
    for key, txns in sorted(group_by_merchant(transactions).items()):
        if len(txns) < min_occurrences:
            continue

        txns = sorted(txns, key=lambda t: (t.date, t.transaction_id))
        dates = [t.date for t in txns]
        cadence = detect_cadence(day_gaps(dates))
        if cadence is None:
            continue

        amounts = [float(t.amount) for t in txns]
        avg_amount = mean(amounts)
        if avg_amount <= 0 or std_dev(amounts) / avg_amount > MAX_AMOUNT_VARIATION:
            continue

        days_since_last = (as_of - dates[-1]).days

        subscriptions.append(DetectedSubscription(
            id=_subscription_id(user_id, key, cadence),
            merchant=txns[0].merchant or txns[0].description,
            frequency=cadence.value,
            first_seen=dates[0].isoformat(),
            last_seen=dates[-1].isoformat(),
            is_active=days_since_last <= ACTIVE_WINDOW_DAYS[cadence],
            confidence=MONTHLY_CONFIDENCE if cadence == Cadence.MONTHLY else DEFAULT_CONFIDENCE,
            average_amount=round(avg_amount, 2),
            occurrences=len(txns),
            transaction_ids=[t.transaction_id for t in txns],
        ))

    return subscriptions
