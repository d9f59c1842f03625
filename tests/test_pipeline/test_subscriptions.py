"""Tests for recurring-payment detection."""

from datetime import date

import pytest

from app.models.enums import Cadence
from app.pipeline.subscriptions import day_gaps, detect_cadence, detect_subscriptions, normalize_merchant


def _netflix(make_txn, amounts=("499", "499", "499"), days=("2024-01-05", "2024-02-04", "2024-03-06")):
    return [make_txn(d, a, merchant="NETFLIX") for d, a in zip(days, amounts)]


class TestHelpers:
    """Normalisation and cadence windows."""

    def test_normalize_merchant(self):
        assert normalize_merchant("  Netflix.com   India ") == "netflixcom india"

    def test_day_gaps(self):
        assert day_gaps([date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)]) == [7, 7]

    @pytest.mark.parametrize("gaps,cadence", [
        ([7, 7], Cadence.WEEKLY),
        ([30, 31], Cadence.MONTHLY),
        ([365], Cadence.ANNUAL),
        ([14, 14], None),
        ([], None),
    ])
    def test_detect_cadence(self, gaps, cadence):
        assert detect_cadence(gaps) == cadence


class TestDetectSubscriptions:
    """Merchant groups with a cadence and stable amounts."""

    def test_monthly_netflix(self, make_txn):
        txns = _netflix(make_txn)
        subs = detect_subscriptions(txns, user_id=1, as_of=date(2024, 3, 20))

        assert len(subs) == 1
        sub = subs[0]
        assert sub.merchant == "NETFLIX"
        assert sub.frequency == "monthly"
        assert sub.average_amount == 499.0
        assert sub.occurrences == 3
        assert sub.confidence == 0.9
        assert sub.first_seen == "2024-01-05"
        assert sub.last_seen == "2024-03-06"
        assert sub.is_active is True
        assert sub.transaction_ids == [t.transaction_id for t in txns]

    def test_two_occurrences_enough(self, make_txn):
        txns = _netflix(make_txn, amounts=("499", "499"), days=("2024-01-05", "2024-02-04"))
        subs = detect_subscriptions(txns, user_id=1, as_of=date(2024, 2, 10))
        assert [s.occurrences for s in subs] == [2]

    def test_min_occurrences_override(self, make_txn):
        txns = _netflix(make_txn, amounts=("499", "499"), days=("2024-01-05", "2024-02-04"))
        assert detect_subscriptions(txns, as_of=date(2024, 2, 10), min_occurrences=3) == []

    def test_unstable_amounts_rejected(self, make_txn):
        txns = _netflix(make_txn, amounts=("100", "200", "100"))
        assert detect_subscriptions(txns, as_of=date(2024, 3, 20)) == []

    def test_inactive_when_stale(self, make_txn):
        subs = detect_subscriptions(_netflix(make_txn), as_of=date(2024, 6, 1))
        assert subs[0].is_active is False

    @pytest.mark.parametrize("as_of,active", [
        (date(2024, 4, 20), True),
        (date(2024, 4, 21), False),
    ])
    def test_monthly_active_window_inclusive(self, make_txn, as_of, active):
        subs = detect_subscriptions(_netflix(make_txn), as_of=as_of)
        assert subs[0].is_active is active

    def test_display_name_from_earliest_charge(self, make_txn):
        txns = [
            make_txn("2024-01-05", "499", merchant="Netflix.com"),
            make_txn("2024-02-04", "499", merchant="NETFLIX.COM"),
            make_txn("2024-03-06", "499", merchant="netflix.Com"),
        ]
        subs = detect_subscriptions(list(reversed(txns)), user_id=1, as_of=date(2024, 3, 20))

        assert [s.merchant for s in subs] == ["Netflix.com"]
        assert subs[0].occurrences == 3

    def test_weekly_confidence(self, make_txn):
        txns = [make_txn(d, "99", merchant="GYM") for d in ("2024-01-01", "2024-01-08", "2024-01-15")]
        subs = detect_subscriptions(txns, as_of=date(2024, 1, 20))
        assert subs[0].frequency == "weekly"
        assert subs[0].confidence == 0.7

    def test_inflows_and_transfers_ignored(self, make_txn):
        txns = [make_txn(d, "499", "inflow", merchant="NETFLIX") for d in ("2024-01-05", "2024-02-04")]
        txns += [make_txn(d, "499", merchant="SAVINGS", is_internal_transfer=True) for d in ("2024-01-05", "2024-02-04")]
        assert detect_subscriptions(txns, as_of=date(2024, 2, 10)) == []

    def test_stable_ids(self, make_txn):
        txns = _netflix(make_txn)
        first = detect_subscriptions(txns, user_id=7, as_of=date(2024, 3, 20))
        second = detect_subscriptions(list(reversed(txns)), user_id=7, as_of=date(2024, 3, 20))
        assert first[0].id == second[0].id
