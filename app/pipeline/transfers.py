"""
Internal-transfer tagging.

Two transactions in the same extraction batch with an identical
(amount, date) pair are both marked as internal transfers. This is a coarse
heuristic: two unrelated same-day, same-amount payments are misclassified.
"""

from app.schemas.transactions import Transaction


def tag_internal_transfers(transactions: list[Transaction]) -> list[Transaction]:
    """Mark every (amount, date) collision as an internal transfer, in place."""
    first_seen: dict[tuple, Transaction] = {}

    for t in transactions:
        key = (t.amount, t.date)
        if key in first_seen:
            t.is_internal_transfer = True
            first_seen[key].is_internal_transfer = True
        else:
            first_seen[key] = t

    return transactions
