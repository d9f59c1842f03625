"""
Shared test fixtures.
"""

import asyncio
import uuid
from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from app.models.enums import TransactionSource, TxDirection
from app.schemas.analysis import DetectedSubscription, MonthlyCashflow
from app.schemas.sessions import AnalysisSession, TokenBalance
from app.schemas.transactions import Transaction
from app.storage.ledger_store import LedgerStore


class InMemoryLedgerStore(LedgerStore):
    """LedgerStore backed by dicts, with the same idempotency rules as PostgreSQL."""

    def __init__(self, initial_free_tokens: int = 15):
        self.initial_free_tokens = initial_free_tokens
        self.transactions: dict[str, Transaction] = {}
        self.sessions: dict[str, AnalysisSession] = {}
        self.balances: dict[int, TokenBalance] = {}
        self.monthly_metrics: dict[tuple[int, str], MonthlyCashflow] = {}
        self.subscriptions: dict[str, DetectedSubscription] = {}
        self.health_scores: dict[int, int] = {}
        self.narratives: list[tuple[int, str, str]] = []
        self.snapshots: dict[str, dict] = {}
        self.insert_calls: list[int] = []

    async def insert_transactions(self, transactions):
        self.insert_calls.append(len(transactions))
        inserted = 0
        for t in transactions:
            if t.transaction_id not in self.transactions:
                self.transactions[t.transaction_id] = t
                inserted += 1
        return inserted

    async def fetch_transactions_by_user(self, user_id):
        rows = [t for t in self.transactions.values() if t.user_id == user_id]
        return sorted(rows, key=lambda t: t.date)

    def _by_session(self, session_id, search):
        rows = [t for t in self.transactions.values() if t.session_id == session_id]
        if search:
            needle = search.lower()
            rows = [
                t for t in rows
                if any(needle in (v or "").lower() for v in (t.description, t.merchant, t.category))
            ]
        return sorted(rows, key=lambda t: t.date)

    async def fetch_transactions_by_session(self, session_id, page=1, limit=50, search=None):
        rows = self._by_session(session_id, search)
        start = (page - 1) * limit
        return rows[start:start + limit]

    async def count_transactions_by_session(self, session_id, search=None):
        return len(self._by_session(session_id, search))

    async def save_monthly_metrics(self, user_id, months):
        for m in months:
            self.monthly_metrics[(user_id, m.month)] = m

    async def save_subscriptions(self, user_id, subscriptions):
        for s in subscriptions:
            self.subscriptions[s.id] = s

    async def save_health_score(self, user_id, score):
        self.health_scores[user_id] = score

    async def save_narrative(self, user_id, session_id, narrative):
        self.narratives.append((user_id, session_id, narrative))

    async def fetch_narrative(self, session_id, user_id):
        for uid, sid, narrative in reversed(self.narratives):
            if uid == user_id and sid == session_id:
                return narrative
        return None

    async def save_snapshot(self, session_id, user_id, snapshot):
        self.snapshots[session_id] = snapshot

    async def fetch_snapshot(self, session_id):
        return self.snapshots.get(session_id)

    async def create_session(self, record):
        if record.session_id in self.sessions:
            return False
        self.sessions[record.session_id] = record
        return True

    async def get_session(self, session_id):
        return self.sessions.get(session_id)

    async def transition_session(self, session_id, from_statuses, user_id=None, **fields):
        current = self.sessions.get(session_id)
        if current is None or current.status not in from_statuses:
            return False
        if user_id is not None and current.user_id != user_id:
            return False
        self.sessions[session_id] = current.model_copy(update=fields)
        return True

    def balance(self, user_id):
        if user_id not in self.balances:
            self.balances[user_id] = TokenBalance(user_id=user_id, free_tokens_granted=self.initial_free_tokens)
        return self.balances[user_id]

    async def charge_tokens(self, user_id, allocate):
        updated = allocate(self.balance(user_id))
        self.balances[user_id] = updated
        return updated


class YieldingLedgerStore(InMemoryLedgerStore):
    """In-memory store that hands control back to the loop before every session or balance call."""

    async def create_session(self, record):
        await asyncio.sleep(0)
        return await super().create_session(record)

    async def get_session(self, session_id):
        await asyncio.sleep(0)
        return await super().get_session(session_id)

    async def transition_session(self, session_id, from_statuses, user_id=None, **fields):
        await asyncio.sleep(0)
        return await super().transition_session(session_id, from_statuses, user_id=user_id, **fields)

    async def charge_tokens(self, user_id, allocate):
        await asyncio.sleep(0)
        return await super().charge_tokens(user_id, allocate)


class RecordingSleep:
    """Async sleep replacement that records requested waits and returns at once."""

    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def word_count(text: str) -> int:
    """Deterministic token estimate: one token per whitespace-separated word."""
    return len(text.split())


@pytest.fixture
def ledger_store():
    return InMemoryLedgerStore()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def word_estimate():
    return word_count


@pytest.fixture
def make_txn():
    """Factory for ledger transactions with sensible defaults."""

    def _make(
        day: str,
        amount: str,
        direction: str = "outflow",
        merchant: Optional[str] = None,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
        source: str = "bank",
        user_id: int = 1,
        session_id: str = "s-1",
        **extra,
    ) -> Transaction:
        return Transaction(
            transaction_id=extra.pop("transaction_id", str(uuid.uuid4())),
            user_id=user_id,
            account_id="HDFC-bank-1234",
            session_id=session_id,
            date=date.fromisoformat(day),
            amount=Decimal(amount),
            direction=TxDirection(direction),
            source=TransactionSource(source),
            merchant=merchant,
            description=extra.pop("description", merchant),
            category=category,
            subcategory=subcategory,
            **extra,
        )

    return _make


class RecordingBroadcaster:
    """Captures emitted progress events as (session_id, event, payload)."""

    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    async def emit(self, session_id: str, event: str, payload: dict) -> None:
        self.events.append((session_id, event, payload))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def yielding_ledger_store():
    return YieldingLedgerStore()
