"""
Ledger persistence.

LedgerStore is the storage seam for everything the batch flow reads and
writes: transactions, sessions, token balances and derived analysis.
SqlAlchemyLedgerStore implements it on PostgreSQL with one short-lived
session per call. Storage failures surface as PersistenceError.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.errors import PersistenceError
from app.models.database import async_session_factory
from app.models.tables import (
    AnalysisSessionRow,
    HealthScoreRow,
    MonthlyMetricRow,
    NarrativeRow,
    SnapshotRow,
    SubscriptionRow,
    TransactionRow,
    UserTokensRow,
)
from app.schemas.analysis import DetectedSubscription, MonthlyCashflow
from app.schemas.sessions import AnalysisSession, TokenBalance
from app.schemas.transactions import Transaction

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 50


class LedgerStore(ABC):
    """Storage operations used by the ledger, the batch flow and the API."""

    # ── Transactions ─────────────────────────────────────────
    @abstractmethod
    async def insert_transactions(self, transactions: list[Transaction]) -> int:
        """Insert-or-ignore by transaction_id. Returns rows actually inserted."""

    @abstractmethod
    async def fetch_transactions_by_user(self, user_id: int) -> list[Transaction]:
        """Full ledger for a user, ordered by date."""

    @abstractmethod
    async def fetch_transactions_by_session(
        self,
        session_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
    ) -> list[Transaction]:
        ...

    @abstractmethod
    async def count_transactions_by_session(self, session_id: str, search: Optional[str] = None) -> int:
        ...

    # ── Derived analysis ─────────────────────────────────────
    @abstractmethod
    async def save_monthly_metrics(self, user_id: int, months: list[MonthlyCashflow]) -> None:
        """Upsert by (user_id, month)."""

    @abstractmethod
    async def save_subscriptions(self, user_id: int, subscriptions: list[DetectedSubscription]) -> None:
        """Upsert by deterministic subscription id."""

    @abstractmethod
    async def save_health_score(self, user_id: int, score: int) -> None:
        """Upsert by user."""

    @abstractmethod
    async def save_narrative(self, user_id: int, session_id: str, narrative: str) -> None:
        ...

    @abstractmethod
    async def fetch_narrative(self, session_id: str, user_id: int) -> Optional[str]:
        ...

    @abstractmethod
    async def save_snapshot(self, session_id: str, user_id: int, snapshot: dict) -> None:
        ...

    @abstractmethod
    async def fetch_snapshot(self, session_id: str) -> Optional[dict]:
        ...

    # ── Sessions ─────────────────────────────────────────────
    @abstractmethod
    async def create_session(self, record: AnalysisSession) -> bool:
        """Insert-or-ignore by session_id. Returns True when the row is new."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[AnalysisSession]:
        ...

    @abstractmethod
    async def transition_session(
        self,
        session_id: str,
        from_statuses: tuple[str, ...],
        user_id: Optional[int] = None,
        **fields,
    ) -> bool:
        """
        Write `fields` in one conditional statement, only while the session
        is in one of `from_statuses` (and owned by `user_id` when given).
        Returns True when the row was changed.
        """

    # ── Token balances ───────────────────────────────────────
    @abstractmethod
    async def charge_tokens(
        self,
        user_id: int,
        allocate: Callable[[TokenBalance], TokenBalance],
    ) -> TokenBalance:
        """
        Lock the user's balance (creating it with the free grant when
        missing), apply `allocate` and store its result in one transaction.
        Whatever `allocate` raises propagates and nothing is written.
        """


def _like(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _to_transaction(row: TransactionRow) -> Transaction:
    return Transaction.model_validate(row)


class SqlAlchemyLedgerStore(LedgerStore):
    """PostgreSQL implementation using the async ORM."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or async_session_factory

    @asynccontextmanager
    async def _session(self, operation: str):
        """Yield a session; commit on success, wrap storage errors."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("ledger_store_failed", operation=operation, error=str(e))
                raise PersistenceError(f"{operation} failed: {e}") from e

    # ── Transactions ─────────────────────────────────────────
    async def insert_transactions(self, transactions: list[Transaction]) -> int:
        if not transactions:
            return 0

        rows = [
            t.model_dump(mode="python") | {
                "direction": t.direction.value,
                "source": t.source.value,
                "recurring_signal": t.recurring_signal.value if t.recurring_signal else None,
                "confidence": Decimal(str(t.confidence)),
            }
            for t in transactions
        ]
        stmt = (
            pg_insert(TransactionRow)
            .values(rows)
            .on_conflict_do_nothing(index_elements=["transaction_id"])
            .returning(TransactionRow.transaction_id)
        )
        async with self._session("insert_transactions") as session:
            result = await session.execute(stmt)
            inserted = len(result.all())

        logger.info("transactions_inserted", requested=len(rows), inserted=inserted)
        return inserted

    async def fetch_transactions_by_user(self, user_id: int) -> list[Transaction]:
        stmt = (
            select(TransactionRow)
            .where(TransactionRow.user_id == user_id)
            .order_by(TransactionRow.date, TransactionRow.id)
        )
        async with self._session("fetch_transactions_by_user") as session:
            result = await session.execute(stmt)
            return [_to_transaction(r) for r in result.scalars().all()]

    def _session_filter(self, stmt, session_id: str, search: Optional[str]):
        stmt = stmt.where(TransactionRow.session_id == session_id)
        if search:
            pattern = _like(search)
            stmt = stmt.where(or_(
                TransactionRow.description.ilike(pattern),
                TransactionRow.merchant.ilike(pattern),
                TransactionRow.category.ilike(pattern),
            ))
        return stmt

    async def fetch_transactions_by_session(
        self,
        session_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
    ) -> list[Transaction]:
        stmt = self._session_filter(select(TransactionRow), session_id, search)
        stmt = (
            stmt.order_by(TransactionRow.date, TransactionRow.id)
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
        )
        async with self._session("fetch_transactions_by_session") as session:
            result = await session.execute(stmt)
            return [_to_transaction(r) for r in result.scalars().all()]

    async def count_transactions_by_session(self, session_id: str, search: Optional[str] = None) -> int:
        stmt = self._session_filter(select(func.count(TransactionRow.id)), session_id, search)
        async with self._session("count_transactions_by_session") as session:
            return (await session.execute(stmt)).scalar_one()

    # ── Derived analysis ─────────────────────────────────────
    async def save_monthly_metrics(self, user_id: int, months: list[MonthlyCashflow]) -> None:
        if not months:
            return
        stmt = pg_insert(MonthlyMetricRow).values([
            {
                "user_id": user_id,
                "month": m.month,
                "income": Decimal(str(round(m.inflow, 2))),
                "expenses": Decimal(str(round(m.outflow, 2))),
                "net_cashflow": Decimal(str(round(m.net_cash_flow, 2))),
            }
            for m in months
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "month"],
            set_={
                "income": stmt.excluded.income,
                "expenses": stmt.excluded.expenses,
                "net_cashflow": stmt.excluded.net_cashflow,
            },
        )
        async with self._session("save_monthly_metrics") as session:
            await session.execute(stmt)

    async def save_subscriptions(self, user_id: int, subscriptions: list[DetectedSubscription]) -> None:
        if not subscriptions:
            return
        stmt = pg_insert(SubscriptionRow).values([
            {
                "id": uuid.UUID(s.id),
                "user_id": user_id,
                "merchant": s.merchant,
                "frequency": s.frequency,
                "first_seen": date.fromisoformat(s.first_seen),
                "last_seen": date.fromisoformat(s.last_seen),
                "is_active": s.is_active,
                "confidence": Decimal(str(s.confidence)),
                "average_amount": Decimal(str(s.average_amount)),
                "occurrences": s.occurrences,
                "transaction_ids": s.transaction_ids,
            }
            for s in subscriptions
        ])
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "last_seen": stmt.excluded.last_seen,
                "is_active": stmt.excluded.is_active,
                "confidence": stmt.excluded.confidence,
                "average_amount": stmt.excluded.average_amount,
                "occurrences": stmt.excluded.occurrences,
                "transaction_ids": stmt.excluded.transaction_ids,
                "updated_at": func.now(),
            },
        )
        async with self._session("save_subscriptions") as session:
            await session.execute(stmt)

    async def save_health_score(self, user_id: int, score: int) -> None:
        stmt = pg_insert(HealthScoreRow).values(user_id=user_id, score=score)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id"],
            set_={"score": stmt.excluded.score, "updated_at": func.now()},
        )
        async with self._session("save_health_score") as session:
            await session.execute(stmt)

    async def save_narrative(self, user_id: int, session_id: str, narrative: str) -> None:
        async with self._session("save_narrative") as session:
            session.add(NarrativeRow(user_id=user_id, session_id=session_id, narrative=narrative))

    async def fetch_narrative(self, session_id: str, user_id: int) -> Optional[str]:
        stmt = (
            select(NarrativeRow.narrative)
            .where(NarrativeRow.session_id == session_id, NarrativeRow.user_id == user_id)
            .order_by(NarrativeRow.id.desc())
            .limit(1)
        )
        async with self._session("fetch_narrative") as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def save_snapshot(self, session_id: str, user_id: int, snapshot: dict) -> None:
        stmt = pg_insert(SnapshotRow).values(session_id=session_id, user_id=user_id, snapshot=snapshot)
        stmt = stmt.on_conflict_do_update(
            index_elements=["session_id"],
            set_={"snapshot": stmt.excluded.snapshot},
        )
        async with self._session("save_snapshot") as session:
            await session.execute(stmt)

    async def fetch_snapshot(self, session_id: str) -> Optional[dict]:
        stmt = select(SnapshotRow.snapshot).where(SnapshotRow.session_id == session_id)
        async with self._session("fetch_snapshot") as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    # ── Sessions ─────────────────────────────────────────────
    async def create_session(self, record: AnalysisSession) -> bool:
        stmt = (
            pg_insert(AnalysisSessionRow)
            .values(
                session_id=record.session_id,
                user_id=record.user_id,
                status=record.status,
                source_type=record.source_type,
                tokens_expected=record.tokens_expected,
                tokens_used=record.tokens_used,
                meta_data=record.meta_data,
            )
            .on_conflict_do_nothing(index_elements=["session_id"])
            .returning(AnalysisSessionRow.id)
        )
        async with self._session("create_session") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def get_session(self, session_id: str) -> Optional[AnalysisSession]:
        stmt = select(AnalysisSessionRow).where(AnalysisSessionRow.session_id == session_id)
        async with self._session("get_session") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return AnalysisSession.model_validate(row) if row else None

    async def transition_session(
        self,
        session_id: str,
        from_statuses: tuple[str, ...],
        user_id: Optional[int] = None,
        **fields,
    ) -> bool:
        stmt = update(AnalysisSessionRow).where(
            AnalysisSessionRow.session_id == session_id,
            AnalysisSessionRow.status.in_(from_statuses),
        )
        if user_id is not None:
            stmt = stmt.where(AnalysisSessionRow.user_id == user_id)
        stmt = stmt.values(**fields, updated_at=func.now()).returning(AnalysisSessionRow.id)
        async with self._session("transition_session") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Token balances ───────────────────────────────────────
    async def charge_tokens(
        self,
        user_id: int,
        allocate: Callable[[TokenBalance], TokenBalance],
    ) -> TokenBalance:
        ensure = (
            pg_insert(UserTokensRow)
            .values(user_id=user_id, free_tokens_granted=settings.INITIAL_FREE_TOKENS)
            .on_conflict_do_nothing(index_elements=["user_id"])
        )
        locked = select(UserTokensRow).where(UserTokensRow.user_id == user_id).with_for_update()
        async with self._session("charge_tokens") as session:
            await session.execute(ensure)
            row = (await session.execute(locked)).scalar_one()
            updated = allocate(TokenBalance(
                user_id=row.user_id,
                free_tokens_granted=row.free_tokens_granted,
                free_tokens_used=row.free_tokens_used,
                paid_tokens_granted=row.paid_tokens_granted,
                paid_tokens_used=row.paid_tokens_used,
            ))
            row.free_tokens_used = updated.free_tokens_used
            row.paid_tokens_used = updated.paid_tokens_used
            row.updated_at = func.now()

        logger.info(
            "tokens_charged",
            user_id=user_id,
            free_used=updated.free_tokens_used,
            paid_used=updated.paid_tokens_used,
        )
        return updated
