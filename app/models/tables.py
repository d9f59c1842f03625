"""
SQLAlchemy ORM models.
Column names match the PostgreSQL DDL of the insights database.
"""

import datetime as dt
import uuid

from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ENUM, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.database import Base


# ────────────────────────────────────────────────────────────
# TRANSACTIONS
# ────────────────────────────────────────────────────────────
class TransactionRow(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    transaction_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    session_id: Mapped[str] = mapped_column(Text, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    direction: Mapped[str] = mapped_column(
        ENUM("inflow", "outflow", name="tx_direction_enum", create_type=False),
        nullable=False,
    )
    source: Mapped[str] = mapped_column(
        ENUM("bank", "upi", "credit_card", name="tx_source_enum", create_type=False),
        nullable=False, default="bank", server_default="bank",
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="INR", server_default="INR"
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    merchant: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    subcategory: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_internal_transfer: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_interest: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    is_fee: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    confidence: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    is_recurring_candidate: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    recurring_signal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_transactions_user_date", "user_id", "date"),
        Index("idx_transactions_session", "session_id"),
    )


# ────────────────────────────────────────────────────────────
# ANALYSIS SESSIONS
# ────────────────────────────────────────────────────────────
class AnalysisSessionRow(Base):
    __tablename__ = "analysis_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(
        ENUM("pending", "in_progress", "completed", "failed", name="session_status_enum", create_type=False),
        nullable=False, default="pending", server_default="pending",
    )
    source_type: Mapped[str] = mapped_column(
        Text, nullable=False, default="pdf", server_default="pdf"
    )
    tokens_expected: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_data: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_sessions_user", "user_id"),
    )


# ────────────────────────────────────────────────────────────
# USER TOKENS
# ────────────────────────────────────────────────────────────
class UserTokensRow(Base):
    __tablename__ = "user_tokens"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    free_tokens_granted: Mapped[int] = mapped_column(Integer, nullable=False, default=15, server_default="15")
    free_tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    paid_tokens_granted: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    paid_tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )


# ────────────────────────────────────────────────────────────
# DERIVED ANALYSIS
# ────────────────────────────────────────────────────────────
class MonthlyMetricRow(Base):
    __tablename__ = "monthly_metrics"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    income: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    expenses: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    net_cashflow: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_monthly_metrics_user_month"),
    )


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    merchant: Mapped[str] = mapped_column(Text, nullable=False)
    frequency: Mapped[str] = mapped_column(
        ENUM("weekly", "monthly", "annual", name="cadence_enum", create_type=False),
        nullable=False,
    )
    first_seen: Mapped[dt.date] = mapped_column(Date, nullable=False)
    last_seen: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    average_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    occurrences: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_ids: Mapped[list] = mapped_column(JSONB, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )


class HealthScoreRow(Base):
    __tablename__ = "financial_health_scores"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )


class NarrativeRow(Base):
    __tablename__ = "financial_narratives"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    session_id: Mapped[str] = mapped_column(Text, nullable=False)
    narrative: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )

    __table_args__ = (
        Index("idx_narratives_session_user", "session_id", "user_id"),
    )


class SnapshotRow(Base):
    __tablename__ = "analysis_snapshots"

    session_id: Mapped[str] = mapped_column(Text, primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    snapshot: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text("NOW()")
    )
