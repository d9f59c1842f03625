"""
Deterministic financial analysis over the full transaction ledger.

Pure functions: same ledger in, same snapshot out. Internal transfers are
excluded everywhere except credit-card analysis, which looks at every row
from the card channel.
"""

import math
from collections import defaultdict
from datetime import date
from typing import Optional

import structlog

from app.models.enums import TransactionSource, TxDirection
from app.pipeline.stats import std_dev
from app.pipeline.subscriptions import detect_subscriptions
from app.schemas.analysis import (
    AnalysisSnapshot,
    Anomaly,
    CashflowAnalysis,
    CategoryShare,
    CoreMetrics,
    CreditAnalysis,
    MonthlyCashflow,
    SourceConcentration,
)
from app.schemas.transactions import Transaction

logger = structlog.get_logger(__name__)

UNCATEGORIZED = "Uncategorized"
UNKNOWN_SOURCE = "Unknown"
SELF_TRANSFER = "self_transfer"

ANOMALY_Z_THRESHOLD = 3.0
ANOMALY_MIN_SAMPLE = 4
REVOLVING_SPEND_RATIO = 1.2

# Health score deductions
HEALTH_MIN_SAVINGS_RATE = 0.2
HEALTH_MAX_BURN_RATIO = 0.7
HEALTH_MAX_INCOME_CONSISTENCY = 0.4


# ─── Helpers ──────────────────────────────────────────────────

def year_month(d: date) -> str:
    return d.strftime("%Y-%m")


def _amount(t: Transaction) -> float:
    return float(t.amount)


def _is_excluded(t: Transaction) -> bool:
    return t.is_internal_transfer or SELF_TRANSFER in (t.subcategory or "")


def _countable(transactions: list[Transaction]) -> list[Transaction]:
    return [t for t in transactions if not _is_excluded(t)]


def _sum(transactions: list[Transaction], direction: TxDirection) -> float:
    return sum(_amount(t) for t in transactions if t.direction == direction)


def _monthly_totals(transactions: list[Transaction], direction: TxDirection) -> list[float]:
    totals: dict[str, float] = defaultdict(float)
    for t in transactions:
        if t.direction == direction:
            totals[year_month(t.date)] += _amount(t)
    return [totals[m] for m in sorted(totals)]


# ─── Core metrics ─────────────────────────────────────────────

def compute_core_metrics(transactions: list[Transaction]) -> CoreMetrics:
    txns = _countable(transactions)

    income = _sum(txns, TxDirection.INFLOW)
    expenses = _sum(txns, TxDirection.OUTFLOW)
    months = len({year_month(t.date) for t in txns}) or 1

    return CoreMetrics(
        total_income=income,
        total_expenses=expenses,
        net_savings=income - expenses,
        savings_rate=(income - expenses) / income if income else 0.0,
        avg_monthly_burn=expenses / months,
        income_consistency=std_dev(_monthly_totals(txns, TxDirection.INFLOW)),
        expense_volatility=std_dev(_monthly_totals(txns, TxDirection.OUTFLOW)),
    )


# ─── Cash flow ────────────────────────────────────────────────

def compute_cashflow(transactions: list[Transaction]) -> CashflowAnalysis:
    by_month: dict[str, dict[str, float]] = {}

    for t in transactions:
        if t.is_internal_transfer:
            continue
        bucket = by_month.setdefault(year_month(t.date), {"inflow": 0.0, "outflow": 0.0})
        bucket[t.direction.value] += _amount(t)

    months = [
        MonthlyCashflow(
            month=m,
            inflow=v["inflow"],
            outflow=v["outflow"],
            net_cash_flow=v["inflow"] - v["outflow"],
        )
        for m, v in sorted(by_month.items())
    ]

    return CashflowAnalysis(
        months=months,
        positive_months=sum(1 for m in months if m.net_cash_flow > 0),
        negative_months=sum(1 for m in months if m.net_cash_flow < 0),
        cashflow_stability_index=std_dev([m.net_cash_flow for m in months]),
        cashflow_gaps=[m for m in months if m.net_cash_flow < 0],
    )


# ─── Categories ───────────────────────────────────────────────

def compute_categories(transactions: list[Transaction]) -> list[CategoryShare]:
    totals: dict[str, float] = defaultdict(float)
    for t in transactions:
        if t.direction != TxDirection.OUTFLOW or t.is_internal_transfer:
            continue
        totals[t.category or UNCATEGORIZED] += _amount(t)

    total_expense = sum(totals.values())
    shares = [
        CategoryShare(
            category=category,
            amount=amount,
            percentage_of_expense=amount / total_expense if total_expense else 0.0,
        )
        for category, amount in totals.items()
    ]
    return sorted(shares, key=lambda c: (-c.amount, c.category))


# ─── Credit ───────────────────────────────────────────────────

def compute_credit(transactions: list[Transaction]) -> CreditAnalysis:
    card = [t for t in transactions if t.source == TransactionSource.CREDIT_CARD]

    spend = _sum(card, TxDirection.OUTFLOW)
    payments = _sum(card, TxDirection.INFLOW)
    total_outflow = _sum(transactions, TxDirection.OUTFLOW)

    return CreditAnalysis(
        total_credit_spend=spend,
        credit_spend_ratio=spend / (total_outflow or 1),
        interest_paid=sum(_amount(t) for t in card if t.is_interest),
        fees_paid=sum(_amount(t) for t in card if t.is_fee),
        revolving_detected=spend > payments * REVOLVING_SPEND_RATIO,
    )


# ─── Income / expense sources ─────────────────────────────────

def _source_concentration(transactions: list[Transaction], direction: TxDirection) -> SourceConcentration:
    sources: dict[str, float] = defaultdict(float)
    for t in _countable(transactions):
        if t.direction == direction:
            sources[t.merchant or UNKNOWN_SOURCE] += _amount(t)

    total = sum(sources.values())
    return SourceConcentration(
        sources=dict(sorted(sources.items(), key=lambda kv: (-kv[1], kv[0]))),
        dependence_on_single_source=max(sources.values()) / total if total else 0.0,
    )


def compute_income_sources(transactions: list[Transaction]) -> SourceConcentration:
    return _source_concentration(transactions, TxDirection.INFLOW)


def compute_expense_sources(transactions: list[Transaction]) -> SourceConcentration:
    return _source_concentration(transactions, TxDirection.OUTFLOW)


# ─── Anomalies ────────────────────────────────────────────────

def detect_anomalies(
    transactions: list[Transaction],
    threshold: float = ANOMALY_Z_THRESHOLD,
) -> list[Anomaly]:
    """
    Flag outflows more than `threshold` standard deviations above the mean.
    Each amount is scored against the mean and stdDev of the other outflows.
    """
    expenses = [t for t in transactions if t.direction == TxDirection.OUTFLOW and not t.is_internal_transfer]
    if len(expenses) < ANOMALY_MIN_SAMPLE:
        return []

    amounts = [_amount(t) for t in expenses]
    total = sum(amounts)
    total_sq = sum(a * a for a in amounts)
    n_others = len(amounts) - 1

    anomalies = []
    for t, amount in zip(expenses, amounts):
        others_mean = (total - amount) / n_others
        others_var = max((total_sq - amount * amount) / n_others - others_mean ** 2, 0.0)
        others_std = math.sqrt(others_var)

        if amount <= others_mean + threshold * others_std:
            continue

        anomalies.append(Anomaly(
            transaction_id=t.transaction_id,
            date=t.date.isoformat(),
            amount=amount,
            merchant=t.merchant,
            z_score=round((amount - others_mean) / others_std, 4) if others_std else None,
        ))

    return anomalies


# ─── Health score ─────────────────────────────────────────────

def compute_health_score(core: CoreMetrics, credit: CreditAnalysis) -> int:
    score = 100

    if core.savings_rate < HEALTH_MIN_SAVINGS_RATE:
        score -= 25
    if credit.revolving_detected:
        score -= 20
    if core.avg_monthly_burn > core.total_income * HEALTH_MAX_BURN_RATIO:
        score -= 20
    if core.income_consistency > HEALTH_MAX_INCOME_CONSISTENCY:
        score -= 15

    return max(0, min(100, score))


# ─── Full run ─────────────────────────────────────────────────

def run_full_analysis(
    transactions: list[Transaction],
    user_id: Optional[int] = None,
    as_of: Optional[date] = None,
    min_occurrences: Optional[int] = None,
) -> AnalysisSnapshot:
    """Compute the full snapshot from the complete ledger."""
    core = compute_core_metrics(transactions)
    credit = compute_credit(transactions)

    snapshot = AnalysisSnapshot(
        core=core,
        cashflow=compute_cashflow(transactions),
        categories=compute_categories(transactions),
        credit=credit,
        income=compute_income_sources(transactions),
        expenses=compute_expense_sources(transactions),
        anomalies=detect_anomalies(transactions),
        subscriptions=detect_subscriptions(
            transactions,
            user_id=user_id,
            as_of=as_of,
            min_occurrences=min_occurrences,
        ),
        health_score=compute_health_score(core, credit),
    )

    logger.info(
        "analysis_completed",
        transactions=len(transactions),
        months=len(snapshot.cashflow.months),
        anomalies=len(snapshot.anomalies),
        subscriptions=len(snapshot.subscriptions),
        health_score=snapshot.health_score,
    )
    return snapshot
