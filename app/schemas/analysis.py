"""
Analysis snapshot schemas.
Output of the deterministic analysis engine; persisted per session and
serialised into the narrative prompt.
"""

from typing import Optional

from pydantic import BaseModel


class CoreMetrics(BaseModel):
    total_income: float
    total_expenses: float
    net_savings: float
    savings_rate: float
    avg_monthly_burn: float
    income_consistency: float
    expense_volatility: float


class MonthlyCashflow(BaseModel):
    month: str                  # YYYY-MM
    inflow: float
    outflow: float
    net_cash_flow: float


class CashflowAnalysis(BaseModel):
    months: list[MonthlyCashflow]
    positive_months: int
    negative_months: int
    cashflow_stability_index: float
    cashflow_gaps: list[MonthlyCashflow]


class CategoryShare(BaseModel):
    category: str
    amount: float
    percentage_of_expense: float


class CreditAnalysis(BaseModel):
    total_credit_spend: float
    credit_spend_ratio: float
    interest_paid: float
    fees_paid: float
    revolving_detected: bool


class SourceConcentration(BaseModel):
    """Amounts grouped by counterparty with single-source dependence."""
    sources: dict[str, float]
    dependence_on_single_source: float


class Anomaly(BaseModel):
    transaction_id: str
    date: str
    amount: float
    merchant: Optional[str] = None
    z_score: Optional[float] = None     # None when the other outflows are identical


class DetectedSubscription(BaseModel):
    id: str
    merchant: str
    frequency: str              # weekly, monthly, annual
    first_seen: str
    last_seen: str
    is_active: bool
    confidence: float
    average_amount: float
    occurrences: int
    transaction_ids: list[str]


class AnalysisSnapshot(BaseModel):
    """Everything the analysis engine derives from one ledger fetch."""
    core: CoreMetrics
    cashflow: CashflowAnalysis
    categories: list[CategoryShare]
    credit: CreditAnalysis
    income: SourceConcentration
    expenses: SourceConcentration
    anomalies: list[Anomaly]
    subscriptions: list[DetectedSubscription]
    health_score: int
