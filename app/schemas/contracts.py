"""
Core extraction contracts.
PageText and Chunk flow through the chunker; AccountContext and
ExtractedTransaction are THE validation boundary for every response from the
text-understanding service. Nothing downstream sees raw model output.
"""

import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from app.models.enums import AccountType, RecurringSignal, TransactionSource, TxDirection


class PageText(BaseModel):
    """Text of a single page, 1-based page number."""
    page_number: int = Field(ge=1)
    text: str = ""


class PageRows(BaseModel):
    """A page split into trimmed, non-empty rows."""
    page_number: int
    rows: list[str]


class Chunk(BaseModel):
    """A token-bounded slice of a document submitted as one extraction call."""
    text: str
    pages: list[int]
    token_count: int = 0


class StatementPeriod(BaseModel):
    start: Optional[dt.date] = None
    end: Optional[dt.date] = None


class AccountContext(BaseModel):
    """Account metadata detected once per document from its first page."""
    account_type: AccountType = Field(alias="accountType")
    bank_name: Optional[str] = Field(default=None, alias="bankName")
    last4: Optional[str] = Field(default=None, alias="accountLast4")
    card_last4: Optional[str] = Field(default=None, alias="cardLast4")
    holder_name: Optional[str] = Field(default=None, alias="holderName")
    statement_period: Optional[StatementPeriod] = Field(default=None, alias="statementPeriod")

    model_config = {"populate_by_name": True}

    @property
    def account_id(self) -> str:
        """Stable account identifier: BANK-type-last4."""
        return "-".join([
            self.bank_name or "UNKNOWN_BANK",
            self.account_type.value,
            self.last4 or self.card_last4 or "XXXX",
        ])


class ExtractedTransaction(BaseModel):
    """One transaction exactly as returned by the extraction call."""
    date: dt.date
    amount: Decimal = Field(gt=0)
    direction: TxDirection
    description: str = ""
    merchant: Optional[str] = None
    source: TransactionSource = TransactionSource.BANK
    category: Optional[str] = None
    subcategory: Optional[str] = None
    is_internal_transfer: bool = False
    is_interest: bool = False
    is_fee: bool = False
    confidence: float = Field(ge=0.0, le=1.0, default=0.5)
    is_recurring_candidate: bool = False
    recurring_signal: Optional[RecurringSignal] = None

    @field_validator("merchant", "category", "subcategory", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ExtractionResponse(BaseModel):
    """Envelope of the extraction call."""
    transactions: list[ExtractedTransaction]


class NarrativeResponse(BaseModel):
    """Envelope of the narrative call. The report body stays free-form."""
    summary: list[str]
    report: dict = {}
