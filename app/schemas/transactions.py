"""
Transaction schemas: the ledger row model and API response shapes.
"""

import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from app.models.enums import RecurringSignal, TransactionSource, TxDirection


class Transaction(BaseModel):
    """A persisted ledger transaction. Immutable once inserted."""
    transaction_id: str
    user_id: int
    account_id: str
    session_id: str
    date: dt.date
    amount: Decimal = Field(gt=0)
    direction: TxDirection
    source: TransactionSource = TransactionSource.BANK
    currency: str = "INR"
    description: Optional[str] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    is_internal_transfer: bool = False
    is_interest: bool = False
    is_fee: bool = False
    confidence: float = Field(ge=0.0, le=1.0, default=0.5)
    is_recurring_candidate: bool = False
    recurring_signal: Optional[RecurringSignal] = None

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    """Single transaction in API response."""
    transaction_id: str
    account_id: str
    date: str
    amount: Decimal
    direction: str
    source: str
    currency: str
    description: Optional[str] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    is_internal_transfer: bool = False
    confidence: Optional[float] = None


class TransactionListResponse(BaseModel):
    """Paginated transaction list."""
    transactions: list[TransactionResponse]
    total: int
    page: int
    limit: int
    session_id: str
