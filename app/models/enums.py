"""
Python enums matching PostgreSQL enum types.
Names and values MUST match the DB DDL exactly.
"""

from enum import Enum


class TxDirection(str, Enum):
    INFLOW = "inflow"
    OUTFLOW = "outflow"


class TransactionSource(str, Enum):
    BANK = "bank"
    UPI = "upi"
    CREDIT_CARD = "credit_card"


class AccountType(str, Enum):
    BANK = "bank"
    CREDIT_CARD = "credit_card"


class RecurringSignal(str, Enum):
    SI = "SI"
    AUTO_DEBIT = "AUTO_DEBIT"
    MERCHANT_RECURRING = "MERCHANT_RECURRING"


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Cadence(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ANNUAL = "annual"


class ProgressEvent(str, Enum):
    """Named server-sent events on the progress stream."""
    CONNECTED = "connected"
    PING = "ping"
    PROGRESS = "progress"
    STAGE = "stage"
    COMPLETED = "completed"
    ERROR = "error"
    CLOSE = "close"


class PipelineStage(str, Enum):
    """Batch stages reported on the progress stream."""
    PARSING = "parsing"
    CONTEXT = "context_detection"
    EXTRACTING = "extracting"
    ANALYSING = "analysing"
    PERSISTING = "persisting"
    NARRATIVE = "narrative"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {SessionStatus.COMPLETED.value, SessionStatus.FAILED.value}
OPEN_STATUSES = (SessionStatus.PENDING.value, SessionStatus.IN_PROGRESS.value)
