"""
Pydantic schemas for batch submission, session status and token estimates.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class BatchRequest(BaseModel):
    """Request to process a batch of statement documents."""
    user_id: int
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    document_keys: list[str] = Field(min_length=1)
    tokens_estimate: Optional[int] = Field(default=None, ge=1)


class BatchAccepted(BaseModel):
    """Acknowledgement; the batch itself runs in the background."""
    session_id: str
    status: str
    tokens_reserved: int
    events_url: str


class EstimateRequest(BaseModel):
    user_id: int
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    document_keys: list[str] = Field(min_length=1)


class TimeEstimate(BaseModel):
    min_seconds: int
    max_seconds: int


class TokenEstimate(BaseModel):
    """Token and duration estimate for a set of documents."""
    llm_tokens_expected: int
    tokens_expected: int
    time_seconds_expected: int
    time_estimate: TimeEstimate
    breakdown: dict


class TokenBalance(BaseModel):
    """Per-user free/paid token pools."""
    user_id: int
    free_tokens_granted: int = 0
    free_tokens_used: int = 0
    paid_tokens_granted: int = 0
    paid_tokens_used: int = 0

    @property
    def free_remaining(self) -> int:
        return max(self.free_tokens_granted - self.free_tokens_used, 0)

    @property
    def paid_remaining(self) -> int:
        return max(self.paid_tokens_granted - self.paid_tokens_used, 0)

    @property
    def available(self) -> int:
        return self.free_remaining + self.paid_remaining


class AnalysisSession(BaseModel):
    """One batch-processing run."""
    session_id: str
    user_id: int
    status: str
    source_type: str = "pdf"
    tokens_expected: int = 0
    tokens_used: int = 0
    error_message: Optional[str] = None
    meta_data: Optional[dict] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SessionReport(BaseModel):
    """Persisted snapshot plus narrative for a session."""
    session: AnalysisSession
    snapshot: Optional[dict] = None
    narrative: Optional[str] = None
