"""
Session lifecycle and token accounting.

Status moves pending -> in_progress -> completed | failed. A start that
cannot be paid for drops back to pending.
Tokens are drawn from the free pool first, the remainder from the paid
pool, and neither pool ever goes past its grant.
"""

from typing import Optional

import structlog

from app.errors import InsufficientTokens, SessionConflict, ValidationError
from app.models.enums import OPEN_STATUSES, SessionStatus
from app.schemas.sessions import AnalysisSession, TokenBalance
from app.storage.ledger_store import LedgerStore

logger = structlog.get_logger(__name__)


def allocate_tokens(balance: TokenBalance, amount: int) -> TokenBalance:
    """
    Consume `amount` tokens, free pool first.

    Returns a new balance; the input is not modified. Raises
    InsufficientTokens when the pools together cannot cover the amount.
    """
    if amount < 0:
        raise ValidationError(f"Token amount must be non-negative, got {amount}")
    if amount > balance.available:
        raise InsufficientTokens(
            f"Need {amount} tokens, {balance.available} available",
            required=amount,
            available=balance.available,
        )

    from_free = min(amount, balance.free_remaining)
    from_paid = amount - from_free

    return balance.model_copy(update={
        "free_tokens_used": balance.free_tokens_used + from_free,
        "paid_tokens_used": balance.paid_tokens_used + from_paid,
    })


class SessionLedger:
    """Idempotent session creation plus pre-flight token checks."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def create_session(
        self,
        session_id: str,
        user_id: int,
        tokens_expected: int = 0,
        source_type: str = "pdf",
    ) -> bool:
        """Insert a pending session. Returns False when it already existed."""
        created = await self.store.create_session(AnalysisSession(
            session_id=session_id,
            user_id=user_id,
            status=SessionStatus.PENDING.value,
            source_type=source_type,
            tokens_expected=tokens_expected,
        ))
        logger.info("session_create", session_id=session_id, user_id=user_id, created=created)
        return created

    async def begin_session(self, session_id: str, user_id: int, tokens_estimate: int) -> TokenBalance:
        """
        Move a session to in_progress and consume its token estimate.

        Raises SessionConflict when the session is already running or
        finished, or belongs to another user. Raises InsufficientTokens
        when the balance cannot cover the estimate; the session is then
        back in pending and the balance untouched. Returns the balance
        after consumption.

        The pending -> in_progress move and the charge are each one
        conditional store write: of concurrent starts for a session only
        one gets through.
        """
        if tokens_estimate < 1:
            raise ValidationError(f"tokens_estimate must be at least 1, got {tokens_estimate}")

        if await self.store.get_session(session_id) is None:
            await self.create_session(session_id, user_id, tokens_expected=tokens_estimate)

        started = await self.store.transition_session(
            session_id,
            (SessionStatus.PENDING.value,),
            user_id=user_id,
            status=SessionStatus.IN_PROGRESS.value,
            tokens_expected=tokens_estimate,
        )
        if not started:
            raise await self._conflict(session_id, user_id)

        def charge(balance: TokenBalance) -> TokenBalance:
            if balance.available == 0:
                raise InsufficientTokens("No tokens available", required=tokens_estimate, available=0)
            return allocate_tokens(balance, tokens_estimate)

        try:
            updated = await self.store.charge_tokens(user_id, charge)
        except InsufficientTokens:
            await self.store.transition_session(
                session_id,
                (SessionStatus.IN_PROGRESS.value,),
                status=SessionStatus.PENDING.value,
            )
            raise

        logger.info(
            "session_begin",
            session_id=session_id,
            user_id=user_id,
            tokens_estimate=tokens_estimate,
            free_remaining=updated.free_remaining,
            paid_remaining=updated.paid_remaining,
        )
        return updated

    async def _conflict(self, session_id: str, user_id: int) -> SessionConflict:
        current = await self.store.get_session(session_id)
        status = current.status if current else None
        if current is not None and current.user_id != user_id:
            return SessionConflict(f"Session {session_id} belongs to another user", status=status)
        return SessionConflict(f"Session {session_id} is already {status}", status=status)

    async def _finish(self, session_id: str, status: SessionStatus, **fields) -> bool:
        written = await self.store.transition_session(
            session_id,
            OPEN_STATUSES,
            status=status.value,
            **fields,
        )
        if not written:
            existing = await self.store.get_session(session_id)
            logger.warning(
                "session_finish_skipped",
                session_id=session_id,
                current=existing.status if existing else None,
                requested=status.value,
            )
        return written

    async def complete_session(
        self,
        session_id: str,
        tokens_used: int,
        meta_data: Optional[dict] = None,
    ) -> bool:
        """Terminal success write. Returns False if the session was already terminal."""
        written = await self._finish(
            session_id,
            SessionStatus.COMPLETED,
            tokens_used=tokens_used,
            meta_data=meta_data,
            error_message=None,
        )
        if written:
            logger.info("session_completed", session_id=session_id, tokens_used=tokens_used)
        return written

    async def fail_session(
        self,
        session_id: str,
        error_message: str,
        tokens_used: int = 0,
        meta_data: Optional[dict] = None,
    ) -> bool:
        """Terminal failure write. Returns False if the session was already terminal."""
        written = await self._finish(
            session_id,
            SessionStatus.FAILED,
            tokens_used=tokens_used,
            meta_data=meta_data,
            error_message=error_message,
        )
        if written:
            logger.warning("session_failed", session_id=session_id, error=error_message)
        return written
