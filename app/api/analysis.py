"""
/api/v1/analysis endpoints.
Estimates, batch submission, session status, the progress stream, the
report and the session's transactions.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from app.dependencies import (
    get_batch_processor,
    get_batch_runner,
    get_broadcaster,
    get_ledger_store,
    get_session_ledger,
    verify_api_key,
)
from app.ledger.session_ledger import SessionLedger
from app.models.enums import TERMINAL_STATUSES, ProgressEvent, SessionStatus
from app.pipeline.batch import BatchProcessor
from app.schemas.sessions import (
    AnalysisSession,
    BatchAccepted,
    BatchRequest,
    EstimateRequest,
    SessionReport,
    TokenEstimate,
)
from app.schemas.transactions import TransactionListResponse, TransactionResponse
from app.storage.ledger_store import LedgerStore
from app.streaming.sse_registry import ProgressBroadcaster, SSEConnection, format_event
from app.worker.runner import BatchRunner

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"], dependencies=[Depends(verify_api_key)])


async def _get_session_or_404(store: LedgerStore, session_id: str) -> AnalysisSession:
    session = await store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Session not found: {session_id}")
    return session


@router.post("/estimate", response_model=TokenEstimate)
async def estimate_batch_tokens(
    body: EstimateRequest,
    processor: BatchProcessor = Depends(get_batch_processor),
    ledger: SessionLedger = Depends(get_session_ledger),
):
    """Estimate tokens and duration; registers a pending session when an id is given."""
    estimate = await processor.estimate(body.document_keys)
    if body.session_id:
        await ledger.create_session(body.session_id, body.user_id, tokens_expected=estimate.tokens_expected)
    return estimate


@router.post("/sessions", response_model=BatchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def submit_batch(
    body: BatchRequest,
    processor: BatchProcessor = Depends(get_batch_processor),
    runner: BatchRunner = Depends(get_batch_runner),
):
    """Reserve tokens and start processing in the background."""
    prepared = await processor.prepare(body)
    runner.submit(prepared)

    logger.info(
        "batch_accepted",
        session_id=prepared.session_id,
        user_id=prepared.user_id,
        documents=len(prepared.document_keys),
        tokens_reserved=prepared.tokens_estimate,
    )
    return BatchAccepted(
        session_id=prepared.session_id,
        status=SessionStatus.IN_PROGRESS.value,
        tokens_reserved=prepared.tokens_estimate,
        events_url=f"{router.prefix}/sessions/{prepared.session_id}/events",
    )


@router.get("/sessions/{session_id}", response_model=AnalysisSession)
async def get_session_status(
    session_id: str,
    store: LedgerStore = Depends(get_ledger_store),
):
    return await _get_session_or_404(store, session_id)


@router.get("/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    request: Request,
    store: LedgerStore = Depends(get_ledger_store),
    broadcaster: ProgressBroadcaster = Depends(get_broadcaster),
):
    """
    Server-sent progress events for a session.
    A session that already finished gets its final event and `close` at once.
    """
    session = await _get_session_or_404(store, session_id)

    connection = SSEConnection()
    await broadcaster.register(session_id, connection)

    if session.status in TERMINAL_STATUSES:
        final_event = ProgressEvent.COMPLETED if session.status == SessionStatus.COMPLETED.value else ProgressEvent.ERROR
        await connection.write(format_event(final_event.value, {
            "session_id": session_id,
            "status": session.status,
            "message": session.error_message,
        }))
        await connection.write(format_event(ProgressEvent.CLOSE.value, {"session_id": session_id}))
        connection.close()

    async def event_stream():
        try:
            async for frame in connection.stream():
                if await request.is_disconnected():
                    break
                yield frame
        finally:
            broadcaster.unregister(session_id, connection)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/sessions/{session_id}/report", response_model=SessionReport)
async def get_session_report(
    session_id: str,
    store: LedgerStore = Depends(get_ledger_store),
):
    """Persisted snapshot and narrative of a completed session."""
    session = await _get_session_or_404(store, session_id)
    if session.status != SessionStatus.COMPLETED.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {session_id} is {session.status}; the report is available once completed",
        )

    return SessionReport(
        session=session,
        snapshot=await store.fetch_snapshot(session_id),
        narrative=await store.fetch_narrative(session_id, session.user_id),
    )


@router.get("/sessions/{session_id}/transactions", response_model=TransactionListResponse)
async def list_session_transactions(
    session_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=200),
    search: Optional[str] = Query(None, max_length=100),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Transactions extracted in a session, paginated and optionally filtered."""
    await _get_session_or_404(store, session_id)
    search = search.strip() if search else None

    total = await store.count_transactions_by_session(session_id, search=search)
    transactions = await store.fetch_transactions_by_session(session_id, page=page, limit=limit, search=search)

    return TransactionListResponse(
        transactions=[
            TransactionResponse(
                transaction_id=t.transaction_id,
                account_id=t.account_id,
                date=t.date.isoformat(),
                amount=t.amount,
                direction=t.direction.value,
                source=t.source.value,
                currency=t.currency,
                description=t.description,
                merchant=t.merchant,
                category=t.category,
                subcategory=t.subcategory,
                is_internal_transfer=t.is_internal_transfer,
                confidence=t.confidence,
            )
            for t in transactions
        ],
        total=total,
        page=page,
        limit=limit,
        session_id=session_id,
    )
