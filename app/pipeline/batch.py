"""
Batch flow: documents -> full-ledger fetch -> analysis -> persistence ->
narrative -> session completion -> broadcast.

Documents run sequentially; parallelism lives inside each document's chunk
extraction. Any failure marks the session failed and ends the stream with
`error` followed by `close`.
"""

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Optional

import structlog

from app.config import settings
from app.engines.base import TextUnderstandingEngine
from app.errors import ProcessingError, ValidationError
from app.ledger.session_ledger import SessionLedger
from app.models.enums import PipelineStage, ProgressEvent, SessionStatus
from app.observability.logging import bound_session
from app.observability.metrics import (
    batch_processing_duration_seconds,
    batches_finished_total,
    documents_processed_total,
    pipeline_stage_duration_seconds,
)
from app.observability.usage_tracker import UsageTracker
from app.pipeline.analysis import run_full_analysis
from app.pipeline.orchestrator import DocumentResult, ExtractionOrchestrator
from app.pipeline.rate_limiter import RateLimitedExecutor
from app.pipeline.token_estimator import estimate_batch, llm_to_product_tokens
from app.schemas.analysis import AnalysisSnapshot
from app.schemas.sessions import BatchRequest, TokenBalance, TokenEstimate
from app.storage.ledger_store import LedgerStore
from app.streaming.sse_registry import ProgressBroadcaster

logger = structlog.get_logger(__name__)


@dataclass
class BatchOutcome:
    """What a finished batch produced."""
    session_id: str
    status: str
    documents: list[DocumentResult] = field(default_factory=list)
    snapshot: Optional[AnalysisSnapshot] = None
    narrative: Optional[str] = None
    tokens_used: int = 0
    meta_data: dict = field(default_factory=dict)


@dataclass
class PreparedBatch:
    """A batch that passed the pre-flight checks and holds its tokens."""
    user_id: int
    session_id: str
    document_keys: list[str]
    tokens_estimate: int
    balance: TokenBalance


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class BatchProcessor:
    """Coordinates one batch from accepted request to terminal session state."""

    def __init__(
        self,
        orchestrator: ExtractionOrchestrator,
        engine: TextUnderstandingEngine,
        executor: RateLimitedExecutor,
        store: LedgerStore,
        ledger: SessionLedger,
        broadcaster: Optional[ProgressBroadcaster] = None,
        narrative_enabled: Optional[bool] = None,
        today: Callable[[], date] = date.today,
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.executor = executor
        self.store = store
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.narrative_enabled = settings.NARRATIVE_ENABLED if narrative_enabled is None else narrative_enabled
        self.today = today

    async def _emit(self, session_id: str, event: ProgressEvent, payload: dict) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.emit(session_id, event.value, payload)

    # ── Pre-flight ───────────────────────────────────────────
    async def estimate(self, document_keys: list[str]) -> TokenEstimate:
        """Token and time estimate for a set of stored documents."""
        if len(document_keys) > settings.MAX_DOCUMENTS_PER_BATCH:
            raise ValidationError(
                f"At most {settings.MAX_DOCUMENTS_PER_BATCH} documents per batch, got {len(document_keys)}"
            )
        pages = [await self.orchestrator.fetch_pages(key) for key in document_keys]
        return estimate_batch(
            pages,
            self.orchestrator.max_tokens_per_chunk,
            narrative_enabled=self.narrative_enabled,
        )

    async def prepare(self, request: BatchRequest) -> PreparedBatch:
        """
        Resolve session id and estimate, then begin the session.
        Raises SessionConflict or InsufficientTokens before any work starts.
        """
        session_id = request.session_id or str(uuid.uuid4())
        tokens_estimate = request.tokens_estimate
        if tokens_estimate is None:
            tokens_estimate = (await self.estimate(request.document_keys)).tokens_expected
        elif len(request.document_keys) > settings.MAX_DOCUMENTS_PER_BATCH:
            raise ValidationError(
                f"At most {settings.MAX_DOCUMENTS_PER_BATCH} documents per batch, got {len(request.document_keys)}"
            )

        balance = await self.ledger.begin_session(session_id, request.user_id, tokens_estimate)
        return PreparedBatch(
            user_id=request.user_id,
            session_id=session_id,
            document_keys=list(request.document_keys),
            tokens_estimate=tokens_estimate,
            balance=balance,
        )

    # ── Run ──────────────────────────────────────────────────
    async def run(self, batch: PreparedBatch) -> BatchOutcome:
        """Process a prepared batch to a terminal state. Re-raises the failure."""
        with bound_session(batch.session_id, batch.user_id):
            return await self._run(batch)

    async def _run(self, batch: PreparedBatch) -> BatchOutcome:
        session_id = batch.session_id
        started = time.monotonic()
        usage = UsageTracker(session_id=session_id)
        timings = {"parse": 0, "analysis": 0, "narrative": 0, "persistence": 0, "total": 0}
        counts = {"documents": 0, "pages": 0, "transactions": 0, "chunks": 0}
        outcome = BatchOutcome(session_id=session_id, status=SessionStatus.IN_PROGRESS.value)

        def meta_data() -> dict:
            timings["total"] = _elapsed_ms(started)
            return {
                "timings_ms": dict(timings),
                "counts": dict(counts),
                "token_estimate": batch.tokens_estimate,
                "llm_usage": usage.summary(),
            }

        logger.info("batch_started", documents=len(batch.document_keys), tokens_estimate=batch.tokens_estimate)

        try:
            # ── Documents ──
            for index, key in enumerate(batch.document_keys):
                try:
                    result = await self.orchestrator.process_document(
                        batch.user_id, session_id, key,
                        document_index=index,
                        documents_total=len(batch.document_keys),
                        usage=usage,
                    )
                except Exception:
                    documents_processed_total.labels(outcome="failed").inc()
                    raise
                documents_processed_total.labels(outcome="success").inc()

                outcome.documents.append(result)
                timings["parse"] += result.duration_ms
                counts["documents"] += 1
                counts["pages"] += result.page_count
                counts["chunks"] += result.chunk_count
                counts["transactions"] += len(result.transactions)

            # ── Analysis over the full ledger ──
            await self._emit(session_id, ProgressEvent.STAGE, {"stage": PipelineStage.ANALYSING.value})
            stage_start = time.monotonic()
            ledger = await self.store.fetch_transactions_by_user(batch.user_id)
            snapshot = run_full_analysis(ledger, user_id=batch.user_id, as_of=self.today())
            timings["analysis"] = _elapsed_ms(stage_start)
            pipeline_stage_duration_seconds.labels(stage=PipelineStage.ANALYSING.value).observe(timings["analysis"] / 1000)
            outcome.snapshot = snapshot

            # ── Persistence ──
            await self._emit(session_id, ProgressEvent.STAGE, {"stage": PipelineStage.PERSISTING.value})
            stage_start = time.monotonic()
            await self.store.save_snapshot(session_id, batch.user_id, snapshot.model_dump(mode="json"))
            await self.store.save_monthly_metrics(batch.user_id, snapshot.cashflow.months)
            await self.store.save_subscriptions(batch.user_id, snapshot.subscriptions)
            await self.store.save_health_score(batch.user_id, snapshot.health_score)
            timings["persistence"] = _elapsed_ms(stage_start)
            pipeline_stage_duration_seconds.labels(stage=PipelineStage.PERSISTING.value).observe(timings["persistence"] / 1000)

            # ── Narrative ──
            if self.narrative_enabled:
                await self._emit(session_id, ProgressEvent.STAGE, {"stage": PipelineStage.NARRATIVE.value})
                stage_start = time.monotonic()
                narrative = await self.executor.run(
                    lambda: self.engine.generate_narrative(snapshot, usage=usage),
                    operation="generate_narrative",
                )
                outcome.narrative = json.dumps(narrative.model_dump(), default=str)
                await self.store.save_narrative(batch.user_id, session_id, outcome.narrative)
                timings["narrative"] = _elapsed_ms(stage_start)
                pipeline_stage_duration_seconds.labels(stage=PipelineStage.NARRATIVE.value).observe(timings["narrative"] / 1000)

            # ── Complete ──
            outcome.tokens_used = llm_to_product_tokens(usage.total_tokens)
            outcome.meta_data = meta_data()
            await self.ledger.complete_session(session_id, outcome.tokens_used, outcome.meta_data)
            outcome.status = SessionStatus.COMPLETED.value

        except asyncio.CancelledError:
            await self._fail(batch, outcome, ProcessingError("Batch cancelled", "ERR_CANCELLED"), usage, meta_data())
            raise
        except Exception as e:
            await self._fail(batch, outcome, e, usage, meta_data())
            raise

        batches_finished_total.labels(status=outcome.status).inc()
        batch_processing_duration_seconds.observe(time.monotonic() - started)

        await self._emit(session_id, ProgressEvent.COMPLETED, {
            "session_id": session_id,
            "stage": PipelineStage.COMPLETED.value,
            "documents": counts["documents"],
            "transactions": counts["transactions"],
            "health_score": snapshot.health_score,
            "tokens_used": outcome.tokens_used,
        })
        await self._emit(session_id, ProgressEvent.CLOSE, {"session_id": session_id})

        logger.info(
            "batch_completed",
            documents=counts["documents"],
            transactions=counts["transactions"],
            health_score=snapshot.health_score,
            tokens_used=outcome.tokens_used,
            total_ms=outcome.meta_data["timings_ms"]["total"],
        )
        return outcome

    async def _fail(
        self,
        batch: PreparedBatch,
        outcome: BatchOutcome,
        error: Exception,
        usage: UsageTracker,
        meta_data: dict,
    ) -> None:
        """Record the failure on the session and tell the stream."""
        error_code = error.error_code if isinstance(error, ProcessingError) else "ERR_INTERNAL"
        message = error.message if isinstance(error, ProcessingError) else str(error) or type(error).__name__

        outcome.status = SessionStatus.FAILED.value
        outcome.tokens_used = llm_to_product_tokens(usage.total_tokens)
        outcome.meta_data = {**meta_data, "error_code": error_code}

        logger.error("batch_failed", error_code=error_code, error=message, exc_info=not isinstance(error, ProcessingError))
        batches_finished_total.labels(status=outcome.status).inc()

        # The stream is told even when the failure cannot be recorded.
        try:
            await self.ledger.fail_session(
                batch.session_id,
                error_message=message,
                tokens_used=outcome.tokens_used,
                meta_data=outcome.meta_data,
            )
        finally:
            await self._emit(batch.session_id, ProgressEvent.ERROR, {
                "session_id": batch.session_id,
                "stage": PipelineStage.FAILED.value,
                "error_code": error_code,
                "message": message,
            })
            await self._emit(batch.session_id, ProgressEvent.CLOSE, {"session_id": batch.session_id})
