"""
Per-document extraction: page text -> account context -> chunks ->
bounded concurrent extraction -> internal-transfer tagging -> ledger insert.

A document is all-or-nothing. If any chunk fails, chunks that have not
started are skipped, in-flight chunks are awaited, and the first error is
raised before anything of the document is inserted.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import structlog

from app.config import settings
from app.engines.base import EngineError, PageTextSource, TextUnderstandingEngine
from app.errors import ValidationError
from app.models.enums import PipelineStage, ProgressEvent
from app.observability.metrics import (
    chunks_extracted_total,
    pipeline_stage_duration_seconds,
    transactions_extracted_total,
)
from app.observability.usage_tracker import UsageTracker
from app.pipeline.chunker import TokenEstimateFn, chunk_rows_by_tokens, estimate_tokens, pages_to_rows
from app.pipeline.rate_limiter import RateLimitedExecutor
from app.pipeline.token_estimator import estimate_tokens_for_document
from app.pipeline.transfers import tag_internal_transfers
from app.schemas.contracts import AccountContext, Chunk, ExtractedTransaction, PageText
from app.schemas.transactions import Transaction
from app.storage.ledger_store import LedgerStore
from app.streaming.sse_registry import ProgressBroadcaster

logger = structlog.get_logger(__name__)


@dataclass
class DocumentResult:
    """Outcome of one successfully processed document."""
    document_key: str
    account_id: str
    page_count: int
    chunk_count: int
    transactions: list[Transaction] = field(default_factory=list)
    inserted: int = 0
    token_estimate: int = 0
    tokens_used: int = 0
    duration_ms: int = 0


class _ChunkSkipped(Exception):
    """Raised inside a chunk call that acquired its permit after a failure."""


class ExtractionOrchestrator:
    """
    Runs one document through context detection and chunked extraction.
    Every text-understanding call goes through the shared executor.
    """

    def __init__(
        self,
        page_source: PageTextSource,
        engine: TextUnderstandingEngine,
        executor: RateLimitedExecutor,
        store: LedgerStore,
        broadcaster: Optional[ProgressBroadcaster] = None,
        max_tokens_per_chunk: Optional[int] = None,
        estimate: TokenEstimateFn = estimate_tokens,
    ):
        self.page_source = page_source
        self.engine = engine
        self.executor = executor
        self.store = store
        self.broadcaster = broadcaster
        self.max_tokens_per_chunk = max_tokens_per_chunk or settings.MAX_TOKENS_PER_CHUNK
        self.estimate = estimate

    async def _emit(self, session_id: str, event: ProgressEvent, payload: dict) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.emit(session_id, event.value, payload)

    async def fetch_pages(self, document_key: str) -> list[PageText]:
        """Page texts of a document; unreadable documents are a validation error."""
        try:
            return await self.page_source.fetch_pages(document_key)
        except EngineError as e:
            raise ValidationError(f"Cannot read {document_key}: {e.message}", error_code=e.error_code) from e

    async def process_document(
        self,
        user_id: int,
        session_id: str,
        document_key: str,
        document_index: int = 0,
        documents_total: int = 1,
        usage: Optional[UsageTracker] = None,
    ) -> DocumentResult:
        started = time.monotonic()
        tokens_before = usage.total_tokens if usage else 0
        progress_base = {
            "document_key": document_key,
            "document_index": document_index,
            "documents_total": documents_total,
        }

        # ── Parse ──
        await self._emit(session_id, ProgressEvent.STAGE, {**progress_base, "stage": PipelineStage.PARSING.value})
        stage_start = time.monotonic()
        pages = await self.fetch_pages(document_key)
        pipeline_stage_duration_seconds.labels(stage=PipelineStage.PARSING.value).observe(time.monotonic() - stage_start)

        text_pages = [p for p in pages if p.text.strip()]
        if not text_pages:
            raise ValidationError(f"No extractable text in {document_key}", error_code="ERR_EMPTY_DOCUMENT")

        token_estimate = estimate_tokens_for_document(
            pages, self.max_tokens_per_chunk, narrative_enabled=False,
        )["product_tokens_expected"]

        # ── Context ──
        await self._emit(session_id, ProgressEvent.STAGE, {**progress_base, "stage": PipelineStage.CONTEXT.value})
        stage_start = time.monotonic()
        first_page_text = text_pages[0].text
        context = await self.executor.run(
            lambda: self.engine.detect_context(first_page_text, usage=usage),
            operation="detect_context",
        )
        pipeline_stage_duration_seconds.labels(stage=PipelineStage.CONTEXT.value).observe(time.monotonic() - stage_start)

        # ── Chunk + extract ──
        chunks = chunk_rows_by_tokens(pages_to_rows(pages), self.max_tokens_per_chunk, self.estimate)
        await self._emit(session_id, ProgressEvent.STAGE, {
            **progress_base,
            "stage": PipelineStage.EXTRACTING.value,
            "account_id": context.account_id,
            "chunks_total": len(chunks),
        })

        stage_start = time.monotonic()
        chunk_results = await self._extract_chunks(
            user_id, session_id, context, chunks, progress_base, usage,
        )
        pipeline_stage_duration_seconds.labels(stage=PipelineStage.EXTRACTING.value).observe(time.monotonic() - stage_start)

        # ── Insert ──
        # One call per document: the store writes it in a single transaction.
        transactions = [t for chunk_txns in chunk_results for t in chunk_txns]
        inserted = await self.store.insert_transactions(transactions) if transactions else 0
        result = DocumentResult(
            document_key=document_key,
            account_id=context.account_id,
            page_count=len(pages),
            chunk_count=len(chunks),
            transactions=transactions,
            inserted=inserted,
            token_estimate=token_estimate,
            tokens_used=(usage.total_tokens - tokens_before) if usage else 0,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        logger.info(
            "document_processed",
            document_key=document_key,
            account_id=result.account_id,
            pages=result.page_count,
            chunks=result.chunk_count,
            transactions=len(transactions),
            inserted=inserted,
            duration_ms=result.duration_ms,
        )
        return result

    async def _extract_chunks(
        self,
        user_id: int,
        session_id: str,
        context: AccountContext,
        chunks: list[Chunk],
        progress_base: dict,
        usage: Optional[UsageTracker],
    ) -> list[list[Transaction]]:
        """Extract every chunk concurrently; results keep chunk order."""
        errors: list[Exception] = []
        done = 0

        async def run_chunk(index: int, chunk: Chunk) -> list[Transaction]:
            nonlocal done

            async def call() -> list[ExtractedTransaction]:
                if errors:
                    raise _ChunkSkipped()
                return await self.engine.extract_transactions(context, chunk.text, session_id, usage=usage)

            try:
                extracted = await self.executor.run(call, operation="extract_transactions")
            except _ChunkSkipped:
                logger.debug("chunk_skipped", chunk_index=index)
                return []
            except Exception as e:
                if errors:
                    logger.warning("chunk_failed_after_abort", chunk_index=index, error=str(e))
                else:
                    logger.error("chunk_failed", chunk_index=index, pages=chunk.pages, error=str(e))
                errors.append(e)
                return []

            transactions = tag_internal_transfers([
                self._to_transaction(t, user_id, session_id, context) for t in extracted
            ])

            chunks_extracted_total.inc()
            for t in transactions:
                transactions_extracted_total.labels(direction=t.direction.value).inc()

            done += 1
            await self._emit(session_id, ProgressEvent.PROGRESS, {
                **progress_base,
                "chunk_index": index,
                "chunks_done": done,
                "chunks_total": len(chunks),
                "pages": chunk.pages,
                "transactions": len(transactions),
            })
            return transactions

        results = await asyncio.gather(*(run_chunk(i, c) for i, c in enumerate(chunks)))
        if errors:
            raise errors[0]
        return list(results)

    @staticmethod
    def _to_transaction(
        extracted: ExtractedTransaction,
        user_id: int,
        session_id: str,
        context: AccountContext,
    ) -> Transaction:
        return Transaction(
            transaction_id=str(uuid.uuid4()),
            user_id=user_id,
            account_id=context.account_id,
            session_id=session_id,
            currency=settings.DEFAULT_CURRENCY,
            **extracted.model_dump(),
        )
