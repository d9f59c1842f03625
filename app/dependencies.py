"""
FastAPI dependency injection.
Process-wide singletons for the pipeline collaborators, plus API key validation.
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from app.config import settings
from app.engines.base import PageTextSource, TextUnderstandingEngine
from app.engines.openai_engine import OpenAIEngine
from app.engines.pdfplumber_engine import PdfPlumberPageSource
from app.engines.stub_engine import StubTextEngine
from app.ledger.session_ledger import SessionLedger
from app.pipeline.batch import BatchProcessor
from app.pipeline.orchestrator import ExtractionOrchestrator
from app.pipeline.rate_limiter import RateLimitedExecutor
from app.storage.artifact_store import ArtifactStore
from app.storage.ledger_store import LedgerStore, SqlAlchemyLedgerStore
from app.streaming.sse_registry import ProgressBroadcaster
from app.worker.runner import BatchRunner


# ── Singleton instances ──────────────────────────────────────
_artifact_store: Optional[ArtifactStore] = None
_ledger_store: Optional[LedgerStore] = None
_page_source: Optional[PageTextSource] = None
_engine: Optional[TextUnderstandingEngine] = None
_executor: Optional[RateLimitedExecutor] = None
_broadcaster: Optional[ProgressBroadcaster] = None
_processor: Optional[BatchProcessor] = None
_runner: Optional[BatchRunner] = None


def get_artifact_store() -> ArtifactStore:
    """Get or create the artifact store singleton."""
    global _artifact_store
    if _artifact_store is None:
        _artifact_store = ArtifactStore()
    return _artifact_store


def get_ledger_store() -> LedgerStore:
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = SqlAlchemyLedgerStore()
    return _ledger_store


def get_page_source() -> PageTextSource:
    global _page_source
    if _page_source is None:
        _page_source = PdfPlumberPageSource(get_artifact_store())
    return _page_source


def get_engine() -> TextUnderstandingEngine:
    """OpenAI engine, or the stub when ENABLE_STUB_ENGINE is set."""
    global _engine
    if _engine is None:
        _engine = StubTextEngine() if settings.ENABLE_STUB_ENGINE else OpenAIEngine()
    return _engine


def get_executor() -> RateLimitedExecutor:
    """One executor per process so the concurrency bound is global."""
    global _executor
    if _executor is None:
        _executor = RateLimitedExecutor()
    return _executor


def get_broadcaster() -> ProgressBroadcaster:
    global _broadcaster
    if _broadcaster is None:
        _broadcaster = ProgressBroadcaster()
    return _broadcaster


def get_session_ledger() -> SessionLedger:
    return SessionLedger(get_ledger_store())


def get_batch_processor() -> BatchProcessor:
    global _processor
    if _processor is None:
        orchestrator = ExtractionOrchestrator(
            page_source=get_page_source(),
            engine=get_engine(),
            executor=get_executor(),
            store=get_ledger_store(),
            broadcaster=get_broadcaster(),
        )
        _processor = BatchProcessor(
            orchestrator=orchestrator,
            engine=get_engine(),
            executor=get_executor(),
            store=get_ledger_store(),
            ledger=get_session_ledger(),
            broadcaster=get_broadcaster(),
        )
    return _processor


def get_batch_runner() -> BatchRunner:
    global _runner
    if _runner is None:
        _runner = BatchRunner(get_batch_processor())
    return _runner


async def shutdown_services() -> None:
    """Stop background batches and close progress streams."""
    if _runner is not None:
        await _runner.shutdown()
    if _broadcaster is not None:
        await _broadcaster.shutdown()


async def verify_api_key(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Verify API key if configured.
    If API_KEY is not set, all requests are allowed (dev mode).
    """
    if settings.API_KEY is None:
        return None

    if x_api_key is None or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return x_api_key
