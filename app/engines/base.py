"""
Abstract base classes for the external engines the pipeline talks to.

PageTextSource turns a stored document key into page texts.
TextUnderstandingEngine wraps the text-understanding service: account
context detection, transaction extraction and narrative generation.
Every engine output is a validated pydantic model, never raw model text.
"""

from abc import ABC, abstractmethod

from app.schemas.analysis import AnalysisSnapshot
from app.schemas.contracts import AccountContext, ExtractedTransaction, NarrativeResponse, PageText


class PageTextSource(ABC):
    """Resolves a document key to its page texts (1-based, in order)."""

    @property
    @abstractmethod
    def source_name(self) -> str:
        ...

    @abstractmethod
    async def fetch_pages(self, document_key: str) -> list[PageText]:
        """
        Return every page of the document, including empty ones.
        Must raise EngineError when the document cannot be read.
        """
        ...


class TextUnderstandingEngine(ABC):
    """
    Abstract base class for text-understanding engines.

    Every engine must:
    1. Validate each response against the contract models
    2. Raise UpstreamRateLimited for throttling so the executor can retry
    3. Raise UpstreamExtractionError for anything else
    4. Record token usage on the optional tracker
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Unique identifier: 'openai', 'stub'"""
        ...

    @abstractmethod
    async def detect_context(self, first_page_text: str, usage=None) -> AccountContext:
        """Detect account metadata from the first page of a statement."""
        ...

    @abstractmethod
    async def extract_transactions(
        self,
        context: AccountContext,
        chunk_text: str,
        session_id: str,
        usage=None,
    ) -> list[ExtractedTransaction]:
        """Extract transactions from one chunk of statement text."""
        ...

    @abstractmethod
    async def generate_narrative(
        self,
        snapshot: AnalysisSnapshot,
        usage=None,
    ) -> NarrativeResponse:
        """Structure a computed snapshot into a readable report."""
        ...

    async def health_check(self) -> bool:
        return True


class EngineError(Exception):
    """Raised when a document cannot be turned into page text."""

    def __init__(self, engine_name: str, error_code: str, message: str):
        self.engine_name = engine_name
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{engine_name}] {error_code}: {message}")
