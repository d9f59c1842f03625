"""
Stub engines for testing pipeline plumbing.
Deterministic, in-memory stand-ins for the page-text source and the
text-understanding service. Used in tests and with ENABLE_STUB_ENGINE.
"""

import re
from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Union

from app.engines.base import EngineError, PageTextSource, TextUnderstandingEngine
from app.models.enums import AccountType, TxDirection
from app.schemas.analysis import AnalysisSnapshot
from app.schemas.contracts import (
    AccountContext,
    ExtractedTransaction,
    NarrativeResponse,
    PageText,
)

# "2024-01-05 | NETFLIX | 499.00 | outflow"
_ROW = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})\s*\|\s*(?P<merchant>[^|]+?)\s*\|\s*"
    r"(?P<amount>\d+(?:\.\d+)?)\s*\|\s*(?P<direction>inflow|outflow)\s*$"
)

ChunkHandler = Callable[[str], Union[list[ExtractedTransaction], Exception]]


def parse_stub_rows(chunk_text: str) -> list[ExtractedTransaction]:
    """Parse pipe-delimited rows; everything else in the chunk is ignored."""
    transactions = []
    for line in chunk_text.splitlines():
        match = _ROW.match(line.strip())
        if not match:
            continue
        transactions.append(ExtractedTransaction(
            date=date.fromisoformat(match["date"]),
            amount=Decimal(match["amount"]),
            direction=TxDirection(match["direction"]),
            description=line.strip(),
            merchant=match["merchant"],
            confidence=1.0,
        ))
    return transactions


class StubPageSource(PageTextSource):
    """Serves page texts from memory, keyed by document key."""

    source_name = "stub"

    def __init__(self, documents: Optional[dict[str, list[str]]] = None):
        self.documents = documents or {}

    async def fetch_pages(self, document_key: str) -> list[PageText]:
        if document_key not in self.documents:
            raise EngineError(self.source_name, "ERR_DOCUMENT_NOT_FOUND", f"No document at {document_key}")
        return [
            PageText(page_number=i + 1, text=text)
            for i, text in enumerate(self.documents[document_key])
        ]


class StubTextEngine(TextUnderstandingEngine):
    """
    Scripted text-understanding engine.

    Extraction parses pipe-delimited rows unless a chunk handler is given;
    a handler may return transactions or an exception to raise. Calls are
    recorded for assertions.
    """

    engine_name = "stub"

    def __init__(
        self,
        context: Optional[AccountContext] = None,
        chunk_handler: Optional[ChunkHandler] = None,
        narrative: Optional[NarrativeResponse] = None,
        tokens_per_call: int = 0,
    ):
        self.context = context or AccountContext(
            account_type=AccountType.BANK, bank_name="STUB", last4="0000",
        )
        self.chunk_handler = chunk_handler
        self.narrative = narrative or NarrativeResponse(summary=["Stub narrative."], report={})
        self.tokens_per_call = tokens_per_call
        self.calls: list[tuple[str, str]] = []

    def _record(self, operation: str, usage) -> None:
        if usage is not None and self.tokens_per_call:
            usage.record(self.engine_name, operation, prompt_tokens=self.tokens_per_call)

    async def detect_context(self, first_page_text: str, usage=None) -> AccountContext:
        self.calls.append(("detect_context", first_page_text))
        self._record("detect_context", usage)
        return self.context

    async def extract_transactions(
        self,
        context: AccountContext,
        chunk_text: str,
        session_id: str,
        usage=None,
    ) -> list[ExtractedTransaction]:
        self.calls.append(("extract_transactions", chunk_text))
        self._record("extract_transactions", usage)

        if self.chunk_handler is None:
            return parse_stub_rows(chunk_text)

        result = self.chunk_handler(chunk_text)
        if isinstance(result, Exception):
            raise result
        return result

    async def generate_narrative(self, snapshot: AnalysisSnapshot, usage=None) -> NarrativeResponse:
        self.calls.append(("generate_narrative", ""))
        self._record("generate_narrative", usage)
        return self.narrative
