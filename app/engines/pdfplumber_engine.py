"""
pdfplumber page-text source.
Statements with an embedded text layer only; scanned pages come back empty
and the caller decides what an empty document means.
"""

import asyncio
from pathlib import Path
from typing import Optional

import pdfplumber
import structlog

from app.engines.base import EngineError, PageTextSource
from app.schemas.contracts import PageText
from app.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)


def _read_pages(pdf_path: Path) -> list[PageText]:
    """Blocking read of every page's text layer."""
    pages = []
    with pdfplumber.open(str(pdf_path)) as pdf:
        for index, page in enumerate(pdf.pages):
            text = page.extract_text(x_tolerance=3, y_tolerance=3) or ""
            pages.append(PageText(page_number=index + 1, text=text))
    return pages


class PdfPlumberPageSource(PageTextSource):
    """Reads stored PDFs from the artifact store with pdfplumber."""

    source_name = "pdfplumber"

    def __init__(self, store: Optional[ArtifactStore] = None):
        self.store = store or ArtifactStore()

    async def fetch_pages(self, document_key: str) -> list[PageText]:
        if not self.store.exists(document_key):
            raise EngineError(self.source_name, "ERR_DOCUMENT_NOT_FOUND", f"No document at {document_key}")

        pdf_path = self.store.full_path(document_key)
        try:
            pages = await asyncio.to_thread(_read_pages, pdf_path)
        except Exception as e:
            raise EngineError(self.source_name, "ERR_DOCUMENT_UNREADABLE", f"pdfplumber failed: {e}") from e

        logger.debug(
            "pdfplumber_pages_read",
            document_key=document_key,
            page_count=len(pages),
            non_empty=sum(1 for p in pages if p.text.strip()),
        )
        return pages
