"""Tests for page-text sources and the stub engine."""

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from app.engines.base import EngineError
from app.engines.pdfplumber_engine import PdfPlumberPageSource
from app.engines.stub_engine import StubPageSource, StubTextEngine, parse_stub_rows
from app.errors import UpstreamExtractionError
from app.storage.artifact_store import ArtifactStore


class TestArtifactStore:
    """Keys resolve under the root and never escape it."""

    def test_resolves_existing_document(self, tmp_path):
        (tmp_path / "user-1").mkdir()
        (tmp_path / "user-1" / "jan.pdf").write_bytes(b"%PDF")
        store = ArtifactStore(str(tmp_path))

        assert store.exists("user-1/jan.pdf")
        assert store.full_path("user-1/jan.pdf") == (tmp_path / "user-1" / "jan.pdf").resolve()

    def test_escape_rejected(self, tmp_path):
        store = ArtifactStore(str(tmp_path / "root"))

        assert store.exists("../outside.pdf") is False
        with pytest.raises(ValueError):
            store.full_path("../outside.pdf")


class TestPdfPlumberPageSource:
    """Missing and unreadable documents become engine errors."""

    def test_missing_document(self, tmp_path):
        source = PdfPlumberPageSource(ArtifactStore(str(tmp_path)))

        with pytest.raises(EngineError) as exc_info:
            asyncio.run(source.fetch_pages("nope.pdf"))
        assert exc_info.value.error_code == "ERR_DOCUMENT_NOT_FOUND"

    def test_unreadable_document(self, tmp_path):
        (tmp_path / "broken.pdf").write_bytes(b"this is not a pdf")
        source = PdfPlumberPageSource(ArtifactStore(str(tmp_path)))

        with pytest.raises(EngineError) as exc_info:
            asyncio.run(source.fetch_pages("broken.pdf"))
        assert exc_info.value.error_code == "ERR_DOCUMENT_UNREADABLE"


class TestStubEngines:
    """Scripted engines used by the pipeline tests."""

    def test_parse_rows(self):
        rows = parse_stub_rows("header\n2024-01-05 | NETFLIX | 499.00 | outflow\nfooter")

        assert len(rows) == 1
        assert rows[0].date == date(2024, 1, 5)
        assert rows[0].amount == Decimal("499.00")
        assert rows[0].merchant == "NETFLIX"

    def test_page_source_numbers_pages(self):
        pages = asyncio.run(StubPageSource({"a.pdf": ["one", "two"]}).fetch_pages("a.pdf"))
        assert [(p.page_number, p.text) for p in pages] == [(1, "one"), (2, "two")]

    def test_handler_error_raised(self):
        engine = StubTextEngine(chunk_handler=lambda text: UpstreamExtractionError("nope"))

        with pytest.raises(UpstreamExtractionError):
            asyncio.run(engine.extract_transactions(engine.context, "chunk", "s-1"))
        assert engine.calls == [("extract_transactions", "chunk")]
