"""Tests for pre-flight token and time estimates."""

import math

from app.pipeline.token_estimator import (
    BASE_TIME_SAFETY,
    BATCH_PENALTY,
    MAX_TIME_RATIO,
    NARRATIVE_TOKENS,
    SAFETY_MULTIPLIER,
    compute_pdf_metrics,
    estimate_batch,
    estimate_time_seconds,
    estimate_tokens_for_document,
    llm_to_product_tokens,
)
from app.schemas.contracts import PageText


def _doc(chars_per_page, pages=1):
    return [PageText(page_number=i + 1, text="x" * chars_per_page) for i in range(pages)]


class TestPdfMetrics:
    """Metrics count only pages that carry text."""

    def test_empty_pages_not_counted(self):
        pages = [PageText(page_number=1, text="abcd"), PageText(page_number=2, text="   ")]
        metrics = compute_pdf_metrics(pages)
        assert metrics == {"total_chars": 4, "total_pages": 2, "non_empty_pages": 1}


class TestProductTokens:
    """LLM tokens convert to product tokens rounding up."""

    def test_rounds_up(self):
        assert llm_to_product_tokens(0) == 0
        assert llm_to_product_tokens(1) == 1
        assert llm_to_product_tokens(10000) == 1
        assert llm_to_product_tokens(10001) == 2


class TestDocumentEstimate:
    """Per-document token formula."""

    def test_formula(self):
        result = estimate_tokens_for_document(_doc(4000), chunk_size_tokens=500, narrative_enabled=False)
        breakdown = result["breakdown"]

        assert breakdown["chunks"] == 2
        assert breakdown["context_tokens"] == 800
        assert breakdown["extraction_prompt_tokens"] == 1000 + 2 * 900
        assert breakdown["extraction_completion_tokens"] == math.ceil(2800 * 0.35)
        raw = 800 + 2800 + math.ceil(2800 * 0.35)
        assert result["llm_tokens_expected"] == math.ceil(raw * SAFETY_MULTIPLIER)

    def test_narrative_adds_fixed_tokens(self):
        without = estimate_tokens_for_document(_doc(4000), 500, narrative_enabled=False)
        with_narrative = estimate_tokens_for_document(_doc(4000), 500, narrative_enabled=True)
        assert with_narrative["breakdown"]["narrative_tokens"] == NARRATIVE_TOKENS
        assert with_narrative["llm_tokens_expected"] > without["llm_tokens_expected"]


class TestTimeEstimate:
    """Duration model with penalties and floors."""

    def test_floor_with_narrative(self):
        result = estimate_time_seconds(total_pages=1, chunks=0, documents=0, narrative_enabled=True)
        assert result["seconds"] == 35

    def test_floor_without_narrative(self):
        result = estimate_time_seconds(total_pages=1, chunks=0, documents=0, narrative_enabled=False)
        assert result["seconds"] == 20

    def test_batch_penalty_applies(self):
        single = estimate_time_seconds(10, 10, documents=2, narrative_enabled=False, is_batch=False)
        batch = estimate_time_seconds(10, 10, documents=2, narrative_enabled=False, is_batch=True)
        raw_ms = 10 * 150 + 2 * 3000 + 10 * 15000
        assert single["seconds"] == math.ceil(raw_ms * BASE_TIME_SAFETY / 1000)
        assert batch["seconds"] == math.ceil(raw_ms * BASE_TIME_SAFETY * BATCH_PENALTY / 1000)

    def test_max_is_ratio_of_min(self):
        result = estimate_time_seconds(10, 10, documents=1, narrative_enabled=False)
        assert result["min_seconds"] == result["seconds"]
        assert result["max_seconds"] == math.ceil(result["seconds"] * MAX_TIME_RATIO)


class TestBatchEstimate:
    """Batch estimates sum documents and count the narrative once."""

    def test_narrative_counted_once(self):
        docs = [_doc(4000), _doc(4000)]
        without = estimate_batch(docs, 500, narrative_enabled=False)
        with_narrative = estimate_batch(docs, 500, narrative_enabled=True)

        extra = with_narrative.llm_tokens_expected - without.llm_tokens_expected
        assert extra == math.ceil(NARRATIVE_TOKENS * SAFETY_MULTIPLIER)

    def test_sums_documents(self):
        single = estimate_batch([_doc(4000)], 500, narrative_enabled=False)
        double = estimate_batch([_doc(4000), _doc(4000)], 500, narrative_enabled=False)

        assert double.llm_tokens_expected == 2 * single.llm_tokens_expected
        assert double.breakdown["documents"] == 2
        assert double.breakdown["pages"] == 2

    def test_product_tokens_match_llm_tokens(self):
        estimate = estimate_batch([_doc(40000, pages=5)], 10000)
        assert estimate.tokens_expected == llm_to_product_tokens(estimate.llm_tokens_expected)
        assert estimate.time_estimate.max_seconds >= estimate.time_estimate.min_seconds
