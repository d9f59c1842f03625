"""
Pre-flight token and duration estimates for a batch of statements.

Used for quota gating before a session starts and for the user-facing
estimate endpoint. Estimates are deliberately pessimistic: a safety multiplier
absorbs retries and model variance.
"""

import math

import structlog

from app.schemas.contracts import PageText
from app.schemas.sessions import TimeEstimate, TokenEstimate

logger = structlog.get_logger(__name__)


# ── Token model ──────────────────────────────────────────────
CHARS_PER_TOKEN = 4
TOKENS_PER_PAGE_ESTIMATE = 500
BASE_CONTEXT_PROMPT_CHARS = 2000
CONTEXT_OUTPUT_BUFFER_TOKENS = 300
EXTRACTION_PROMPT_OVERHEAD_TOKENS = 900
COMPLETION_RATIO = 0.35
NARRATIVE_TOKENS = 3000
SAFETY_MULTIPLIER = 1.3
LLM_TOKENS_PER_PRODUCT_TOKEN = 10000

# ── Time model ───────────────────────────────────────────────
PDF_PARSE_MS_PER_PAGE = 150
CONTEXT_DETECTION_MS = 3000
EXTRACTION_MS_PER_CHUNK = 15000
NARRATIVE_MS = 12000
BASE_TIME_SAFETY = 1.25
SMALL_DOCUMENT_PAGES = 3
SMALL_DOCUMENT_PENALTY = 1.3
BATCH_PENALTY = 1.6
MIN_SECONDS_WITH_NARRATIVE = 35
MIN_SECONDS_WITHOUT_NARRATIVE = 20
MAX_TIME_RATIO = 1.35


def compute_pdf_metrics(pages: list[PageText]) -> dict:
    """Character and page counts over pages that carry any text."""
    total_chars = 0
    non_empty_pages = 0
    for p in pages:
        if p.text and p.text.strip():
            total_chars += len(p.text)
            non_empty_pages += 1
    return {
        "total_chars": total_chars,
        "total_pages": len(pages),
        "non_empty_pages": non_empty_pages,
    }


def llm_to_product_tokens(llm_tokens: int) -> int:
    """Convert raw LLM tokens into product token units (rounded up)."""
    return math.ceil(llm_tokens / LLM_TOKENS_PER_PRODUCT_TOKEN)


def estimate_tokens_for_document(
    pages: list[PageText],
    chunk_size_tokens: int,
    narrative_enabled: bool = True,
) -> dict:
    """
    Estimate LLM tokens for processing one document.
    Returns llm_tokens_expected, product_tokens_expected and a breakdown.
    """
    metrics = compute_pdf_metrics(pages)

    pdf_prompt_tokens = math.ceil(metrics["total_chars"] / CHARS_PER_TOKEN)
    chunks = math.ceil(pdf_prompt_tokens / chunk_size_tokens)

    # Context detection runs once per document
    context_tokens = math.ceil(BASE_CONTEXT_PROMPT_CHARS / CHARS_PER_TOKEN) + CONTEXT_OUTPUT_BUFFER_TOKENS

    extraction_prompt_tokens = pdf_prompt_tokens + chunks * EXTRACTION_PROMPT_OVERHEAD_TOKENS
    extraction_completion_tokens = math.ceil(extraction_prompt_tokens * COMPLETION_RATIO)
    narrative_tokens = NARRATIVE_TOKENS if narrative_enabled else 0

    raw_total = context_tokens + extraction_prompt_tokens + extraction_completion_tokens + narrative_tokens
    llm_tokens_expected = math.ceil(raw_total * SAFETY_MULTIPLIER)

    return {
        "llm_tokens_expected": llm_tokens_expected,
        "product_tokens_expected": llm_to_product_tokens(llm_tokens_expected),
        "breakdown": {
            "pdf_chars": metrics["total_chars"],
            "pages": metrics["total_pages"],
            "non_empty_pages": metrics["non_empty_pages"],
            "chunks": chunks,
            "context_tokens": context_tokens,
            "extraction_prompt_tokens": extraction_prompt_tokens,
            "extraction_completion_tokens": extraction_completion_tokens,
            "narrative_tokens": narrative_tokens,
            "safety_multiplier": SAFETY_MULTIPLIER,
        },
    }


def estimate_time_seconds(
    total_pages: int,
    chunks: int,
    documents: int = 1,
    narrative_enabled: bool = True,
    is_batch: bool = False,
) -> dict:
    """Wall-clock estimate in seconds, floored at a minimum duration."""
    parse_ms = total_pages * PDF_PARSE_MS_PER_PAGE
    context_ms = documents * CONTEXT_DETECTION_MS
    extraction_ms = chunks * EXTRACTION_MS_PER_CHUNK
    narrative_ms = NARRATIVE_MS if narrative_enabled else 0

    small_penalty = SMALL_DOCUMENT_PENALTY if total_pages <= SMALL_DOCUMENT_PAGES else 1.0
    batch_penalty = BATCH_PENALTY if is_batch else 1.0

    total_ms = (
        (parse_ms + context_ms + extraction_ms + narrative_ms)
        * BASE_TIME_SAFETY
        * small_penalty
        * batch_penalty
    )

    minimum = MIN_SECONDS_WITH_NARRATIVE if narrative_enabled else MIN_SECONDS_WITHOUT_NARRATIVE
    seconds = max(math.ceil(total_ms / 1000), minimum)

    return {
        "seconds": seconds,
        "min_seconds": seconds,
        "max_seconds": math.ceil(seconds * MAX_TIME_RATIO),
        "parse_ms": parse_ms,
        "context_ms": context_ms,
        "extraction_ms": extraction_ms,
        "narrative_ms": narrative_ms,
    }


def _time_chunks(metrics: dict, chunk_size_tokens: int) -> int:
    """Chunk count for timing, assuming sparse pages still cost a page's worth."""
    estimated_pdf_tokens = max(
        math.ceil(metrics["total_chars"] / CHARS_PER_TOKEN),
        metrics["non_empty_pages"] * TOKENS_PER_PAGE_ESTIMATE,
    )
    return math.ceil(estimated_pdf_tokens / chunk_size_tokens)


def estimate_batch(
    pages_per_document: list[list[PageText]],
    chunk_size_tokens: int,
    narrative_enabled: bool = True,
) -> TokenEstimate:
    """
    Token and time estimate for a whole batch.
    Narrative generation runs once per batch, so it is counted once.
    """
    llm_tokens = 0
    total_pages = 0
    total_chars = 0
    token_chunks = 0
    time_chunks = 0

    for pages in pages_per_document:
        doc = estimate_tokens_for_document(pages, chunk_size_tokens, narrative_enabled=False)
        metrics = compute_pdf_metrics(pages)
        llm_tokens += doc["llm_tokens_expected"]
        total_pages += metrics["total_pages"]
        total_chars += metrics["total_chars"]
        token_chunks += doc["breakdown"]["chunks"]
        time_chunks += _time_chunks(metrics, chunk_size_tokens)

    narrative_tokens = 0
    if narrative_enabled:
        narrative_tokens = math.ceil(NARRATIVE_TOKENS * SAFETY_MULTIPLIER)
        llm_tokens += narrative_tokens

    timing = estimate_time_seconds(
        total_pages=total_pages,
        chunks=time_chunks,
        documents=len(pages_per_document),
        narrative_enabled=narrative_enabled,
        is_batch=len(pages_per_document) > 1,
    )

    estimate = TokenEstimate(
        llm_tokens_expected=llm_tokens,
        tokens_expected=llm_to_product_tokens(llm_tokens),
        time_seconds_expected=timing["seconds"],
        time_estimate=TimeEstimate(
            min_seconds=timing["min_seconds"],
            max_seconds=timing["max_seconds"],
        ),
        breakdown={
            "documents": len(pages_per_document),
            "pages": total_pages,
            "pdf_chars": total_chars,
            "chunks": token_chunks,
            "timing_chunks": time_chunks,
            "narrative_tokens": narrative_tokens,
            "safety_multiplier": SAFETY_MULTIPLIER,
            "parse_ms": timing["parse_ms"],
            "context_ms": timing["context_ms"],
            "extraction_ms": timing["extraction_ms"],
            "narrative_ms": timing["narrative_ms"],
        },
    )

    logger.info(
        "batch_estimated",
        documents=len(pages_per_document),
        pages=total_pages,
        llm_tokens=llm_tokens,
        tokens_expected=estimate.tokens_expected,
        seconds=estimate.time_seconds_expected,
    )
    return estimate
