"""
Token-budgeted text chunking.

Pages are split into trimmed rows and greedily packed into chunks whose token
estimate stays within the budget. Rows are never split: a single row larger
than the budget becomes its own oversized chunk.
"""

from functools import lru_cache
from typing import Callable, Optional

import structlog
import tiktoken

from app.config import settings
from app.schemas.contracts import Chunk, PageRows, PageText

logger = structlog.get_logger(__name__)

TokenEstimateFn = Callable[[str], int]


@lru_cache(maxsize=4)
def _get_encoding(name: str) -> "tiktoken.Encoding":
    return tiktoken.get_encoding(name)


def estimate_tokens(text: str, encoding_name: Optional[str] = None) -> int:
    """Count tokens of text with the configured tiktoken encoding."""
    encoding = _get_encoding(encoding_name or settings.TOKENIZER_ENCODING)
    return len(encoding.encode(text, disallowed_special=()))


def split_page_into_rows(page_text: str) -> list[str]:
    """Split page text into trimmed, non-empty rows."""
    if not page_text:
        return []
    return [row.strip() for row in page_text.split("\n") if row.strip()]


def pages_to_rows(pages: list[PageText]) -> list[PageRows]:
    """Split every page into rows, keeping page numbers."""
    return [
        PageRows(page_number=p.page_number, rows=split_page_into_rows(p.text))
        for p in pages
    ]


def chunk_rows_by_tokens(
    pages: list[PageRows],
    max_tokens: int,
    estimate: TokenEstimateFn = estimate_tokens,
) -> list[Chunk]:
    """
    Greedy bin-packing of rows into token-bounded chunks.

    Invariants:
    - rows keep their original order and are never split
    - every chunk is within max_tokens unless it holds exactly one row
      that alone exceeds it
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be positive")

    chunks: list[Chunk] = []
    current_rows: list[str] = []
    current_pages: list[int] = []
    current_tokens = 0

    def flush() -> None:
        chunks.append(Chunk(
            text="\n".join(current_rows),
            pages=list(current_pages),
            token_count=current_tokens,
        ))

    for page in pages:
        for row in page.rows:
            row_tokens = estimate(row)

            if current_rows and current_tokens + row_tokens > max_tokens:
                flush()
                current_rows = []
                current_pages = []
                current_tokens = 0

            current_rows.append(row)
            if page.page_number not in current_pages:
                current_pages.append(page.page_number)
            current_tokens += row_tokens

    if current_rows:
        flush()

    oversized = sum(1 for c in chunks if c.token_count > max_tokens)
    logger.debug(
        "rows_chunked",
        chunks=len(chunks),
        pages=len(pages),
        max_tokens=max_tokens,
        oversized=oversized,
    )
    return chunks
