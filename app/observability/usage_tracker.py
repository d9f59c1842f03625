"""
Per-batch token usage instrumentation.
Record what the text-understanding service reports, never what we guessed.
"""

from typing import Optional

import structlog

from app.observability.metrics import llm_latency_seconds, llm_tokens_total

logger = structlog.get_logger(__name__)


class UsageTracker:
    """Accumulate token usage of text-understanding calls for one batch."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._events: list[dict] = []

    def record(
        self,
        engine_name: str,
        operation: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        latency_ms: int = 0,
    ) -> None:
        """Record one call in memory and in Prometheus."""
        llm_tokens_total.labels(operation=operation, kind="prompt").inc(prompt_tokens)
        llm_tokens_total.labels(operation=operation, kind="completion").inc(completion_tokens)
        llm_latency_seconds.labels(operation=operation).observe(latency_ms / 1000.0)

        self._events.append({
            "engine_name": engine_name,
            "operation": operation,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "latency_ms": latency_ms,
        })

        logger.debug(
            "llm_usage_recorded",
            session_id=self.session_id,
            engine_name=engine_name,
            operation=operation,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_ms=latency_ms,
        )

    @property
    def total_tokens(self) -> int:
        return sum(e["prompt_tokens"] + e["completion_tokens"] for e in self._events)

    def summary(self) -> dict:
        """Totals per operation plus the overall count."""
        by_operation: dict[str, int] = {}
        for e in self._events:
            by_operation[e["operation"]] = (
                by_operation.get(e["operation"], 0) + e["prompt_tokens"] + e["completion_tokens"]
            )
        return {
            "total_tokens": self.total_tokens,
            "call_count": len(self._events),
            "by_operation": by_operation,
        }
