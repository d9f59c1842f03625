"""
Prometheus metrics for the statement insights service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Batch Processing ─────────────────────────────────────────
batches_submitted_total = Counter(
    "batches_submitted_total",
    "Total batches accepted for background processing",
)

batches_finished_total = Counter(
    "batches_finished_total",
    "Total batches that reached a terminal status",
    ["status"],
)

batch_processing_duration_seconds = Histogram(
    "batch_processing_duration_seconds",
    "Time to process a batch end-to-end",
    buckets=[5, 10, 30, 60, 120, 300, 600, 1200],
)

documents_processed_total = Counter(
    "documents_processed_total",
    "Total documents processed",
    ["outcome"],
)

# ── Pipeline Stages ──────────────────────────────────────────
pipeline_stage_duration_seconds = Histogram(
    "pipeline_stage_duration_seconds",
    "Time per pipeline stage",
    ["stage"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120],
)

# ── Extraction ───────────────────────────────────────────────
chunks_extracted_total = Counter(
    "chunks_extracted_total",
    "Total chunks sent through the extraction call",
)

transactions_extracted_total = Counter(
    "transactions_extracted_total",
    "Total transactions extracted",
    ["direction"],
)

# ── Text-understanding calls ─────────────────────────────────
llm_requests_total = Counter(
    "llm_requests_total",
    "Text-understanding calls by operation and outcome",
    ["operation", "outcome"],
)

llm_rate_limit_retries_total = Counter(
    "llm_rate_limit_retries_total",
    "Retries triggered by rate-limit responses",
    ["operation", "kind"],
)

llm_rate_limit_wait_seconds = Histogram(
    "llm_rate_limit_wait_seconds",
    "Wait applied before a rate-limit retry",
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 90],
)

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "Latency of text-understanding calls",
    ["operation"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "LLM tokens consumed",
    ["operation", "kind"],
)

llm_inflight = Gauge(
    "llm_inflight_requests",
    "Text-understanding calls currently holding an executor permit",
)

# ── Progress stream ──────────────────────────────────────────
sse_connections_active = Gauge(
    "sse_connections_active",
    "Open progress-stream connections",
)
