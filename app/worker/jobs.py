"""
Background job functions for the batch pipeline.
These are the coroutines BatchRunner schedules.
"""

import structlog

from app.pipeline.batch import BatchOutcome, BatchProcessor, PreparedBatch

logger = structlog.get_logger(__name__)


async def process_batch_job(processor: BatchProcessor, batch: PreparedBatch) -> BatchOutcome:
    """
    Main job function: run a prepared batch to a terminal state.
    The session row and the progress stream already reflect any failure;
    the exception is re-raised so the runner records it.
    """
    logger.info("job_started", session_id=batch.session_id, documents=len(batch.document_keys))

    try:
        outcome = await processor.run(batch)
    except Exception as e:
        logger.error("job_failed", session_id=batch.session_id, error=str(e))
        raise

    logger.info("job_completed", session_id=batch.session_id, status=outcome.status)
    return outcome
