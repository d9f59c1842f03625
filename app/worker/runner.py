"""
In-process background runner for batches.

Batches run as supervised asyncio tasks after the HTTP request has been
acknowledged. Each task's outcome or exception is kept in a bounded result
channel for inspection, and shutdown cancels whatever is still running.
"""

import asyncio
from collections import OrderedDict
from typing import Optional, Union

import structlog

from app.errors import SessionConflict
from app.models.enums import SessionStatus
from app.observability.metrics import batches_submitted_total
from app.pipeline.batch import BatchOutcome, BatchProcessor, PreparedBatch
from app.worker.jobs import process_batch_job

logger = structlog.get_logger(__name__)

MAX_REMEMBERED_RESULTS = 500


class BatchRunner:
    """Schedules batch jobs and keeps their results keyed by session id."""

    def __init__(self, processor: BatchProcessor, max_results: int = MAX_REMEMBERED_RESULTS):
        self.processor = processor
        self.max_results = max_results
        self._tasks: dict[str, asyncio.Task] = {}
        self._results: OrderedDict[str, Union[BaseException, BatchOutcome]] = OrderedDict()

    def submit(self, batch: PreparedBatch) -> asyncio.Task:
        """Start a batch in the background. Returns its task."""
        if batch.session_id in self._tasks:
            raise SessionConflict(
                f"Batch {batch.session_id} is already running",
                status=SessionStatus.IN_PROGRESS.value,
            )

        task = asyncio.create_task(
            process_batch_job(self.processor, batch),
            name=f"batch-{batch.session_id}",
        )
        self._tasks[batch.session_id] = task
        task.add_done_callback(lambda t, sid=batch.session_id: self._on_done(sid, t))
        batches_submitted_total.inc()
        logger.info("batch_submitted", session_id=batch.session_id)
        return task

    def _on_done(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(session_id, None)

        if task.cancelled():
            result: Union[BaseException, BatchOutcome] = asyncio.CancelledError()
            logger.warning("batch_cancelled", session_id=session_id)
        elif task.exception() is not None:
            result = task.exception()
        else:
            result = task.result()

        self._results[session_id] = result
        while len(self._results) > self.max_results:
            self._results.popitem(last=False)

    def is_running(self, session_id: str) -> bool:
        return session_id in self._tasks

    def result(self, session_id: str) -> Optional[Union[BaseException, BatchOutcome]]:
        """Outcome or exception of a finished batch; None while running or unknown."""
        return self._results.get(session_id)

    async def wait(self, session_id: str) -> None:
        """Wait for a running batch to finish, without raising its error."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait([task])

    async def shutdown(self) -> None:
        """Cancel running batches and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("batch_runner_stopped", cancelled=len(tasks))
