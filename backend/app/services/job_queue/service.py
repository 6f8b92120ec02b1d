from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Set

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import JobPriority
from app.services.job_queue.backend import ClaimedJob, JobQueueBackend, job_backend
from app.services.job_queue.handlers import DEFAULT_HANDLERS, JobHandler, JobResult, TerminalJobError
from app.utils.logger import logger


# A claim older than this is assumed to belong to a dead worker.
STALE_JOB_SECONDS = 15 * 60


class JobQueueService:
    """Polling, priority-ordered job processor.

    ``process_batch`` is non-reentrant within a process: a call made while
    another is running returns immediately. Cross-process exclusivity comes
    from the backend's claim step.
    """

    def __init__(
        self,
        backend: Optional[JobQueueBackend] = None,
        handlers: Optional[Mapping[str, JobHandler]] = None,
        batch_size: Optional[int] = None,
    ):
        self.backend = backend or job_backend
        self.handlers: Dict[str, JobHandler] = dict(DEFAULT_HANDLERS if handlers is None else handlers)
        self.batch_size = batch_size or settings.JOB_QUEUE_BATCH_SIZE
        self._is_processing = False
        self._stop_event: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def add_job(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: str = JobPriority.MEDIUM.value,
        scheduled_at: Optional[datetime] = None,
        *,
        db: Optional[Session] = None,
    ) -> str:
        return self.backend.enqueue(job_type, payload, priority=priority, scheduled_at=scheduled_at, db=db)

    async def process_batch(self) -> int:
        """Claim and run one batch. Returns the number of jobs handled."""
        if self._is_processing:
            logger.debug("Job batch already in progress; skipping")
            return 0

        self._is_processing = True
        try:
            jobs = self.backend.claim_batch(self.batch_size)
            if jobs:
                logger.info("Processing %s jobs", len(jobs))
            for job in jobs:
                await self._process_job(job)
            return len(jobs)
        except Exception:
            logger.error("Error processing job batch", exc_info=True)
            return 0
        finally:
            self._is_processing = False

    async def _process_job(self, job: ClaimedJob) -> None:
        start = time.time()
        handler = self.handlers.get(job.job_type)
        if handler is None:
            logger.warning("Unknown job type: %s", job.job_type)
            self._record_failure(job, f"Unknown job type: {job.job_type}", terminal=True)
            return

        try:
            result = await handler(job.payload)
        except TerminalJobError as exc:
            self._record_failure(job, str(exc), terminal=True)
            return
        except Exception as exc:
            logger.error("Error processing job %s (%s)", job.id, job.job_type, exc_info=True)
            self._record_failure(job, str(exc) or exc.__class__.__name__, terminal=False)
            return

        if isinstance(result, bool):
            result = JobResult.success() if result else JobResult.retry("Job processing returned false")

        if result.ok:
            try:
                self.backend.ack(job.id)
            except Exception:
                logger.error("Could not mark job %s completed", job.id, exc_info=True)
                return
            logger.info(
                "Job completed: %s - %s (%sms)", job.job_type, job.id, int((time.time() - start) * 1000)
            )
        else:
            self._record_failure(job, result.message or "Job failed", terminal=not result.retryable)

    def _record_failure(self, job: ClaimedJob, error: str, *, terminal: bool) -> None:
        try:
            self.backend.nack(job.id, error, terminal=terminal)
        except Exception:
            # The row stays in processing until release_stale picks it up.
            logger.error("Could not record failure for job %s", job.id, exc_info=True)

    async def _tick(self) -> None:
        try:
            self.backend.release_stale(STALE_JOB_SECONDS)
        except Exception:
            logger.error("Could not release stale jobs", exc_info=True)
        await self.process_batch()

    async def _run_loop(self, interval: float) -> None:
        assert self._stop_event is not None
        logger.info("Job queue processing started (interval: %ss)", interval)
        while not self._stop_event.is_set():
            task = asyncio.create_task(self._tick())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Job queue processing stopped")

    def start_processing(self, interval: Optional[float] = None) -> None:
        """Start the polling loop on the running event loop; fires one pass immediately."""
        if self.is_running:
            logger.warning("Job queue processing already running")
            return
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(
            self._run_loop(interval if interval is not None else settings.JOB_QUEUE_INTERVAL_SECONDS)
        )

    async def stop_processing(self) -> None:
        """Stop polling. A batch already running is allowed to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight))

    def get_job_stats(self, time_range_hours: int = 24) -> Dict[str, Any]:
        return self.backend.stats(time_range_hours)

    def get_failed_jobs(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.backend.failed_jobs(limit)

    def retry_job(self, job_id: str) -> bool:
        return self.backend.retry(job_id)

    def cleanup_old_jobs(self, older_than_days: Optional[int] = None) -> int:
        return self.backend.cleanup(older_than_days if older_than_days is not None else settings.JOB_RETENTION_DAYS)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.backend.get_job(job_id)


job_queue_service = JobQueueService()
