"""
Job Queue Worker

Standalone process for the background job queue. Polls ``job_queue`` every
JOB_QUEUE_INTERVAL_SECONDS, releases claims abandoned by dead workers and
runs due jobs in priority order. Several instances may run side by side;
claims are exclusive per row.

Run with ``python -m app.workers.job_queue_worker``.
"""
import asyncio
import signal
from typing import Optional

from app.config import settings
from app.services.job_queue.service import JobQueueService, job_queue_service
from app.utils.logger import logger


async def run_job_queue_once(service: Optional[JobQueueService] = None) -> int:
    """Process a single batch. Returns the number of jobs handled."""
    service = service or job_queue_service
    return await service.process_batch()


async def run_job_queue_worker_loop(
    service: Optional[JobQueueService] = None,
    interval_seconds: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the polling loop until ``stop_event`` is set (or forever)."""
    service = service or job_queue_service
    stop_event = stop_event or asyncio.Event()
    interval = interval_seconds if interval_seconds is not None else settings.JOB_QUEUE_INTERVAL_SECONDS

    service.start_processing(interval)
    try:
        await stop_event.wait()
    finally:
        await service.stop_processing()


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows
            pass


async def main() -> None:
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    logger.info("Starting job queue worker (interval %ss)", settings.JOB_QUEUE_INTERVAL_SECONDS)
    await run_job_queue_worker_loop(stop_event=stop_event)
    logger.info("Job queue worker exited")


if __name__ == "__main__":
    asyncio.run(main())
