from .backend import (
    ClaimedJob,
    JobQueueBackend,
    SqlJobQueueBackend,
    backoff_delay,
    enqueue_job,
    job_backend,
)

__all__ = [
    "ClaimedJob",
    "JobQueueBackend",
    "SqlJobQueueBackend",
    "backoff_delay",
    "enqueue_job",
    "job_backend",
]
