from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import Job, JobPriority, JobStatus, JobType
from app.utils.logger import logger


PRIORITY_RANK: Dict[str, int] = {
    JobPriority.URGENT.value: 0,
    JobPriority.HIGH.value: 1,
    JobPriority.MEDIUM.value: 2,
    JobPriority.LOW.value: 3,
}

_CLAIMABLE = (JobStatus.PENDING.value, JobStatus.RETRYING.value)
_TERMINAL = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempts: int, ladder: Sequence[float]) -> float:
    """Delay before the next try after ``attempts`` failures.

    The ladder is indexed by ``attempts - 1`` and clamped at its last entry.
    """
    if not ladder:
        return 0.0
    index = min(max(attempts - 1, 0), len(ladder) - 1)
    return float(ladder[index])


@dataclass
class ClaimedJob:
    """Snapshot of a job row taken at claim time."""

    id: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: str = JobPriority.MEDIUM.value
    attempts: int = 0
    max_attempts: int = 3


def job_to_dict(job: Job) -> Dict[str, Any]:
    def iso(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    return {
        "id": job.id,
        "job_type": job.job_type,
        "payload": job.payload,
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "error_message": job.error_message,
        "scheduled_at": iso(job.scheduled_at),
        "started_at": iso(job.started_at),
        "completed_at": iso(job.completed_at),
        "created_at": iso(job.created_at),
        "updated_at": iso(job.updated_at),
    }


class JobQueueBackend(ABC):
    """Storage seam for the job queue.

    The SQL implementation below can be replaced by a broker-backed one as
    long as claimed jobs are handed to a single consumer.
    """

    @abstractmethod
    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        priority: str = JobPriority.MEDIUM.value,
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        db: Optional[Session] = None,
    ) -> str:
        ...

    @abstractmethod
    def claim_batch(self, limit: int) -> List[ClaimedJob]:
        ...

    @abstractmethod
    def ack(self, job_id: str) -> None:
        ...

    @abstractmethod
    def nack(self, job_id: str, error: str, *, terminal: bool = False) -> Optional[str]:
        """Record a failed try. Returns the job's new status."""

    def release_stale(self, older_than_seconds: float) -> int:
        """Give back jobs whose worker died mid-flight. Optional."""
        return 0


class SqlJobQueueBackend(JobQueueBackend):
    """``job_queue`` table backend.

    Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` so several worker
    processes can poll the same table without taking the same rows.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        retry_delays: Optional[Sequence[float]] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._retry_delays = list(retry_delays) if retry_delays is not None else None

    @property
    def retry_delays(self) -> List[float]:
        if self._retry_delays is not None:
            return self._retry_delays
        return settings.job_retry_delays

    def _session(self, db: Optional[Session] = None):
        if db is not None:
            return db, False
        return self._session_factory(), True

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        *,
        priority: str = JobPriority.MEDIUM.value,
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        db: Optional[Session] = None,
    ) -> str:
        if job_type not in {t.value for t in JobType}:
            raise ValueError(f"Unknown job type: {job_type}")
        if priority not in PRIORITY_RANK:
            raise ValueError(f"Unknown job priority: {priority}")

        session, owns_session = self._session(db)
        try:
            job = Job(
                job_type=job_type,
                payload=dict(payload or {}),
                status=JobStatus.PENDING.value,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
                scheduled_at=scheduled_at or _now_utc(),
            )
            session.add(job)
            if owns_session:
                session.commit()
            else:
                session.flush()
            logger.info("Job queued: %s - %s (priority: %s)", job_type, job.id, priority)
            return job.id
        except Exception:
            logger.error("Failed to enqueue %s job", job_type, exc_info=True)
            if owns_session:
                session.rollback()
            raise
        finally:
            if owns_session:
                session.close()

    def claim_batch(self, limit: int) -> List[ClaimedJob]:
        now = _now_utc()
        rank = case(PRIORITY_RANK, value=Job.priority, else_=len(PRIORITY_RANK))
        session = self._session_factory()
        try:
            rows = (
                session.query(Job)
                .filter(Job.status.in_(_CLAIMABLE))
                .filter(Job.scheduled_at <= now)
                .order_by(rank.asc(), Job.created_at.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            claimed = []
            for job in rows:
                job.status = JobStatus.PROCESSING.value
                job.started_at = now
                job.updated_at = now
                claimed.append(
                    ClaimedJob(
                        id=job.id,
                        job_type=job.job_type,
                        payload=dict(job.payload or {}),
                        priority=job.priority,
                        attempts=job.attempts,
                        max_attempts=job.max_attempts,
                    )
                )
            session.commit()
            return claimed
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ack(self, job_id: str) -> None:
        session = self._session_factory()
        try:
            job = session.get(Job, job_id)
            if job is None:
                logger.warning("Cannot complete job %s: not found", job_id)
                return
            now = _now_utc()
            job.status = JobStatus.COMPLETED.value
            job.completed_at = now
            job.updated_at = now
            job.error_message = None
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def nack(self, job_id: str, error: str, *, terminal: bool = False) -> Optional[str]:
        session = self._session_factory()
        try:
            job = session.get(Job, job_id)
            if job is None:
                logger.warning("Cannot record failure for job %s: not found", job_id)
                return None

            now = _now_utc()
            job.attempts = min(job.attempts + 1, job.max_attempts)
            job.error_message = error
            job.updated_at = now

            if terminal or job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED.value
                logger.error(
                    "Job failed permanently: %s - %s (%s/%s attempts): %s",
                    job.job_type,
                    job.id,
                    job.attempts,
                    job.max_attempts,
                    error,
                )
            else:
                delay = backoff_delay(job.attempts, self.retry_delays)
                job.status = JobStatus.RETRYING.value
                job.scheduled_at = now + timedelta(seconds=delay)
                logger.warning(
                    "Job scheduled for retry: %s - %s (attempt %s/%s) in %ss",
                    job.job_type,
                    job.id,
                    job.attempts,
                    job.max_attempts,
                    delay,
                )
            status = job.status
            session.commit()
            return status
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def release_stale(self, older_than_seconds: float) -> int:
        """Count a lost ``processing`` claim as a failed attempt."""
        cutoff = _now_utc() - timedelta(seconds=older_than_seconds)
        session = self._session_factory()
        try:
            stale_ids = [
                row.id
                for row in session.query(Job.id)
                .filter(Job.status == JobStatus.PROCESSING.value)
                .filter(Job.started_at < cutoff)
                .all()
            ]
        finally:
            session.close()

        for job_id in stale_ids:
            self.nack(job_id, "Worker lost while processing job")
        if stale_ids:
            logger.warning("Released %s stale jobs", len(stale_ids))
        return len(stale_ids)

    # -- admin operations -------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        session = self._session_factory()
        try:
            job = session.get(Job, job_id)
            return job_to_dict(job) if job else None
        finally:
            session.close()

    def stats(self, hours: int = 24) -> Dict[str, Any]:
        since = _now_utc() - timedelta(hours=hours)
        session = self._session_factory()
        try:
            def grouped(column) -> Dict[str, int]:
                rows = (
                    session.query(column, func.count(Job.id))
                    .filter(Job.created_at >= since)
                    .group_by(column)
                    .all()
                )
                return {key: count for key, count in rows}

            by_status = grouped(Job.status)
            return {
                "time_range_hours": hours,
                "total": sum(by_status.values()),
                "by_status": by_status,
                "by_type": grouped(Job.job_type),
                "by_priority": grouped(Job.priority),
            }
        finally:
            session.close()

    def cleanup(self, older_than_days: int) -> int:
        cutoff = _now_utc() - timedelta(days=older_than_days)
        session = self._session_factory()
        try:
            deleted = (
                session.query(Job)
                .filter(Job.status.in_(_TERMINAL))
                .filter(func.coalesce(Job.completed_at, Job.updated_at) < cutoff)
                .delete(synchronize_session=False)
            )
            session.commit()
            logger.info("Cleaned up %s old jobs (older than %s days)", deleted, older_than_days)
            return deleted
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def failed_jobs(self, limit: int = 50) -> List[Dict[str, Any]]:
        session = self._session_factory()
        try:
            rows = (
                session.query(Job)
                .filter(Job.status == JobStatus.FAILED.value)
                .order_by(Job.updated_at.desc())
                .limit(limit)
                .all()
            )
            return [job_to_dict(job) for job in rows]
        finally:
            session.close()

    def retry(self, job_id: str) -> bool:
        """Resurrect a failed job: attempts back to zero, runnable now."""
        session = self._session_factory()
        try:
            job = session.get(Job, job_id)
            if job is None or job.status != JobStatus.FAILED.value:
                return False
            now = _now_utc()
            job.status = JobStatus.PENDING.value
            job.attempts = 0
            job.error_message = None
            job.scheduled_at = now
            job.started_at = None
            job.completed_at = None
            job.updated_at = now
            session.commit()
            logger.info("Job %s reset for manual retry", job_id)
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


job_backend = SqlJobQueueBackend()


def enqueue_job(
    job_type: str,
    payload: Dict[str, Any],
    *,
    priority: str = JobPriority.MEDIUM.value,
    scheduled_at: Optional[datetime] = None,
    db: Optional[Session] = None,
) -> str:
    """Queue a job on the process-wide backend."""
    return job_backend.enqueue(job_type, payload, priority=priority, scheduled_at=scheduled_at, db=db)
