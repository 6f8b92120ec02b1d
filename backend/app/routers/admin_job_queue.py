from __future__ import annotations

import hmac
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from pydantic import BaseModel

from app.config import settings
from app.services.job_queue.service import job_queue_service
from app.utils.logger import logger


router = APIRouter(prefix="/api/admin/job-queue", tags=["admin-job-queue"])


class JobQueueStatsDto(BaseModel):
    time_range_hours: int
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_priority: Dict[str, int]


def admin_key_required(x_admin_key: Optional[str] = Header(default=None)) -> None:
    expected = settings.ADMIN_API_KEY
    if not expected:
        if settings.DEBUG:
            return
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin key")


@router.get("/stats", response_model=JobQueueStatsDto, dependencies=[Depends(admin_key_required)])
async def get_job_queue_stats(hours: int = Query(24, ge=1, le=24 * 90)) -> JobQueueStatsDto:
    return JobQueueStatsDto(**job_queue_service.get_job_stats(hours))


@router.get("/failed", dependencies=[Depends(admin_key_required)])
async def get_failed_jobs(limit: int = Query(50, ge=1, le=500)) -> Dict[str, Any]:
    jobs: List[Dict[str, Any]] = job_queue_service.get_failed_jobs(limit)
    return {"jobs": jobs, "count": len(jobs)}


@router.get("/{job_id}", dependencies=[Depends(admin_key_required)])
async def get_job(job_id: str) -> Dict[str, Any]:
    job = job_queue_service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("/{job_id}/retry", dependencies=[Depends(admin_key_required)])
async def retry_job(job_id: str) -> Dict[str, Any]:
    if not job_queue_service.retry_job(job_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only failed jobs can be retried")
    logger.info("Admin requested retry of job %s", job_id)
    return {"success": True, "job_id": job_id}


@router.post("/cleanup", dependencies=[Depends(admin_key_required)])
async def cleanup_jobs(days: int = Query(settings.JOB_RETENTION_DAYS, ge=1)) -> Dict[str, Any]:
    deleted = job_queue_service.cleanup_old_jobs(days)
    return {"success": True, "deleted": deleted, "older_than_days": days}


@router.post("/process", dependencies=[Depends(admin_key_required)])
async def process_now() -> Dict[str, Any]:
    """Run one batch synchronously; a batch already in flight wins."""
    if job_queue_service.is_processing:
        return {"success": False, "processed": 0, "detail": "A batch is already in progress"}
    processed = await job_queue_service.process_batch()
    return {"success": True, "processed": processed}
