"""Jobs API - inspect queue contents and retry dead or dropped jobs."""
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.database import get_db
from files_manager.dependencies import get_job_queue
from files_manager.models.job import JOB_STATUSES, Job
from files_manager.schemas.job import JobResponse
from files_manager.services.job_queue import JobQueue

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    lane: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List jobs, optionally filtered by lane and status."""
    if status and status not in JOB_STATUSES:
        raise HTTPException(400, f"Unknown status: {status}. Choose from {list(JOB_STATUSES)}")
    query = select(Job).order_by(desc(Job.created_at)).limit(limit).offset(offset)
    if lane:
        query = query.where(Job.lane == lane)
    if status:
        query = query.where(Job.status == status)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, db: AsyncSession = Depends(get_db)):
    """Get job status and attempts."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    """Put a dead or dropped job back in its lane with a fresh attempt budget."""
    job = await db.get(Job, job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if not await queue.requeue(str(job_id)):
        raise HTTPException(400, f"Cannot retry job in '{job.status}' state")
    await db.refresh(job)
    return job
