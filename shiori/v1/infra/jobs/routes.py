"""
Job API endpoints: enqueue, inspect, and control this process's worker.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from shiori.v1.core.exceptions import create_success_response
from shiori.v1.infra.jobs.models import JobStatus
from shiori.v1.infra.jobs.runtime import JobRuntime, JobRuntimeDep
from shiori.v1.infra.jobs.schemas import (
    JobEnqueueRequest,
    JobEnqueueResponse,
    JobListFilters,
    JobListResponse,
    JobResponse,
    WorkerStatusResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", status_code=201, response_model=dict)
async def enqueue_jobs(
    job_request: JobEnqueueRequest,
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Enqueue a batch of jobs (all or nothing) and make sure a worker runs."""

    job_ids = await jobs.service.enqueue_batch(job_request.jobs)
    worker_started = jobs.lifecycle.ensure_running()

    logger.info(
        "Jobs enqueued via API",
        extra={"count": len(job_ids), "worker_started": worker_started},
    )

    response = JobEnqueueResponse(
        job_ids=job_ids, count=len(job_ids), worker_started=worker_started
    )
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: str | None = Query(default=None, description="Filter by job type"),
    owner_id: str | None = Query(default=None, description="Filter by owner"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""

    filters = JobListFilters(
        status=status, type=type, owner_id=owner_id, limit=limit, offset=offset
    )
    page, total = await jobs.service.list_jobs(filters)

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in page],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    owner_id: str | None = Query(default=None, description="Scope to one owner"),
    group_by_type: bool = Query(default=False, description="Split counts by type"),
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Get job counts per status."""

    stats = await jobs.service.get_stats(owner_id=owner_id, group_by_type=group_by_type)
    return create_success_response(data=stats.model_dump())


@router.get("/worker", response_model=dict)
async def get_worker_status(
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Report this process's drain loop state."""

    return create_success_response(data=_worker_status(jobs).model_dump())


@router.post("/worker/start", response_model=dict)
async def start_worker(
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Start a drain loop unless one is already active."""

    started = jobs.lifecycle.ensure_running()
    data = _worker_status(jobs).model_dump()
    data["started"] = started
    return create_success_response(data=data)


@router.post("/maintenance/release-stale", response_model=dict)
async def release_stale_jobs(
    older_than_s: int | None = Query(
        default=None, ge=1, description="Claim age in seconds; server default if unset"
    ),
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Reset running jobs whose worker never finalized them."""

    threshold = older_than_s or jobs.service.settings.job_stale_after_s
    released = await jobs.store.release_stale(threshold)

    logger.info(
        "Stale jobs released via API",
        extra={"released": released, "older_than_s": threshold},
    )

    if released:
        jobs.lifecycle.ensure_running()
    return create_success_response(
        data={"released": released, "older_than_s": threshold}
    )


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    jobs: JobRuntime = JobRuntimeDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job = await jobs.service.get_job(job_id)
    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


def _worker_status(jobs: JobRuntime) -> WorkerStatusResponse:
    return WorkerStatusResponse(
        state=jobs.lifecycle.state.value,
        worker_id=jobs.dispatcher.worker_id,
        active_jobs=len(jobs.dispatcher.active_jobs),
        batch_size=jobs.dispatcher.batch_size,
        max_workers=jobs.dispatcher.max_workers,
    )
