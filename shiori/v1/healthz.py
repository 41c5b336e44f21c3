from datetime import UTC, datetime

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from shiori.infra.database import SessionDep
from shiori.v1.core.exceptions import create_success_response
from shiori.v1.infra.jobs.runtime import JobRuntime, JobRuntimeDep

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Drain loop and queue status."""

    state: str
    active_jobs: int = 0
    queue_depth: int | None = None
    stale_after_s: int


class HealthResponse(BaseModel):
    """Health response with worker and database status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    worker: WorkerHealth


@router.get("/healthz", response_model=dict)
async def health_check(
    session: AsyncSession = SessionDep,
    jobs: JobRuntime = JobRuntimeDep,
):
    """Health check endpoint with database and worker status."""

    settings = jobs.service.settings
    db_health = await _check_database_health(session)

    queue_depth = None
    if db_health.connected:
        stats = await jobs.store.stats()
        queue_depth = stats["queue_depth"]

    health = HealthResponse(
        ok=db_health.connected,
        version=settings.version,
        environment=settings.environment,
        timestamp=datetime.now(UTC).isoformat(),
        database=db_health,
        worker=WorkerHealth(
            state=jobs.lifecycle.state.value,
            active_jobs=len(jobs.dispatcher.active_jobs),
            queue_depth=queue_depth,
            stale_after_s=settings.job_stale_after_s,
        ),
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))

    response_time_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))
