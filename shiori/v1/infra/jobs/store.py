"""
Durable job store: validated batch inserts, claim-once batches and finalize.
"""

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shiori.v1.core.exceptions import PersistenceError, ValidationError
from shiori.v1.core.registries import JobRegistry
from shiori.v1.infra.jobs.models import Job, JobStatus, utcnow
from shiori.v1.infra.jobs.schemas import JobDescriptor, JobListFilters, JobOutcome

logger = logging.getLogger(__name__)

ClaimOrder = Literal["fifo", "random"]
CLAIM_ORDERS = ("fifo", "random")


class JobStore:
    """
    Relational job table access.

    Every method runs in its own short transaction; no session outlives a
    call, so nothing is held open while a handler executes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: JobRegistry,
        default_max_retries: int = 3,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self.default_max_retries = default_max_retries

    def validate(
        self, descriptors: Iterable[JobDescriptor | Mapping[str, Any]]
    ) -> list[JobDescriptor]:
        """
        Validate a batch of descriptors without writing anything.

        Raises:
            ValidationError: if any descriptor is malformed, carries a payload
                that is not JSON-serializable, or names an unregistered type.
                ``details["errors"]`` lists every offending index.
        """
        validated: list[JobDescriptor] = []
        errors: list[dict[str, Any]] = []

        for index, raw in enumerate(descriptors):
            try:
                descriptor = (
                    raw
                    if isinstance(raw, JobDescriptor)
                    else JobDescriptor.model_validate(raw)
                )
            except PydanticValidationError as e:
                errors.append(
                    {
                        "index": index,
                        "errors": e.errors(
                            include_url=False, include_context=False, include_input=False
                        ),
                    }
                )
                continue

            if descriptor.type not in self._registry:
                errors.append(
                    {
                        "index": index,
                        "errors": [
                            {
                                "type": "unknown_job_type",
                                "loc": ["type"],
                                "msg": f"Unknown job type: {descriptor.type}",
                            }
                        ],
                    }
                )
                continue

            validated.append(descriptor)

        if errors:
            raise ValidationError(
                f"{len(errors)} invalid job descriptor(s); nothing was enqueued",
                details={"errors": errors},
            )
        return validated

    async def insert_batch(
        self, descriptors: Iterable[JobDescriptor | Mapping[str, Any]]
    ) -> list[UUID]:
        """Persist a batch as pending jobs; ids come back in input order."""
        validated = self.validate(descriptors)
        if not validated:
            return []

        now = utcnow()
        jobs = [
            Job(
                id=uuid4(),
                type=descriptor.type,
                owner_id=descriptor.owner_id,
                payload=descriptor.payload,
                status=JobStatus.PENDING.value,
                attempts=0,
                max_retries=(
                    descriptor.max_retries
                    if descriptor.max_retries is not None
                    else self.default_max_retries
                ),
                created_at=now,
                updated_at=now,
            )
            for descriptor in validated
        ]

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add_all(jobs)
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to insert jobs", details={"count": len(jobs)}
            ) from e

        logger.info(
            "Jobs enqueued",
            extra={
                "count": len(jobs),
                "types": sorted({job.type for job in jobs}),
            },
        )
        return [job.id for job in jobs]

    async def claim_batch(
        self,
        limit: int,
        worker_id: str,
        job_type: str | None = None,
        owner_id: str | None = None,
        order: ClaimOrder = "fifo",
    ) -> list[Job]:
        """
        Claim up to ``limit`` pending jobs for ``worker_id``.

        Candidates are read with SELECT FOR UPDATE SKIP LOCKED, then each is
        moved to running by an UPDATE conditioned on it still being pending.
        Only rows that update wins are returned, so two concurrent callers
        never receive the same job. The claim also counts the attempt and
        stamps a fresh ``claim_token`` that finalize must present.

        ``job_type`` and ``owner_id`` narrow the candidates. ``order="fifo"``
        takes the oldest jobs first; ``order="random"`` samples the pending
        set so one owner's large import cannot starve everyone else.
        """
        if limit < 1:
            return []
        if order not in CLAIM_ORDERS:
            raise ValueError(f"Unknown claim order: {order}")

        conditions = [
            Job.status == JobStatus.PENDING.value,
            Job.attempts <= Job.max_retries,
        ]
        if job_type is not None:
            conditions.append(Job.type == job_type)
        if owner_id is not None:
            conditions.append(Job.owner_id == owner_id)

        ordering = (func.random(),) if order == "random" else (Job.created_at, Job.id)

        now = utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    candidates = (
                        await session.execute(
                            select(Job.id)
                            .where(and_(*conditions))
                            .order_by(*ordering)
                            .limit(limit)
                            .with_for_update(skip_locked=True)
                        )
                    ).scalars().all()

                    claimed_ids: list[UUID] = []
                    for job_id in candidates:
                        result = await session.execute(
                            update(Job)
                            .where(
                                and_(
                                    Job.id == job_id,
                                    Job.status == JobStatus.PENDING.value,
                                )
                            )
                            .values(
                                status=JobStatus.RUNNING.value,
                                attempts=Job.attempts + 1,
                                locked_by=worker_id,
                                locked_at=now,
                                claim_token=uuid4(),
                                updated_at=now,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount == 1:
                            claimed_ids.append(job_id)

                    if not claimed_ids:
                        return []

                    jobs = (
                        await session.execute(
                            select(Job)
                            .where(Job.id.in_(claimed_ids))
                            .order_by(Job.created_at, Job.id)
                            .execution_options(populate_existing=True)
                        )
                    ).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to claim jobs", details={"worker_id": worker_id}
            ) from e

        logger.info(
            "Claimed jobs",
            extra={
                "worker_id": worker_id,
                "job_count": len(jobs),
                "job_ids": [str(job.id) for job in jobs],
            },
        )
        return list(jobs)

    async def finalize(
        self,
        job_id: UUID,
        outcome: JobOutcome,
        worker_id: str | None = None,
        claim_token: UUID | None = None,
    ) -> JobStatus | None:
        """
        Record the outcome of a running job.

        Success moves the job to done. A retryable failure returns it to
        pending while attempts < max_retries + 1; otherwise, or for a
        non-retryable failure, it becomes failed. Returns the new status, or
        None if the job is no longer running, or is held by another worker or
        under another claim than ``claim_token`` (a stale claim that was
        released and claimed again).

        Raises:
            PersistenceError: the row could not be updated; it stays running.
        """
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    job = await session.get(Job, job_id, with_for_update=True)

                    if job is None or job.status != JobStatus.RUNNING.value:
                        logger.warning(
                            "Finalize skipped for job not running",
                            extra={
                                "job_id": str(job_id),
                                "status": job.status if job else None,
                            },
                        )
                        return None

                    if worker_id is not None and job.locked_by != worker_id:
                        logger.warning(
                            "Finalize skipped for job claimed by another worker",
                            extra={
                                "job_id": str(job_id),
                                "worker_id": worker_id,
                                "locked_by": job.locked_by,
                            },
                        )
                        return None

                    if claim_token is not None and job.claim_token != claim_token:
                        logger.warning(
                            "Finalize skipped for superseded claim",
                            extra={"job_id": str(job_id), "worker_id": worker_id},
                        )
                        return None

                    if outcome.succeeded:
                        status = JobStatus.DONE
                        job.result = outcome.result
                        job.error = None
                    elif outcome.retryable and job.has_retry_budget():
                        status = JobStatus.PENDING
                        job.error = outcome.error
                    else:
                        status = JobStatus.FAILED
                        job.error = outcome.error

                    job.status = status.value
                    job.locked_by = None
                    job.locked_at = None
                    job.claim_token = None
                    job.updated_at = utcnow()
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to finalize job", details={"job_id": str(job_id)}
            ) from e

        return status

    async def get(self, job_id: UUID) -> Job | None:
        """Get job by ID."""
        try:
            async with self._session_factory() as session:
                return await session.get(Job, job_id)
        except SQLAlchemyError as e:
            raise PersistenceError(
                "Failed to load job", details={"job_id": str(job_id)}
            ) from e

    async def list(self, filters: JobListFilters | None = None) -> tuple[list[Job], int]:
        """List jobs newest first; returns the page and the total match count."""
        filters = filters or JobListFilters()

        query = select(Job)
        if filters.status:
            query = query.where(Job.status.in_([s.value for s in filters.status]))
        if filters.type:
            query = query.where(Job.type == filters.type)
        if filters.owner_id:
            query = query.where(Job.owner_id == filters.owner_id)

        try:
            async with self._session_factory() as session:
                total = (
                    await session.execute(
                        select(func.count()).select_from(query.subquery())
                    )
                ).scalar() or 0

                jobs = (
                    await session.execute(
                        query.order_by(desc(Job.created_at), Job.id)
                        .offset(filters.offset)
                        .limit(filters.limit)
                    )
                ).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to list jobs") from e

        return list(jobs), total

    async def stats(
        self, owner_id: str | None = None, group_by_type: bool = False
    ) -> dict[str, Any]:
        """Count jobs per status, optionally per type as well."""
        empty = {status.value: 0 for status in JobStatus}

        query = select(Job.type, Job.status, func.count(Job.id)).group_by(
            Job.type, Job.status
        )
        if owner_id:
            query = query.where(Job.owner_id == owner_id)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query)).all()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to compute job statistics") from e

        by_status = dict(empty)
        by_type: dict[str, dict[str, int]] = {}
        for job_type, status, count in rows:
            by_status[status] = by_status.get(status, 0) + count
            by_type.setdefault(job_type, dict(empty))[status] = count

        return {
            "by_status": by_status,
            "by_type": by_type if group_by_type else None,
            "queue_depth": by_status[JobStatus.PENDING.value]
            + by_status[JobStatus.RUNNING.value],
        }

    async def release_stale(
        self, older_than_s: int, now: datetime | None = None
    ) -> int:
        """
        Return running jobs whose claim is older than ``older_than_s``.

        Such rows belong to a worker that crashed or failed to finalize. They
        go back to pending if retry budget remains, otherwise to failed.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=older_than_s)
        message = f"Claim expired after {older_than_s}s without finalize"

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stale = (
                        await session.execute(
                            select(Job)
                            .where(
                                and_(
                                    Job.status == JobStatus.RUNNING.value,
                                    Job.locked_at < cutoff,
                                )
                            )
                            .with_for_update(skip_locked=True)
                        )
                    ).scalars().all()

                    for job in stale:
                        job.status = (
                            JobStatus.PENDING.value
                            if job.has_retry_budget()
                            else JobStatus.FAILED.value
                        )
                        job.error = message
                        job.locked_by = None
                        job.locked_at = None
                        job.claim_token = None
                        job.updated_at = now
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to release stale jobs") from e

        if stale:
            logger.warning(
                "Released stale jobs",
                extra={
                    "job_count": len(stale),
                    "older_than_s": older_than_s,
                },
            )
        return len(stale)
