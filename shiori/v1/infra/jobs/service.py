"""
Job service: the producer-facing API for enqueueing and inspecting jobs.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any
from uuid import UUID

from shiori.config.settings import Settings
from shiori.v1.core.exceptions import NotFoundError
from shiori.v1.infra.jobs.models import Job
from shiori.v1.infra.jobs.schemas import (
    JobDescriptor,
    JobListFilters,
    JobStatsResponse,
)
from shiori.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)

DescriptorLike = JobDescriptor | Mapping[str, Any]


class JobService:
    """Service for enqueueing and reading background jobs."""

    def __init__(self, store: JobStore, settings: Settings):
        self.store = store
        self.settings = settings

    async def enqueue_batch(self, descriptors: Sequence[DescriptorLike]) -> list[UUID]:
        """
        Enqueue a batch of jobs, all or nothing.

        Args:
            descriptors: JobDescriptor instances or mappings with ``type``,
                ``payload``, optional ``max_retries`` (or ``maxRetries``) and
                optional ``owner_id`` (or ``ownerId``); the owner defaults to
                ``payload["userId"]`` and is stored as NULL when neither is set

        Returns:
            Generated job ids, in the same order as ``descriptors``

        Raises:
            ValidationError: a descriptor is invalid; nothing was persisted
            PersistenceError: the insert transaction failed
        """
        job_ids = await self.store.insert_batch(descriptors)

        logger.info(
            "Job batch enqueued",
            extra={"count": len(job_ids)},
        )
        return job_ids

    async def enqueue(self, descriptor: DescriptorLike) -> UUID:
        """Enqueue a single job."""
        (job_id,) = await self.store.insert_batch([descriptor])
        return job_id

    async def get_job(self, job_id: UUID) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError("Job not found", details={"job_id": str(job_id)})
        return job

    async def list_jobs(
        self, filters: JobListFilters | None = None
    ) -> tuple[list[Job], int]:
        return await self.store.list(filters)

    async def get_stats(
        self, owner_id: str | None = None, group_by_type: bool = False
    ) -> JobStatsResponse:
        """Get job statistics, optionally scoped to one owner."""
        stats = await self.store.stats(owner_id=owner_id, group_by_type=group_by_type)
        return JobStatsResponse(**stats)
