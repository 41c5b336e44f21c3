"""
Bounded worker pool that drains pending jobs from the job store.
"""

import asyncio
import inspect
import json
import os
import socket
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any
from uuid import UUID

from shiori.config.logging import get_logger, job_log_context
from shiori.v1.core.exceptions import (
    HandlerExecutionError,
    PersistenceError,
    UnknownJobTypeError,
)
from shiori.v1.core.registries import JobContext, JobRegistry
from shiori.v1.infra.jobs.models import Job, JobStatus
from shiori.v1.infra.jobs.schemas import HandlerFailure, JobOutcome
from shiori.v1.infra.jobs.store import CLAIM_ORDERS, ClaimOrder, JobStore

logger = get_logger(__name__)


@dataclass
class CycleReport:
    """What one claim-execute-finalize round did."""

    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    unfinalized: int = 0

    def record(self, status: JobStatus | None) -> None:
        if status is JobStatus.DONE:
            self.succeeded += 1
        elif status is JobStatus.PENDING:
            self.retried += 1
        elif status is JobStatus.FAILED:
            self.failed += 1
        else:
            self.unfinalized += 1


@dataclass
class DrainReport(CycleReport):
    """Totals over a drain loop."""

    cycles: int = 0
    aborted: bool = False

    def add(self, cycle: CycleReport) -> None:
        self.cycles += 1
        self.claimed += cycle.claimed
        self.succeeded += cycle.succeeded
        self.retried += cycle.retried
        self.failed += cycle.failed
        self.unfinalized += cycle.unfinalized

    def merge(self, other: "DrainReport") -> None:
        self.cycles += other.cycles
        self.claimed += other.claimed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.failed += other.failed
        self.unfinalized += other.unfinalized
        self.aborted = self.aborted or other.aborted


class JobDispatcher:
    """
    Drives pending jobs through their handlers.

    Each cycle claims up to ``batch_size`` jobs and runs them on at most
    ``max_workers`` slots; a slot takes the next job of the batch as soon as
    it is free. A handler is invoked once per claim. Job-level retries happen
    only through finalize putting the job back to pending, so any retrying a
    handler does internally never shows up in ``attempts``.
    """

    def __init__(
        self,
        store: JobStore,
        registry: JobRegistry,
        batch_size: int = 5,
        max_workers: int = 2,
        worker_id: str | None = None,
        claim_order: ClaimOrder = "fifo",
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got: {batch_size}")
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got: {max_workers}")
        if claim_order not in CLAIM_ORDERS:
            raise ValueError(f"Unknown claim order: {claim_order}")

        self.store = store
        self.registry = registry
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.claim_order = claim_order
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{id(self):x}"
        self.active_jobs: set[UUID] = set()

    async def drain(self, should_stop: Callable[[], bool] | None = None) -> DrainReport:
        """Run cycles until one claims nothing, or ``should_stop()`` is true."""
        report = DrainReport()
        logger.info(
            "Drain loop started",
            worker_id=self.worker_id,
            batch_size=self.batch_size,
            max_workers=self.max_workers,
            claim_order=self.claim_order,
        )

        while not (should_stop and should_stop()):
            try:
                cycle = await self.run_cycle()
            except Exception:
                # Claim failures end this loop; the next trigger starts a new one
                logger.exception("Drain cycle failed", worker_id=self.worker_id)
                report.aborted = True
                break

            if cycle.claimed == 0:
                break
            report.add(cycle)

        logger.info("Drain loop finished", worker_id=self.worker_id, **asdict(report))
        return report

    async def run_cycle(self) -> CycleReport:
        """Claim one batch and run it to completion.

        Raises:
            PersistenceError: the claim itself failed.
        """
        jobs = await self.store.claim_batch(
            self.batch_size, self.worker_id, order=self.claim_order
        )
        report = CycleReport(claimed=len(jobs))
        if not jobs:
            return report

        pending = deque(jobs)
        slots = min(self.max_workers, len(jobs))
        await asyncio.gather(*(self._slot(pending, report) for _ in range(slots)))
        return report

    async def _slot(self, pending: deque[Job], report: CycleReport) -> None:
        while pending:
            job = pending.popleft()
            await self._process_job(job, report)

    async def _process_job(self, job: Job, report: CycleReport) -> None:
        self.active_jobs.add(job.id)
        try:
            with job_log_context(
                str(job.id), job.type, attempt=job.attempts, worker_id=self.worker_id
            ):
                outcome = await self.execute(job)

                try:
                    status = await self.store.finalize(
                        job.id,
                        outcome,
                        worker_id=self.worker_id,
                        claim_token=job.claim_token,
                    )
                except Exception:
                    # The row stays running until release_stale picks it up
                    logger.exception("Failed to finalize job; left running")
                    report.record(None)
                    return

                report.record(status)
                if status is JobStatus.DONE:
                    logger.info("Job completed")
                elif status is JobStatus.PENDING:
                    logger.warning(
                        "Job failed; retry scheduled",
                        error=outcome.error,
                        max_retries=job.max_retries,
                    )
                elif status is JobStatus.FAILED:
                    logger.error(
                        "Job failed permanently",
                        error=outcome.error,
                        retryable=outcome.retryable,
                    )
        finally:
            self.active_jobs.discard(job.id)

    async def execute(self, job: Job) -> JobOutcome:
        """Invoke the job's handler once and classify what happened."""
        try:
            handler = self.registry.resolve(job.type)
        except UnknownJobTypeError as e:
            return JobOutcome.failure(e.message, retryable=False)

        context = JobContext(
            job_id=job.id,
            type=job.type,
            owner_id=job.owner_id,
            attempt=job.attempts,
            max_retries=job.max_retries,
        )

        try:
            result = await self._invoke(handler, job.payload, context)
        except HandlerExecutionError as e:
            return JobOutcome.failure(e.message, retryable=e.retryable)
        except Exception as e:
            logger.exception("Job handler raised")
            return JobOutcome.failure(f"{type(e).__name__}: {e}", retryable=True)

        if isinstance(result, HandlerFailure):
            return JobOutcome.failure(result.message, retryable=result.retryable)

        return JobOutcome.success(_storable(result))

    @staticmethod
    async def _invoke(handler: Callable[..., Any], payload: Any, context: JobContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(payload, context)

        # Plain functions run off the event loop so they cannot stall other slots
        result = await asyncio.to_thread(handler, payload, context)
        if inspect.isawaitable(result):
            result = await result
        return result


def _storable(result: Any) -> Any:
    try:
        json.dumps(result, allow_nan=False)
    except (TypeError, ValueError):
        logger.warning("Discarding handler result that is not JSON-serializable")
        return None
    return result
