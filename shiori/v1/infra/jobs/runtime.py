"""
Wiring of the job store, service, dispatcher and lifecycle for one process.
"""

from dataclasses import dataclass

from fastapi import Depends, Request

from shiori.config.settings import Settings
from shiori.infra.database import Database
from shiori.v1.core.registries import JobRegistry
from shiori.v1.infra.jobs.lifecycle import WorkerLifecycle
from shiori.v1.infra.jobs.service import JobService
from shiori.v1.infra.jobs.store import JobStore
from shiori.v1.infra.jobs.worker import JobDispatcher


@dataclass
class JobRuntime:
    store: JobStore
    service: JobService
    dispatcher: JobDispatcher
    lifecycle: WorkerLifecycle

    @classmethod
    def build(
        cls, database: Database, settings: Settings, registry: JobRegistry
    ) -> "JobRuntime":
        store = JobStore(
            database.SessionLocal,
            registry,
            default_max_retries=settings.job_default_max_retries,
        )
        dispatcher = JobDispatcher(
            store,
            registry,
            batch_size=settings.batch_size,
            max_workers=settings.max_workers,
            claim_order=settings.job_claim_order,
        )
        return cls(
            store=store,
            service=JobService(store, settings),
            dispatcher=dispatcher,
            lifecycle=WorkerLifecycle(dispatcher),
        )


def get_job_runtime(request: Request) -> JobRuntime:
    """Job runtime owned by the running application."""
    return request.app.state.jobs


# Convenience type alias for dependency injection
JobRuntimeDep = Depends(get_job_runtime)
