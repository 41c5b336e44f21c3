"""
Job queue schemas: producer descriptors, handler outcomes and API shapes.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from shiori.v1.infra.jobs.models import JobStatus


class JobDescriptor(BaseModel):
    """A job as described by a producer, before it is persisted."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    type: str = Field(..., max_length=255, description="Job type identifier")
    owner_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("owner_id", "ownerId", "userId"),
        description="Requesting user; taken from payload.userId when omitted",
    )
    payload: Any = Field(default=None, description="JSON-serializable parameters")
    max_retries: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("max_retries", "maxRetries"),
        description="Retries after the first attempt; server default when unset",
    )

    @field_validator("type", "owner_id")
    @classmethod
    def _not_blank(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("payload")
    @classmethod
    def _json_serializable(cls, value: Any) -> Any:
        try:
            json.dumps(value, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise ValueError(f"payload is not JSON-serializable: {e}") from None
        return value

    @model_validator(mode="after")
    def _owner_from_payload(self) -> "JobDescriptor":
        if self.owner_id is None and isinstance(self.payload, dict):
            user_id = self.payload.get("userId")
            if isinstance(user_id, str) and user_id.strip():
                self.owner_id = user_id.strip()
        return self


@dataclass(frozen=True)
class HandlerFailure:
    """Failure returned (rather than raised) by a handler."""

    message: str
    retryable: bool = True


@dataclass(frozen=True)
class JobOutcome:
    """Result of one handler invocation, as recorded by finalize."""

    succeeded: bool
    error: str | None = None
    retryable: bool = True
    result: Any = None

    @classmethod
    def success(cls, result: Any = None) -> "JobOutcome":
        return cls(succeeded=True, result=result)

    @classmethod
    def failure(cls, error: str, retryable: bool = True) -> "JobOutcome":
        return cls(succeeded=False, error=error, retryable=retryable)


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    owner_id: str | None
    payload: Any = None
    status: str
    attempts: int
    max_retries: int
    error: str | None = None
    result: Any = None
    locked_by: str | None = None
    locked_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    type: str | None = Field(default=None, description="Filter by job type")
    owner_id: str | None = Field(default=None, description="Filter by owner")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Job counts per status, optionally split by job type."""

    by_status: dict[str, int]
    by_type: dict[str, dict[str, int]] | None = None
    queue_depth: int  # pending + running


class JobEnqueueRequest(BaseModel):
    """Schema for enqueueing jobs via API."""

    jobs: list[dict[str, Any]] = Field(
        ..., min_length=1, description="Job descriptors, validated all-or-nothing"
    )


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_ids: list[UUID]
    count: int
    worker_started: bool = Field(
        default=False, description="Whether this request started a drain loop"
    )


class WorkerStatusResponse(BaseModel):
    """Lifecycle state of this process's drain loop."""

    state: str
    worker_id: str
    active_jobs: int
    batch_size: int
    max_workers: int
