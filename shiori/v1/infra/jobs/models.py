"""
Job queue models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from shiori.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(UTC)


class Job(Base):
    """
    A persisted unit of background work.

    Rows are only mutated by the worker (claim and finalize); they move
    pending -> running -> done | failed, or back to pending while retry
    budget remains.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Job type identifier"
    )
    owner_id: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Requesting user"
    )
    payload: Mapped[Any] = mapped_column(
        JSON, nullable=True, comment="Job-specific parameters"
    )

    # Job state
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|running|done|failed",
    )
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Handler invocations started"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, comment="Retries after the first attempt"
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID holding the running job"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="When the job was claimed"
    )
    claim_token: Mapped[UUID | None] = mapped_column(
        Uuid, nullable=True, comment="Identifies the current claim; finalize must match it"
    )

    # Outcome
    result: Mapped[Any] = mapped_column(
        JSON, nullable=True, comment="Handler result for done jobs"
    )
    error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure message"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="jobs_status_check",
        ),
        CheckConstraint("max_retries >= 0", name="jobs_max_retries_check"),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_retries + 1",
            name="jobs_attempts_check",
        ),
        Index("ix_jobs_status_created_at", "status", "created_at"),
        Index("ix_jobs_owner_id_status", "owner_id", "status"),
        Index("ix_jobs_type_status", "type", "status"),
    )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def has_retry_budget(self) -> bool:
        """Whether a failed attempt may go back to pending."""
        return self.attempts < self.max_attempts

