"""add bookmarks and jobs tables

Revision ID: 3f1c9a7d2b64
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c9a7d2b64"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "bookmarks",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("user_id", sa.Text, nullable=False),
        sa.Column("url", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False, server_default=""),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "website_icon",
            sa.Text,
            nullable=True,
            comment="Base64-encoded icon bytes",
        ),
        sa.Column("website_icon_mime_type", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_bookmarks_user_id", "bookmarks", ["user_id"])

    # Background jobs
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("type", sa.Text, nullable=False, comment="Job type identifier"),
        sa.Column("owner_id", sa.Text, nullable=True, comment="Requesting user"),
        sa.Column(
            "payload", sa.JSON, nullable=True, comment="Job-specific parameters"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|running|done|failed",
        ),
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Handler invocations started",
        ),
        sa.Column(
            "max_retries",
            sa.Integer,
            nullable=False,
            server_default="3",
            comment="Retries after the first attempt",
        ),
        # Worker coordination fields
        sa.Column(
            "locked_by",
            sa.Text,
            nullable=True,
            comment="Worker ID holding the running job",
        ),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the job was claimed",
        ),
        sa.Column(
            "claim_token",
            sa.Uuid,
            nullable=True,
            comment="Identifies the current claim; finalize must match it",
        ),
        # Outcome
        sa.Column(
            "result", sa.JSON, nullable=True, comment="Handler result for done jobs"
        ),
        sa.Column("error", sa.Text, nullable=True, comment="Last failure message"),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("max_retries >= 0", name="jobs_max_retries_check"),
        sa.CheckConstraint(
            "attempts >= 0 AND attempts <= max_retries + 1",
            name="jobs_attempts_check",
        ),
    )

    op.create_index("ix_jobs_status_created_at", "jobs", ["status", "created_at"])
    op.create_index("ix_jobs_owner_id_status", "jobs", ["owner_id", "status"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobs")
    op.drop_table("bookmarks")
