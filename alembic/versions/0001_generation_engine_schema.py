"""generation engine schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUS = sa.Enum(
    "QUEUED", "PROCESSING", "SUCCEEDED", "FAILED", "CANCELLED", name="jobstatus"
)
QUEUE_ENTRY_STATUS = sa.Enum(
    "WAITING", "ACTIVE", "COMPLETED", "FAILED", "DELAYED", name="queueentrystatus"
)
IMAGE_KIND = sa.Enum("INPUT", "OUTPUT", "THUMBNAIL", name="imagekind")


def upgrade() -> None:
    """Create job, queue, asset and audit tables."""
    op.create_table(
        "image_assets",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("kind", IMAGE_KIND, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("storage_key", sqlmodel.AutoString(length=512), nullable=False),
        sa.Column("url", sqlmodel.AutoString(), nullable=True),
        sa.Column("mime_type", sqlmodel.AutoString(length=100), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column(
            "original_image_id", sa.Uuid(), sa.ForeignKey("image_assets.id"), nullable=True
        ),
        sa.Column("provider_task_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("storage_key"),
    )
    op.create_index("ix_image_assets_kind", "image_assets", ["kind"])
    op.create_index("ix_image_assets_user_id", "image_assets", ["user_id"])
    op.create_index("ix_image_assets_job_id", "image_assets", ["job_id"])
    op.create_index("ix_image_assets_original_image_id", "image_assets", ["original_image_id"])

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("provider", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("input_image_ids", sa.JSON(), nullable=True),
        sa.Column("prompt", sqlmodel.AutoString(length=1000), nullable=True),
        sa.Column("options", sa.JSON(), nullable=True),
        sa.Column("status", JOB_STATUS, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provider_task_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("provider_request", sa.JSON(), nullable=True),
        sa.Column(
            "output_image_id", sa.Uuid(), sa.ForeignKey("image_assets.id"), nullable=True
        ),
        sa.Column("error", sqlmodel.AutoString(length=2000), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("queue_time", sa.Integer(), nullable=True),
        sa.Column("processing_time", sa.Integer(), nullable=True),
        sa.Column("estimated_time", sa.Integer(), nullable=False),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])
    op.create_index("ix_generation_jobs_retry_at", "generation_jobs", ["retry_at"])
    op.create_index("ix_generation_jobs_created_at", "generation_jobs", ["created_at"])
    op.create_index(
        "ix_generation_jobs_provider_task_id", "generation_jobs", ["provider_task_id"]
    )

    op.create_table(
        "queue_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", QUEUE_ENTRY_STATUS, nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("backoff_type", sqlmodel.AutoString(length=20), nullable=False),
        sa.Column("backoff_delay_ms", sa.Integer(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_token", sqlmodel.AutoString(length=64), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("stalled_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sqlmodel.AutoString(length=2000), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_queue_entries_job_type", "queue_entries", ["job_type"])
    op.create_index("ix_queue_entries_job_id", "queue_entries", ["job_id"])
    op.create_index("ix_queue_entries_status", "queue_entries", ["status"])
    op.create_index("ix_queue_entries_run_at", "queue_entries", ["run_at"])
    op.create_index("ix_queue_entries_lease_expires_at", "queue_entries", ["lease_expires_at"])
    op.create_index("ix_queue_entries_finished_at", "queue_entries", ["finished_at"])

    op.create_table(
        "queue_states",
        sa.Column("job_type", sqlmodel.AutoString(length=50), primary_key=True),
        sa.Column("paused", sa.Boolean(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "rate_limit_hits",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("job_type", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_rate_limit_hits_job_type", "rate_limit_hits", ["job_type"])
    op.create_index("ix_rate_limit_hits_acquired_at", "rate_limit_hits", ["acquired_at"])

    op.create_table(
        "audit_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("type", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("action", sqlmodel.AutoString(length=100), nullable=False),
        sa.Column("resource_type", sqlmodel.AutoString(length=50), nullable=False),
        sa.Column("resource_id", sqlmodel.AutoString(length=255), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("is_success", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_records_user_id", "audit_records", ["user_id"])
    op.create_index("ix_audit_records_action", "audit_records", ["action"])


def downgrade() -> None:
    """Drop all engine tables."""
    op.drop_table("audit_records")
    op.drop_table("rate_limit_hits")
    op.drop_table("queue_states")
    op.drop_table("queue_entries")
    op.drop_table("generation_jobs")
    op.drop_table("image_assets")
    IMAGE_KIND.drop(op.get_bind(), checkfirst=True)
    QUEUE_ENTRY_STATUS.drop(op.get_bind(), checkfirst=True)
    JOB_STATUS.drop(op.get_bind(), checkfirst=True)
