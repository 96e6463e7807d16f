"""create_generation_tables

Revision ID: 3f2a9c41d7b0
Revises:
Create Date: 2025-11-03 14:12:48.301552

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c41d7b0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

job_status = sa.Enum("QUEUED", "RUNNING", "SUCCEEDED", "FAILED", "CANCELED", name="jobstatus")


def upgrade() -> None:
    """Create generation jobs, ad images, archetypes/workflows and token ledger tables."""
    op.create_table(
        "ad_archetypes",
        sa.Column("code", sa.String(length=100), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("code"),
    )

    op.create_table(
        "ad_workflows",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("archetype_code", sa.String(length=100), nullable=True),
        sa.Column("workflow_uid", sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(["archetype_code"], ["ad_archetypes.code"]),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("brand_id", sa.Uuid(), nullable=True),
        sa.Column("status", job_status, nullable=False),
        sa.Column("auto_generated", sa.Boolean(), nullable=False),
        sa.Column("archetype_code", sa.String(length=100), nullable=True),
        sa.Column("formats", sa.JSON(), nullable=False),
        sa.Column("prompt", sa.String(), nullable=False),
        sa.Column("params", sa.JSON(), nullable=False),
        sa.Column("tokens_cost", sa.Integer(), nullable=False),
        sa.Column("ledger_id", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(length=100), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generation_jobs_user_id", "generation_jobs", ["user_id"])
    op.create_index("ix_generation_jobs_brand_id", "generation_jobs", ["brand_id"])
    op.create_index("ix_generation_jobs_status", "generation_jobs", ["status"])

    op.create_table(
        "ad_images",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("brand_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("storage_key", sa.String(), nullable=False),
        sa.Column("public_url", sa.String(), nullable=True),
        sa.Column("bytes_size", sa.Integer(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=False),
        sa.Column("height", sa.Integer(), nullable=False),
        sa.Column("format", sa.String(length=20), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=True),
        sa.Column("error_flag", sa.Boolean(), nullable=False),
        sa.Column("ban_flag", sa.Boolean(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("delete_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["generation_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ad_images_job_id", "ad_images", ["job_id"])
    op.create_index("ix_ad_images_user_id", "ad_images", ["user_id"])
    op.create_index("ix_ad_images_brand_id", "ad_images", ["brand_id"])

    op.create_table(
        "token_accounts",
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False),
        sa.Column("plan_code", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "token_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=False),
        sa.Column("reference_id", sa.String(length=255), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reason", "reference_id", name="uq_token_ledger_reason_ref"),
    )
    op.create_index("ix_token_ledger_user_id", "token_ledger", ["user_id"])


def downgrade() -> None:
    """Drop all generation tables."""
    op.drop_index("ix_token_ledger_user_id", table_name="token_ledger")
    op.drop_table("token_ledger")
    op.drop_table("token_accounts")
    op.drop_index("ix_ad_images_brand_id", table_name="ad_images")
    op.drop_index("ix_ad_images_user_id", table_name="ad_images")
    op.drop_index("ix_ad_images_job_id", table_name="ad_images")
    op.drop_table("ad_images")
    op.drop_index("ix_generation_jobs_status", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_brand_id", table_name="generation_jobs")
    op.drop_index("ix_generation_jobs_user_id", table_name="generation_jobs")
    op.drop_table("generation_jobs")
    job_status.drop(op.get_bind(), checkfirst=True)
    op.drop_table("ad_workflows")
    op.drop_table("ad_archetypes")
