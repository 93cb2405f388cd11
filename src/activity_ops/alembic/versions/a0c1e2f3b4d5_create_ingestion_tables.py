"""Create ingestion tables.

Revision ID: a0c1e2f3b4d5
Revises:
Create Date: 2026-10-19 09:00:00

Creates the tables for GitHub ingestion:
- accounts: GitHub App installations and their sync state
- sync_batches: one sync run per account, at most one active at a time
- ingestion_jobs: resumable per-repository backfill jobs
- event_facts: canonical, content-addressed activity facts
- webhook_envelopes: raw webhook deliveries awaiting processing
"""

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "a0c1e2f3b4d5"
down_revision: Union[str, None] = None
branch_labels: Union[str, None] = None
depends_on: Union[str, None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "installation_id",
            sa.BigInteger(),
            nullable=False,
            comment="GitHub App installation id",
        ),
        sa.Column("account_login", sa.Text(), nullable=True),
        sa.Column("account_type", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("repositories", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("sync_status", sa.Text(), nullable=False, server_default="idle"),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_manual_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("rate_limit_remaining", sa.Integer(), nullable=True),
        sa.Column("rate_limit_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("installation_id", name="uq_accounts_installation_id"),
    )
    op.create_index("ix_accounts_user_id", "accounts", ["user_id"])
    op.create_index("ix_accounts_active_status", "accounts", ["is_active", "sync_status"])

    op.create_table(
        "sync_batches",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", UUID(as_uuid=True), nullable=False),
        sa.Column("trigger", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Integer(),
            nullable=False,
            server_default="1",
            comment="1=running, 2=completed, 3=failed",
        ),
        sa.Column(
            "active_slot",
            sa.Integer(),
            nullable=True,
            server_default="1",
            comment="1 while non-terminal, NULL once finalized",
        ),
        sa.Column("since", sa.DateTime(timezone=True), nullable=False),
        sa.Column("until", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_repos", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_repos", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_repos", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("events_ingested", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("account_id", "active_slot", name="uq_sync_batch_active"),
    )
    op.create_index("ix_sync_batches_account_id", "sync_batches", ["account_id"])
    op.create_index(
        "ix_sync_batches_status_updated", "sync_batches", ["status", "updated_at"]
    )

    op.create_table(
        "ingestion_jobs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("batch_id", UUID(as_uuid=True), nullable=True),
        sa.Column("account_id", UUID(as_uuid=True), nullable=True),
        sa.Column("repo_full_name", sa.Text(), nullable=False),
        sa.Column(
            "status",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="0=pending, 1=running, 2=blocked, 3=completed, 4=failed",
        ),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cursor", sa.Text(), nullable=True),
        sa.Column("since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("events_ingested", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicates", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pages_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rate_limit_remaining", sa.Integer(), nullable=True),
        sa.Column("rate_limit_reset", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blocked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "last_updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["batch_id"], ["sync_batches.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_ingestion_jobs_batch_id", "ingestion_jobs", ["batch_id"])
    op.create_index(
        "ix_ingestion_jobs_account_status", "ingestion_jobs", ["account_id", "status"]
    )
    op.create_index(
        "ix_ingestion_jobs_status_updated",
        "ingestion_jobs",
        ["status", "last_updated_at"],
    )
    op.create_index(
        "ix_ingestion_jobs_status_blocked", "ingestion_jobs", ["status", "blocked_until"]
    )

    op.create_table(
        "event_facts",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("account_id", UUID(as_uuid=True), nullable=True),
        sa.Column("repo_full_name", sa.Text(), nullable=False),
        sa.Column("repo_platform_id", sa.BigInteger(), nullable=True),
        sa.Column("actor_login", sa.Text(), nullable=False),
        sa.Column("actor_platform_id", sa.BigInteger(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("canonical_text", sa.Text(), nullable=False),
        sa.Column("source_url", sa.Text(), nullable=False),
        sa.Column("metrics", sa.JSON(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("platform_id", sa.Text(), nullable=True),
        sa.Column("platform_node_id", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("content_hash", name="uq_event_facts_content_hash"),
    )
    op.create_index("ix_event_facts_account_id", "event_facts", ["account_id"])
    op.create_index(
        "ix_event_facts_repo_occurred", "event_facts", ["repo_full_name", "occurred_at"]
    )
    op.create_index(
        "ix_event_facts_actor_occurred", "event_facts", ["actor_login", "occurred_at"]
    )

    op.create_table(
        "webhook_envelopes",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("delivery_id", sa.Text(), nullable=False),
        sa.Column("event", sa.Text(), nullable=False),
        sa.Column("installation_id", sa.BigInteger(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("delivery_id", name="uq_webhook_envelopes_delivery_id"),
    )
    op.create_index(
        "ix_webhook_envelopes_installation_id", "webhook_envelopes", ["installation_id"]
    )
    op.create_index(
        "ix_webhook_envelopes_status_updated",
        "webhook_envelopes",
        ["status", "updated_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_webhook_envelopes_status_updated", table_name="webhook_envelopes")
    op.drop_index("ix_webhook_envelopes_installation_id", table_name="webhook_envelopes")
    op.drop_table("webhook_envelopes")

    op.drop_index("ix_event_facts_actor_occurred", table_name="event_facts")
    op.drop_index("ix_event_facts_repo_occurred", table_name="event_facts")
    op.drop_index("ix_event_facts_account_id", table_name="event_facts")
    op.drop_table("event_facts")

    op.drop_index("ix_ingestion_jobs_status_blocked", table_name="ingestion_jobs")
    op.drop_index("ix_ingestion_jobs_status_updated", table_name="ingestion_jobs")
    op.drop_index("ix_ingestion_jobs_account_status", table_name="ingestion_jobs")
    op.drop_index("ix_ingestion_jobs_batch_id", table_name="ingestion_jobs")
    op.drop_table("ingestion_jobs")

    op.drop_index("ix_sync_batches_status_updated", table_name="sync_batches")
    op.drop_index("ix_sync_batches_account_id", table_name="sync_batches")
    op.drop_table("sync_batches")

    op.drop_index("ix_accounts_active_status", table_name="accounts")
    op.drop_index("ix_accounts_user_id", table_name="accounts")
    op.drop_table("accounts")
