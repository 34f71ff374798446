"""Initial schema: users, tasks, completions, workflows, audit, email outbox

Revision ID: 5c2e9a7b1f30
Revises:
Create Date: 2026-10-18 09:12:41.118203

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e9a7b1f30'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

user_role = postgresql.ENUM("USER", "ADMIN", name="user_role", create_type=False)
user_status = postgresql.ENUM("ACTIVE", "BLOCKED", "DELETED", name="user_status", create_type=False)
task_type = postgresql.ENUM(
    "TWITTER_FOLLOW", "TWITTER_LIKE", "TWITTER_RETWEET", "TELEGRAM_JOIN", "REFERRAL", "CUSTOM",
    name="task_type", create_type=False,
)
completion_status = postgresql.ENUM(
    "PENDING", "APPROVED", "AUTO_APPROVED", "REJECTED", "EXPIRED",
    name="completion_status", create_type=False,
)
verification_status = postgresql.ENUM(
    "UNVERIFIED", "VERIFIED", "FLAGGED", "REJECTED",
    name="verification_status", create_type=False,
)
email_status = postgresql.ENUM(
    "QUEUED", "SENT", "FAILED", "SKIPPED", name="email_status", create_type=False,
)

_ENUMS = (user_role, user_status, task_type, completion_status, verification_status, email_status)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]
    if updated:
        cols.append(
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())
        )
    return cols


def upgrade() -> None:
    """Create every table backing sylvan.database.models."""
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("role", user_role, nullable=False, server_default="USER"),
        sa.Column("status", user_status, nullable=False, server_default="ACTIVE"),
        sa.Column("wallet_address", sa.String(100), nullable=True),
        sa.Column("wallet_verified", sa.Boolean, server_default=sa.false()),
        sa.Column("twitter_verified", sa.Boolean, server_default=sa.false()),
        sa.Column("telegram_verified", sa.Boolean, server_default=sa.false()),
        sa.Column("referral_code", sa.String(32), nullable=True, unique=True),
        sa.Column("total_points", sa.Integer, server_default="0"),
        sa.Column("last_active", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_users_status", "users", ["status"])
    op.create_index("ix_users_role", "users", ["role"])

    # --- campaigns ---
    op.create_table(
        "campaigns",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        *_timestamps(),
    )

    # --- tasks ---
    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "campaign_id", sa.Integer,
            sa.ForeignKey("campaigns.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("points", sa.Integer, server_default="0"),
        sa.Column("task_type", task_type, nullable=False, server_default="CUSTOM"),
        sa.Column("task_url", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("scheduled_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_duration", sa.Integer, nullable=True),
        sa.Column("is_time_sensitive", sa.Boolean, server_default=sa.false()),
        sa.Column("duration", sa.Integer, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "duration IS NULL OR (duration >= 1 AND duration <= 24)",
            name="ck_tasks_duration_range",
        ),
    )
    op.create_index("ix_tasks_active_expires", "tasks", ["is_active", "expires_at"])
    op.create_index("ix_tasks_campaign", "tasks", ["campaign_id"])

    # --- completions ---
    op.create_table(
        "completions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "task_id", sa.Integer,
            sa.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("missed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("points_awarded", sa.Integer, server_default="0"),
        sa.Column("status", completion_status, nullable=False, server_default="PENDING"),
        sa.Column(
            "verification_status", verification_status,
            nullable=False, server_default="UNVERIFIED",
        ),
        sa.Column("needs_review", sa.Boolean, server_default=sa.false()),
        sa.Column("fraud_score", sa.Integer, server_default="0"),
        sa.Column("auto_approve_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
    )
    op.create_index("ix_completions_user_task", "completions", ["user_id", "task_id"])
    op.create_index("ix_completions_status_time", "completions", ["status", "completed_at"])
    op.create_index("ix_completions_ip_time", "completions", ["ip_address", "completed_at"])

    # --- workflows ---
    op.create_table(
        "workflows",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("trigger_type", sa.String(30), nullable=False),
        sa.Column("trigger", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("actions", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_workflows_trigger_active", "workflows", ["trigger_type", "is_active"])

    # --- audit_log ---
    op.create_table(
        "audit_log",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("actor_email", sa.String(320), nullable=False),
        sa.Column("affected_model", sa.String(50), nullable=True),
        sa.Column("affected_id", sa.String(100), nullable=True),
        sa.Column("affected_count", sa.Integer, nullable=True),
        sa.Column("before_data", postgresql.JSONB, nullable=True),
        sa.Column("after_data", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("user_agent", sa.String(500), nullable=True),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_audit_log_actor_time", "audit_log", ["actor_id", "timestamp"])
    op.create_index("ix_audit_log_action_time", "audit_log", ["action", "timestamp"])
    op.create_index("ix_audit_log_affected", "audit_log", ["affected_model", "affected_id"])

    # --- filter_presets ---
    op.create_table(
        "filter_presets",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("criteria", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("created_by", sa.String(64), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_filter_presets_owner", "filter_presets", ["created_by", "created_at"])

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("data", postgresql.JSONB, nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_notifications_user_time", "notifications", ["user_id", "created_at"])

    # --- email_preferences ---
    op.create_table(
        "email_preferences",
        sa.Column(
            "user_id", sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("task_completions", sa.Boolean, server_default=sa.true()),
        sa.Column("wallet_verifications", sa.Boolean, server_default=sa.true()),
        sa.Column("admin_notifications", sa.Boolean, server_default=sa.true()),
        sa.Column("marketing_emails", sa.Boolean, server_default=sa.false()),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # --- email_outbox ---
    op.create_table(
        "email_outbox",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("to_address", sa.String(320), nullable=False),
        sa.Column("subject", sa.String(300), nullable=False),
        sa.Column("template", sa.String(50), nullable=False),
        sa.Column("html", sa.Text, nullable=False),
        sa.Column("text", sa.Text, nullable=True),
        sa.Column("locale", sa.String(8), server_default="en"),
        sa.Column("status", email_status, nullable=False, server_default="QUEUED"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("max_attempts", sa.Integer, server_default="3"),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("provider_id", sa.String(100), nullable=True),
        *_timestamps(updated=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_email_outbox_status_next", "email_outbox", ["status", "next_attempt_at"])

    # --- rate_limit_events ---
    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column(
            "timestamp", sa.DateTime(timezone=True),
            nullable=False, server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rate_limit_key_ts", "rate_limit_events",
        ["key", sa.text("timestamp DESC")],
    )
    op.create_index("ix_rate_limit_ts", "rate_limit_events", ["timestamp"])


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table("rate_limit_events")
    op.drop_table("email_outbox")
    op.drop_table("email_preferences")
    op.drop_table("notifications")
    op.drop_table("filter_presets")
    op.drop_table("audit_log")
    op.drop_table("workflows")
    op.drop_table("completions")
    op.drop_table("tasks")
    op.drop_table("campaigns")
    op.drop_table("users")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
