"""Create club billing tables (Snowflake BIGINT IDs)

Revision ID: cb001
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "cb001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "membership_tiers",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("annual_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_membership_tiers_club_id", "membership_tiers", ["club_id"])

    op.create_table(
        "payment_mandates",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column("payer_user_id", sa.BigInteger(), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_mandate_id", sa.String(length=64), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=64), nullable=True),
        sa.Column("scheme", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_status", sa.String(length=16), nullable=True),
        sa.Column("provider_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_payment_mandates_club_id", "payment_mandates", ["club_id"])
    op.create_index("ix_payment_mandates_payer_user_id", "payment_mandates", ["payer_user_id"])
    op.create_index(
        "ix_payment_mandates_provider_mandate_id",
        "payment_mandates",
        ["provider_mandate_id"],
        unique=True,
    )
    op.create_index(
        "uq_payment_mandates_default",
        "payment_mandates",
        ["club_id", "payer_user_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column("payer_user_id", sa.BigInteger(), nullable=False),
        sa.Column("beneficiary_user_id", sa.BigInteger(), nullable=False),
        sa.Column("tier_id", sa.BigInteger(), nullable=False),
        sa.Column("mandate_id", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("billing_frequency", sa.String(length=16), nullable=False),
        sa.Column("billing_day_of_month", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("credit_balance", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("current_period_start", sa.Date(), nullable=True),
        sa.Column("current_period_end", sa.Date(), nullable=True),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("failed_payment_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failed_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_date", sa.Date(), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_reason", sa.String(length=64), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("provider_subscription_status", sa.String(length=32), nullable=True),
        sa.Column("provider_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tier_id"], ["membership_tiers.id"]),
        sa.ForeignKeyConstraint(["mandate_id"], ["payment_mandates.id"]),
    )
    for column in ("club_id", "payer_user_id", "beneficiary_user_id", "tier_id", "mandate_id"):
        op.create_index(f"ix_subscriptions_{column}", "subscriptions", [column])
    op.create_index(
        "ix_subscriptions_status_next_billing", "subscriptions", ["status", "next_billing_date"]
    )
    op.create_index(
        "uq_subscriptions_open_per_tier",
        "subscriptions",
        ["club_id", "beneficiary_user_id", "tier_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
    )

    op.create_table(
        "scheduled_invoice_jobs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column("season_id", sa.BigInteger(), nullable=True),
        sa.Column("scheduled_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("invoices_generated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_scheduled_invoice_jobs_club_id", "scheduled_invoice_jobs", ["club_id"])
    op.create_index(
        "ix_scheduled_invoice_jobs_scheduled_date", "scheduled_invoice_jobs", ["scheduled_date"]
    )

    op.create_table(
        "invoices",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column("season_id", sa.BigInteger(), nullable=True),
        sa.Column("scheduled_job_id", sa.BigInteger(), nullable=True),
        sa.Column("payer_user_id", sa.BigInteger(), nullable=False),
        sa.Column("beneficiary_user_id", sa.BigInteger(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("subtotal", sa.Numeric(10, 2), nullable=False),
        sa.Column("service_charge", sa.Numeric(10, 2), nullable=False),
        sa.Column("total", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["scheduled_job_id"], ["scheduled_invoice_jobs.id"]),
        sa.UniqueConstraint(
            "scheduled_job_id", "beneficiary_user_id", name="uq_invoices_job_beneficiary"
        ),
    )
    op.create_index("ix_invoices_club_id", "invoices", ["club_id"])
    op.create_index("ix_invoices_scheduled_job_id", "invoices", ["scheduled_job_id"])
    op.create_index("ix_invoices_payer_user_id", "invoices", ["payer_user_id"])

    op.create_table(
        "provider_payments",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("subscription_id", sa.BigInteger(), nullable=True),
        sa.Column("invoice_id", sa.BigInteger(), nullable=True),
        sa.Column("mandate_id", sa.BigInteger(), nullable=True),
        sa.Column("purpose", sa.String(length=16), nullable=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=64), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False),
        sa.Column("charge_date", sa.Date(), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_of_id", sa.BigInteger(), nullable=True),
        sa.Column("next_retry_at", sa.Date(), nullable=True),
        sa.Column("payout_id", sa.String(length=64), nullable=True),
        sa.Column("paid_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.ForeignKeyConstraint(["mandate_id"], ["payment_mandates.id"]),
        sa.CheckConstraint(
            "(subscription_id IS NOT NULL AND invoice_id IS NULL)"
            " OR (subscription_id IS NULL AND invoice_id IS NOT NULL)",
            name="ck_provider_payments_single_owner",
        ),
    )
    for column in ("subscription_id", "invoice_id", "mandate_id", "status", "retry_of_id",
                   "next_retry_at"):
        op.create_index(f"ix_provider_payments_{column}", "provider_payments", [column])
    op.create_index(
        "ix_provider_payments_provider_payment_id",
        "provider_payments",
        ["provider_payment_id"],
        unique=True,
    )
    op.create_index(
        "ix_provider_payments_idempotency_key",
        "provider_payments",
        ["idempotency_key"],
        unique=True,
    )

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("subscription_id", sa.BigInteger(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("previous_status", sa.String(length=16), nullable=True),
        sa.Column("new_status", sa.String(length=16), nullable=True),
        sa.Column("previous_tier_id", sa.BigInteger(), nullable=True),
        sa.Column("new_tier_id", sa.BigInteger(), nullable=True),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.BigInteger(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
    )
    op.create_index(
        "ix_subscription_events_subscription_id", "subscription_events", ["subscription_id"]
    )

    op.create_table(
        "worker_executions",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("worker_name", sa.String(length=64), nullable=False),
        sa.Column("trigger", sa.String(length=16), nullable=False),
        sa.Column("triggered_by", sa.BigInteger(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_successful", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
    )
    op.create_index(
        "ix_worker_executions_name_started", "worker_executions", ["worker_name", "started_at"]
    )
    op.create_index(
        "uq_worker_executions_running",
        "worker_executions",
        ["worker_name"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "payment_webhooks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("provider_event_id", sa.String(length=64), nullable=False),
        sa.Column("resource_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_payment_webhooks_provider_event_id",
        "payment_webhooks",
        ["provider_event_id"],
        unique=True,
    )

    op.create_table(
        "club_billing_settings",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("club_id", sa.BigInteger(), nullable=False),
        sa.Column(
            "service_charge_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("service_charge_type", sa.String(length=16), nullable=False),
        sa.Column("service_charge_value", sa.Numeric(10, 2), nullable=False),
        sa.Column(
            "auto_invoice_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("default_invoice_items", sa.JSON(), nullable=True),
        sa.Column("invoice_due_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_club_billing_settings_club_id", "club_billing_settings", ["club_id"], unique=True
    )

    op.create_table(
        "dunning_policies",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("retry_limit", sa.Integer(), nullable=False),
        sa.Column("backoff_days", sa.JSON(), nullable=False),
        sa.Column("updated_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("dunning_policies")
    op.drop_table("club_billing_settings")
    op.drop_table("payment_webhooks")
    op.drop_table("worker_executions")
    op.drop_table("subscription_events")
    op.drop_table("provider_payments")
    op.drop_table("invoices")
    op.drop_table("scheduled_invoice_jobs")
    op.drop_table("subscriptions")
    op.drop_table("payment_mandates")
    op.drop_table("membership_tiers")
