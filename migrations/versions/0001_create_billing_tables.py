"""create billing tables

Revision ID: 0001_create_billing_tables
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from shopbilling.modules.audit.domain.audit_log import _encryption_key

# revision identifiers, used by Alembic.
revision = "0001_create_billing_tables"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("shop_id", sa.Uuid(), nullable=False),
        sa.Column("plan_code", sa.String(length=50), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("billing_cycle", sa.String(length=20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_upgrade_plan", sa.String(length=50), nullable=True),
        sa.Column("pending_upgrade_invoice_id", sa.Uuid(), nullable=True),
        sa.Column(
            "pending_upgrade_requested_at", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("last_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_payment_method", sa.String(length=20), nullable=True),
        sa.Column("last_payment_reference", sa.String(length=64), nullable=True),
        sa.Column("last_paid_invoice_id", sa.Uuid(), nullable=True),
        sa.Column(
            "failed_payment_attempts", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(pending_upgrade_plan IS NULL AND pending_upgrade_invoice_id IS NULL "
            "AND pending_upgrade_requested_at IS NULL) OR "
            "(pending_upgrade_plan IS NOT NULL "
            "AND pending_upgrade_requested_at IS NOT NULL)",
            name=op.f("ck_subscriptions_pending_upgrade_complete"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_subscriptions")),
        sa.UniqueConstraint("shop_id", name=op.f("uq_subscriptions_shop_id")),
    )
    op.create_index(
        "ix_subscription_pending_upgrade",
        "subscriptions",
        ["pending_upgrade_plan"],
        unique=False,
    )

    op.create_table(
        "subscription_invoices",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_number", sa.String(length=32), nullable=False),
        sa.Column("shop_id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=True),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("plan_code", sa.String(length=50), nullable=True),
        sa.Column("billing_cycle", sa.String(length=20), nullable=True),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(length=20), nullable=True),
        sa.Column("receipt_reference", sa.String(length=64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("manual_payment", _json(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "total_amount > 0",
            name=op.f("ck_subscription_invoices_positive_total_amount"),
        ),
        sa.ForeignKeyConstraint(
            ["subscription_id"],
            ["subscriptions.id"],
            name=op.f("fk_subscription_invoices_subscription_id_subscriptions"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_subscription_invoices")),
        sa.UniqueConstraint(
            "invoice_number", name=op.f("uq_subscription_invoices_invoice_number")
        ),
    )
    op.create_index(
        op.f("ix_subscription_invoices_shop_id"),
        "subscription_invoices",
        ["shop_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscription_invoices_subscription_id"),
        "subscription_invoices",
        ["subscription_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_subscription_invoices_receipt_reference"),
        "subscription_invoices",
        ["receipt_reference"],
        unique=False,
    )
    op.create_index(
        "ix_invoice_status_updated",
        "subscription_invoices",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index(
        "ix_invoice_status_paid_at",
        "subscription_invoices",
        ["status", "paid_at"],
        unique=False,
    )
    op.create_index(
        "ix_invoice_type_status",
        "subscription_invoices",
        ["type", "status"],
        unique=False,
    )

    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("invoice_id", sa.Uuid(), nullable=False),
        sa.Column("shop_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("receipt_reference", sa.String(length=64), nullable=True),
        sa.Column("approved_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["invoice_id"],
            ["subscription_invoices.id"],
            name=op.f("fk_payment_attempts_invoice_id_subscription_invoices"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_payment_attempts")),
    )
    op.create_index(
        op.f("ix_payment_attempts_invoice_id"),
        "payment_attempts",
        ["invoice_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_payment_attempts_shop_id"),
        "payment_attempts",
        ["shop_id"],
        unique=False,
    )
    op.create_index(
        "ix_payment_attempt_invoice_status",
        "payment_attempts",
        ["invoice_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_payment_attempt_status_created",
        "payment_attempts",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("category", sa.String(length=30), nullable=False),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("event_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column(
            "actor_email",
            StringEncryptedType(sa.String(255), _encryption_key, AesEngine, "pkcs5"),
            nullable=True,
        ),
        sa.Column("actor_type", sa.String(length=30), nullable=False),
        sa.Column("correlation_id", sa.String(length=36), nullable=True),
        sa.Column("resource_type", sa.String(length=50), nullable=False),
        sa.Column("resource_id", sa.String(length=64), nullable=False),
        sa.Column("shop_id", sa.Uuid(), nullable=True),
        sa.Column("details", _json(), nullable=True),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_audit_logs")),
    )
    op.create_index(
        op.f("ix_audit_logs_event_type"), "audit_logs", ["event_type"], unique=False
    )
    op.create_index(
        op.f("ix_audit_logs_event_timestamp"),
        "audit_logs",
        ["event_timestamp"],
        unique=False,
    )
    op.create_index(
        op.f("ix_audit_logs_actor_id"), "audit_logs", ["actor_id"], unique=False
    )
    op.create_index(
        op.f("ix_audit_logs_correlation_id"),
        "audit_logs",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        "ix_audit_shop_time", "audit_logs", ["shop_id", "event_timestamp"], unique=False
    )
    op.create_index(
        "ix_audit_resource", "audit_logs", ["resource_type", "resource_id"], unique=False
    )
    op.create_index(
        "ix_audit_type_time", "audit_logs", ["event_type", "event_timestamp"], unique=False
    )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("payment_attempts")
    op.drop_table("subscription_invoices")
    op.drop_table("subscriptions")
