"""Initial schema: requests, slots, payments, distributions, reviews, ledger, audit.

Revision ID: 0001
Revises:
Create Date: 2026-10-17 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)
MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    op.create_table(
        "firms",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
    )
    op.create_table(
        "firm_members",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("firm_id", sa.String(64), sa.ForeignKey("firms.id"), nullable=False),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("specializations", JSON_TYPE, nullable=False),
        sa.Column("rating", sa.Float(), nullable=False),
        sa.Column("default_share_percent", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.UniqueConstraint("firm_id", "member_id", name="uq_firm_member"),
    )

    op.create_table(
        "service_requests",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("provider_type", sa.String(16), nullable=False),
        sa.Column("provider_id", sa.String(64), nullable=True),
        sa.Column("firm_id", sa.String(64), sa.ForeignKey("firms.id"), nullable=True),
        sa.Column("assignment_preference", sa.String(20), nullable=True),
        sa.Column("assignment_method", sa.String(20), nullable=True),
        sa.Column("service_type", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("accepted_at", TS, nullable=True),
        sa.Column("started_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.Column("updated_at", TS, nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'ACCEPTED', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')",
            name="ck_request_valid_status",
        ),
        sa.CheckConstraint(
            "provider_type IN ('INDIVIDUAL', 'FIRM')", name="ck_request_provider_type"
        ),
    )
    op.create_index("idx_request_client_status", "service_requests", ["client_id", "status"])
    op.create_index("idx_request_provider_status", "service_requests", ["provider_id", "status"])
    op.create_index("idx_request_firm", "service_requests", ["firm_id"])

    op.create_table(
        "availability_slots",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("provider_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("is_booked", sa.Boolean(), nullable=False),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("service_requests.id"), nullable=True),
        sa.Column("booked_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.CheckConstraint("end_time > start_time", name="ck_slot_time_order"),
    )
    op.create_index("idx_slot_provider_date", "availability_slots", ["provider_id", "date"])

    op.create_table(
        "payment_distributions",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("firm_id", sa.String(64), sa.ForeignKey("firms.id"), nullable=False),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("total_amount", MONEY, nullable=False),
        sa.Column("distributable_amount", MONEY, nullable=False),
        sa.Column("is_approved", sa.Boolean(), nullable=False),
        sa.Column("approved_at", TS, nullable=True),
        sa.Column("is_distributed", sa.Boolean(), nullable=False),
        sa.Column("distributed_at", TS, nullable=True),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("idx_distribution_request", "payment_distributions", ["request_id"])

    op.create_table(
        "distribution_shares",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "distribution_id",
            sa.Uuid(),
            sa.ForeignKey("payment_distributions.id"),
            nullable=False,
        ),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("percentage", sa.Float(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("approved_at", TS, nullable=True),
        sa.Column("credited_at", TS, nullable=True),
        sa.UniqueConstraint("distribution_id", "member_id", name="uq_share_member"),
        sa.CheckConstraint("percentage > 0 AND percentage <= 100", name="ck_share_percentage"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("request_id", sa.Uuid(), sa.ForeignKey("service_requests.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("platform_fee_percent", sa.Numeric(5, 2), nullable=False),
        sa.Column("platform_fee", MONEY, nullable=False),
        sa.Column("provider_amount", MONEY, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("idempotency_key", sa.String(80), nullable=False, unique=True),
        sa.Column("order_claimed_until", TS, nullable=True),
        sa.Column("gateway_order_ref", sa.String(64), nullable=True),
        sa.Column("gateway_payment_ref", sa.String(64), nullable=True),
        sa.Column("gateway_signature_verified", sa.Boolean(), nullable=False),
        sa.Column("gateway_refund_ref", sa.String(64), nullable=True),
        sa.Column("escrow_held_at", TS, nullable=True),
        sa.Column("auto_release_at", TS, nullable=True),
        sa.Column("released_at", TS, nullable=True),
        sa.Column("release_trigger", sa.String(16), nullable=True),
        sa.Column("distributed_at", TS, nullable=True),
        sa.Column("refund_requested_at", TS, nullable=True),
        sa.Column("refunded_at", TS, nullable=True),
        sa.Column("failed_at", TS, nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column(
            "distribution_id",
            sa.Uuid(),
            sa.ForeignKey("payment_distributions.id"),
            nullable=True,
        ),
        sa.Column("created_at", TS, nullable=False),
        sa.Column("updated_at", TS, nullable=False),
        sa.CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'ESCROW_HELD', 'RELEASED', "
            "'DISTRIBUTED', 'FAILED', 'REFUND_PENDING', 'REFUNDED')",
            name="ck_payment_valid_status",
        ),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
    )
    op.create_index(
        "uq_payment_active_request",
        "payments",
        ["request_id"],
        unique=True,
        postgresql_where=sa.text("status NOT IN ('FAILED', 'REFUNDED')"),
        sqlite_where=sa.text("status NOT IN ('FAILED', 'REFUNDED')"),
    )
    op.create_index("idx_payment_release_due", "payments", ["status", "auto_release_at"])

    op.create_table(
        "reviews",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "request_id",
            sa.Uuid(),
            sa.ForeignKey("service_requests.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("created_at", TS, nullable=False),
        sa.CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("payment_id", sa.Uuid(), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("beneficiary_id", sa.String(64), nullable=False),
        sa.Column("entry_type", sa.String(32), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("reference", sa.String(100), nullable=False, unique=True),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("idx_ledger_beneficiary", "ledger_entries", ["beneficiary_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("entity_type", sa.String(24), nullable=False),
        sa.Column("entity_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("old_status", sa.String(20), nullable=True),
        sa.Column("new_status", sa.String(20), nullable=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=True),
        sa.Column("created_at", TS, nullable=False),
    )
    op.create_index("idx_audit_entity", "audit_events", ["entity_type", "entity_id"])
    op.create_index("idx_audit_event_type", "audit_events", ["event_type"])


def downgrade() -> None:
    for table in (
        "audit_events",
        "ledger_entries",
        "reviews",
        "payments",
        "distribution_shares",
        "payment_distributions",
        "availability_slots",
        "service_requests",
        "firm_members",
        "firms",
    ):
        op.drop_table(table)
