"""initial_ledger_schema

Revision ID: 3f6a9c21d7b4
Revises:
Create Date: 2026-10-18

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3f6a9c21d7b4"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # =========================================================
    # work_items
    # =========================================================
    op.create_table(
        "work_items",
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("poster_id", sa.String(), nullable=False),
        sa.Column("doer_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("status_before_dispute", sa.String(32), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(64), nullable=False, server_default="general"),
        sa.Column("priority", sa.String(32), nullable=False, server_default="normal"),
        sa.Column("budget", sa.String(64), nullable=False),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_bid_id", sa.String(), nullable=True),
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
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint("work_item_id"),
    )
    op.create_index("ix_work_items_poster_id", "work_items", ["poster_id"])
    op.create_index("ix_work_items_doer_id", "work_items", ["doer_id"])
    op.create_index("ix_work_items_status", "work_items", ["status"])

    # =========================================================
    # bids
    # =========================================================
    op.create_table(
        "bids",
        sa.Column("bid_id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("doer_id", sa.String(), nullable=False),
        sa.Column("amount", sa.String(64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(32), nullable=False),
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
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("bid_id"),
    )
    op.create_index("ix_bids_work_item_id", "bids", ["work_item_id"])
    op.create_index("ix_bids_doer_id", "bids", ["doer_id"])
    op.create_index("ix_bids_status", "bids", ["status"])
    op.create_index("uq_bids_work_item_doer", "bids", ["work_item_id", "doer_id"], unique=True)

    # =========================================================
    # payments
    # =========================================================
    op.create_table(
        "payments",
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("bid_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("payee_id", sa.String(), nullable=False),
        sa.Column("amount", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(16), nullable=False, server_default="NPR"),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("gateway_reference", sa.String(), nullable=True),
        sa.Column("capture_token", sa.String(), nullable=True),
        sa.Column("gateway_ref_id", sa.String(), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("settlement_pending", sa.Boolean(), nullable=False, server_default="false"),
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
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("payment_id"),
    )
    op.create_index("ix_payments_work_item_id", "payments", ["work_item_id"])
    op.create_index("ix_payments_payer_id", "payments", ["payer_id"])
    op.create_index("ix_payments_payee_id", "payments", ["payee_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_settlement_pending", "payments", ["settlement_pending"])
    op.create_index(
        "uq_payments_gateway_reference", "payments", ["gateway_reference"], unique=True
    )
    # At most one payment per work item that has not been voided
    op.create_index(
        "uq_payments_active_work_item",
        "payments",
        ["work_item_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
    )

    # =========================================================
    # disputes
    # =========================================================
    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.String(), nullable=False),
        sa.Column("work_item_id", sa.String(), nullable=False),
        sa.Column("payment_id", sa.String(), nullable=False),
        sa.Column("initiator_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("evidence", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("outcome", sa.String(32), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("resolved_by", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
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
        sa.Column("review_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("dispute_id"),
    )
    op.create_index("ix_disputes_work_item_id", "disputes", ["work_item_id"])
    op.create_index("ix_disputes_initiator_id", "disputes", ["initiator_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])
    op.create_index(
        "uq_disputes_open_work_item",
        "disputes",
        ["work_item_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'closed'"),
    )

    # =========================================================
    # dispute_followups
    # =========================================================
    op.create_table(
        "dispute_followups",
        sa.Column("followup_id", sa.String(), nullable=False),
        sa.Column("dispute_id", sa.String(), nullable=False),
        sa.Column("sender_id", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("evidence", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("followup_id"),
    )
    op.create_index("ix_dispute_followups_dispute_id", "dispute_followups", ["dispute_id"])
    op.create_index(
        "uq_dispute_followups_sequence",
        "dispute_followups",
        ["dispute_id", "sequence"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table("dispute_followups")
    op.drop_table("disputes")
    op.drop_table("payments")
    op.drop_table("bids")
    op.drop_table("work_items")
