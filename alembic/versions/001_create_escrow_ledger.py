"""create escrow ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUSES = ("pending", "held", "released", "disputed", "refunded")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "escrow_transactions",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("subscription_id", sa.String(64), nullable=False),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("receiver_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("escrow_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("release_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dispute_reason", sa.Text(), nullable=True),
        sa.Column("payment_authorization_id", sa.String(128), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True, unique=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_escrow_transactions_subscription_id", "escrow_transactions", ["subscription_id"]
    )
    op.create_index("ix_escrow_transactions_payer_id", "escrow_transactions", ["payer_id"])
    op.create_index("ix_escrow_transactions_receiver_id", "escrow_transactions", ["receiver_id"])
    op.create_index(
        "ix_escrow_transactions_status_release_date",
        "escrow_transactions",
        ["status", "release_date"],
    )

    op.create_table(
        "dispute_cases",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("escrow_transactions.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("initiator_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("outcome", sa.String(20), nullable=True),
        sa.Column("resolution", sa.Text(), nullable=True),
        sa.Column("resolver_id", sa.String(64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_dispute_cases_transaction_id", "dispute_cases", ["transaction_id"])
    op.create_index("ix_dispute_cases_status", "dispute_cases", ["status"])

    summary = op.create_table(
        "escrow_summary",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, unique=True),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("total_fee", sa.Numeric(14, 2), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.bulk_insert(
        summary,
        [
            {"status": status, "transaction_count": 0, "total_amount": 0, "total_fee": 0}
            for status in STATUSES
        ],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("actor_id", sa.String(64), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_actor_id", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("escrow_summary")
    op.drop_index("ix_dispute_cases_status", table_name="dispute_cases")
    op.drop_index("ix_dispute_cases_transaction_id", table_name="dispute_cases")
    op.drop_table("dispute_cases")
    op.drop_index("ix_escrow_transactions_status_release_date", table_name="escrow_transactions")
    op.drop_index("ix_escrow_transactions_receiver_id", table_name="escrow_transactions")
    op.drop_index("ix_escrow_transactions_payer_id", table_name="escrow_transactions")
    op.drop_index("ix_escrow_transactions_subscription_id", table_name="escrow_transactions")
    op.drop_table("escrow_transactions")
