"""initial p&l schema

Revision ID: 202601050900
Revises:
Create Date: 2026-01-05 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202601050900"
down_revision = None
branch_labels = None
depends_on = None

direction_enum = sa.Enum("inflow", "outflow", name="direction")
policy_enum = sa.Enum("auto", "manual", name="managementpolicy")
source_enum = sa.Enum("bank", "processor", name="transactionsourcekind")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "pnl_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("management_policy", policy_enum, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("direction", "name", name="uq_category_direction_name"),
    )

    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("number", sa.String(length=64), nullable=False, unique=True),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("exchange_rate_micros", sa.Integer(), nullable=True),
        sa.Column("converted_total_cents", sa.Integer(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "bank_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("operation_date", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payer_name", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("pnl_categories.id"),
            nullable=True,
        ),
        sa.Column(
            "manual_status",
            sa.Enum("pending", "approved", "rejected", name="manualstatus"),
            nullable=False,
        ),
        sa.Column(
            "match_status",
            sa.Enum("unmatched", "matched", name="matchstatus"),
            nullable=False,
        ),
        sa.Column(
            "settlement_id", sa.Integer(), sa.ForeignKey("settlements.id"), nullable=True
        ),
        sa.Column("operation_hash", sa.String(length=64), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_bank_payments_direction_date",
        "bank_payments",
        ["direction", "operation_date"],
    )
    op.create_index("ix_bank_payments_category", "bank_payments", ["category_id"])
    op.create_index("ix_bank_payments_hash", "bank_payments", ["operation_hash"])

    op.create_table(
        "processor_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(length=255), nullable=False, unique=True),
        sa.Column("paid_at", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("converted_amount_cents", sa.Integer(), nullable=True),
        sa.Column(
            "payment_status",
            sa.Enum("unpaid", "paid", "refunded", name="processorpaymentstatus"),
            nullable=False,
        ),
        sa.Column("customer_name", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("pnl_categories.id"),
            nullable=True,
        ),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_processor_payments_direction_paid",
        "processor_payments",
        ["direction", "paid_at"],
    )
    op.create_index(
        "ix_processor_payments_category", "processor_payments", ["category_id"]
    )

    op.create_table(
        "payment_refunds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source", source_enum, nullable=False),
        sa.Column("payment_ref", sa.String(length=255), nullable=False),
        sa.Column(
            "reason",
            sa.Enum("deal_lost", "processor_refund", name="refundreason"),
            nullable=False,
        ),
        sa.Column("refunded_at", sa.DateTime(), nullable=False),
        *_timestamps(),
    )
    op.create_index(
        "ix_payment_refunds_source_at", "payment_refunds", ["source", "refunded_at"]
    )

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("base", sa.String(length=3), nullable=False),
        sa.Column("quote", sa.String(length=3), nullable=False),
        sa.Column("rate_micros", sa.Integer(), nullable=False),
        sa.Column("effective_date", sa.Date(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=True),
        sa.Column("fetched_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "base", "quote", "effective_date", name="uq_exchange_rate_pair_date"
        ),
        sa.CheckConstraint("rate_micros > 0", name="ck_exchange_rate_positive"),
    )

    op.create_table(
        "pnl_manual_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("pnl_categories.id"),
            nullable=False,
        ),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_breakdown", sa.JSON(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("period_key", sa.String(length=64), nullable=True, unique=True),
        *_timestamps(),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="ck_manual_entry_month"),
        sa.CheckConstraint(
            "direction = 'outflow' OR amount_cents >= 0",
            name="ck_manual_entry_revenue_non_negative",
        ),
    )
    op.create_index(
        "ix_manual_entries_category_year",
        "pnl_manual_entries",
        ["category_id", "year", "month"],
    )


def downgrade() -> None:
    op.drop_index("ix_manual_entries_category_year", table_name="pnl_manual_entries")
    op.drop_table("pnl_manual_entries")
    op.drop_table("exchange_rates")
    op.drop_index("ix_payment_refunds_source_at", table_name="payment_refunds")
    op.drop_table("payment_refunds")
    op.drop_index("ix_processor_payments_category", table_name="processor_payments")
    op.drop_index(
        "ix_processor_payments_direction_paid", table_name="processor_payments"
    )
    op.drop_table("processor_payments")
    op.drop_index("ix_bank_payments_hash", table_name="bank_payments")
    op.drop_index("ix_bank_payments_category", table_name="bank_payments")
    op.drop_index("ix_bank_payments_direction_date", table_name="bank_payments")
    op.drop_table("bank_payments")
    op.drop_table("settlements")
    op.drop_table("pnl_categories")
