"""Create payment ledger tables

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19

Students, subscription packages, student subscriptions, payments,
payment checkouts and per-month payment records.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PAYMENT_SOURCES = ("chapa", "stripe", "manual")
PAYMENT_INTENTS = ("deposit", "tuition", "subscription")


def upgrade() -> None:
    op.create_table(
        "students",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("classfee", sa.Numeric(12, 2), nullable=True),
        sa.Column("classfee_currency", sa.String(3), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "subscription_packages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("duration", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "student_subscriptions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("package_id", sa.Integer(), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["package_id"], ["subscription_packages.id"], ondelete="RESTRICT"),
    )
    op.create_index("ix_student_subscriptions_student_id", "student_subscriptions", ["student_id"])
    op.create_index(
        "ix_student_subscriptions_stripe_subscription_id",
        "student_subscriptions",
        ["stripe_subscription_id"],
        unique=True,
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("student_name", sa.String(255), nullable=False),
        sa.Column("payment_date", sa.DateTime(), nullable=False),
        sa.Column("transaction_id", sa.String(255), nullable=False),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("Approved", "Rejected", "pending", name="payment_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("source", sa.Enum(*PAYMENT_SOURCES, name="payment_source", create_constraint=True), nullable=False),
        sa.Column("intent", sa.Enum(*PAYMENT_INTENTS, name="payment_intent", create_constraint=True), nullable=False),
        sa.Column("provider_reference", sa.String(255), nullable=True),
        sa.Column("provider_status", sa.String(50), nullable=True),
        sa.Column("provider_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("provider_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["subscription_id"], ["student_subscriptions.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_payments_student_id", "payments", ["student_id"])
    op.create_index("ix_payments_subscription_id", "payments", ["subscription_id"])
    op.create_index("ix_payments_payment_date", "payments", ["payment_date"])
    op.create_index("ix_payments_transaction_id", "payments", ["transaction_id"], unique=True)
    op.create_index("ix_payments_status", "payments", ["status"])

    op.create_table(
        "payment_checkouts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tx_ref", sa.String(255), nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.Column("provider", sa.Enum(*PAYMENT_SOURCES, name="checkout_provider", create_constraint=True), nullable=False),
        sa.Column("intent", sa.Enum(*PAYMENT_INTENTS, name="checkout_intent", create_constraint=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("months", sa.JSON(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "failed", name="checkout_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("checkout_url", sa.String(1000), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_payment_checkouts_tx_ref", "payment_checkouts", ["tx_ref"], unique=True)
    op.create_index("ix_payment_checkouts_student_id", "payment_checkouts", ["student_id"])
    op.create_index("ix_payment_checkouts_payment_id", "payment_checkouts", ["payment_id"])
    op.create_index("ix_payment_checkouts_status", "payment_checkouts", ["status"])

    op.create_table(
        "month_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("student_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.String(7), nullable=False),
        sa.Column("paid_amount", sa.Integer(), nullable=False),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("payment_type", sa.String(20), nullable=True),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("is_free_month", sa.Boolean(), nullable=True),
        sa.Column("source", sa.String(20), nullable=True),
        sa.Column("provider_reference", sa.String(255), nullable=True),
        sa.Column("provider_status", sa.String(50), nullable=True),
        sa.Column("provider_payload", sa.JSON(), nullable=True),
        sa.Column("payment_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["student_id"], ["students.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("student_id", "month", name="uq_month_records_student_month"),
    )
    op.create_index("ix_month_records_student_id", "month_records", ["student_id"])
    op.create_index("ix_month_records_month", "month_records", ["month"])
    op.create_index("ix_month_records_payment_id", "month_records", ["payment_id"])


def downgrade() -> None:
    op.drop_index("ix_month_records_payment_id", table_name="month_records")
    op.drop_index("ix_month_records_month", table_name="month_records")
    op.drop_index("ix_month_records_student_id", table_name="month_records")
    op.drop_table("month_records")

    op.drop_index("ix_payment_checkouts_status", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_payment_id", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_student_id", table_name="payment_checkouts")
    op.drop_index("ix_payment_checkouts_tx_ref", table_name="payment_checkouts")
    op.drop_table("payment_checkouts")

    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_transaction_id", table_name="payments")
    op.drop_index("ix_payments_payment_date", table_name="payments")
    op.drop_index("ix_payments_subscription_id", table_name="payments")
    op.drop_index("ix_payments_student_id", table_name="payments")
    op.drop_table("payments")

    op.drop_index("ix_student_subscriptions_stripe_subscription_id", table_name="student_subscriptions")
    op.drop_index("ix_student_subscriptions_student_id", table_name="student_subscriptions")
    op.drop_table("student_subscriptions")

    op.drop_table("subscription_packages")
    op.drop_table("students")
