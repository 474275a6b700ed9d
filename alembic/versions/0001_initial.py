"""initial payment reconciliation schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tickets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("confirmation_code", sa.String(length=20), nullable=False),
        sa.Column("fare", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=12), nullable=False, server_default="UNPAID"),
        sa.Column("payment_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gateway_txn_id", sa.String(length=64), nullable=True),
        sa.Column("passenger_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("passenger_email", sa.String(length=320), nullable=False, server_default=""),
        sa.Column("flight_code", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("departure_city", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("arrival_city", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seat_number", sa.String(length=8), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tickets_confirmation_code", "tickets", ["confirmation_code"])
    op.create_index("ix_tickets_status", "tickets", ["status"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("confirmation_code", sa.String(length=20), nullable=False),
        sa.Column("txn_ref", sa.String(length=100), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False, server_default="vnpay"),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("ticket_ids_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("response_code", sa.String(length=4), nullable=False, server_default=""),
        sa.Column("transaction_no", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("bank_code", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("create_date", sa.String(length=14), nullable=False),
        sa.Column("pay_date", sa.String(length=14), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payments_confirmation_code", "payments", ["confirmation_code"])
    op.create_index("ix_payments_txn_ref", "payments", ["txn_ref"], unique=True)
    op.create_index("ix_payments_transaction_no", "payments", ["transaction_no"])

    op.create_table(
        "refunds",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("confirmation_code", sa.String(length=20), nullable=False),
        sa.Column("payment_id", sa.String(length=36), nullable=False),
        sa.Column("operator", sa.String(length=320), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("full_refund", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("tickets_cancelled", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="requested"),
        sa.Column("response_code", sa.String(length=4), nullable=False, server_default=""),
        sa.Column("gateway_message", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_refunds_confirmation_code", "refunds", ["confirmation_code"])
    op.create_index("ix_refunds_payment_id", "refunds", ["payment_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor", sa.String(length=320), nullable=False),
        sa.Column("action", sa.String(length=80), nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("entity_id", sa.String(length=100), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_actor", "audit_logs", ["actor"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_entity_type", "audit_logs", ["entity_type"])
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])

    op.create_table(
        "email_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("to_email", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("kind", sa.String(length=40), nullable=False, server_default="payment_notification"),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confirmation_code", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_email_logs_to_email", "email_logs", ["to_email"])
    op.create_index("ix_email_logs_confirmation_code", "email_logs", ["confirmation_code"])


def downgrade() -> None:
    op.drop_table("email_logs")
    op.drop_table("audit_logs")
    op.drop_table("refunds")
    op.drop_table("payments")
    op.drop_table("tickets")
