"""payments ledger, payment logs and callback events

Revision ID: 3c1d8e5a7b20
Revises:
Create Date: 2026-10-12 09:14:22.418305

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3c1d8e5a7b20"
down_revision = None
branch_labels = None
depends_on = None


def _indexes(insp, table: str) -> set:
    try:
        return {i["name"] for i in insp.get_indexes(table)}
    except Exception:
        return set()


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    tables = set(insp.get_table_names())

    if "payments" not in tables:
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("booking_id", sa.Integer(), nullable=True),
            sa.Column("gateway_id", sa.String(length=64), nullable=False, server_default="toss_card"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="KRW"),
            sa.Column("order_name", sa.String(length=120), nullable=True),
            sa.Column("customer_name", sa.String(length=120), nullable=True),
            sa.Column("customer_email", sa.String(length=190), nullable=True),
            sa.Column("order_reference", sa.String(length=64), nullable=True),
            sa.Column("provider_payment_key", sa.String(length=200), nullable=True),
            sa.Column("provider_status", sa.String(length=32), nullable=True),
            sa.Column("transaction_key", sa.String(length=64), nullable=True),
            sa.Column("method", sa.String(length=32), nullable=True),
            sa.Column("approved_at", sa.String(length=40), nullable=True),
            sa.Column("card_company", sa.String(length=40), nullable=True),
            sa.Column("card_number", sa.String(length=32), nullable=True),
            sa.Column("card_approve_no", sa.String(length=16), nullable=True),
            sa.Column("card_type", sa.String(length=16), nullable=True),
            sa.Column("card_installment_months", sa.Integer(), nullable=True),
            sa.Column("receipt_url", sa.String(length=500), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("callback_lock", sa.String(length=64), nullable=True),
            sa.Column("callback_locked_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_reference", name="uq_payments_order_reference"),
        )
    idx = _indexes(insp, "payments")
    for name, cols in (
        ("ix_payments_booking_id", ["booking_id"]),
        ("ix_payments_gateway_id", ["gateway_id"]),
        ("ix_payments_status", ["status"]),
        ("ix_payments_created_at", ["created_at"]),
    ):
        if name not in idx:
            op.create_index(name, "payments", cols)

    if "payment_logs" not in tables:
        op.create_table(
            "payment_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("payment_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=16), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=16), nullable=False),
            sa.Column("note", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    if "ix_payment_logs_payment_id" not in _indexes(insp, "payment_logs"):
        op.create_index("ix_payment_logs_payment_id", "payment_logs", ["payment_id"])

    if "callback_events" not in tables:
        op.create_table(
            "callback_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("gateway_id", sa.String(length=64), nullable=False, server_default="toss_card"),
            sa.Column("kind", sa.String(length=16), nullable=True),
            sa.Column("order_reference", sa.String(length=64), nullable=True),
            sa.Column("payment_id", sa.Integer(), nullable=True),
            sa.Column("outcome", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("weak_failure", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("detail", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    idx = _indexes(insp, "callback_events")
    if "ix_callback_events_order_reference" not in idx:
        op.create_index("ix_callback_events_order_reference", "callback_events", ["order_reference"])
    if "ix_callback_events_payment_id" not in idx:
        op.create_index("ix_callback_events_payment_id", "callback_events", ["payment_id"])


def downgrade():
    op.drop_index("ix_callback_events_payment_id", table_name="callback_events")
    op.drop_index("ix_callback_events_order_reference", table_name="callback_events")
    op.drop_table("callback_events")
    op.drop_index("ix_payment_logs_payment_id", table_name="payment_logs")
    op.drop_table("payment_logs")
    op.drop_index("ix_payments_created_at", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_index("ix_payments_gateway_id", table_name="payments")
    op.drop_index("ix_payments_booking_id", table_name="payments")
    op.drop_table("payments")
