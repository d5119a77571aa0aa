"""orders, order_transitions and webhook_events

Revision ID: 3c1d2e4f5a6b
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision = "3c1d2e4f5a6b"
down_revision = None
branch_labels = None
depends_on = None


def _tables():
    return set(inspect(op.get_bind()).get_table_names())


def upgrade():
    tables = _tables()

    if "orders" not in tables:
        op.create_table(
            "orders",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("public_id", sa.String(length=40), nullable=False),
            sa.Column("order_reference", sa.String(length=80), nullable=False),
            sa.Column("customer_email", sa.String(length=255), nullable=False),
            sa.Column("customer_name", sa.String(length=160), nullable=False, server_default=""),
            sa.Column("delivery_address", sa.String(length=255), nullable=True),
            sa.Column("amount", sa.Numeric(14, 2), nullable=False),
            sa.Column("items_json", sa.Text(), nullable=True),
            sa.Column("payment_method", sa.String(length=40), nullable=False),
            sa.Column("payment_status", sa.String(length=24), nullable=False, server_default="pending"),
            sa.Column("payment_reference", sa.String(length=128), nullable=True),
            sa.Column("payment_details_json", sa.Text(), nullable=True),
            sa.Column("vendor_payouts_json", sa.Text(), nullable=True),
            sa.Column("virtual_account_number", sa.String(length=32), nullable=True),
            sa.Column("rider_id", sa.String(length=64), nullable=True),
            sa.Column("terminal_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("public_id", name="uq_orders_public_id"),
        )
        op.create_index("ix_orders_order_reference", "orders", ["order_reference"], unique=True)
        op.create_index("ix_orders_customer_email", "orders", ["customer_email"])
        op.create_index("ix_orders_payment_method", "orders", ["payment_method"])
        op.create_index("ix_orders_payment_status", "orders", ["payment_status"])
        op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])
        op.create_index("ix_orders_virtual_account_number", "orders", ["virtual_account_number"])

    if "order_transitions" not in tables:
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_reference", sa.String(length=80), nullable=False),
            sa.Column("from_status", sa.String(length=24), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=24), nullable=False),
            sa.Column("source", sa.String(length=64), nullable=False, server_default="system"),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_order_transitions_order_reference", "order_transitions", ["order_reference"])

    if "webhook_events" not in tables:
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("provider", sa.String(length=32), nullable=False, server_default="paystack"),
            sa.Column("event_id", sa.String(length=128), nullable=False),
            sa.Column("event_type", sa.String(length=64), nullable=True),
            sa.Column("reference", sa.String(length=128), nullable=True),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="received"),
            sa.Column("outcome_code", sa.String(length=32), nullable=True),
            sa.Column("order_reference", sa.String(length=80), nullable=True),
            sa.Column("processed_at", sa.DateTime(), nullable=True),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("payload_hash", sa.String(length=128), nullable=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("event_id", name="uq_webhook_events_event_id"),
        )


def downgrade():
    tables = _tables()
    if "webhook_events" in tables:
        op.drop_table("webhook_events")
    if "order_transitions" in tables:
        with op.batch_alter_table("order_transitions") as batch_op:
            batch_op.drop_index("ix_order_transitions_order_reference")
        op.drop_table("order_transitions")
    if "orders" in tables:
        with op.batch_alter_table("orders") as batch_op:
            for name in (
                "ix_orders_virtual_account_number",
                "ix_orders_payment_reference",
                "ix_orders_payment_status",
                "ix_orders_payment_method",
                "ix_orders_customer_email",
                "ix_orders_order_reference",
            ):
                batch_op.drop_index(name)
        op.drop_table("orders")
