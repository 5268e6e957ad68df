"""picking core: orders, batches, bulk splits, chunks, carts, cells + audit/outbox

Revision ID: 0001_picking_core
Revises:
Create Date: 2026-10-19T09:00:00.000000Z
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_picking_core"
down_revision = None
branch_labels = None
depends_on = None


def _base_columns():
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        "pick_cart",
        *_base_columns(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("color", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="AVAILABLE"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_pick_cart_status", "pick_cart", ["status"])

    op.create_table(
        "pick_cell",
        *_base_columns(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        "pick_product_sku",
        *_base_columns(),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=True),
        sa.Column("bin_location", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_pick_product_sku_sku", "pick_product_sku", ["sku"], unique=True)

    op.create_table(
        "pick_batch",
        *_base_columns(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("type", sa.String(length=24), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="DRAFT"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_personalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_oversized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_pick_batch_type", "pick_batch", ["type"])
    op.create_index("ix_pick_batch_status", "pick_batch", ["status"])

    op.create_table(
        "pick_batch_cell",
        *_base_columns(),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("pick_batch.id"), nullable=False),
        sa.Column("cell_id", sa.String(length=36), sa.ForeignKey("pick_cell.id"), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("batch_id", "cell_id", name="uq_pick_batch_cell"),
    )
    op.create_index("ix_pick_batch_cell_batch_id", "pick_batch_cell", ["batch_id"])
    op.create_index("ix_pick_batch_cell_cell_id", "pick_batch_cell", ["cell_id"])

    op.create_table(
        "pick_bulk_batch",
        *_base_columns(),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("pick_batch.id"), nullable=False),
        sa.Column("group_signature", sa.String(length=1024), nullable=False),
        sa.Column("split_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_splits", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sku_layout", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="PENDING"),
    )
    op.create_index("ix_pick_bulk_batch_batch_id", "pick_bulk_batch", ["batch_id"])
    op.create_index("ix_pick_bulk_batch_group_signature", "pick_bulk_batch", ["group_signature"])
    op.create_index("ix_pick_bulk_batch_status", "pick_bulk_batch", ["status"])

    op.create_table(
        "pick_chunk",
        *_base_columns(),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("pick_batch.id"), nullable=False),
        sa.Column("chunk_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="PICKING"),
        sa.Column("picking_mode", sa.String(length=24), nullable=False),
        sa.Column("is_personalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cart_id", sa.String(length=36), sa.ForeignKey("pick_cart.id"), nullable=False),
        sa.Column("picker_name", sa.String(length=128), nullable=False),
        sa.Column("orders_in_chunk", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picking_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("picking_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pick_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("cancel_reason", sa.String(length=256), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("engraver_name", sa.String(length=128), nullable=True),
        sa.Column("engraving_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("engraving_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("engraving_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("engraving_progress", sa.JSON(), nullable=True),
        sa.Column("items_engraved", sa.Integer(), nullable=False, server_default="0"),
        sa.UniqueConstraint("batch_id", "chunk_number", name="uq_pick_chunk_number"),
    )
    op.create_index("ix_pick_chunk_batch_id", "pick_chunk", ["batch_id"])
    op.create_index("ix_pick_chunk_status", "pick_chunk", ["status"])
    op.create_index("ix_pick_chunk_cart_id", "pick_chunk", ["cart_id"])
    op.create_index("ix_pick_chunk_cart_status", "pick_chunk", ["cart_id", "status"])

    op.create_table(
        "pick_chunk_bulk_batch",
        *_base_columns(),
        sa.Column("chunk_id", sa.String(length=36), sa.ForeignKey("pick_chunk.id"), nullable=False),
        sa.Column("bulk_batch_id", sa.String(length=36), sa.ForeignKey("pick_bulk_batch.id"), nullable=False),
        sa.Column("shelf_number", sa.Integer(), nullable=False),
    )
    op.create_index("ix_pick_chunk_bulk_batch_chunk_id", "pick_chunk_bulk_batch", ["chunk_id"])
    op.create_index("ix_pick_chunk_bulk_batch_bulk_batch_id", "pick_chunk_bulk_batch", ["bulk_batch_id"])

    op.create_table(
        "pick_order",
        *_base_columns(),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=24), nullable=False, server_default="AWAITING_SHIPMENT"),
        sa.Column("customer_name", sa.String(length=256), nullable=True),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("raw_payload", sa.JSON(), nullable=False),
        sa.Column("is_personalized", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("classification", sa.String(length=24), nullable=True),
        sa.Column("signature", sa.String(length=1024), nullable=True),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("pick_batch.id"), nullable=True),
        sa.Column("bulk_batch_id", sa.String(length=36), sa.ForeignKey("pick_bulk_batch.id"), nullable=True),
        sa.Column("chunk_id", sa.String(length=36), sa.ForeignKey("pick_chunk.id"), nullable=True),
        sa.Column("bin_number", sa.Integer(), nullable=True),
    )
    op.create_index("ix_pick_order_order_number", "pick_order", ["order_number"], unique=True)
    op.create_index("ix_pick_order_status", "pick_order", ["status"])
    op.create_index("ix_pick_order_classification", "pick_order", ["classification"])
    op.create_index("ix_pick_order_signature", "pick_order", ["signature"])
    op.create_index("ix_pick_order_batch_id", "pick_order", ["batch_id"])
    op.create_index("ix_pick_order_bulk_batch_id", "pick_order", ["bulk_batch_id"])
    op.create_index("ix_pick_order_chunk_id", "pick_order", ["chunk_id"])
    op.create_index("ix_pick_order_pool", "pick_order", ["status", "batch_id", "chunk_id"])

    op.create_table(
        "sys_app_setting",
        *_base_columns(),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", sa.JSON(), nullable=False),
    )
    op.create_index("ix_sys_app_setting_key", "sys_app_setting", ["key"], unique=True)

    op.create_table(
        "sys_audit_log",
        *_base_columns(),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index("ix_sys_audit_log_actor", "sys_audit_log", ["actor"])
    op.create_index("ix_sys_audit_log_action", "sys_audit_log", ["action"])
    op.create_index("ix_sys_audit_log_entity_type", "sys_audit_log", ["entity_type"])
    op.create_index("ix_sys_audit_log_entity_id", "sys_audit_log", ["entity_id"])
    op.create_index("ix_audit_entity_time", "sys_audit_log", ["entity_type", "entity_id", "created_at"])

    op.create_table(
        "outbox_event",
        *_base_columns(),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("abandoned", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_outbox_event_topic", "outbox_event", ["topic"])
    op.create_index("ix_outbox_topic_created", "outbox_event", ["topic", "created_at"])
    op.create_index("ix_outbox_delivery", "outbox_event", ["delivered", "abandoned", "available_at"])

    op.create_table(
        "event_subscription",
        *_base_columns(),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("topic_pattern", sa.String(length=128), nullable=False),
        sa.Column("target_url", sa.Text(), nullable=False),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("timeout_seconds", sa.Float(), nullable=False, server_default="10"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_event_subscription_topic_pattern", "event_subscription", ["topic_pattern"])
    op.create_index("ix_event_sub_active", "event_subscription", ["is_active", "topic_pattern"])


def downgrade():
    op.drop_table("event_subscription")
    op.drop_table("outbox_event")
    op.drop_table("sys_audit_log")
    op.drop_table("sys_app_setting")
    op.drop_table("pick_order")
    op.drop_table("pick_chunk_bulk_batch")
    op.drop_table("pick_chunk")
    op.drop_table("pick_bulk_batch")
    op.drop_table("pick_batch_cell")
    op.drop_table("pick_batch")
    op.drop_table("pick_product_sku")
    op.drop_table("pick_cell")
    op.drop_table("pick_cart")
