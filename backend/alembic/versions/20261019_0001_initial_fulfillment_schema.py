"""initial fulfillment schema

Revision ID: fulfillment_001
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = 'fulfillment_001'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), 'postgresql')


def _timestamps(updated=True):
    cols = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()))
    return cols


def upgrade():
    conn = op.get_bind()
    existing_tables = sa.inspect(conn).get_table_names()

    if 'job_queue' not in existing_tables:
        op.create_table(
            'job_queue',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('job_type', sa.String(50), nullable=False),
            sa.Column('payload', JSONType, nullable=False),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
            sa.Column('priority', sa.String(10), nullable=False, server_default='medium'),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
            sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )
        op.create_index('idx_job_queue_status_scheduled', 'job_queue', ['status', 'scheduled_at'])
        op.create_index('idx_job_queue_job_type', 'job_queue', ['job_type'])
        op.create_index('idx_job_queue_created_at', 'job_queue', ['created_at'])

    if 'products' not in existing_tables:
        op.create_table(
            'products',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=False),
            sa.Column('sku', sa.String(100), nullable=True),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('track_inventory', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('low_stock_threshold', sa.Integer(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('store_id', 'sku', name='uq_products_store_sku'),
        )
        op.create_index('ix_products_store_id', 'products', ['store_id'])

    if 'orders' not in existing_tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=False),
            sa.Column('order_number', sa.String(100), nullable=False),
            sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
            sa.Column('fulfillment_status', sa.String(20), nullable=True),
            sa.Column('customer_email', sa.String(255), nullable=True),
            sa.Column('customer_phone', sa.String(50), nullable=True),
            sa.Column('shipping_address', JSONType, nullable=True),
            sa.Column('billing_address', JSONType, nullable=True),
            sa.Column('shipping_method', sa.String(100), nullable=True),
            sa.Column('payment_method', sa.String(100), nullable=True),
            sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('tax_amount', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('shipping_amount', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('shipstation_order_id', sa.String(100), nullable=True),
            sa.Column('tracking_number', sa.String(100), nullable=True),
            sa.Column('tracking_url', sa.Text(), nullable=True),
            sa.Column('carrier', sa.String(50), nullable=True),
            sa.Column('carrier_code', sa.String(50), nullable=True),
            sa.Column('service_code', sa.String(100), nullable=True),
            sa.Column('package_code', sa.String(50), nullable=True),
            sa.Column('confirmation_delivery', sa.String(50), nullable=True),
            sa.Column('shipment_weight', sa.Float(), nullable=True),
            sa.Column('shipment_dimensions', JSONType, nullable=True),
            sa.Column('international_options', JSONType, nullable=True),
            sa.Column('advanced_options', JSONType, nullable=True),
            sa.Column('shipment_cost', sa.Integer(), nullable=True),
            sa.Column('label_url', sa.Text(), nullable=True),
            sa.Column('form_url', sa.Text(), nullable=True),
            sa.Column('shipment_data', JSONType, nullable=True),
            sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('estimated_delivery_date', sa.DateTime(timezone=True), nullable=True),
            sa.Column('actual_delivery_date', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )
        op.create_index('ix_orders_store_id', 'orders', ['store_id'])
        op.create_index('ix_orders_order_number', 'orders', ['order_number'])
        op.create_index('ix_orders_shipstation_order_id', 'orders', ['shipstation_order_id'])
        op.create_index('idx_orders_store_updated', 'orders', ['store_id', 'updated_at'])

    if 'order_items' not in existing_tables:
        op.create_table(
            'order_items',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
            sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id'), nullable=True),
            sa.Column('product_sku', sa.String(100), nullable=True),
            sa.Column('product_name', sa.String(255), nullable=False),
            sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('price', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('weight_oz', sa.Float(), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
        op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])

    if 'inventory' not in existing_tables:
        op.create_table(
            'inventory',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
            sa.Column('warehouse_id', sa.String(100), nullable=False),
            sa.Column('available_quantity', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('allocated_quantity', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('product_id', 'warehouse_id', name='uq_inventory_product_warehouse'),
        )

    if 'inventory_logs' not in existing_tables:
        op.create_table(
            'inventory_logs',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=True),
            sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id'), nullable=False),
            sa.Column('change_type', sa.String(20), nullable=False),
            sa.Column('quantity_change', sa.Integer(), nullable=False),
            sa.Column('quantity_after', sa.Integer(), nullable=False),
            sa.Column('reference_type', sa.String(50), nullable=True),
            sa.Column('reference_id', sa.String(100), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index('ix_inventory_logs_store_id', 'inventory_logs', ['store_id'])
        op.create_index('ix_inventory_logs_product_id', 'inventory_logs', ['product_id'])
        op.create_index('idx_inventory_logs_reference', 'inventory_logs', ['reference_type', 'reference_id'])

    if 'integration_logs' not in existing_tables:
        op.create_table(
            'integration_logs',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=True),
            sa.Column('integration_type', sa.String(50), nullable=False, server_default='shipstation'),
            sa.Column('operation', sa.String(50), nullable=False),
            sa.Column('status', sa.String(20), nullable=False),
            sa.Column('request_data', JSONType, nullable=True),
            sa.Column('response_data', JSONType, nullable=True),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('execution_time_ms', sa.Integer(), nullable=True),
            *_timestamps(updated=False),
        )
        op.create_index('ix_integration_logs_store_id', 'integration_logs', ['store_id'])
        op.create_index('idx_integration_logs_operation_created', 'integration_logs', ['operation', 'created_at'])

    if 'store_integrations' not in existing_tables:
        op.create_table(
            'store_integrations',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=False),
            sa.Column('integration_type', sa.String(50), nullable=False, server_default='shipstation'),
            sa.Column('api_key_encrypted', sa.Text(), nullable=True),
            sa.Column('api_secret_encrypted', sa.Text(), nullable=True),
            sa.Column('shipstation_username', sa.String(100), nullable=True, unique=True),
            sa.Column('shipstation_password_hash', sa.Text(), nullable=True),
            sa.Column('shipstation_auth_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('configuration', JSONType, nullable=True),
            *_timestamps(),
            sa.UniqueConstraint('store_id', 'integration_type', name='uq_store_integrations_store_type'),
        )
        op.create_index('ix_store_integrations_store_id', 'store_integrations', ['store_id'])

    if 'shipfroms' not in existing_tables:
        op.create_table(
            'shipfroms',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('store_id', sa.String(36), nullable=False),
            sa.Column('name', sa.String(255), nullable=False),
            sa.Column('company_name', sa.String(255), nullable=True),
            sa.Column('phone', sa.String(50), nullable=True),
            sa.Column('address_line1', sa.String(255), nullable=False),
            sa.Column('address_line2', sa.String(255), nullable=True),
            sa.Column('city_locality', sa.String(100), nullable=False),
            sa.Column('state_province', sa.String(100), nullable=False),
            sa.Column('postal_code', sa.String(20), nullable=False),
            sa.Column('country_code', sa.String(2), nullable=False, server_default='US'),
            sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(updated=False),
        )
        op.create_index('ix_shipfroms_store_id', 'shipfroms', ['store_id'])

    if 'shipment_notifications' not in existing_tables:
        op.create_table(
            'shipment_notifications',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
            sa.Column('notification_type', sa.String(20), nullable=False),
            sa.Column('tracking_number', sa.String(100), nullable=True),
            sa.Column('carrier', sa.String(50), nullable=True),
            sa.Column('tracking_url', sa.Text(), nullable=True),
            sa.Column('message', sa.Text(), nullable=True),
            sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('email_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(updated=False),
        )
        op.create_index('ix_shipment_notifications_order_id', 'shipment_notifications', ['order_id'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.String(36), primary_key=True),
            sa.Column('dedupe_key', sa.String(64), nullable=False, unique=True),
            sa.Column('resource_type', sa.String(50), nullable=True),
            sa.Column('carrier_order_id', sa.String(100), nullable=True),
            sa.Column('status', sa.String(20), nullable=False, server_default='received'),
            sa.Column('payload', JSONType, nullable=True),
            sa.Column('error', sa.Text(), nullable=True),
            sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(updated=False),
        )


def downgrade():
    for table in (
        'webhook_events',
        'shipment_notifications',
        'shipfroms',
        'store_integrations',
        'integration_logs',
        'inventory_logs',
        'inventory',
        'order_items',
        'orders',
        'products',
        'job_queue',
    ):
        op.drop_table(table)
