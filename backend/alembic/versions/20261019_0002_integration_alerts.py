"""integration alerts

Revision ID: fulfillment_002
Revises: fulfillment_001
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = 'fulfillment_002'
down_revision = 'fulfillment_001'
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(JSONB(), 'postgresql')


def upgrade():
    conn = op.get_bind()
    if 'integration_alerts' in sa.inspect(conn).get_table_names():
        return

    op.create_table(
        'integration_alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('store_id', sa.String(36), nullable=True),
        sa.Column('integration_type', sa.String(50), nullable=False, server_default='shipstation'),
        sa.Column('operation', sa.String(50), nullable=False),
        sa.Column('level', sa.String(20), nullable=False),
        sa.Column('alert_type', sa.String(50), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', JSONType, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_integration_alerts_store_id', 'integration_alerts', ['store_id'])
    op.create_index('idx_integration_alerts_created', 'integration_alerts', ['created_at'])


def downgrade():
    op.drop_table('integration_alerts')
