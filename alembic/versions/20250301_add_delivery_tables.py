"""Add delivery agencies, shipments and status logs

Revision ID: delivery_tables_001
Revises:
Create Date: 2025-03-01

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision = 'delivery_tables_001'
down_revision = None
branch_labels = None
depends_on = None


ORDER_STATUSES = (
    'PENDING', 'ATTEMPTED', 'CONFIRMED', 'UPLOADED', 'DEPOSIT', 'IN_TRANSIT',
    'DELIVERED', 'RETURNED', 'REJECTED', 'ABANDONED', 'DELETED', 'ARCHIVED',
)
DELIVERY_STATUSES = ('UPLOADED', 'DEPOSIT', 'IN_TRANSIT', 'DELIVERED', 'RETURNED')
CREDENTIALS_TYPES = ('username_password', 'email_password', 'api_key')
STATUS_SOURCES = ('api', 'webhook', 'manual')


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    # orders/activities usually already exist in the CRM database.
    if 'orders' not in tables:
        op.create_table(
            'orders',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('customer_name', sa.Text(), nullable=False),
            sa.Column('customer_phone', sa.String(length=32), nullable=False),
            sa.Column('customer_phone2', sa.String(length=32), nullable=True),
            sa.Column('customer_address', sa.Text(), nullable=True),
            sa.Column('customer_city', sa.Text(), nullable=True),
            sa.Column('customer_governorate', sa.Text(), nullable=True),
            sa.Column('product_summary', sa.Text(), nullable=True),
            sa.Column('total_price', sa.Numeric(12, 3), nullable=False, server_default='0'),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('status', sa.Enum(*ORDER_STATUSES, name='orderstatus'), nullable=False, server_default='PENDING'),
            sa.Column('created_by', sa.String(length=36), nullable=True),
            sa.Column('confirmed_by_id', sa.String(length=36), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        )
        op.create_index('ix_orders_status', 'orders', ['status'])

    if 'activities' not in tables:
        op.create_table(
            'activities',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('type', sa.String(length=64), nullable=False),
            sa.Column('description', sa.Text(), nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=True),
            sa.Column('order_id', sa.String(length=36), nullable=True),
            sa.Column('metadata', _json(), nullable=True),
            sa.Column('ip_address', sa.String(length=64), nullable=True),
            sa.Column('user_agent', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_activities_type', 'activities', ['type'])
        op.create_index('ix_activities_user_id', 'activities', ['user_id'])
        op.create_index('ix_activities_order_id', 'activities', ['order_id'])
        op.create_index('ix_activities_created_at', 'activities', ['created_at'])

    if 'delivery_agencies' not in tables:
        op.create_table(
            'delivery_agencies',
            sa.Column('id', sa.String(length=50), primary_key=True),
            sa.Column('name', sa.String(length=100), nullable=False),
            sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(
                'credentials_type',
                sa.Enum(*CREDENTIALS_TYPES, name='credentialstype'),
                nullable=False,
                server_default='username_password',
            ),
            sa.Column('credentials_username', sa.String(length=100), nullable=True),
            sa.Column('credentials_email', sa.String(length=100), nullable=True),
            sa.Column('credentials_password', sa.Text(), nullable=True),
            sa.Column('credentials_api_key', sa.Text(), nullable=True),
            sa.Column('settings', _json(), nullable=True),
            sa.Column('webhook_url', sa.String(length=500), nullable=True),
            sa.Column('polling_interval', sa.Integer(), nullable=False, server_default='30'),
            sa.Column('last_sync', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.execute(
            sa.text(
                "INSERT INTO delivery_agencies (id, name, enabled, credentials_type, polling_interval) "
                "VALUES ('best-delivery', 'Best Delivery', false, 'username_password', 30)"
            )
        )

    if 'delivery_shipments' not in tables:
        op.create_table(
            'delivery_shipments',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('order_id', sa.String(length=36), sa.ForeignKey('orders.id'), nullable=False),
            sa.Column('agency_id', sa.String(length=50), sa.ForeignKey('delivery_agencies.id'), nullable=False),
            sa.Column('tracking_number', sa.String(length=100), nullable=False),
            sa.Column('barcode', sa.String(length=100), nullable=True),
            sa.Column(
                'status',
                sa.Enum(*DELIVERY_STATUSES, name='deliverystatus'),
                nullable=False,
                server_default='UPLOADED',
            ),
            sa.Column('last_status_update', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('print_url', sa.String(length=500), nullable=True),
            sa.Column('metadata', _json(), nullable=True),
            sa.Column('created_by', sa.String(length=36), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint('agency_id', 'tracking_number', name='uq_delivery_shipments_agency_tracking'),
        )
        op.create_index('ix_delivery_shipments_order_id', 'delivery_shipments', ['order_id'])
        op.create_index('ix_delivery_shipments_agency_id', 'delivery_shipments', ['agency_id'])
        op.create_index('ix_delivery_shipments_tracking_number', 'delivery_shipments', ['tracking_number'])
        op.create_index('ix_delivery_shipments_status', 'delivery_shipments', ['status'])
        op.create_index('ix_delivery_shipments_last_status_update', 'delivery_shipments', ['last_status_update'])
        op.create_index(
            'idx_delivery_shipments_status_last_update',
            'delivery_shipments',
            ['status', 'last_status_update'],
        )

    if 'delivery_status_logs' not in tables:
        op.create_table(
            'delivery_status_logs',
            sa.Column('id', sa.String(length=36), primary_key=True),
            sa.Column('shipment_id', sa.String(length=36), sa.ForeignKey('delivery_shipments.id'), nullable=False),
            sa.Column(
                'previous_status',
                postgresql.ENUM(*DELIVERY_STATUSES, name='deliverystatus', create_type=False),
                nullable=True,
            ),
            sa.Column(
                'status',
                postgresql.ENUM(*DELIVERY_STATUSES, name='deliverystatus', create_type=False),
                nullable=False,
            ),
            sa.Column('status_code', sa.Integer(), nullable=True),
            sa.Column('message', sa.Text(), nullable=True),
            sa.Column(
                'source',
                sa.Enum(*STATUS_SOURCES, name='deliverystatussource'),
                nullable=False,
                server_default='api',
            ),
            sa.Column('raw_data', _json(), nullable=True),
            sa.Column('user_id', sa.String(length=36), nullable=True),
            sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index('ix_delivery_status_logs_shipment_id', 'delivery_status_logs', ['shipment_id'])
        op.create_index('ix_delivery_status_logs_timestamp', 'delivery_status_logs', ['timestamp'])


def downgrade():
    conn = op.get_bind()
    inspector = inspect(conn)
    tables = inspector.get_table_names()

    if 'delivery_status_logs' in tables:
        op.drop_index('ix_delivery_status_logs_timestamp', table_name='delivery_status_logs')
        op.drop_index('ix_delivery_status_logs_shipment_id', table_name='delivery_status_logs')
        op.drop_table('delivery_status_logs')

    if 'delivery_shipments' in tables:
        op.drop_index('idx_delivery_shipments_status_last_update', table_name='delivery_shipments')
        op.drop_index('ix_delivery_shipments_last_status_update', table_name='delivery_shipments')
        op.drop_index('ix_delivery_shipments_status', table_name='delivery_shipments')
        op.drop_index('ix_delivery_shipments_tracking_number', table_name='delivery_shipments')
        op.drop_index('ix_delivery_shipments_agency_id', table_name='delivery_shipments')
        op.drop_index('ix_delivery_shipments_order_id', table_name='delivery_shipments')
        op.drop_table('delivery_shipments')

    if 'delivery_agencies' in tables:
        op.drop_table('delivery_agencies')

    # orders and activities are shared with the rest of the CRM and are left in place.
