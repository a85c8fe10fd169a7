"""initial order and ledger schema

Revision ID: od001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the orderdesk schema:
- products: catalog surface (price + stock counter)
- customers: identity surface (bearer token hashes)
- customer_orders / customer_order_items: orders with payment state
- transactions: append-only financial ledger

The partial unique index uq_transactions_live_ref allows at most one live
row per (ref_type, ref_id, category) for linked entries.
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'od001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # products
    # ============================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('selling_price', sa.Integer(), nullable=False),
        sa.Column('current_stock', sa.Integer(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_deleted_name', 'products', ['is_deleted', 'name'])

    # ============================================================================
    # customers
    # ============================================================================
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(length=128), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('email', sa.String(length=100), nullable=True),
        sa.Column('token_hash', sa.String(length=64), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customers_token_hash', 'customers', ['token_hash'], unique=True)

    # ============================================================================
    # customer_orders
    # ============================================================================
    op.create_table(
        'customer_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('order_date', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('order_status', sa.String(length=16), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('payment_status', sa.String(length=16), nullable=False),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('recipient_name', sa.String(length=100), nullable=False),
        sa.Column('recipient_email', sa.String(length=100), nullable=True),
        sa.Column('recipient_phone', sa.String(length=50), nullable=False),
        sa.Column('shipping_address', sa.String(length=500), nullable=False),
        sa.Column('shipping_note', sa.String(length=500), nullable=True),
        sa.Column('txn_ref', sa.String(length=64), nullable=True),
        sa.Column('gateway_transaction_no', sa.String(length=64), nullable=True),
        sa.Column('gateway_bank_code', sa.String(length=32), nullable=True),
        sa.Column('gateway_bank_tran_no', sa.String(length=64), nullable=True),
        sa.Column('gateway_card_type', sa.String(length=32), nullable=True),
        sa.Column('gateway_response_code', sa.String(length=8), nullable=True),
        sa.Column('payment_url_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('stock_deducted', sa.Boolean(), nullable=False),
        sa.Column('payment_attempts', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('txn_ref'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customer_orders_customer_id', 'customer_orders', ['customer_id'])
    op.create_index('ix_customer_orders_order_date', 'customer_orders', ['order_date'])
    op.create_index('ix_customer_orders_order_status', 'customer_orders', ['order_status'])
    op.create_index('ix_customer_orders_payment_status', 'customer_orders', ['payment_status'])
    op.create_index('ix_customer_orders_customer_date', 'customer_orders', ['customer_id', 'order_date'])
    op.create_index('ix_customer_orders_customer_status', 'customer_orders', ['customer_id', 'order_status'])
    op.create_index('ix_customer_orders_payment', 'customer_orders', ['payment_status', 'payment_method'])

    # ============================================================================
    # customer_order_items
    # ============================================================================
    op.create_table(
        'customer_order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Integer(), nullable=False),
        sa.Column('discount', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['order_id'], ['customer_orders.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'product_id', name='uq_order_items_order_product'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_customer_order_items_order_id', 'customer_order_items', ['order_id'])
    op.create_index('ix_customer_order_items_product_id', 'customer_order_items', ['product_id'])

    # ============================================================================
    # transactions: append-only ledger
    # ============================================================================
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('category', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False),
        sa.Column('ref_type', sa.String(length=16), nullable=False),
        sa.Column('ref_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('is_auto_generated', sa.Boolean(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        sa.ForeignKeyConstraint(['created_by'], ['customers.id']),
        sa.ForeignKeyConstraint(['deleted_by'], ['customers.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_transactions_date', 'transactions', ['date'])
    op.create_index('ix_transactions_deleted_date', 'transactions', ['is_deleted', 'date'])
    op.create_index('ix_transactions_type_date', 'transactions', ['type', 'date'])
    op.create_index('ix_transactions_category_date', 'transactions', ['category', 'date'])
    op.create_index('ix_transactions_ref', 'transactions', ['ref_type', 'ref_id'])
    op.create_index(
        'uq_transactions_live_ref',
        'transactions',
        ['ref_type', 'ref_id', 'category'],
        unique=True,
        sqlite_where=sa.text("is_deleted = 0 AND ref_type != 'None'"),
        postgresql_where=sa.text("is_deleted = false AND ref_type <> 'None'"),
    )


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('transactions')
    op.drop_table('customer_order_items')
    op.drop_table('customer_orders')
    op.drop_table('customers')
    op.drop_table('products')
