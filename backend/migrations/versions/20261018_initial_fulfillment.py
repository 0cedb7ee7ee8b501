"""Initial fulfillment schema: catalog, stock ledger, carts, cards, sales, returns

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration creates:
1. books, book_stock (versioned counters), discounts
2. stock_reservations, stock_movements
3. carts, cart_items
4. cards (versioned balance), card_movements
5. sales, sale_items, sale_events
6. returns, return_items, return_events
7. activity_log, idempotency_records
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


NOW = sa.text('(CURRENT_TIMESTAMP)')


def upgrade():
    # ==========================================================================
    # 1. CATALOG
    # ==========================================================================
    op.create_table('books',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('isbn', sa.String(length=32), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('tax_percent', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('isbn'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_books_active_title', 'books', ['is_active', 'title'], unique=False)

    op.create_table('book_stock',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('available_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sold_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.CheckConstraint('available_qty >= 0', name='ck_book_stock_available_nonneg'),
        sa.CheckConstraint('reserved_qty >= 0', name='ck_book_stock_reserved_nonneg'),
        sa.CheckConstraint('sold_qty >= 0', name='ck_book_stock_sold_nonneg'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('book_id')
    )

    op.create_table('discounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('min_quantity', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('code', sa.String(length=64), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_discounts_code', 'discounts', ['code'], unique=False)
    op.create_index('ix_discounts_book_active', 'discounts', ['book_id', 'is_active'], unique=False)

    # ==========================================================================
    # 2. STOCK LEDGER
    # ==========================================================================
    op.create_table('stock_reservations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.String(length=64), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('holder_id', sa.String(length=64), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='activa'),
        sa.Column('transaction_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('quantity > 0', name='ck_stock_reservations_qty_positive'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reservation_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_reservations_book_status', 'stock_reservations', ['book_id', 'status'], unique=False)
    op.create_index('ix_stock_reservations_transaction_id', 'stock_reservations', ['transaction_id'], unique=False)

    op.create_table('stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=32), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.String(length=64), nullable=True),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('available_before', sa.Integer(), nullable=False),
        sa.Column('reserved_before', sa.Integer(), nullable=False),
        sa.Column('available_after', sa.Integer(), nullable=False),
        sa.Column('reserved_after', sa.Integer(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_book_occurred', 'stock_movements', ['book_id', 'occurred_at'], unique=False)
    op.create_index('ix_stock_movements_type_reference', 'stock_movements', ['movement_type', 'reference'], unique=False)

    # ==========================================================================
    # 3. CARTS
    # ==========================================================================
    op.create_table('carts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='activo'),
        sa.Column('discount_codes', sa.JSON(), nullable=False),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_carts_customer_status', 'carts', ['customer_id', 'status'], unique=False)

    op.create_table('cart_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('cart_id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('price_changed', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('current_price_cents', sa.Integer(), nullable=True),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('line_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('added_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_cart_items_qty_positive'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.ForeignKeyConstraint(['cart_id'], ['carts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('cart_id', 'book_id', name='uq_cart_items_cart_book'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cart_items_cart_id', 'cart_items', ['cart_id'], unique=False)

    # ==========================================================================
    # 4. PAYMENT LEDGER
    # ==========================================================================
    op.create_table('cards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('card_id', sa.String(length=32), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('brand', sa.String(length=32), nullable=False),
        sa.Column('holder_name', sa.String(length=128), nullable=False),
        sa.Column('last_digits', sa.String(length=4), nullable=False),
        sa.Column('expiry_month', sa.Integer(), nullable=False),
        sa.Column('expiry_year', sa.Integer(), nullable=False),
        sa.Column('balance_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.CheckConstraint('balance_cents >= 0', name='ck_cards_balance_nonneg'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('card_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cards_owner_active', 'cards', ['owner_id', 'is_active'], unique=False)

    op.create_table('card_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('card_pk', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=24), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('balance_before_cents', sa.Integer(), nullable=False),
        sa.Column('balance_after_cents', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=True),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(['card_pk'], ['cards.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('kind', 'reference', name='uq_card_movements_kind_reference'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_card_movements_card_pk', 'card_movements', ['card_pk'], unique=False)

    # ==========================================================================
    # 5. SALES
    # ==========================================================================
    op.create_table('sales',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('number', sa.String(length=32), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('cart_id', sa.Integer(), nullable=True),
        sa.Column('state', sa.String(length=24), nullable=False, server_default='creada'),
        sa.Column('payment_method', sa.String(length=24), nullable=False),
        sa.Column('card_id', sa.String(length=32), nullable=False),
        sa.Column('payment_state', sa.String(length=24), nullable=False, server_default='aprobado'),
        sa.Column('payment_reference', sa.String(length=128), nullable=True),
        sa.Column('shipping_type', sa.String(length=24), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('pickup_store_id', sa.String(length=64), nullable=True),
        sa.Column('tracking_number', sa.String(length=64), nullable=True),
        sa.Column('carrier', sa.String(length=64), nullable=True),
        sa.Column('shipped_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subtotal_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('shipping_cost_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refunded_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_paid_by_customer', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('discount_codes', sa.JSON(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_by_id', sa.String(length=64), nullable=True),
        sa.Column('cancelled_by_role', sa.String(length=24), nullable=True),
        sa.Column('restocked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['cart_id'], ['carts.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sales_customer_created', 'sales', ['customer_id', 'created_at'], unique=False)
    op.create_index('ix_sales_state_created', 'sales', ['state', 'created_at'], unique=False)

    op.create_table('sale_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('author', sa.String(length=255), nullable=False),
        sa.Column('isbn', sa.String(length=32), nullable=True),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('discount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        sa.Column('reservation_id', sa.String(length=64), nullable=True),
        sa.Column('returned_qty_requested', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('quantity > 0', name='ck_sale_items_qty_positive'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_items_sale_id', 'sale_items', ['sale_id'], unique=False)

    op.create_table('sale_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('event', sa.String(length=32), nullable=False),
        sa.Column('from_state', sa.String(length=24), nullable=True),
        sa.Column('to_state', sa.String(length=24), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('internal', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sale_events_sale_id', 'sale_events', ['sale_id'], unique=False)

    # ==========================================================================
    # 6. RETURNS
    # ==========================================================================
    op.create_table('returns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('sale_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.String(length=64), nullable=False),
        sa.Column('state', sa.String(length=24), nullable=False, server_default='solicitada'),
        sa.Column('requested_refund_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_refund_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refunded_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('return_tracking_number', sa.String(length=64), nullable=True),
        sa.Column('return_carrier', sa.String(length=64), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refund_reference', sa.String(length=128), nullable=True),
        sa.Column('refund_processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rejection_reason', sa.String(length=255), nullable=True),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancelled_by_id', sa.String(length=64), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['sale_id'], ['sales.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_returns_customer_created', 'returns', ['customer_id', 'created_at'], unique=False)
    op.create_index('ix_returns_state', 'returns', ['state'], unique=False)
    op.create_index('ix_returns_sale_id', 'returns', ['sale_id'], unique=False)

    op.create_table('return_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('sale_item_id', sa.Integer(), nullable=False),
        sa.Column('book_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('purchased_qty', sa.Integer(), nullable=False),
        sa.Column('requested_qty', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('item_state', sa.String(length=16), nullable=False, server_default='solicitado'),
        sa.Column('inspection_result', sa.String(length=24), nullable=True),
        sa.Column('inspection_notes', sa.Text(), nullable=True),
        sa.Column('refund_percentage', sa.Integer(), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('inspected_by_id', sa.String(length=64), nullable=True),
        sa.Column('inspected_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('requested_qty > 0', name='ck_return_items_qty_positive'),
        sa.ForeignKeyConstraint(['book_id'], ['books.id'], ),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.ForeignKeyConstraint(['sale_item_id'], ['sale_items.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_return_items_return_id', 'return_items', ['return_id'], unique=False)

    op.create_table('return_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('return_id', sa.Integer(), nullable=False),
        sa.Column('event', sa.String(length=32), nullable=False),
        sa.Column('from_state', sa.String(length=24), nullable=True),
        sa.Column('to_state', sa.String(length=24), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.ForeignKeyConstraint(['return_id'], ['returns.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_return_events_return_id', 'return_events', ['return_id'], unique=False)

    # ==========================================================================
    # 7. ACTIVITY LOG / IDEMPOTENCY
    # ==========================================================================
    op.create_table('activity_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=32), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('importance', sa.String(length=8), nullable=False, server_default='medio'),
        sa.Column('actor_id', sa.String(length=64), nullable=True),
        sa.Column('actor_role', sa.String(length=24), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_activity_log_entity', 'activity_log', ['entity_type', 'entity_id'], unique=False)
    op.create_index('ix_activity_log_occurred', 'activity_log', ['occurred_at'], unique=False)

    op.create_table('idempotency_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation', sa.String(length=64), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('outcome', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=NOW, nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('operation', 'key', name='uq_idempotency_operation_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_idempotency_records_expires_at', 'idempotency_records', ['expires_at'], unique=False)


def downgrade():
    op.drop_table('idempotency_records')
    op.drop_table('activity_log')
    op.drop_table('return_events')
    op.drop_table('return_items')
    op.drop_table('returns')
    op.drop_table('sale_events')
    op.drop_table('sale_items')
    op.drop_table('sales')
    op.drop_table('card_movements')
    op.drop_table('cards')
    op.drop_table('cart_items')
    op.drop_table('carts')
    op.drop_table('stock_movements')
    op.drop_table('stock_reservations')
    op.drop_table('discounts')
    op.drop_table('book_stock')
    op.drop_table('books')
