"""initial backoffice schema

Revision ID: b0a1c2d3e4f5
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the complete schema from scratch:
- reference data: stores, products, customers, vendors, sales_agents, financial_accounts
- stock: store_stock projection, append-only stock_ledger_entries, backorders
- documents: document_sequences, documents, document_lines, document_links
- finance: commissions, promissory_notes, receipts
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b0a1c2d3e4f5'
down_revision = None
branch_labels = None
depends_on = None


def _now():
    return sa.text("CURRENT_TIMESTAMP")


def upgrade():
    # ============================================================================
    # Reference data
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.UniqueConstraint('code', name='uq_stores_code'),
        sqlite_autoincrement=True,
    )

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('unit_of_measure', sa.String(length=32), nullable=False, server_default='unit'),
        sa.Column('is_stock_tracked', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_products_active', 'products', ['is_active'], unique=False)

    for table in ('customers', 'vendors'):
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sqlite_autoincrement=True,
        )

    op.create_table(
        'sales_agents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('commission_rate_bps', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sqlite_autoincrement=True,
    )

    op.create_table(
        'financial_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('chart_of_account_code', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sqlite_autoincrement=True,
    )

    # ============================================================================
    # Documents and lineage
    # ============================================================================
    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('document_type', name='uq_document_sequences_type'),
        sqlite_autoincrement=True,
    )

    op.create_table(
        'documents',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_type', sa.String(length=32), nullable=False),
        sa.Column('document_number', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('vendor_id', sa.Integer(), sa.ForeignKey('vendors.id'), nullable=True),
        sa.Column('sales_agent_id', sa.Integer(), sa.ForeignKey('sales_agents.id'), nullable=True),
        sa.Column('total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_status', sa.String(length=16), nullable=True),
        sa.Column('amount_paid_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conversion_status', sa.String(length=16), nullable=False, server_default='NONE'),
        sa.Column('is_converted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('waybill_type', sa.String(length=16), nullable=True),
        sa.Column('source_document_type', sa.String(length=32), nullable=True),
        sa.Column('source_document_id', sa.Integer(), nullable=True),
        sa.Column('reference_document_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('document_type', 'document_number', name='uq_documents_type_number'),
        sa.UniqueConstraint('document_type', 'idempotency_key', name='uq_documents_type_idempotency_key'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_documents_document_type', 'documents', ['document_type'], unique=False)
    op.create_index('ix_documents_status', 'documents', ['status'], unique=False)
    op.create_index('ix_documents_store_id', 'documents', ['store_id'], unique=False)
    op.create_index('ix_documents_customer_id', 'documents', ['customer_id'], unique=False)
    op.create_index('ix_documents_vendor_id', 'documents', ['vendor_id'], unique=False)
    op.create_index('ix_documents_sales_agent_id', 'documents', ['sales_agent_id'], unique=False)
    op.create_index('ix_documents_reference_document_id', 'documents', ['reference_document_id'], unique=False)
    op.create_index('ix_documents_created_at', 'documents', ['created_at'], unique=False)
    op.create_index('ix_documents_type_status_created', 'documents', ['document_type', 'status', 'created_at'], unique=False)
    op.create_index('ix_documents_source', 'documents', ['source_document_type', 'source_document_id'], unique=False)

    op.create_table(
        'document_lines',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('line_total_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('source_line_id', sa.Integer(), sa.ForeignKey('document_lines.id'), nullable=True),
        sa.Column('converted_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fulfilled_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('backorder_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('document_id', 'line_number', name='uq_document_lines_doc_line'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_document_lines_document_id', 'document_lines', ['document_id'], unique=False)
    op.create_index('ix_document_lines_product_id', 'document_lines', ['product_id'], unique=False)
    op.create_index('ix_document_lines_source_line_id', 'document_lines', ['source_line_id'], unique=False)

    op.create_table(
        'document_links',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('source_document_type', sa.String(length=32), nullable=False),
        sa.Column('source_document_id', sa.Integer(), nullable=False),
        sa.Column('target_document_type', sa.String(length=32), nullable=False),
        sa.Column('target_document_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.UniqueConstraint(
            'source_document_type', 'source_document_id',
            'target_document_type', 'target_document_id',
            name='uq_document_links_source_target',
        ),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_document_links_source', 'document_links', ['source_document_type', 'source_document_id'], unique=False)
    op.create_index('ix_document_links_target', 'document_links', ['target_document_type', 'target_document_id'], unique=False)

    # ============================================================================
    # Stock: projection, append-only ledger, back-orders
    # ============================================================================
    op.create_table(
        'store_stock',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.UniqueConstraint('product_id', 'store_id', name='uq_store_stock_product_store'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_store_stock_product_id', 'store_stock', ['product_id'], unique=False)
    op.create_index('ix_store_stock_store_id', 'store_stock', ['store_id'], unique=False)

    op.create_table(
        'stock_ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('delta', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('source_document_type', sa.String(length=32), nullable=True),
        sa.Column('source_document_id', sa.Integer(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.UniqueConstraint('idempotency_key', name='uq_stock_ledger_idempotency_key'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_stock_ledger_entries_product_id', 'stock_ledger_entries', ['product_id'], unique=False)
    op.create_index('ix_stock_ledger_entries_store_id', 'stock_ledger_entries', ['store_id'], unique=False)
    op.create_index('ix_stock_ledger_entries_reason', 'stock_ledger_entries', ['reason'], unique=False)
    op.create_index(
        'ix_stock_ledger_product_store_created', 'stock_ledger_entries',
        ['product_id', 'store_id', 'created_at'], unique=False,
    )
    op.create_index(
        'ix_stock_ledger_source', 'stock_ledger_entries',
        ['source_document_type', 'source_document_id'], unique=False,
    )

    op.create_table(
        'backorders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('store_id', sa.Integer(), sa.ForeignKey('stores.id'), nullable=False),
        sa.Column('sale_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=False),
        sa.Column('sale_line_id', sa.Integer(), sa.ForeignKey('document_lines.id'), nullable=False),
        sa.Column('waybill_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True),
        sa.Column('pending_quantity', sa.Integer(), nullable=False),
        sa.Column('original_quantity', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sqlite_autoincrement=True,
    )
    for column in ('product_id', 'store_id', 'sale_id', 'sale_line_id', 'waybill_id', 'customer_id', 'is_active'):
        op.create_index(f'ix_backorders_{column}', 'backorders', [column], unique=False)
    op.create_index(
        'ix_backorders_product_store_active', 'backorders',
        ['product_id', 'store_id', 'is_active', 'created_at'], unique=False,
    )

    # ============================================================================
    # Finance: commissions, promissory notes, receipts
    # ============================================================================
    op.create_table(
        'commissions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_number', sa.String(length=64), nullable=False),
        sa.Column('sales_agent_id', sa.Integer(), sa.ForeignKey('sales_agents.id'), nullable=False),
        sa.Column('sale_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=False),
        sa.Column('base_amount_cents', sa.Integer(), nullable=False),
        sa.Column('rate_bps', sa.Integer(), nullable=False),
        sa.Column('withholding_tax_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deductions_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='UNPAID'),
        sa.Column('financial_account_id', sa.Integer(), sa.ForeignKey('financial_accounts.id'), nullable=True),
        sa.Column('payout_reference', sa.String(length=64), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recalculated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.UniqueConstraint('sales_agent_id', 'sale_id', name='uq_commissions_agent_sale'),
        sa.UniqueConstraint('document_number', name='uq_commissions_document_number'),
        sqlite_autoincrement=True,
    )
    for column in ('sales_agent_id', 'sale_id', 'status', 'payment_status'):
        op.create_index(f'ix_commissions_{column}', 'commissions', [column], unique=False)

    op.create_table(
        'promissory_notes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_number', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('sale_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=True),
        sa.Column('source_document_type', sa.String(length=32), nullable=True),
        sa.Column('source_document_id', sa.Integer(), nullable=True),
        sa.Column('face_amount_cents', sa.Integer(), nullable=False),
        sa.Column('outstanding_amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='OUTSTANDING'),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_reconciled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('document_number', name='uq_promissory_notes_document_number'),
        sa.UniqueConstraint('idempotency_key', name='uq_promissory_notes_idempotency_key'),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_promissory_notes_customer_id', 'promissory_notes', ['customer_id'], unique=False)
    op.create_index('ix_promissory_notes_sale_id', 'promissory_notes', ['sale_id'], unique=False)
    op.create_index('ix_promissory_notes_status', 'promissory_notes', ['status'], unique=False)
    op.create_index('ix_promissory_notes_status_due', 'promissory_notes', ['status', 'due_date'], unique=False)

    op.create_table(
        'receipts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('document_number', sa.String(length=64), nullable=False),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('sale_id', sa.Integer(), sa.ForeignKey('documents.id'), nullable=True),
        sa.Column('promissory_note_id', sa.Integer(), sa.ForeignKey('promissory_notes.id'), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False, server_default='CASH'),
        sa.Column('reference_number', sa.String(length=64), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('void_reason', sa.String(length=255), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=_now()),
        sa.UniqueConstraint('document_number', name='uq_receipts_document_number'),
        sqlite_autoincrement=True,
    )
    for column in ('customer_id', 'sale_id', 'promissory_note_id', 'is_active'):
        op.create_index(f'ix_receipts_{column}', 'receipts', [column], unique=False)
    op.create_index('ix_receipts_note_active', 'receipts', ['promissory_note_id', 'is_active'], unique=False)


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('receipts')
    op.drop_table('promissory_notes')
    op.drop_table('commissions')
    op.drop_table('backorders')
    op.drop_table('stock_ledger_entries')
    op.drop_table('store_stock')
    op.drop_table('document_links')
    op.drop_table('document_lines')
    op.drop_table('documents')
    op.drop_table('document_sequences')
    op.drop_table('financial_accounts')
    op.drop_table('sales_agents')
    op.drop_table('vendors')
    op.drop_table('customers')
    op.drop_table('products')
    op.drop_table('stores')
