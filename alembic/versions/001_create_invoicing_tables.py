"""Create invoicing tables

Revision ID: 001_invoicing
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_invoicing'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create businesses, clients, invoices, line items and payment records"""

    # ====================
    # BUSINESSES TABLE
    # ====================
    op.create_table(
        'businesses',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('name_zh', sa.String(200), nullable=False),
        sa.Column('name_en', sa.String(200), nullable=True),
        sa.Column('tax_id', sa.String(20), nullable=True),
        sa.Column('address', sa.String(500), nullable=True),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('logo_url', sa.String(500), nullable=True),
        sa.Column('default_payment_terms', sa.Integer, server_default='14', nullable=False),
        sa.Column('default_currency', sa.String(3), server_default='TWD', nullable=False),
        sa.Column('default_tax_rate', sa.Numeric(6, 4), server_default='0.05', nullable=False),
        sa.Column('invoice_prefix', sa.String(10), server_default='INV', nullable=False),
        sa.Column('invoice_next_number', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('invoice_next_number >= 1', name='ck_businesses_next_number_positive'),
    )

    # ====================
    # CLIENTS TABLE
    # ====================
    op.create_table(
        'clients',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('display_name', sa.String(200), nullable=False),
        sa.Column('company_name', sa.String(200), nullable=True),
        sa.Column('tax_id', sa.String(20), nullable=True),
        sa.Column('contact_name', sa.String(200), nullable=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(30), nullable=True),
        sa.Column('address', sa.String(500), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('postal_code', sa.String(20), nullable=True),
        sa.Column('country', sa.String(100), server_default='Taiwan', nullable=False),
        sa.Column('default_payment_terms', sa.Integer, nullable=True),
        sa.Column('preferred_currency', sa.String(3), nullable=True),
        sa.Column('preferred_language', sa.String(2), nullable=True),
        sa.Column('tags', sa.JSON, nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_index('ix_clients_business_id', 'clients', ['business_id'])
    op.create_index('ix_clients_business_display_name', 'clients', ['business_id', 'display_name'])

    # ====================
    # INVOICES TABLE
    # ====================
    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('business_id', sa.Uuid(), sa.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('client_id', sa.Uuid(), sa.ForeignKey('clients.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('invoice_number', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), server_default='draft', nullable=False),
        sa.Column('currency', sa.String(3), server_default='TWD', nullable=False),
        sa.Column('exchange_rate_to_base', sa.Numeric(14, 6), server_default='1', nullable=False),
        sa.Column('subtotal', sa.Numeric(14, 2), nullable=False),
        sa.Column('tax_rate', sa.Numeric(6, 4), nullable=False),
        sa.Column('tax_amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('discount_type', sa.String(20), nullable=True),
        sa.Column('discount_value', sa.Numeric(14, 4), server_default='0', nullable=False),
        sa.Column('discount_amount', sa.Numeric(14, 2), server_default='0', nullable=False),
        sa.Column('total', sa.Numeric(14, 2), nullable=False),
        sa.Column('issue_date', sa.Date, nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('paid_date', sa.Date, nullable=True),
        sa.Column('paid_amount', sa.Numeric(14, 2), server_default='0', nullable=False),
        sa.Column('language', sa.String(2), server_default='en', nullable=False),
        sa.Column('notes_external', sa.Text, nullable=True),
        sa.Column('notes_internal', sa.Text, nullable=True),
        sa.Column('pdf_url', sa.String(500), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('business_id', 'invoice_number', name='uq_invoices_business_number'),
        sa.CheckConstraint('total >= 0', name='ck_invoices_total_non_negative'),
        sa.CheckConstraint('paid_amount >= 0', name='ck_invoices_paid_amount_non_negative'),
        sa.CheckConstraint('due_date >= issue_date', name='ck_invoices_due_after_issue'),
    )

    op.create_index('ix_invoices_business_id', 'invoices', ['business_id'])
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_business_status', 'invoices', ['business_id', 'status'])
    op.create_index('ix_invoices_issue_date', 'invoices', ['issue_date'])

    # ====================
    # INVOICE LINE ITEMS TABLE
    # ====================
    op.create_table(
        'invoice_line_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 3), nullable=False),
        sa.Column('unit_price', sa.Numeric(14, 4), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('sort_order', sa.Integer, server_default='0', nullable=False),
        sa.UniqueConstraint('invoice_id', 'sort_order', name='uq_invoice_line_items_sort_order'),
        sa.CheckConstraint('quantity > 0', name='ck_invoice_line_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_invoice_line_items_unit_price_non_negative'),
    )

    op.create_index('ix_invoice_line_items_invoice_id', 'invoice_line_items', ['invoice_id'])

    # ====================
    # PAYMENT RECORDS TABLE
    # ====================
    op.create_table(
        'payment_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('invoice_id', sa.Uuid(), sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('payment_date', sa.Date, nullable=False),
        sa.Column('payment_method', sa.String(50), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_index('ix_payment_records_invoice_id', 'payment_records', ['invoice_id'])


def downgrade():
    """Drop invoicing tables"""
    op.drop_table('payment_records')
    op.drop_table('invoice_line_items')
    op.drop_table('invoices')
    op.drop_table('clients')
    op.drop_table('businesses')
