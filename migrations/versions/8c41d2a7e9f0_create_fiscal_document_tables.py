"""create_fiscal_document_tables

Revision ID: 8c41d2a7e9f0
Revises:
Create Date: 2026-01-20 09:12:41.183520

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8c41d2a7e9f0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=150), nullable=False),
        sa.Column('email', sa.String(length=150), nullable=False),
        sa.Column('password', sa.String(length=256), nullable=False),
        sa.Column('role', sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username'),
        sa.UniqueConstraint('email'),
    )
    op.create_table(
        'login_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('login_time', sa.DateTime(), nullable=True),
        sa.Column('logout_time', sa.DateTime(), nullable=True),
        sa.Column('login_ip', sa.String(length=45), nullable=True),
        sa.Column('login_user_agent', sa.Text(), nullable=True),
        sa.Column('logout_ip', sa.String(length=45), nullable=True),
        sa.Column('logout_user_agent', sa.Text(), nullable=True),
        sa.Column('login_method', sa.String(length=32), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['user.id']),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=20), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('cnpj', sa.String(length=18), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_suppliers_cnpj', 'suppliers', ['cnpj'])

    op.create_table(
        'materials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=60), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=False),
        sa.Column('ean', sa.String(length=20), nullable=True),
        sa.Column('ncm', sa.String(length=10), nullable=True),
        sa.Column('unit', sa.String(length=10), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_materials_code', 'materials', ['code'], unique=True)
    op.create_index('ix_materials_ean', 'materials', ['ean'])

    op.create_table(
        'supplier_materials',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('material_id', sa.Integer(), nullable=False),
        sa.Column('supplier_code', sa.String(length=60), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id']),
        sa.ForeignKeyConstraint(['material_id'], ['materials.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('supplier_id', 'supplier_code', name='uq_supplier_material_code'),
    )
    op.create_index('ix_supplier_materials_supplier_id', 'supplier_materials', ['supplier_id'])

    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('cnpj', sa.String(length=18), nullable=True),
        sa.Column('uf', sa.String(length=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'distribution_cursors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('last_nsu', sa.BigInteger(), nullable=False),
        sa.Column('max_nsu', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', name='uq_distribution_cursor_company'),
    )

    op.create_table(
        'fiscal_documents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('access_key', sa.String(length=44), nullable=False),
        sa.Column('xml_content', sa.Text(), nullable=False),
        sa.Column('document_number', sa.String(length=20), nullable=False),
        sa.Column('series', sa.String(length=10), nullable=False),
        sa.Column('model', sa.String(length=2), nullable=True),
        sa.Column('issue_date', sa.DateTime(), nullable=False),
        sa.Column('operation_nature', sa.String(length=255), nullable=True),
        sa.Column('supplier_cnpj', sa.String(length=14), nullable=False),
        sa.Column('supplier_name', sa.String(length=255), nullable=False),
        sa.Column('recipient_cnpj', sa.String(length=14), nullable=True),
        sa.Column('total_value', sa.Float(), nullable=False),
        sa.Column('products_value', sa.Float(), nullable=True),
        sa.Column('protocol_number', sa.String(length=20), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('access_key', name='uq_fiscal_documents_access_key'),
    )
    op.create_index('ix_fiscal_documents_access_key', 'fiscal_documents', ['access_key'])
    op.create_index('ix_fiscal_documents_supplier_cnpj', 'fiscal_documents', ['supplier_cnpj'])
    op.create_index('ix_fiscal_documents_status', 'fiscal_documents', ['status'])

    op.create_table(
        'invoice_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('document_id', sa.Integer(), nullable=False),
        sa.Column('item_number', sa.Integer(), nullable=False),
        sa.Column('product_code', sa.String(length=60), nullable=False),
        sa.Column('ean', sa.String(length=20), nullable=True),
        sa.Column('description', sa.String(length=500), nullable=False),
        sa.Column('ncm', sa.String(length=10), nullable=True),
        sa.Column('cfop', sa.String(length=5), nullable=True),
        sa.Column('unit', sa.String(length=10), nullable=True),
        sa.Column('quantity', sa.Float(), nullable=False),
        sa.Column('unit_value', sa.Float(), nullable=False),
        sa.Column('total_value', sa.Float(), nullable=False),
        sa.Column('linked_material_id', sa.Integer(), nullable=True),
        sa.Column('matched_by', sa.String(length=20), nullable=True),
        sa.ForeignKeyConstraint(['document_id'], ['fiscal_documents.id']),
        sa.ForeignKeyConstraint(['linked_material_id'], ['materials.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_invoice_items_document_id', 'invoice_items', ['document_id'])

    op.create_table(
        'pending_nfes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('access_key', sa.String(length=44), nullable=False),
        sa.Column('nsu', sa.BigInteger(), nullable=False),
        sa.Column('schema', sa.String(length=30), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('raw_xml', sa.Text(), nullable=False),
        sa.Column('supplier_cnpj', sa.String(length=14), nullable=True),
        sa.Column('supplier_name', sa.String(length=255), nullable=True),
        sa.Column('issue_date', sa.DateTime(), nullable=True),
        sa.Column('total_value', sa.Float(), nullable=True),
        sa.Column('discovered_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('access_key', name='uq_pending_nfes_access_key'),
    )
    op.create_index('ix_pending_nfes_access_key', 'pending_nfes', ['access_key'])
    op.create_index('ix_pending_nfes_status', 'pending_nfes', ['status'])

    op.create_table(
        'manifestation_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('access_key', sa.String(length=44), nullable=False),
        sa.Column('event_type', sa.String(length=20), nullable=False),
        sa.Column('event_code', sa.String(length=6), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=False),
        sa.Column('justification', sa.Text(), nullable=True),
        sa.Column('protocol_number', sa.String(length=20), nullable=True),
        sa.Column('status_code', sa.String(length=6), nullable=True),
        sa.Column('status_message', sa.String(length=255), nullable=True),
        sa.Column('submitted_by', sa.String(length=150), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('access_key', 'from_status', name='uq_manifestation_events_transition'),
    )
    op.create_index('ix_manifestation_events_access_key', 'manifestation_events', ['access_key'])


def downgrade():
    op.drop_index('ix_manifestation_events_access_key', table_name='manifestation_events')
    op.drop_table('manifestation_events')
    op.drop_index('ix_pending_nfes_status', table_name='pending_nfes')
    op.drop_index('ix_pending_nfes_access_key', table_name='pending_nfes')
    op.drop_table('pending_nfes')
    op.drop_index('ix_invoice_items_document_id', table_name='invoice_items')
    op.drop_table('invoice_items')
    op.drop_index('ix_fiscal_documents_status', table_name='fiscal_documents')
    op.drop_index('ix_fiscal_documents_supplier_cnpj', table_name='fiscal_documents')
    op.drop_index('ix_fiscal_documents_access_key', table_name='fiscal_documents')
    op.drop_table('fiscal_documents')
    op.drop_table('distribution_cursors')
    op.drop_table('companies')
    op.drop_index('ix_supplier_materials_supplier_id', table_name='supplier_materials')
    op.drop_table('supplier_materials')
    op.drop_index('ix_materials_ean', table_name='materials')
    op.drop_index('ix_materials_code', table_name='materials')
    op.drop_table('materials')
    op.drop_index('ix_suppliers_cnpj', table_name='suppliers')
    op.drop_table('suppliers')
    op.drop_table('login_history')
    op.drop_table('user')
