"""initial_schema

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-19 08:12:41.203518+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CATEGORIES = ('jeep', 'bus', 'fx_van', 'gas', 'toll', 'meals', 'lodging', 'others')


def upgrade() -> None:
    # 1. cash_advances (owned by the cash-advance module, read here)
    op.create_table('cash_advances',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('requested_by', sa.UUID(), nullable=False),
    sa.Column('amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('type', sa.String(length=30), nullable=False),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('requester_position', sa.String(length=100), nullable=True),
    sa.Column('purpose', sa.Text(), nullable=True),
    sa.Column('date_requested', sa.Date(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_cash_advances_requested_by', 'cash_advances', ['requested_by'], unique=False)
    op.create_index('idx_cash_advances_status', 'cash_advances', ['status'], unique=False)

    # 2. liquidations
    op.create_table('liquidations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('cash_advance_id', sa.UUID(), nullable=False),
    sa.Column('user_id', sa.UUID(), nullable=False),
    sa.Column('store_id', sa.String(length=64), nullable=False),
    sa.Column('ticket_id', sa.BigInteger(), nullable=True),
    sa.Column('liquidation_date', sa.Date(), nullable=False),
    sa.Column('remarks', sa.Text(), nullable=True),
    sa.Column('status', sa.String(length=30), nullable=False),
    sa.Column('total_amount_cents', sa.BigInteger(), nullable=False),
    sa.Column('return_to_company_cents', sa.BigInteger(), nullable=False),
    sa.Column('reimbursement_cents', sa.BigInteger(), nullable=False),
    sa.Column('level1_approved_by', sa.UUID(), nullable=True),
    sa.Column('level1_approved_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('level1_reviewer_comment', sa.Text(), nullable=True),
    sa.Column('level2_approved_by', sa.UUID(), nullable=True),
    sa.Column('level2_approved_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('level2_reviewer_comment', sa.Text(), nullable=True),
    sa.Column('rejected_level', sa.Integer(), nullable=True),
    sa.Column('version', sa.Integer(), nullable=False),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint("status IN ('pending','level1_approved','approved','rejected')", name='chk_liquidation_status'),
    sa.CheckConstraint('return_to_company_cents = 0 OR reimbursement_cents = 0', name='chk_liquidation_single_balance'),
    sa.CheckConstraint('level2_approved_by IS NULL OR level1_approved_by IS NOT NULL', name='chk_liquidation_level_order'),
    sa.CheckConstraint('rejected_level IS NULL OR rejected_level IN (1, 2)', name='chk_liquidation_rejected_level'),
    sa.ForeignKeyConstraint(['cash_advance_id'], ['cash_advances.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'uq_liquidations_cash_advance_live', 'liquidations', ['cash_advance_id'],
        unique=True, postgresql_where=sa.text('deleted_at IS NULL'),
    )
    op.create_index('idx_liquidations_user', 'liquidations', ['user_id'], unique=False)
    op.create_index('idx_liquidations_status', 'liquidations', ['status'], unique=False)

    # 3. liquidation_items
    op.create_table('liquidation_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('liquidation_id', sa.UUID(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('expense_date', sa.Date(), nullable=True),
    sa.Column('from_destination', sa.String(length=255), nullable=True),
    sa.Column('to_destination', sa.String(length=255), nullable=True),
    *[sa.Column(f'{c}_cents', sa.BigInteger(), nullable=False) for c in CATEGORIES],
    sa.Column('total_cents', sa.BigInteger(), nullable=False),
    sa.Column('remarks', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint(
        ' AND '.join(f'{c}_cents >= 0' for c in CATEGORIES),
        name='chk_liquidation_item_amounts',
    ),
    sa.ForeignKeyConstraint(['liquidation_id'], ['liquidations.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_liquidation_items_liquidation', 'liquidation_items', ['liquidation_id'], unique=False)

    # 4. liquidation_attachments
    op.create_table('liquidation_attachments',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('liquidation_id', sa.UUID(), nullable=False),
    sa.Column('liquidation_item_id', sa.UUID(), nullable=True),
    sa.Column('file_key', sa.String(length=512), nullable=False),
    sa.Column('file_name', sa.String(length=255), nullable=False),
    sa.Column('file_type', sa.String(length=100), nullable=False),
    sa.Column('file_size', sa.BigInteger(), nullable=False),
    sa.Column('uploaded_by', sa.UUID(), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.CheckConstraint('file_size >= 0', name='chk_liquidation_attachment_size'),
    sa.ForeignKeyConstraint(['liquidation_id'], ['liquidations.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['liquidation_item_id'], ['liquidation_items.id'], ondelete='RESTRICT'),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_liquidation_attachments_liquidation', 'liquidation_attachments', ['liquidation_id'], unique=False)
    op.create_index('idx_liquidation_attachments_item', 'liquidation_attachments', ['liquidation_item_id'], unique=False)

    # 5. audit_logs
    op.create_table('audit_logs',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('actor_id', sa.UUID(), nullable=True),
    sa.Column('actor_email', sa.String(length=255), nullable=True),
    sa.Column('action', sa.String(length=100), nullable=False),
    sa.Column('entity_type', sa.String(length=50), nullable=False),
    sa.Column('entity_id', sa.UUID(), nullable=False),
    sa.Column('before_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('after_state', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('changed_fields', postgresql.ARRAY(sa.Text()), nullable=True),
    sa.Column('request_id', sa.String(length=64), nullable=True),
    sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'], unique=False)
    op.create_index('idx_audit_actor', 'audit_logs', ['actor_id'], unique=False)
    op.create_index('idx_audit_created', 'audit_logs', [sa.text('created_at DESC')], unique=False)


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('liquidation_attachments')
    op.drop_table('liquidation_items')
    op.drop_table('liquidations')
    op.drop_table('cash_advances')
