"""Initial migration - create payment item, obligation, transaction, match, exception and event tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payment_items table
    op.create_table(
        'payment_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('expected_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='NGN'),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('available_from', sa.DateTime(), nullable=True),
        sa.Column('available_until', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_payment_items_created_by', 'payment_items', ['created_by'])

    # Create payment_obligations table
    op.create_table(
        'payment_obligations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_item_id', sa.String(36), sa.ForeignKey('payment_items.id'), nullable=False),
        sa.Column('student_id', sa.String(255), nullable=False),
        sa.Column('student_name', sa.String(255), nullable=True),
        sa.Column('expected_amount', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('payment_reference', sa.String(120), nullable=False, unique=True),
        sa.Column('amount_paid_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(30), nullable=False, server_default='unpaid'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_item_id', 'student_id', name='uq_payment_obligations_item_student'),
    )
    op.create_index('ix_payment_obligations_student_id', 'payment_obligations', ['student_id'])
    op.create_index('ix_payment_obligations_status', 'payment_obligations', ['status'])

    # Create payment_transactions table
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('source', sa.String(40), nullable=False),
        sa.Column('source_event_id', sa.String(160), nullable=True),
        sa.Column('reference', sa.String(120), nullable=False, server_default=''),
        sa.Column('normalized_reference', sa.String(120), nullable=False, server_default=''),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('payer_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('normalized_payer_name', sa.String(255), nullable=False, server_default=''),
        sa.Column('paid_at', sa.DateTime(), nullable=False),
        sa.Column('paid_date', sa.Date(), nullable=False),
        sa.Column('student_hint', sa.String(255), nullable=True),
        sa.Column('item_hint', sa.String(36), nullable=True),
        sa.Column('checksum', sa.String(64), nullable=False),
        sa.Column('content_key', sa.String(64), nullable=True, unique=True),
        sa.Column('duplicate_of_id', sa.String(36), sa.ForeignKey('payment_transactions.id'), nullable=True),
        sa.Column('raw_payload_json', sa.Text(), nullable=True),
        sa.Column('status', sa.String(40), nullable=False, server_default='ingested'),
        sa.Column('matched_obligation_id', sa.String(36), sa.ForeignKey('payment_obligations.id'), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('reasons_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('source', 'source_event_id', name='uq_payment_transactions_source_event'),
    )
    op.create_index('ix_payment_transactions_checksum', 'payment_transactions', ['checksum'])
    op.create_index('ix_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('ix_payment_transactions_created_at', 'payment_transactions', ['created_at'])
    op.create_index(
        'ix_payment_transactions_matched_obligation_id', 'payment_transactions', ['matched_obligation_id']
    )

    # Create payment_matches table
    op.create_table(
        'payment_matches',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('payment_transactions.id'), nullable=False),
        sa.Column('obligation_id', sa.String(36), sa.ForeignKey('payment_obligations.id'), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('reasons_json', sa.Text(), nullable=True),
        sa.Column('decision', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('decided_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('transaction_id', 'obligation_id', name='uq_payment_matches_transaction_obligation'),
    )
    op.create_index('ix_payment_matches_transaction_id', 'payment_matches', ['transaction_id'])
    op.create_index('ix_payment_matches_obligation_id', 'payment_matches', ['obligation_id'])
    op.create_index(
        'uq_payment_matches_one_approved',
        'payment_matches',
        ['transaction_id'],
        unique=True,
        sqlite_where=sa.text("decision = 'approved'"),
        postgresql_where=sa.text("decision = 'approved'"),
    )

    # Create reconciliation_exceptions table
    op.create_table(
        'reconciliation_exceptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('match_id', sa.String(36), sa.ForeignKey('payment_matches.id'), nullable=False, unique=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('payment_transactions.id'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('assignee', sa.String(255), nullable=True),
        sa.Column('resolution', sa.String(50), nullable=True),
        sa.Column('resolved_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_reconciliation_exceptions_transaction_id', 'reconciliation_exceptions', ['transaction_id']
    )
    op.create_index('ix_reconciliation_exceptions_status', 'reconciliation_exceptions', ['status'])
    op.create_index('ix_reconciliation_exceptions_assignee', 'reconciliation_exceptions', ['assignee'])

    # Create reconciliation_events table
    op.create_table(
        'reconciliation_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('transaction_id', sa.String(36), sa.ForeignKey('payment_transactions.id'), nullable=True),
        sa.Column('match_id', sa.String(36), sa.ForeignKey('payment_matches.id'), nullable=True),
        sa.Column('exception_id', sa.String(36), sa.ForeignKey('reconciliation_exceptions.id'), nullable=True),
        sa.Column('actor', sa.String(255), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('previous_status', sa.String(40), nullable=True),
        sa.Column('new_status', sa.String(40), nullable=True),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reconciliation_events_transaction_id', 'reconciliation_events', ['transaction_id'])
    op.create_index('ix_reconciliation_events_action', 'reconciliation_events', ['action'])
    op.create_index('ix_reconciliation_events_created_at', 'reconciliation_events', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_reconciliation_events_created_at', table_name='reconciliation_events')
    op.drop_index('ix_reconciliation_events_action', table_name='reconciliation_events')
    op.drop_index('ix_reconciliation_events_transaction_id', table_name='reconciliation_events')

    op.drop_index('ix_reconciliation_exceptions_assignee', table_name='reconciliation_exceptions')
    op.drop_index('ix_reconciliation_exceptions_status', table_name='reconciliation_exceptions')
    op.drop_index('ix_reconciliation_exceptions_transaction_id', table_name='reconciliation_exceptions')

    op.drop_index('uq_payment_matches_one_approved', table_name='payment_matches')
    op.drop_index('ix_payment_matches_obligation_id', table_name='payment_matches')
    op.drop_index('ix_payment_matches_transaction_id', table_name='payment_matches')

    op.drop_index('ix_payment_transactions_matched_obligation_id', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_created_at', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_status', table_name='payment_transactions')
    op.drop_index('ix_payment_transactions_checksum', table_name='payment_transactions')

    op.drop_index('ix_payment_obligations_status', table_name='payment_obligations')
    op.drop_index('ix_payment_obligations_student_id', table_name='payment_obligations')

    op.drop_index('ix_payment_items_created_by', table_name='payment_items')

    # Drop tables in reverse dependency order
    op.drop_table('reconciliation_events')
    op.drop_table('reconciliation_exceptions')
    op.drop_table('payment_matches')
    op.drop_table('payment_transactions')
    op.drop_table('payment_obligations')
    op.drop_table('payment_items')
