"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'audit_entries',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('record_name', sa.String(length=255), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('account_name', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=100), nullable=True),
        sa.Column('request_type', sa.String(length=50), nullable=True),
        sa.Column('change_type', sa.String(length=13), nullable=False),
        sa.Column('previous_status', sa.String(length=100), nullable=True),
        sa.Column('changed_fields', sa.JSON(), nullable=False),
        sa.Column('field_changes', sa.JSON(), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=False),
        sa.Column('parse_warning', sa.Text(), nullable=True),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('record_id', 'captured_at', name='uq_audit_record_captured')
    )
    op.create_index('ix_audit_entries_record_name', 'audit_entries', ['record_name'])
    op.create_index('ix_audit_entries_account_id', 'audit_entries', ['account_id'])
    op.create_index('idx_audit_record_captured', 'audit_entries', ['record_id', 'captured_at'])
    op.create_index('idx_audit_change_type_captured', 'audit_entries', ['change_type', 'captured_at'])

    op.create_table(
        'latest_snapshots',
        sa.Column('record_id', sa.String(length=64), nullable=False),
        sa.Column('audit_entry_id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['audit_entry_id'], ['audit_entries.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('record_id')
    )
    op.create_index('ix_latest_snapshots_account_id', 'latest_snapshots', ['account_id'])

    op.create_table(
        'account_analysis',
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('account_name', sa.String(length=255), nullable=True),
        sa.Column('last_analyzed_at', sa.DateTime(), nullable=True),
        sa.Column('active_count', sa.Integer(), nullable=False),
        sa.Column('expiring_count', sa.Integer(), nullable=False),
        sa.Column('expired_count', sa.Integer(), nullable=False),
        sa.Column('extended_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('account_id')
    )
    op.create_index('ix_account_analysis_last_analyzed_at', 'account_analysis', ['last_analyzed_at'])

    op.create_table(
        'entitlement_states',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('account_name', sa.String(length=255), nullable=True),
        sa.Column('product_code', sa.String(length=255), nullable=False),
        sa.Column('category', sa.String(length=20), nullable=False),
        sa.Column('product_name', sa.String(length=500), nullable=True),
        sa.Column('state', sa.String(length=13), nullable=False),
        sa.Column('effective_end_date', sa.Date(), nullable=True),
        sa.Column('days_until_expiry', sa.Integer(), nullable=True),
        sa.Column('contributing_record_id', sa.String(length=64), nullable=False),
        sa.Column('contributing_record_name', sa.String(length=255), nullable=False),
        sa.Column('is_extended', sa.Boolean(), nullable=False),
        sa.Column('extended_by_record_id', sa.String(length=64), nullable=True),
        sa.Column('extended_by_record_name', sa.String(length=255), nullable=True),
        sa.Column('extended_end_date', sa.Date(), nullable=True),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_entitlement_states_account_id', 'entitlement_states', ['account_id'])
    op.create_index('idx_entitlement_state_end', 'entitlement_states', ['state', 'effective_end_date'])

    op.create_table(
        'ghost_accounts',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('account_id', sa.String(length=64), nullable=False),
        sa.Column('account_name', sa.String(length=255), nullable=False),
        sa.Column('total_expired_products', sa.Integer(), nullable=False),
        sa.Column('latest_expiry_date', sa.Date(), nullable=False),
        sa.Column('last_checked', sa.DateTime(), nullable=False),
        sa.Column('is_reviewed', sa.Boolean(), nullable=False),
        sa.Column('reviewed_by', sa.String(length=255), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id')
    )
    op.create_index('ix_ghost_accounts_latest_expiry_date', 'ghost_accounts', ['latest_expiry_date'])
    op.create_index('ix_ghost_accounts_is_reviewed', 'ghost_accounts', ['is_reviewed'])

    op.create_table(
        'analysis_runs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('trigger', sa.String(length=9), nullable=False),
        sa.Column('status', sa.String(length=9), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('records_fetched', sa.Integer(), nullable=False),
        sa.Column('records_skipped', sa.Integer(), nullable=False),
        sa.Column('snapshots_created', sa.Integer(), nullable=False),
        sa.Column('status_changes', sa.Integer(), nullable=False),
        sa.Column('accounts_analyzed', sa.Integer(), nullable=False),
        sa.Column('accounts_failed', sa.Integer(), nullable=False),
        sa.Column('accounts_deferred', sa.Integer(), nullable=False),
        sa.Column('ghosts_flagged', sa.Integer(), nullable=False),
        sa.Column('ghosts_removed', sa.Integer(), nullable=False),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('next_cursor', sa.Text(), nullable=True),
        sa.Column('capture_watermark', sa.DateTime(), nullable=True),
        sa.Column('chain_started_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('run_id')
    )
    op.create_index('ix_analysis_runs_status', 'analysis_runs', ['status'])
    op.create_index('ix_analysis_runs_started_at', 'analysis_runs', ['started_at'])


def downgrade() -> None:
    op.drop_table('analysis_runs')
    op.drop_table('ghost_accounts')
    op.drop_table('entitlement_states')
    op.drop_table('account_analysis')
    op.drop_table('latest_snapshots')
    op.drop_table('audit_entries')
