"""monitoring_core

Revision ID: 20261019_monitoring_core
Revises:
Create Date: 2026-10-19 09:00:00

Adds: dual_write_logs, system_health_metrics, reconciliation_runs,
      data_discrepancies, monitoring_locks
Purpose: Dual-write logging, metrics snapshots and Sheets/Supabase reconciliation
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON

# revision identifiers, used by Alembic.
revision = '20261019_monitoring_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """
    Create monitoring tables:
    1. dual_write_logs - Append-only log, one row per dual write
    2. system_health_metrics - Hourly/daily bucket snapshots
    3. reconciliation_runs - One row per comparison pass
    4. data_discrepancies - Findings of comparison passes
    5. monitoring_locks - Claim lock rows (seeded)
    """

    op.create_table(
        'dual_write_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('operation_type', sa.String(20), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('record_id', sa.String(255), nullable=True),
        sa.Column('sheets_success', sa.Boolean(), nullable=False),
        sa.Column('sheets_duration_ms', sa.Integer(), nullable=True),
        sa.Column('sheets_error', sa.Text(), nullable=True),
        sa.Column('supabase_success', sa.Boolean(), nullable=False),
        sa.Column('supabase_duration_ms', sa.Integer(), nullable=True),
        sa.Column('supabase_error', sa.Text(), nullable=True),
        sa.Column('user_email', sa.String(255), nullable=True),
        sa.Column('batch_name', sa.String(255), nullable=True),
        sa.Column('program', sa.String(100), nullable=True),
        sa.Column('metadata', JSON(), nullable=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_dual_write_logs_timestamp', 'dual_write_logs', ['timestamp'])
    op.create_index('ix_dual_write_logs_table_timestamp', 'dual_write_logs', ['table_name', 'timestamp'])

    op.create_table(
        'system_health_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('period_type', sa.String(10), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('scope_key', sa.String(255), nullable=False),
        sa.Column('total_operations', sa.Integer(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('sheets_success_count', sa.Integer(), nullable=False),
        sa.Column('supabase_success_count', sa.Integer(), nullable=False),
        sa.Column('both_success_count', sa.Integer(), nullable=False),
        sa.Column('sheets_only_success_count', sa.Integer(), nullable=False),
        sa.Column('supabase_only_success_count', sa.Integer(), nullable=False),
        sa.Column('both_failed_count', sa.Integer(), nullable=False),
        sa.Column('discrepancy_count', sa.Integer(), nullable=False),
        sa.Column('sheets_error_count', sa.Integer(), nullable=False),
        sa.Column('supabase_error_count', sa.Integer(), nullable=False),
        sa.Column('avg_sheets_duration_ms', sa.Integer(), nullable=True),
        sa.Column('avg_supabase_duration_ms', sa.Integer(), nullable=True),
        sa.Column('min_sheets_duration_ms', sa.Integer(), nullable=True),
        sa.Column('min_supabase_duration_ms', sa.Integer(), nullable=True),
        sa.Column('max_sheets_duration_ms', sa.Integer(), nullable=True),
        sa.Column('max_supabase_duration_ms', sa.Integer(), nullable=True),
        sa.Column('sheets_success_rate', sa.Float(), nullable=False),
        sa.Column('supabase_success_rate', sa.Float(), nullable=False),
        sa.Column('both_success_rate', sa.Float(), nullable=False),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_health_metrics_window', 'system_health_metrics',
                    ['period_type', 'window_start', 'scope_key'], unique=True)

    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('table_name', sa.String(100), nullable=True),
        sa.Column('batch_name', sa.String(255), nullable=True),
        sa.Column('program', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('triggered_by', sa.String(255), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('tables_compared', JSON(), nullable=True),
        sa.Column('records_compared', sa.Integer(), nullable=False),
        sa.Column('discrepancies_found', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_reconciliation_runs_status', 'reconciliation_runs', ['status', 'started_at'])

    op.create_table(
        'data_discrepancies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.Integer(), nullable=True),
        sa.Column('table_name', sa.String(100), nullable=False),
        sa.Column('record_id', sa.String(255), nullable=False),
        sa.Column('batch_name', sa.String(255), nullable=True),
        sa.Column('program', sa.String(100), nullable=True),
        sa.Column('discrepancy_type', sa.String(50), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('field_diffs', JSON(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('resolved_by', sa.String(255), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['run_id'], ['reconciliation_runs.id'])
    )
    op.create_index('ix_data_discrepancies_run_id', 'data_discrepancies', ['run_id'])
    op.create_index('ix_discrepancies_open', 'data_discrepancies', ['resolved', 'detected_at'])
    op.create_index('ix_discrepancies_table', 'data_discrepancies', ['table_name', 'record_id'])

    locks = op.create_table(
        'monitoring_locks',
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('name')
    )
    op.bulk_insert(locks, [{'name': 'reconciliation_claim', 'acquired_at': None}])


def downgrade() -> None:
    """Drop monitoring tables (reverse order for the foreign key)."""
    op.drop_table('monitoring_locks')

    op.drop_index('ix_discrepancies_table', table_name='data_discrepancies')
    op.drop_index('ix_discrepancies_open', table_name='data_discrepancies')
    op.drop_index('ix_data_discrepancies_run_id', table_name='data_discrepancies')
    op.drop_table('data_discrepancies')

    op.drop_index('ix_reconciliation_runs_status', table_name='reconciliation_runs')
    op.drop_table('reconciliation_runs')

    op.drop_index('idx_health_metrics_window', table_name='system_health_metrics')
    op.drop_table('system_health_metrics')

    op.drop_index('ix_dual_write_logs_table_timestamp', table_name='dual_write_logs')
    op.drop_index('ix_dual_write_logs_timestamp', table_name='dual_write_logs')
    op.drop_table('dual_write_logs')
