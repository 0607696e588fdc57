"""create loader tables

Revision ID: 3f1c9a2d7b41
Revises:
Create Date: 2026-10-19 09:12:44.518203

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a2d7b41'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('job',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('code', sa.String(length=64), nullable=False),
                    sa.Column('query_text', sa.Text(), nullable=False),
                    sa.Column('source_ref', sa.String(length=64), nullable=False),
                    sa.Column('min_interval_seconds', sa.Integer(), nullable=False),
                    sa.Column('max_interval_seconds', sa.Integer(), nullable=False),
                    sa.Column('max_query_period_seconds', sa.Integer(), nullable=False),
                    sa.Column('max_parallel_executions', sa.Integer(), nullable=False),
                    sa.Column('status', sa.String(length=20), nullable=False),
                    sa.Column('last_watermark', sa.DateTime(), nullable=True),
                    sa.Column('failed_since', sa.DateTime(), nullable=True),
                    sa.Column('consecutive_empty_runs', sa.Integer(), nullable=False),
                    sa.Column('source_tz_offset_hours', sa.Integer(), nullable=False),
                    sa.Column('purge_strategy', sa.String(length=20), nullable=False),
                    sa.Column('enabled', sa.Boolean(), nullable=False),
                    sa.Column('created_at', sa.DateTime(), nullable=True),
                    sa.Column('updated_at', sa.DateTime(), nullable=True),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('code')
                    )

    op.create_table('execution_record',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('job_code', sa.String(length=64), nullable=False),
                    sa.Column('outcome', sa.String(length=20), nullable=False),
                    sa.Column('holder', sa.String(length=128), nullable=True),
                    sa.Column('lease_id', sa.String(length=36), nullable=True),
                    sa.Column('start_time', sa.DateTime(), nullable=False),
                    sa.Column('end_time', sa.DateTime(), nullable=True),
                    sa.Column('duration_seconds', sa.Float(), nullable=True),
                    sa.Column('requested_from', sa.DateTime(), nullable=False),
                    sa.Column('requested_to', sa.DateTime(), nullable=False),
                    sa.Column('actual_from', sa.DateTime(), nullable=True),
                    sa.Column('actual_to', sa.DateTime(), nullable=True),
                    sa.Column('rows_fetched', sa.Integer(), nullable=True),
                    sa.Column('rows_ingested', sa.Integer(), nullable=True),
                    sa.Column('rows_purged', sa.Integer(), nullable=True),
                    sa.Column('rows_skipped', sa.Integer(), nullable=True),
                    sa.Column('empty_reason', sa.String(length=32), nullable=True),
                    sa.Column('error_message', sa.Text(), nullable=True),
                    sa.Column('error_detail', sa.Text(), nullable=True),
                    sa.Column('execution_metadata', sa.JSON(), nullable=True),
                    sa.ForeignKeyConstraint(['job_code'], ['job.code'], ),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index('ix_execution_record_job_code', 'execution_record', ['job_code'], unique=False)
    op.create_index('ix_execution_record_start_time', 'execution_record', ['start_time'], unique=False)

    op.create_table('lease',
                    sa.Column('id', sa.String(length=36), nullable=False),
                    sa.Column('job_code', sa.String(length=64), nullable=False),
                    sa.Column('holder', sa.String(length=128), nullable=False),
                    sa.Column('acquired_at', sa.DateTime(), nullable=False),
                    sa.Column('released_at', sa.DateTime(), nullable=True),
                    sa.Column('execution_record_id', sa.Integer(), nullable=True),
                    sa.ForeignKeyConstraint(['execution_record_id'], ['execution_record.id'], ),
                    sa.ForeignKeyConstraint(['job_code'], ['job.code'], ),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index('ix_lease_acquired_at', 'lease', ['acquired_at'], unique=False)
    op.create_index('ix_lease_job_code_released_at', 'lease', ['job_code', 'released_at'], unique=False)

    op.create_table('signal_history',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('job_code', sa.String(length=64), nullable=False),
                    sa.Column('load_timestamp', sa.BigInteger(), nullable=False),
                    sa.Column('segment_key', sa.String(length=512), nullable=True),
                    sa.Column('rec_count', sa.BigInteger(), nullable=True),
                    sa.Column('min_val', sa.Float(), nullable=True),
                    sa.Column('max_val', sa.Float(), nullable=True),
                    sa.Column('avg_val', sa.Float(), nullable=True),
                    sa.Column('sum_val', sa.Float(), nullable=True),
                    sa.Column('execution_record_id', sa.Integer(), nullable=True),
                    sa.Column('created_at', sa.DateTime(), nullable=True),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index('ix_signal_history_execution_record_id', 'signal_history', ['execution_record_id'],
                    unique=False)
    op.create_index('ix_signal_history_job_code_load_timestamp', 'signal_history',
                    ['job_code', 'load_timestamp'], unique=False)

    op.create_table('config_plan',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('parent', sa.String(length=64), nullable=False),
                    sa.Column('plan_name', sa.String(length=64), nullable=False),
                    sa.Column('is_active', sa.Boolean(), nullable=False),
                    sa.Column('updated_by', sa.String(length=100), nullable=True),
                    sa.Column('updated_at', sa.DateTime(), nullable=True),
                    sa.PrimaryKeyConstraint('id'),
                    sa.UniqueConstraint('parent', 'plan_name', name='uq_config_plan_parent_name')
                    )

    op.create_table('config_value',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('plan_id', sa.Integer(), nullable=False),
                    sa.Column('config_key', sa.String(length=128), nullable=False),
                    sa.Column('config_value', sa.String(length=512), nullable=False),
                    sa.ForeignKeyConstraint(['plan_id'], ['config_plan.id'], ),
                    sa.PrimaryKeyConstraint('id')
                    )


def downgrade():
    op.drop_table('config_value')
    op.drop_table('config_plan')
    op.drop_index('ix_signal_history_job_code_load_timestamp', table_name='signal_history')
    op.drop_index('ix_signal_history_execution_record_id', table_name='signal_history')
    op.drop_table('signal_history')
    op.drop_index('ix_lease_job_code_released_at', table_name='lease')
    op.drop_index('ix_lease_acquired_at', table_name='lease')
    op.drop_table('lease')
    op.drop_index('ix_execution_record_start_time', table_name='execution_record')
    op.drop_index('ix_execution_record_job_code', table_name='execution_record')
    op.drop_table('execution_record')
    op.drop_table('job')
