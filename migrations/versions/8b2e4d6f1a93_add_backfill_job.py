"""add backfill job

Revision ID: 8b2e4d6f1a93
Revises: 3f1c9a2d7b41
Create Date: 2026-10-19 14:31:07.204116

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8b2e4d6f1a93'
down_revision = '3f1c9a2d7b41'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('backfill_job',
                    sa.Column('id', sa.Integer(), nullable=False),
                    sa.Column('job_code', sa.String(length=64), nullable=False),
                    sa.Column('from_time', sa.DateTime(), nullable=False),
                    sa.Column('to_time', sa.DateTime(), nullable=False),
                    sa.Column('purge_strategy', sa.String(length=20), nullable=False),
                    sa.Column('status', sa.String(length=20), nullable=False),
                    sa.Column('requested_by', sa.String(length=128), nullable=True),
                    sa.Column('requested_at', sa.DateTime(), nullable=False),
                    sa.Column('holder', sa.String(length=128), nullable=True),
                    sa.Column('start_time', sa.DateTime(), nullable=True),
                    sa.Column('end_time', sa.DateTime(), nullable=True),
                    sa.Column('duration_seconds', sa.Float(), nullable=True),
                    sa.Column('rows_fetched', sa.Integer(), nullable=True),
                    sa.Column('rows_ingested', sa.Integer(), nullable=True),
                    sa.Column('rows_purged', sa.Integer(), nullable=True),
                    sa.Column('error_message', sa.Text(), nullable=True),
                    sa.Column('error_detail', sa.Text(), nullable=True),
                    sa.Column('updated_at', sa.DateTime(), nullable=True),
                    sa.ForeignKeyConstraint(['job_code'], ['job.code'], ),
                    sa.PrimaryKeyConstraint('id')
                    )
    op.create_index('ix_backfill_job_job_code', 'backfill_job', ['job_code'], unique=False)
    op.create_index('ix_backfill_job_status', 'backfill_job', ['status'], unique=False)
    op.create_index('ix_backfill_job_requested_at', 'backfill_job', ['requested_at'], unique=False)


def downgrade():
    op.drop_index('ix_backfill_job_requested_at', table_name='backfill_job')
    op.drop_index('ix_backfill_job_status', table_name='backfill_job')
    op.drop_index('ix_backfill_job_job_code', table_name='backfill_job')
    op.drop_table('backfill_job')
