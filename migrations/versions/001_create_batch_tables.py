"""create batch_jobs and url_results tables

Adds the two collections of the batch scrape engine: batch_jobs (one row
per batch) and url_results (one row per URL of a batch, cascade-deleted
with its job).

See also: src/entities/batch_job.py, src/entities/url_result.py

Revision ID: 001
Revises:
Create Date: 2026-03-02 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'batch_jobs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('urls', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('settings', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_batch_jobs_status'), 'batch_jobs', ['status'])
    op.create_index(op.f('ix_batch_jobs_created_at'), 'batch_jobs', ['created_at'])
    op.create_index(op.f('ix_batch_jobs_updated_at'), 'batch_jobs', ['updated_at'])

    op.create_table(
        'url_results',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('batch_id', sa.String(length=36), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['batch_id'], ['batch_jobs.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_url_results_batch_id'), 'url_results', ['batch_id'])
    op.create_index(op.f('ix_url_results_status'), 'url_results', ['status'])
    op.create_index(op.f('ix_url_results_started_at'), 'url_results', ['started_at'])
    op.create_index(op.f('ix_url_results_completed_at'), 'url_results', ['completed_at'])
    op.create_index(
        'ix_url_results_batch_id_status', 'url_results', ['batch_id', 'status']
    )


def downgrade() -> None:
    op.drop_index('ix_url_results_batch_id_status', table_name='url_results')
    op.drop_index(op.f('ix_url_results_completed_at'), table_name='url_results')
    op.drop_index(op.f('ix_url_results_started_at'), table_name='url_results')
    op.drop_index(op.f('ix_url_results_status'), table_name='url_results')
    op.drop_index(op.f('ix_url_results_batch_id'), table_name='url_results')
    op.drop_table('url_results')
    op.drop_index(op.f('ix_batch_jobs_updated_at'), table_name='batch_jobs')
    op.drop_index(op.f('ix_batch_jobs_created_at'), table_name='batch_jobs')
    op.drop_index(op.f('ix_batch_jobs_status'), table_name='batch_jobs')
    op.drop_table('batch_jobs')
