"""add batch_jobs.statistics and backfill it

Adds the materialized statistics column and populates it for every
existing job by counting that job's url_results, so readers never see a
job without statistics after the upgrade.

Revision ID: 002
Revises: 001
Create Date: 2026-03-09 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '002'
down_revision = '001'
branch_labels = None
depends_on = None

STATUSES = ('pending', 'running', 'completed', 'failed', 'cancelled')

batch_jobs = sa.table(
    'batch_jobs',
    sa.column('id', sa.String),
    sa.column('statistics', sa.JSON),
)
url_results = sa.table(
    'url_results',
    sa.column('batch_id', sa.String),
    sa.column('status', sa.String),
    sa.column('result', sa.JSON),
)


def upgrade() -> None:
    """Add the column, then recompute statistics from url_results."""
    with op.batch_alter_table('batch_jobs') as batch_op:
        batch_op.add_column(sa.Column('statistics', sa.JSON(), nullable=True))

    conn = op.get_bind()
    job_ids = conn.execute(sa.select(batch_jobs.c.id)).scalars().all()
    for job_id in job_ids:
        stats = {status: 0 for status in STATUSES}
        stats['total'] = 0
        stats['total_rows'] = 0
        rows = conn.execute(
            sa.select(url_results.c.status, url_results.c.result).where(
                url_results.c.batch_id == job_id
            )
        )
        for status, result in rows:
            stats['total'] += 1
            if status in stats:
                stats[status] += 1
            if status == 'completed' and result:
                stats['total_rows'] += len(result.get('data') or [])
        conn.execute(
            batch_jobs.update()
            .where(batch_jobs.c.id == job_id)
            .values(statistics=stats)
        )


def downgrade() -> None:
    with op.batch_alter_table('batch_jobs') as batch_op:
        batch_op.drop_column('statistics')
