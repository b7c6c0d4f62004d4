"""add bundle_id and version to tasks

Revision ID: add_bundle_id_to_tasks
Revises: create_task_delivery_tables
Create Date: 2026-03-16

Multi-stop requests used to be linked only by a 'group:<id>' token inside
special_instructions. This adds a real bundle_id column and fills it from the
token for existing rows. The token is left in place for older clients.
"""
import re

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'add_bundle_id_to_tasks'
down_revision = 'create_task_delivery_tables'
branch_labels = None
depends_on = None

MARKER = re.compile(r"group:(\S*)")


def upgrade():
    with op.batch_alter_table('tasks') as batch_op:
        batch_op.add_column(sa.Column('bundle_id', sa.String(length=64), nullable=True))
        # Optimistic concurrency for per-stop progress updates
        batch_op.add_column(sa.Column('version', sa.Integer(), nullable=False, server_default='1'))
        batch_op.create_index(op.f('ix_tasks_bundle_id'), ['bundle_id'], unique=False)

    # Backfill bundle_id from the legacy marker
    conn = op.get_bind()
    tasks = sa.table(
        'tasks',
        sa.column('id', sa.String),
        sa.column('special_instructions', sa.Text),
        sa.column('bundle_id', sa.String),
    )
    rows = conn.execute(
        sa.select(tasks.c.id, tasks.c.special_instructions)
        .where(tasks.c.special_instructions.like('%group:%'))
    ).fetchall()

    for task_id, instructions in rows:
        # Only the first token counts; the id runs to the next whitespace
        match = MARKER.search(instructions or '')
        if match and match.group(1):
            conn.execute(
                tasks.update().where(tasks.c.id == task_id).values(bundle_id=match.group(1))
            )


def downgrade():
    with op.batch_alter_table('tasks') as batch_op:
        batch_op.drop_index(op.f('ix_tasks_bundle_id'))
        batch_op.drop_column('version')
        batch_op.drop_column('bundle_id')
