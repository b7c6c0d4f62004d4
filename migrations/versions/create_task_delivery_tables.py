"""Create task delivery tables.

Revision ID: create_task_delivery_tables
Revises:
Create Date: 2026-03-02
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'create_task_delivery_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('tasks',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('location_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('location_purpose', sa.String(length=255), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('additional_locations', sa.JSON(), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('delivery_man_id', sa.String(length=64), nullable=True),
        sa.Column('reviewing_delivery_person_id', sa.String(length=64), nullable=True),
        sa.Column('image_url', sa.String(length=500), nullable=True),
        sa.Column('image_path', sa.String(length=500), nullable=True),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending'),
        sa.Column('price', sa.Float(), nullable=True),
        sa.Column('proposed_cost', sa.Float(), nullable=True),
        sa.Column('accepted_cost', sa.Float(), nullable=True),
        sa.Column('cost_notes', sa.Text(), nullable=True),
        sa.Column('cost_proposed_at', sa.DateTime(), nullable=True),
        sa.Column('cost_accepted_at', sa.DateTime(), nullable=True),
        sa.Column('cost_proposed_by', sa.String(length=64), nullable=True),
        sa.Column('user_counter_cost', sa.Float(), nullable=True),
        sa.Column('user_counter_notes', sa.Text(), nullable=True),
        sa.Column('user_counter_at', sa.DateTime(), nullable=True),
        sa.Column('negotiation_agreed_by', sa.String(length=20), nullable=True),
        sa.Column('assignment_type', sa.String(length=20), nullable=True),
        sa.Column('assigned_by', sa.String(length=64), nullable=True),
        sa.Column('assignment_notes', sa.Text(), nullable=True),
        sa.Column('location_completions', sa.JSON(), nullable=True),
        sa.Column('location_notes', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('assigned_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tasks_user_id'), 'tasks', ['user_id'], unique=False)
    op.create_index(op.f('ix_tasks_delivery_man_id'), 'tasks', ['delivery_man_id'], unique=False)
    op.create_index(op.f('ix_tasks_reviewing_delivery_person_id'), 'tasks', ['reviewing_delivery_person_id'], unique=False)
    op.create_index(op.f('ix_tasks_status'), 'tasks', ['status'], unique=False)
    op.create_index(op.f('ix_tasks_created_at'), 'tasks', ['created_at'], unique=False)

    op.create_table('task_cost_proposals',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.String(length=64), nullable=False),
        sa.Column('delivery_person_id', sa.String(length=64), nullable=False),
        sa.Column('proposed_cost', sa.Float(), nullable=False),
        sa.Column('cost_notes', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('proposed_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_task_cost_proposals_task_id'), 'task_cost_proposals', ['task_id'], unique=False)
    op.create_index(op.f('ix_task_cost_proposals_delivery_person_id'), 'task_cost_proposals', ['delivery_person_id'], unique=False)
    op.create_index(op.f('ix_task_cost_proposals_status'), 'task_cost_proposals', ['status'], unique=False)
    # One live offer per worker per task
    op.create_index(
        'uq_pending_proposal_per_worker', 'task_cost_proposals',
        ['task_id', 'delivery_person_id'], unique=True,
        sqlite_where=sa.text("status = 'pending'"),
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table('delivery_personnel',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('vehicle_type', sa.String(length=20), nullable=False, server_default='motorcycle'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_online', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('rating', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_latitude', sa.Float(), nullable=True),
        sa.Column('current_longitude', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_delivery_personnel_user_id'), 'delivery_personnel', ['user_id'], unique=True)

    op.create_table('delivery_earnings',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('delivery_person_id', sa.String(length=64), nullable=False),
        sa.Column('task_id', sa.String(length=64), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('base_fee', sa.Float(), nullable=False, server_default='0'),
        sa.Column('distance_fee', sa.Float(), nullable=False, server_default='0'),
        sa.Column('performance_bonus', sa.Float(), nullable=False, server_default='0'),
        sa.Column('tip', sa.Float(), nullable=False, server_default='0'),
        sa.Column('penalty', sa.Float(), nullable=False, server_default='0'),
        sa.Column('total_earnings', sa.Float(), nullable=False),
        sa.Column('type', sa.String(length=30), nullable=False, server_default='base_fee'),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_id')
    )
    op.create_index(op.f('ix_delivery_earnings_delivery_person_id'), 'delivery_earnings', ['delivery_person_id'], unique=False)
    op.create_index(op.f('ix_delivery_earnings_order_id'), 'delivery_earnings', ['order_id'], unique=False)
    op.create_index(op.f('ix_delivery_earnings_created_at'), 'delivery_earnings', ['created_at'], unique=False)

    op.create_table('job_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('task_identifier', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='25'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='queued'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_job_queue_task_identifier'), 'job_queue', ['task_identifier'], unique=False)
    op.create_index(op.f('ix_job_queue_status'), 'job_queue', ['status'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_job_queue_status'), table_name='job_queue')
    op.drop_index(op.f('ix_job_queue_task_identifier'), table_name='job_queue')
    op.drop_table('job_queue')

    op.drop_index(op.f('ix_delivery_earnings_created_at'), table_name='delivery_earnings')
    op.drop_index(op.f('ix_delivery_earnings_order_id'), table_name='delivery_earnings')
    op.drop_index(op.f('ix_delivery_earnings_delivery_person_id'), table_name='delivery_earnings')
    op.drop_table('delivery_earnings')

    op.drop_index(op.f('ix_delivery_personnel_user_id'), table_name='delivery_personnel')
    op.drop_table('delivery_personnel')

    op.drop_index('uq_pending_proposal_per_worker', table_name='task_cost_proposals')
    op.drop_index(op.f('ix_task_cost_proposals_status'), table_name='task_cost_proposals')
    op.drop_index(op.f('ix_task_cost_proposals_delivery_person_id'), table_name='task_cost_proposals')
    op.drop_index(op.f('ix_task_cost_proposals_task_id'), table_name='task_cost_proposals')
    op.drop_table('task_cost_proposals')

    op.drop_index(op.f('ix_tasks_created_at'), table_name='tasks')
    op.drop_index(op.f('ix_tasks_status'), table_name='tasks')
    op.drop_index(op.f('ix_tasks_reviewing_delivery_person_id'), table_name='tasks')
    op.drop_index(op.f('ix_tasks_delivery_man_id'), table_name='tasks')
    op.drop_index(op.f('ix_tasks_user_id'), table_name='tasks')
    op.drop_table('tasks')
