"""
Read views over the tasks table, one per status category.

Each view is a SELECT the store can filter and order by column name, the
same way it filters a plain table.
"""
from sqlalchemy import select

from taskdelivery.models import Task, TaskStatus


def _tasks_in(*statuses):
    return select(Task.__table__).where(Task.status.in_(statuses))


VIEWS = {
    # Open to any worker
    'v_available_tasks': lambda: _tasks_in(*TaskStatus.CLAIMABLE).where(Task.delivery_man_id.is_(None)),
    # Filter by reviewing_delivery_person_id
    'v_cost_review_tasks': lambda: _tasks_in(TaskStatus.COST_REVIEW),
    'v_cost_proposed_tasks': lambda: _tasks_in(TaskStatus.COST_PROPOSED),
    'v_user_counter_proposed_tasks': lambda: _tasks_in(TaskStatus.USER_COUNTER_PROPOSED),
    'v_delivery_counter_proposed_tasks': lambda: _tasks_in(TaskStatus.DELIVERY_COUNTER_PROPOSED),
    # Filter by delivery_man_id
    'v_assigned_tasks': lambda: _tasks_in(*TaskStatus.COMPLETABLE),
    'v_completed_tasks': lambda: _tasks_in(TaskStatus.COMPLETED),
}


def get_view(name):
    """Return a fresh SELECT for the named view, or None if there is no such view."""
    factory = VIEWS.get(name)
    return factory() if factory else None
