"""
Real-time task views.

Changed task rows are pushed as-is to Socket.IO rooms. The server does not
filter them: a subscriber re-applies the predicate for its view on every
push, so a row that left the view (claimed, assigned, cancelled) is dropped
and one that entered it is added.
"""
import logging
from datetime import datetime

from taskdelivery.models.task import TaskStatus
from taskdelivery.services.bundles import aggregate_bundles

logger = logging.getLogger(__name__)

AVAILABLE_ROOM = 'tasks:available'
AVAILABLE_EVENT = 'available_tasks_changed'
ASSIGNED_EVENT = 'assigned_tasks_changed'


def assigned_room(worker_id):
    return f'tasks:assigned:{worker_id}'


def is_available_row(row):
    """Row belongs to the "available tasks" view (any negotiable status)."""
    return row.get('status') in TaskStatus.NEGOTIABLE


def is_assigned_row(row, worker_id):
    """Row belongs to the worker's own view: assigned to them, or in a negotiation they hold."""
    if row.get('status') not in TaskStatus.WORKER_ACTIVE:
        return False
    return worker_id in (row.get('delivery_man_id'), row.get('reviewing_delivery_person_id'))


def filter_available(rows):
    return aggregate_bundles(row for row in rows if is_available_row(row))


def filter_assigned(rows, worker_id):
    return aggregate_bundles(row for row in rows if is_assigned_row(row, worker_id))


def _serializable(row):
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in row.items()
    }


class TaskChangeNotifier:
    """Broadcasts changed task rows to the available room and to each involved worker."""

    def __init__(self, socketio):
        self.socketio = socketio

    def publish(self, rows):
        rows = [_serializable(row) for row in rows or []]
        if not rows:
            return

        try:
            self.socketio.emit(AVAILABLE_EVENT, {'tasks': rows}, room=AVAILABLE_ROOM)

            workers = set()
            for row in rows:
                workers.update(w for w in (row.get('delivery_man_id'), row.get('reviewing_delivery_person_id')) if w)
            for worker_id in workers:
                self.socketio.emit(
                    ASSIGNED_EVENT,
                    {'worker_id': worker_id, 'tasks': rows},
                    room=assigned_room(worker_id),
                )
        except Exception as e:
            logger.error(f'Emit task change error: {e}')
