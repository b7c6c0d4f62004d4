"""
Task store access.

A narrow facade over the database session: ``select`` against a table or a
status view, ``rpc`` for the named stored procedures, ``update`` and
``insert``. Rows come back as plain dicts. Every read is a live query; nothing
is cached, because a stale task list is how two workers end up holding the
same task.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import select as sa_select, update as sa_update
from sqlalchemy.exc import (
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)

from taskdelivery.errors import (
    NotFound,
    PreconditionFailed,
    TransportFailure,
    ValidationError,
)
from taskdelivery.models import (
    Task,
    TaskStatus,
    TaskCostProposal,
    DeliveryPersonnel,
    DeliveryEarning,
    QueuedJob,
)
from taskdelivery.services.procedures import get_procedure, member_task_ids
from taskdelivery.services.views import get_view

logger = logging.getLogger(__name__)

TABLES = {
    'tasks': Task,
    'task_cost_proposals': TaskCostProposal,
    'delivery_personnel': DeliveryPersonnel,
    'delivery_earnings': DeliveryEarning,
    'job_queue': QueuedJob,
}

TRANSPORT_ERRORS = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError)


class TaskStore:
    """Query surface for tasks, proposals and delivery personnel."""

    def __init__(self, session):
        self.session = session

    # =============================================
    # COLLABORATOR SURFACE
    # =============================================

    @contextmanager
    def _guard(self, operation, task_id=None):
        """Roll back on any error and translate driver errors into error kinds."""
        try:
            yield
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"{operation} hit a constraint for task {task_id}: {e.orig}")
            raise PreconditionFailed(
                'The change conflicts with the current state of the task',
                operation=operation,
                task_id=task_id,
            ) from e
        except TRANSPORT_ERRORS as e:
            self.session.rollback()
            logger.error(f"{operation} failed to reach the database (task {task_id}): {e}")
            raise TransportFailure(
                'Could not reach the task store, please try again',
                operation=operation,
                task_id=task_id,
            ) from e
        except Exception:
            self.session.rollback()
            raise

    def _table(self, name):
        model = TABLES.get(name)
        if model is None:
            raise ValidationError(f'Unknown table "{name}"', field='table')
        return model.__table__

    def _source(self, name):
        """Return (statement, columns) for a view or table name."""
        view = get_view(name)
        if view is not None:
            return view, Task.__table__.c
        table = self._table(name)
        return sa_select(table), table.c

    @staticmethod
    def _column(columns, key):
        if key not in columns:
            raise ValidationError(f'Unknown column "{key}"', field=key)
        return columns[key]

    def _criteria(self, columns, filters):
        criteria = []
        for key, value in (filters or {}).items():
            column = self._column(columns, key)
            if isinstance(value, (list, tuple, set)):
                criteria.append(column.in_(list(value)))
            elif value is None:
                criteria.append(column.is_(None))
            else:
                criteria.append(column == value)
        return criteria

    def select(
        self,
        source: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Rows of a table or view matching ``filters`` (list values become IN)."""
        stmt, columns = self._source(source)
        stmt = stmt.where(*self._criteria(columns, filters))
        if order_by:
            column = self._column(columns, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit:
            stmt = stmt.limit(limit)

        with self._guard(f'select:{source}'):
            return [dict(row) for row in self.session.execute(stmt).mappings()]

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None):
        """
        Run a stored procedure in its own transaction.

        The transaction commits when the procedure reports success and rolls
        back when it returns False or None, so a failed precondition leaves no
        partial writes behind.
        """
        func = get_procedure(name)
        if func is None:
            raise NotFound(f'Unknown procedure "{name}"', operation=name)
        params = params or {}

        with self._guard(name, params.get('task_id')):
            result = func(self.session, **params)
            if result is False or result is None:
                self.session.rollback()
            else:
                self.session.commit()
        return result

    def update(self, table: str, patch: Dict[str, Any], filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply ``patch`` to the matching rows and return them as updated."""
        tbl = self._table(table)
        for key in patch:
            self._column(tbl.c, key)
        criteria = self._criteria(tbl.c, filters)

        with self._guard(f'update:{table}', filters.get('id')):
            if self.session.get_bind().dialect.update_returning:
                result = self.session.execute(
                    sa_update(tbl).where(*criteria).values(**patch).returning(*tbl.c)
                )
                rows = [dict(row) for row in result.mappings()]
            else:
                ids = self.session.execute(sa_select(tbl.c.id).where(*criteria)).scalars().all()
                rows = []
                if ids:
                    result = self.session.execute(
                        sa_update(tbl).where(tbl.c.id.in_(ids), *criteria).values(**patch)
                    )
                    if result.rowcount != len(ids):
                        # A matching row changed between the read and the write
                        self.session.rollback()
                        return []
                    rows = [
                        dict(row) for row in
                        self.session.execute(sa_select(tbl).where(tbl.c.id.in_(ids))).mappings()
                    ]
            self.session.commit()
        return rows

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        tbl = self._table(table)
        model = TABLES[table]
        for key in row:
            self._column(tbl.c, key)

        with self._guard(f'insert:{table}', row.get('task_id')):
            obj = model(**row)
            self.session.add(obj)
            self.session.flush()
            inserted = {column.name: getattr(obj, column.name) for column in tbl.columns}
            self.session.commit()
        return inserted

    def insert_many(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert several rows in one transaction (all or none)."""
        tbl = self._table(table)
        model = TABLES[table]
        for row in rows:
            for key in row:
                self._column(tbl.c, key)

        with self._guard(f'insert:{table}'):
            objs = [model(**row) for row in rows]
            self.session.add_all(objs)
            self.session.flush()
            inserted = [
                {column.name: getattr(obj, column.name) for column in tbl.columns}
                for obj in objs
            ]
            self.session.commit()
        return inserted

    # =============================================
    # TYPED READS
    # =============================================

    def list_available(self):
        """Pending tasks nobody holds, oldest first."""
        return self.select('v_available_tasks', order_by='created_at')

    def list_cost_review(self, worker_id):
        return self.select(
            'v_cost_review_tasks',
            {'reviewing_delivery_person_id': worker_id},
            order_by='created_at',
        )

    def list_cost_proposed(self, user_id=None):
        filters = {'user_id': user_id} if user_id else None
        return self.select('v_cost_proposed_tasks', filters, order_by='cost_proposed_at')

    def list_user_counter_proposed(self, worker_id=None):
        filters = {'reviewing_delivery_person_id': worker_id} if worker_id else None
        return self.select('v_user_counter_proposed_tasks', filters, order_by='user_counter_at')

    def list_delivery_counter_proposed(self, user_id=None):
        filters = {'user_id': user_id} if user_id else None
        return self.select('v_delivery_counter_proposed_tasks', filters, order_by='cost_proposed_at')

    def list_assigned(self, worker_id):
        return self.select('v_assigned_tasks', {'delivery_man_id': worker_id}, order_by='assigned_at')

    def list_worker_active(self, worker_id):
        """Tasks assigned to the worker plus negotiations they hold."""
        assigned = self.select(
            'tasks',
            {'status': list(TaskStatus.WORKER_ACTIVE), 'delivery_man_id': worker_id},
        )
        reviewing = self.select(
            'tasks',
            {'status': list(TaskStatus.NEGOTIATION), 'reviewing_delivery_person_id': worker_id},
        )
        rows = {row['id']: row for row in assigned + reviewing}
        return sorted(rows.values(), key=lambda row: (row['created_at'], row['id']))

    def list_completed(self, worker_id):
        return self.select(
            'v_completed_tasks',
            {'delivery_man_id': worker_id},
            order_by='completed_at',
            descending=True,
        )

    def list_near(self, latitude, longitude, radius_km=10.0):
        """
        Pending tasks near a point.

        Degrades instead of failing: if the proximity procedure errors, the
        unfiltered pending list is returned; if that errors too, an empty list.
        """
        try:
            return self.rpc('get_tasks_near_location', {
                'latitude': latitude,
                'longitude': longitude,
                'radius_km': radius_km,
            })
        except Exception as e:
            logger.warning(f"Proximity query failed, falling back to all pending tasks: {e}")

        try:
            return self.list_available()
        except Exception as e:
            logger.warning(f"Pending task fallback failed, returning no tasks: {e}")
            return []

    def member_ids(self, task_id):
        with self._guard('member_ids', task_id):
            return member_task_ids(self.session, task_id)

    def get_task(self, task_id):
        """Rows behind a task id: one row, every bundle member, or [] if unknown."""
        ids = self.member_ids(task_id)
        if not ids:
            return []
        return self.select('tasks', {'id': ids}, order_by='created_at')

    def task_exists(self, task_id):
        return bool(self.member_ids(task_id))

    def list_proposals(self, task_id, status='pending'):
        ids = self.member_ids(task_id)
        if not ids:
            return []
        filters = {'task_id': ids}
        if status:
            filters['status'] = status
        return self.select('task_cost_proposals', filters, order_by='proposed_at')

    def get_personnel(self, worker_id):
        rows = self.select('delivery_personnel', {'user_id': worker_id}, limit=1)
        return rows[0] if rows else None

    def list_earnings(self, worker_id):
        return self.select(
            'delivery_earnings',
            {'delivery_person_id': worker_id},
            order_by='created_at',
            descending=True,
        )
