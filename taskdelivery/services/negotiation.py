"""
Negotiation engine.

Owns every task status transition:

    pending --claim--> cost_review --propose--> cost_proposed
    cost_proposed --user accepts--> assigned
    cost_proposed --user counters--> user_counter_proposed
    user_counter_proposed --worker accepts--> assigned
    user_counter_proposed --worker rejects--> pending
    user_counter_proposed --worker counters--> delivery_counter_proposed
    delivery_counter_proposed --user accepts / counters--> assigned / user_counter_proposed
    any negotiation status --cancel--> pending
    assigned --complete--> completed

Arguments are checked before the store is touched. Each mutation is one
stored-procedure call, i.e. one transaction of conditional updates, so two
workers racing for the same task cannot both win. A procedure that reports
failure becomes NotFound when the task does not exist and a
PreconditionFailed subclass otherwise.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from taskdelivery.errors import (
    InvalidState,
    NoProposal,
    NotFound,
    PreconditionFailed,
    TaskDeliveryError,
    TaskNotAvailable,
    TransportFailure,
    ValidationError,
)
from taskdelivery.services.bundles import aggregate_bundles, is_bundle_id
from taskdelivery.services.entities import (
    TaskEntity,
    parse_cost_proposal,
    parse_delivery_personnel,
    parse_task,
)
from taskdelivery.services.procedures import AGREED_BY, CANCELLED_BY, RESPONSE_TYPES
from taskdelivery.services.realtime import filter_assigned

logger = logging.getLogger(__name__)

DEFAULT_EARNINGS_SHARE = 0.7
DEFAULT_NEAR_RADIUS_KM = 10.0
MAX_LOCATION_UPDATE_ATTEMPTS = 5


@dataclass
class CompletionResult:
    task_id: str
    worker_id: str
    completed_count: int

    @property
    def already_completed(self) -> bool:
        """True when this call found every task already completed by the worker."""
        return self.completed_count == 0

    def to_dict(self):
        return {
            'task_id': self.task_id,
            'worker_id': self.worker_id,
            'completed_count': self.completed_count,
            'already_completed': self.already_completed,
        }


def _require_id(value, field, operation, task_id=None):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{field} is required', field=field, operation=operation, task_id=task_id)
    return value


def _require_cost(value, field, operation, task_id=None):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f'{field} must be a number', field=field, operation=operation, task_id=task_id)
    if math.isnan(value) or math.isinf(value) or value <= 0:
        raise ValidationError(f'{field} must be greater than 0', field=field, operation=operation, task_id=task_id)
    return float(value)


def _require_choice(value, choices, field, operation, task_id=None):
    if value not in choices:
        raise ValidationError(
            f'{field} must be one of: {", ".join(choices)}',
            field=field, operation=operation, task_id=task_id,
        )
    return value


def _require_index(value, operation, task_id=None):
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            'location_index must be a non-negative integer',
            field='location_index', operation=operation, task_id=task_id,
        )
    return value


class NegotiationEngine:
    """State machine for claiming, pricing, assigning and completing tasks."""

    def __init__(self, store, notifier=None, earnings_share=DEFAULT_EARNINGS_SHARE,
                 near_radius_km=DEFAULT_NEAR_RADIUS_KM):
        self.store = store
        self.notifier = notifier
        self.earnings_share = earnings_share
        self.near_radius_km = near_radius_km

    # =============================================
    # PLUMBING
    # =============================================

    def _publish(self, task_id):
        """Push the changed rows to real-time subscribers. Never fails the caller."""
        if self.notifier is None:
            return
        try:
            self.notifier.publish(self.store.get_task(task_id))
        except Exception as e:
            logger.warning(f"Could not broadcast change to task {task_id}: {e}")

    def _run(self, operation, procedure, task_id, params, on_failure):
        """Call one procedure; turn a False/None result into a typed error."""
        try:
            result = self.store.rpc(procedure, dict(task_id=task_id, **params))
        except TaskDeliveryError as e:
            e.operation = operation
            e.task_id = task_id
            if isinstance(e, TransportFailure):
                logger.error(f"{operation} failed for task {task_id}: {e.message}")
            raise

        if result is False or result is None:
            if not self.store.task_exists(task_id):
                raise NotFound(f'Task {task_id} not found', operation=operation, task_id=task_id)
            raise on_failure()

        logger.info(f"{operation} succeeded for task {task_id}")
        self._publish(task_id)
        return result

    def _unavailable(self, operation, task_id, worker_id):
        """Explain a failed claim: unknown worker, worker busy/offline, or task taken."""
        def explain():
            row = self.store.get_personnel(worker_id)
            if row is None:
                return NotFound(
                    f'Delivery worker {worker_id} is not registered',
                    operation=operation, task_id=task_id,
                )
            if not parse_delivery_personnel(row).can_take_work:
                return TaskNotAvailable(
                    'You must be available and online to take a new task',
                    operation=operation, task_id=task_id,
                )
            return TaskNotAvailable(
                'This task is no longer available; another delivery worker took it',
                operation=operation, task_id=task_id,
            )
        return explain

    @staticmethod
    def _fail(error_class, message, operation, task_id):
        return lambda: error_class(message, operation=operation, task_id=task_id)

    # =============================================
    # CLAIM / ASSIGN
    # =============================================

    def claim(self, task_id, worker_id):
        """Take a pending task (all members of a bundle) into cost review."""
        operation = 'claim'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)

        self._run(
            operation, 'start_cost_review', task_id,
            {'delivery_person_id': worker_id},
            self._unavailable(operation, task_id, worker_id),
        )
        return True

    def assign(self, task_id, worker_id):
        """Accept a pending task at its listed price."""
        operation = 'assign'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)

        unavailable = self._unavailable(operation, task_id, worker_id)

        def explain():
            if any(row.get('price') is None for row in self.store.get_task(task_id)):
                return InvalidState(
                    'This task has no listed price; propose a cost instead',
                    operation=operation, task_id=task_id,
                )
            return unavailable()

        self._run(
            operation, 'assign_task_to_delivery_person', task_id,
            {'delivery_person_id': worker_id},
            explain,
        )
        return True

    # =============================================
    # WORKER PROPOSALS
    # =============================================

    def propose_cost(self, task_id, worker_id, cost, notes=None):
        operation = 'propose_cost'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)
        cost = _require_cost(cost, 'cost', operation, task_id)

        self._run(
            operation, 'propose_task_cost', task_id,
            {'delivery_person_id': worker_id, 'proposed_cost': cost, 'cost_notes': notes},
            self._fail(InvalidState, 'You can only propose a cost for a task you are reviewing',
                       operation, task_id),
        )
        return True

    def update_proposal(self, task_id, worker_id, cost, notes=None):
        """Revise this worker's pending offer in place."""
        operation = 'update_proposal'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)
        cost = _require_cost(cost, 'cost', operation, task_id)

        self._run(
            operation, 'update_cost_proposal', task_id,
            {'delivery_person_id': worker_id, 'proposed_cost': cost, 'cost_notes': notes},
            self._fail(InvalidState, 'You have no pending proposal on this task to update',
                       operation, task_id),
        )
        return True

    def cancel_cost_review(self, task_id, worker_id):
        operation = 'cancel_cost_review'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)

        self._run(
            operation, 'cancel_cost_review', task_id,
            {'delivery_person_id': worker_id},
            self._fail(InvalidState, 'You are not reviewing this task', operation, task_id),
        )
        return True

    # =============================================
    # USER DECISIONS
    # =============================================

    def accept_proposed_cost(self, task_id, user_id):
        """Accept the oldest pending proposal; the offering worker is assigned."""
        operation = 'accept_proposed_cost'
        _require_id(task_id, 'task_id', operation)
        _require_id(user_id, 'user_id', operation, task_id)

        def explain():
            if not self.store.list_proposals(task_id):
                return NoProposal('There is no pending cost proposal for this task',
                                  operation=operation, task_id=task_id)
            return InvalidState('This task has no offer waiting for your answer',
                                operation=operation, task_id=task_id)

        self._run(operation, 'accept_cost_proposal', task_id, {'user_id': user_id}, explain)
        return True

    def accept_specific_proposal(self, task_id, proposal_id, user_id):
        operation = 'accept_specific_proposal'
        _require_id(task_id, 'task_id', operation)
        _require_id(proposal_id, 'proposal_id', operation, task_id)
        _require_id(user_id, 'user_id', operation, task_id)

        def explain():
            proposal = next(
                (row for row in self.store.list_proposals(task_id, status=None) if row['id'] == proposal_id),
                None,
            )
            if proposal is None:
                return NotFound(f'Proposal {proposal_id} not found for this task',
                                operation=operation, task_id=task_id)
            if proposal['status'] != 'pending':
                return NoProposal('That proposal is no longer pending',
                                  operation=operation, task_id=task_id)
            return InvalidState('This task has no offer waiting for your answer',
                                operation=operation, task_id=task_id)

        self._run(
            operation, 'accept_cost_proposal', task_id,
            {'user_id': user_id, 'proposal_id': proposal_id},
            explain,
        )
        return True

    def reject_proposed_cost(self, task_id, user_id):
        """Turn down every offer; the task goes back to pending."""
        operation = 'reject_proposed_cost'
        _require_id(task_id, 'task_id', operation)
        _require_id(user_id, 'user_id', operation, task_id)

        self._run(
            operation, 'reject_all_cost_proposals', task_id,
            {'user_id': user_id},
            self._fail(InvalidState, 'This task has no offer waiting for your answer', operation, task_id),
        )
        return True

    # =============================================
    # COUNTER OFFERS
    # =============================================

    def user_propose_counter_offer(self, task_id, user_id, cost, notes=None):
        operation = 'user_propose_counter_offer'
        _require_id(task_id, 'task_id', operation)
        _require_id(user_id, 'user_id', operation, task_id)
        cost = _require_cost(cost, 'cost', operation, task_id)

        self._run(
            operation, 'user_propose_counter_offer', task_id,
            {'user_id': user_id, 'counter_cost': cost, 'counter_notes': notes},
            self._fail(InvalidState, 'This task has no offer you can counter', operation, task_id),
        )
        return True

    def delivery_man_respond_to_counter_offer(self, task_id, worker_id, response_type,
                                              new_cost=None, notes=None):
        operation = 'delivery_man_respond_to_counter_offer'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)
        _require_choice(response_type, RESPONSE_TYPES, 'response_type', operation, task_id)
        if response_type == 'counter':
            new_cost = _require_cost(new_cost, 'new_cost', operation, task_id)

        self._run(
            operation, 'delivery_man_respond_to_counter_offer', task_id,
            {
                'delivery_person_id': worker_id,
                'response_type': response_type,
                'new_cost': new_cost,
                'response_notes': notes,
            },
            self._fail(InvalidState, 'There is no counter offer waiting for your answer', operation, task_id),
        )
        return True

    def accept_user_counter_offer(self, task_id, worker_id):
        return self.delivery_man_respond_to_counter_offer(task_id, worker_id, 'accept')

    # =============================================
    # FINALIZE / CANCEL
    # =============================================

    def finalize_cost_negotiation(self, task_id, final_cost, agreed_by):
        operation = 'finalize_cost_negotiation'
        _require_id(task_id, 'task_id', operation)
        final_cost = _require_cost(final_cost, 'final_cost', operation, task_id)
        _require_choice(agreed_by, AGREED_BY, 'agreed_by', operation, task_id)

        self._run(
            operation, 'finalize_cost_negotiation', task_id,
            {'final_cost': final_cost, 'agreed_by': agreed_by},
            self._fail(InvalidState, 'This task has no open negotiation to finalize', operation, task_id),
        )
        return True

    def cancel_cost_negotiation(self, task_id, cancelled_by, cancelled_by_id):
        """Either party ends the negotiation; the task returns to pending."""
        operation = 'cancel_cost_negotiation'
        _require_id(task_id, 'task_id', operation)
        _require_choice(cancelled_by, CANCELLED_BY, 'cancelled_by', operation, task_id)
        _require_id(cancelled_by_id, 'cancelled_by_id', operation, task_id)

        self._run(
            operation, 'cancel_cost_negotiation', task_id,
            {'cancelled_by': cancelled_by, 'cancelled_by_id': cancelled_by_id},
            self._fail(InvalidState, 'There is no negotiation you can cancel on this task', operation, task_id),
        )
        return True

    def cancel_task(self, task_id, user_id):
        operation = 'cancel_task'
        _require_id(task_id, 'task_id', operation)
        _require_id(user_id, 'user_id', operation, task_id)

        self._run(
            operation, 'cancel_task', task_id,
            {'user_id': user_id},
            self._fail(InvalidState, 'Only an unassigned task you created can be cancelled', operation, task_id),
        )
        return True

    # =============================================
    # COMPLETION
    # =============================================

    def complete_task(self, task_id, worker_id) -> CompletionResult:
        """
        Complete an assigned task (every member of a bundle) and credit earnings.

        Earnings are written per row the call actually moved to completed, so
        repeating the call after a lost response adds nothing and reports
        ``already_completed``.
        """
        operation = 'complete_task'
        _require_id(task_id, 'task_id', operation)
        _require_id(worker_id, 'worker_id', operation, task_id)

        completed = self._run(
            operation, 'complete_task', task_id,
            {'delivery_person_id': worker_id, 'earnings_share': self.earnings_share},
            self._fail(InvalidState, 'This task is not assigned to you', operation, task_id),
        )
        if not completed:
            logger.info(f"complete_task for {task_id} was a repeat; nothing new recorded")
        return CompletionResult(task_id=task_id, worker_id=worker_id, completed_count=completed)

    # =============================================
    # PER-STOP PROGRESS
    # =============================================

    def _load_for_update(self, operation, task_id):
        if is_bundle_id(task_id):
            raise ValidationError(
                'Stop progress is tracked on member tasks, not on a bundle',
                field='task_id', operation=operation, task_id=task_id,
            )
        rows = self.store.get_task(task_id)
        if not rows:
            raise NotFound(f'Task {task_id} not found', operation=operation, task_id=task_id)
        return rows[0], parse_task(rows[0])

    def _versioned_update(self, operation, task_id, build_patch):
        """
        Read, patch and write a task guarded by its version column.

        ``build_patch(task)`` returns the columns to change, or None when
        nothing needs writing. A lost race re-reads and tries again.
        """
        for attempt in range(1, MAX_LOCATION_UPDATE_ATTEMPTS + 1):
            row, task = self._load_for_update(operation, task_id)
            patch = build_patch(task)
            if patch is None:
                return task

            patch['version'] = task.version + 1
            updated = self.store.update('tasks', patch, {'id': task_id, 'version': task.version})
            if updated:
                self._publish(task_id)
                return parse_task(updated[0])
            logger.info(f"{operation}: task {task_id} changed underneath us (attempt {attempt})")

        raise PreconditionFailed(
            'The task kept changing while saving; please try again',
            operation=operation, task_id=task_id,
        )

    @staticmethod
    def _check_stop(task, index, operation):
        stops = 1 + len(task.additional_locations)
        if index >= stops:
            raise ValidationError(
                f'location_index must be below {stops} for this task',
                field='location_index', operation=operation, task_id=task.id,
            )

    def mark_location_as_completed(self, task_id, location_index) -> TaskEntity:
        operation = 'mark_location_as_completed'
        _require_id(task_id, 'task_id', operation)
        _require_index(location_index, operation, task_id)

        def build_patch(task):
            self._check_stop(task, location_index, operation)
            if location_index in task.location_completions:
                return None
            return {'location_completions': task.location_completions + [location_index]}

        return self._versioned_update(operation, task_id, build_patch)

    def add_location_note(self, task_id, location_index, note) -> TaskEntity:
        operation = 'add_location_note'
        _require_id(task_id, 'task_id', operation)
        _require_index(location_index, operation, task_id)
        if not isinstance(note, str) or not note.strip():
            raise ValidationError('note cannot be empty', field='note', operation=operation, task_id=task_id)

        def build_patch(task):
            self._check_stop(task, location_index, operation)
            notes = dict(task.location_notes)
            notes[f'location_{location_index}'] = note
            return {'location_notes': notes}

        return self._versioned_update(operation, task_id, build_patch)

    # =============================================
    # READS
    # =============================================

    def list_available(self) -> List[TaskEntity]:
        return aggregate_bundles(self.store.list_available())

    def list_cost_review(self, worker_id) -> List[TaskEntity]:
        _require_id(worker_id, 'worker_id', 'list_cost_review')
        return aggregate_bundles(self.store.list_cost_review(worker_id))

    def list_cost_proposed(self, user_id=None) -> List[TaskEntity]:
        return aggregate_bundles(self.store.list_cost_proposed(user_id))

    def list_user_counter_proposed(self, worker_id=None) -> List[TaskEntity]:
        return aggregate_bundles(self.store.list_user_counter_proposed(worker_id))

    def list_delivery_counter_proposed(self, user_id=None) -> List[TaskEntity]:
        return aggregate_bundles(self.store.list_delivery_counter_proposed(user_id))

    def list_assigned(self, worker_id) -> List[TaskEntity]:
        _require_id(worker_id, 'worker_id', 'list_assigned')
        return aggregate_bundles(self.store.list_assigned(worker_id))

    def list_worker_tasks(self, worker_id) -> List[TaskEntity]:
        """The worker's own view: assigned tasks and negotiations they hold."""
        _require_id(worker_id, 'worker_id', 'list_worker_tasks')
        return filter_assigned(self.store.list_worker_active(worker_id), worker_id)

    def list_completed(self, worker_id) -> List[TaskEntity]:
        _require_id(worker_id, 'worker_id', 'list_completed')
        return aggregate_bundles(self.store.list_completed(worker_id))

    def list_near(self, latitude, longitude, radius_km=None) -> List[TaskEntity]:
        operation = 'list_near'
        for field, value, bound in (('latitude', latitude, 90), ('longitude', longitude, 180)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) or abs(value) > bound:
                raise ValidationError(f'{field} must be a number between -{bound} and {bound}',
                                      field=field, operation=operation)
        if radius_km is None:
            radius_km = self.near_radius_km
        elif isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)) or radius_km <= 0:
            raise ValidationError('radius_km must be greater than 0', field='radius_km', operation=operation)

        return aggregate_bundles(self.store.list_near(latitude, longitude, radius_km))

    def get_task(self, task_id) -> TaskEntity:
        """One task, or the synthetic task for a ``group-<id>`` bundle."""
        _require_id(task_id, 'task_id', 'get_task')
        tasks = aggregate_bundles(self.store.get_task(task_id))
        if not tasks:
            raise NotFound(f'Task {task_id} not found', operation='get_task', task_id=task_id)
        return tasks[0]

    def get_members(self, task_id) -> List[TaskEntity]:
        """The member rows behind a task id, each as its own entity."""
        _require_id(task_id, 'task_id', 'get_members')
        rows = self.store.get_task(task_id)
        if not rows:
            raise NotFound(f'Task {task_id} not found', operation='get_members', task_id=task_id)
        return [parse_task(row) for row in rows]

    def list_proposals(self, task_id, status='pending'):
        _require_id(task_id, 'task_id', 'list_proposals')
        return [parse_cost_proposal(row) for row in self.store.list_proposals(task_id, status=status)]

    def dashboard(self, worker_id):
        """Everything a worker's home screen shows, task side only."""
        _require_id(worker_id, 'worker_id', 'dashboard')
        personnel = self.store.get_personnel(worker_id)
        earnings = self.store.list_earnings(worker_id)

        return {
            'personnel': parse_delivery_personnel(personnel) if personnel else None,
            'available': self.list_available(),
            'in_review': self.list_cost_review(worker_id),
            'awaiting_response': self.list_user_counter_proposed(worker_id),
            'assigned': self.list_assigned(worker_id),
            'completed_count': len(self.store.list_completed(worker_id)),
            'total_earnings': round(sum(row['total_earnings'] or 0 for row in earnings), 2),
        }

    def earnings(self, worker_id) -> List[dict]:
        _require_id(worker_id, 'worker_id', 'earnings')
        return self.store.list_earnings(worker_id)
