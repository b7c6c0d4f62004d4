"""
Stored procedures for the task negotiation state machine.

Each procedure runs inside one database transaction opened by
``TaskStore.rpc`` and changes rows only through conditional updates of the
form ``UPDATE tasks SET ... WHERE id IN (...) AND status = ...``. A procedure
returns False (or None) when its precondition does not hold; the store rolls
the transaction back in that case, so a bundle transition either moves every
member row or none of them.
"""
import logging
from datetime import datetime

from sqlalchemy import func, select, update, or_

from taskdelivery.models import (
    Task,
    TaskStatus,
    TaskCostProposal,
    ProposalStatus,
    DeliveryPersonnel,
    DeliveryEarning,
)
from taskdelivery.services.bundles import (
    BUNDLE_MARKER,
    bundle_id_from_task_id,
    extract_bundle_id,
    is_bundle_id,
)
from taskdelivery.utils.geo import get_bounding_box, distance

logger = logging.getLogger(__name__)

PROCEDURES = {}

# Offer statuses a user can answer, and the counter a worker answers
USER_ANSWERABLE = TaskStatus.AWAITING_USER
AGREEABLE = TaskStatus.AWAITING_USER + (TaskStatus.USER_COUNTER_PROPOSED,)

RESPONSE_TYPES = ('accept', 'reject', 'counter')
AGREED_BY = ('user', 'delivery_man')
CANCELLED_BY = ('user', 'delivery_man')


def procedure(name):
    """Register a function as the stored procedure ``name``."""
    def register(fn):
        PROCEDURES[name] = fn
        return fn
    return register


def get_procedure(name):
    return PROCEDURES.get(name)


def _now():
    return datetime.utcnow()


def member_task_ids(session, task_id):
    """
    Resolve a task id to the ids of the rows it stands for.

    A plain id resolves to itself when the row exists. A synthetic
    ``group-<id>`` resolves to every row whose bundle_id column, or legacy
    ``group:<id>`` marker, names that bundle; ordered by creation time.
    """
    if not is_bundle_id(task_id):
        found = session.execute(select(Task.id).where(Task.id == task_id)).first()
        return [task_id] if found else []

    bundle_id = bundle_id_from_task_id(task_id)
    if not bundle_id:
        return []

    # LIKE narrows the candidates; extract_bundle_id makes the exact match
    rows = session.execute(
        select(Task.id, Task.bundle_id, Task.special_instructions)
        .where(or_(
            Task.bundle_id == bundle_id,
            Task.special_instructions.contains(BUNDLE_MARKER + bundle_id),
        ))
        .order_by(Task.created_at, Task.id)
    ).mappings().all()

    return [row['id'] for row in rows if extract_bundle_id(row) == bundle_id]


def split_cost(cost, count):
    """Split a cost evenly across ``count`` tasks; leftover cents go to the first."""
    if count <= 1:
        return [round(float(cost), 2)] * max(count, 0)
    cents = int(round(float(cost) * 100))
    share, remainder = divmod(cents, count)
    shares = [share] * count
    shares[0] += remainder
    return [s / 100 for s in shares]


def _update_tasks(session, ids, values, *criteria):
    """Conditionally update the given task rows and return how many matched."""
    if not ids:
        return 0
    values.setdefault('updated_at', _now())
    result = session.execute(
        update(Task)
        .where(Task.id.in_(ids), *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _transition(session, ids, values, *criteria):
    """All-or-nothing: True only when every id satisfied the criteria."""
    return bool(ids) and _update_tasks(session, ids, values, *criteria) == len(ids)


def _count(session, ids, *criteria):
    """How many of the given task rows match the criteria."""
    return session.execute(
        select(func.count()).select_from(Task).where(Task.id.in_(ids), *criteria)
    ).scalar_one()


def _update_proposals(session, values, *criteria):
    values.setdefault('updated_at', _now())
    result = session.execute(
        update(TaskCostProposal)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _reject_open_proposals(session, ids):
    return _update_proposals(
        session,
        {'status': ProposalStatus.REJECTED},
        TaskCostProposal.task_id.in_(ids),
        TaskCostProposal.status.in_(ProposalStatus.OPEN),
    )


def _reserve_worker(session, worker_id):
    """Take an available, online worker off the market. False if they cannot take work."""
    result = session.execute(
        update(DeliveryPersonnel)
        .where(
            DeliveryPersonnel.user_id == worker_id,
            DeliveryPersonnel.is_available.is_(True),
            DeliveryPersonnel.is_online.is_(True),
        )
        .values(is_available=False, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _release_workers(session, worker_ids):
    worker_ids = [w for w in worker_ids if w]
    if not worker_ids:
        return 0
    result = session.execute(
        update(DeliveryPersonnel)
        .where(DeliveryPersonnel.user_id.in_(worker_ids))
        .values(is_available=True, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _reviewers(session, ids):
    rows = session.execute(
        select(Task.reviewing_delivery_person_id)
        .where(Task.id.in_(ids), Task.reviewing_delivery_person_id.isnot(None))
        .distinct()
    ).scalars().all()
    return list(rows)


def _back_to_pending():
    """Values that return a task to the open market."""
    return {
        'status': TaskStatus.PENDING,
        'reviewing_delivery_person_id': None,
        'proposed_cost': None,
        'cost_notes': None,
        'cost_proposed_at': None,
        'cost_proposed_by': None,
        'user_counter_cost': None,
        'user_counter_notes': None,
        'user_counter_at': None,
    }


def _assignment(worker_id, cost, now, agreed_by, assigned_by):
    return {
        'status': TaskStatus.ASSIGNED,
        'delivery_man_id': worker_id,
        'accepted_cost': cost,
        'price': cost,
        'cost_accepted_at': now,
        'negotiation_agreed_by': agreed_by,
        'assignment_type': 'negotiated',
        'assigned_by': assigned_by,
        'assigned_at': now,
    }


# =============================================
# CLAIM / ASSIGN
# =============================================

@procedure('start_cost_review')
def start_cost_review(session, task_id, delivery_person_id):
    """Worker takes a pending task (every bundle member) into cost review."""
    ids = member_task_ids(session, task_id)
    if not ids:
        return False
    # Repeat of a claim that already went through
    if _count(session, ids, Task.status == TaskStatus.COST_REVIEW,
              Task.reviewing_delivery_person_id == delivery_person_id) == len(ids):
        return True
    if not _reserve_worker(session, delivery_person_id):
        return False

    return _transition(
        session, ids,
        {'status': TaskStatus.COST_REVIEW, 'reviewing_delivery_person_id': delivery_person_id},
        Task.status.in_(TaskStatus.CLAIMABLE),
        Task.delivery_man_id.is_(None),
    )


@procedure('assign_task_to_delivery_person')
def assign_task_to_delivery_person(session, task_id, delivery_person_id):
    """Worker accepts a pending task at its listed price, skipping negotiation."""
    ids = member_task_ids(session, task_id)
    if not ids:
        return False
    if not _reserve_worker(session, delivery_person_id):
        return False

    now = _now()
    return _transition(
        session, ids,
        {
            'status': TaskStatus.ASSIGNED,
            'delivery_man_id': delivery_person_id,
            'assignment_type': 'manual',
            'assigned_by': delivery_person_id,
            'assigned_at': now,
        },
        Task.status.in_(TaskStatus.CLAIMABLE),
        Task.delivery_man_id.is_(None),
        Task.price.isnot(None),
    )


# =============================================
# WORKER PROPOSALS
# =============================================

def _upsert_pending_proposal(session, task_id, worker_id, cost, notes, now):
    """Supersede the worker's pending offer in place, or open a new one."""
    updated = _update_proposals(
        session,
        {'proposed_cost': cost, 'cost_notes': notes, 'updated_at': now},
        TaskCostProposal.task_id == task_id,
        TaskCostProposal.delivery_person_id == worker_id,
        TaskCostProposal.status == ProposalStatus.PENDING,
    )
    if not updated:
        session.add(TaskCostProposal(
            task_id=task_id,
            delivery_person_id=worker_id,
            proposed_cost=cost,
            cost_notes=notes,
            status=ProposalStatus.PENDING,
            proposed_at=now,
            updated_at=now,
        ))
        session.flush()


def _offer_values(worker_id, cost, notes, now, status=TaskStatus.COST_PROPOSED):
    return {
        'status': status,
        'proposed_cost': cost,
        'cost_notes': notes,
        'cost_proposed_at': now,
        'cost_proposed_by': worker_id,
    }


@procedure('propose_task_cost')
def propose_task_cost(session, task_id, delivery_person_id, proposed_cost, cost_notes=None):
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    now = _now()
    for member_id, share in zip(ids, split_cost(proposed_cost, len(ids))):
        moved = _update_tasks(
            session, [member_id],
            _offer_values(delivery_person_id, share, cost_notes, now),
            Task.status == TaskStatus.COST_REVIEW,
            Task.reviewing_delivery_person_id == delivery_person_id,
        )
        if not moved:
            return False
        _upsert_pending_proposal(session, member_id, delivery_person_id, share, cost_notes, now)

    return True


@procedure('update_cost_proposal')
def update_cost_proposal(session, task_id, delivery_person_id, proposed_cost, cost_notes=None):
    """Revise the worker's pending offer. Fails if there is none to revise."""
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    now = _now()
    for member_id, share in zip(ids, split_cost(proposed_cost, len(ids))):
        moved = _update_tasks(
            session, [member_id],
            _offer_values(delivery_person_id, share, cost_notes, now),
            Task.status.in_((TaskStatus.COST_REVIEW,) + TaskStatus.AWAITING_USER),
            Task.reviewing_delivery_person_id == delivery_person_id,
        )
        if not moved:
            return False

        revised = _update_proposals(
            session,
            {'proposed_cost': share, 'cost_notes': cost_notes, 'updated_at': now},
            TaskCostProposal.task_id == member_id,
            TaskCostProposal.delivery_person_id == delivery_person_id,
            TaskCostProposal.status == ProposalStatus.PENDING,
        )
        if revised != 1:
            return False

    return True


# =============================================
# USER DECISIONS
# =============================================

@procedure('accept_cost_proposal')
def accept_cost_proposal(session, task_id, user_id, proposal_id=None):
    """
    User accepts an offer and the task is assigned to the offering worker.

    Without ``proposal_id`` the oldest pending proposal wins (earliest
    proposed_at, then id). For a bundle the winning worker must hold a
    pending offer on every member.
    """
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    criteria = [
        TaskCostProposal.task_id.in_(ids),
        TaskCostProposal.status == ProposalStatus.PENDING,
    ]
    if proposal_id:
        criteria.append(TaskCostProposal.id == proposal_id)

    chosen = session.execute(
        select(TaskCostProposal.delivery_person_id)
        .where(*criteria)
        .order_by(TaskCostProposal.proposed_at, TaskCostProposal.id)
        .limit(1)
    ).first()
    if chosen is None:
        return False
    worker_id = chosen.delivery_person_id

    offers = {
        row.task_id: row
        for row in session.execute(
            select(TaskCostProposal.id, TaskCostProposal.task_id, TaskCostProposal.proposed_cost)
            .where(
                TaskCostProposal.task_id.in_(ids),
                TaskCostProposal.delivery_person_id == worker_id,
                TaskCostProposal.status == ProposalStatus.PENDING,
            )
        )
    }
    if set(offers) != set(ids):
        return False

    now = _now()
    for member_id in ids:
        offer = offers[member_id]
        moved = _update_tasks(
            session, [member_id],
            _assignment(worker_id, offer.proposed_cost, now, 'user', user_id),
            Task.status.in_(USER_ANSWERABLE),
            Task.user_id == user_id,
            Task.reviewing_delivery_person_id == worker_id,
        )
        if not moved:
            return False

        _update_proposals(
            session, {'status': ProposalStatus.ACCEPTED, 'updated_at': now},
            TaskCostProposal.id == offer.id,
        )
        _update_proposals(
            session, {'status': ProposalStatus.REJECTED, 'updated_at': now},
            TaskCostProposal.task_id == member_id,
            TaskCostProposal.id != offer.id,
            TaskCostProposal.status.in_(ProposalStatus.OPEN),
        )

    return True


@procedure('reject_all_cost_proposals')
def reject_all_cost_proposals(session, task_id, user_id):
    """User turns down every offer; the task goes back on the market."""
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    reviewers = _reviewers(session, ids)
    if not _transition(
        session, ids, _back_to_pending(),
        Task.status.in_(AGREEABLE),
        Task.user_id == user_id,
    ):
        return False

    _reject_open_proposals(session, ids)
    _release_workers(session, reviewers)
    return True


@procedure('cancel_cost_review')
def cancel_cost_review(session, task_id, delivery_person_id):
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    if not _transition(
        session, ids, _back_to_pending(),
        Task.status == TaskStatus.COST_REVIEW,
        Task.reviewing_delivery_person_id == delivery_person_id,
    ):
        return False

    _reject_open_proposals(session, ids)
    _release_workers(session, [delivery_person_id])
    return True


# =============================================
# COUNTER OFFERS
# =============================================

def _reviewer_of(task_id):
    return (
        select(Task.reviewing_delivery_person_id)
        .where(Task.id == task_id)
        .scalar_subquery()
    )


@procedure('user_propose_counter_offer')
def user_propose_counter_offer(session, task_id, user_id, counter_cost, counter_notes=None):
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    now = _now()
    for member_id, share in zip(ids, split_cost(counter_cost, len(ids))):
        moved = _update_tasks(
            session, [member_id],
            {
                'status': TaskStatus.USER_COUNTER_PROPOSED,
                'user_counter_cost': share,
                'user_counter_notes': counter_notes,
                'user_counter_at': now,
            },
            Task.status.in_(USER_ANSWERABLE),
            Task.user_id == user_id,
        )
        if not moved:
            return False

        # The worker's pending offer now carries the user's number
        countered = _update_proposals(
            session,
            {'status': ProposalStatus.USER_COUNTER, 'proposed_cost': share,
             'cost_notes': counter_notes, 'updated_at': now},
            TaskCostProposal.task_id == member_id,
            TaskCostProposal.status == ProposalStatus.PENDING,
            TaskCostProposal.delivery_person_id == _reviewer_of(member_id),
        )
        if countered != 1:
            return False

    return True


def _countered_offers(session, ids, worker_id):
    return {
        row.task_id: row
        for row in session.execute(
            select(TaskCostProposal.id, TaskCostProposal.task_id, TaskCostProposal.proposed_cost)
            .where(
                TaskCostProposal.task_id.in_(ids),
                TaskCostProposal.delivery_person_id == worker_id,
                TaskCostProposal.status == ProposalStatus.USER_COUNTER,
            )
        )
    }


@procedure('delivery_man_respond_to_counter_offer')
def delivery_man_respond_to_counter_offer(
    session, task_id, delivery_person_id, response_type, new_cost=None, response_notes=None
):
    """
    Worker answers the user's counter offer.

    accept: task assigned to the worker at the user's price.
    reject: negotiation ends, task back to pending, worker released.
    counter: worker names a new price (delivery_counter_proposed).
    """
    if response_type not in RESPONSE_TYPES:
        return False

    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    in_counter = (
        Task.status == TaskStatus.USER_COUNTER_PROPOSED,
        Task.reviewing_delivery_person_id == delivery_person_id,
    )
    now = _now()

    if response_type == 'reject':
        if not _transition(session, ids, _back_to_pending(), *in_counter):
            return False
        _reject_open_proposals(session, ids)
        _release_workers(session, [delivery_person_id])
        return True

    offers = _countered_offers(session, ids, delivery_person_id)
    if set(offers) != set(ids):
        return False

    if response_type == 'accept':
        for member_id in ids:
            offer = offers[member_id]
            moved = _update_tasks(
                session, [member_id],
                _assignment(delivery_person_id, offer.proposed_cost, now, 'delivery_man', delivery_person_id),
                *in_counter
            )
            if not moved:
                return False
            _update_proposals(
                session, {'status': ProposalStatus.ACCEPTED, 'updated_at': now},
                TaskCostProposal.id == offer.id,
            )
        return True

    if new_cost is None or new_cost <= 0:
        return False
    for member_id, share in zip(ids, split_cost(new_cost, len(ids))):
        moved = _update_tasks(
            session, [member_id],
            _offer_values(delivery_person_id, share, response_notes, now,
                          status=TaskStatus.DELIVERY_COUNTER_PROPOSED),
            *in_counter
        )
        if not moved:
            return False
        _update_proposals(
            session,
            {'status': ProposalStatus.PENDING, 'proposed_cost': share,
             'cost_notes': response_notes, 'updated_at': now},
            TaskCostProposal.id == offers[member_id].id,
        )
    return True


# =============================================
# FINALIZE / CANCEL
# =============================================

@procedure('finalize_cost_negotiation')
def finalize_cost_negotiation(session, task_id, final_cost, agreed_by):
    """Close an open negotiation at ``final_cost``; the reviewing worker is assigned."""
    if agreed_by not in AGREED_BY:
        return False

    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    now = _now()
    for member_id, share in zip(ids, split_cost(final_cost, len(ids))):
        values = _assignment(Task.reviewing_delivery_person_id, share, now, agreed_by,
                             Task.reviewing_delivery_person_id)
        moved = _update_tasks(
            session, [member_id], values,
            Task.status.in_(AGREEABLE),
            Task.reviewing_delivery_person_id.isnot(None),
        )
        if not moved:
            return False

        assignee = select(Task.delivery_man_id).where(Task.id == member_id).scalar_subquery()
        _update_proposals(
            session,
            {'status': ProposalStatus.ACCEPTED, 'proposed_cost': share, 'updated_at': now},
            TaskCostProposal.task_id == member_id,
            TaskCostProposal.delivery_person_id == assignee,
            TaskCostProposal.status.in_(ProposalStatus.OPEN),
        )
        _update_proposals(
            session, {'status': ProposalStatus.REJECTED, 'updated_at': now},
            TaskCostProposal.task_id == member_id,
            TaskCostProposal.status.in_(ProposalStatus.OPEN),
        )

    return True


@procedure('cancel_cost_negotiation')
def cancel_cost_negotiation(session, task_id, cancelled_by, cancelled_by_id):
    """Either party walks away; the task goes back to pending."""
    if cancelled_by == 'user':
        party = Task.user_id == cancelled_by_id
    elif cancelled_by == 'delivery_man':
        party = Task.reviewing_delivery_person_id == cancelled_by_id
    else:
        return False

    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    reviewers = _reviewers(session, ids)
    if not _transition(
        session, ids, _back_to_pending(),
        Task.status.in_(TaskStatus.NEGOTIATION),
        party,
    ):
        return False

    _reject_open_proposals(session, ids)
    _release_workers(session, reviewers)
    return True


@procedure('cancel_task')
def cancel_task(session, task_id, user_id):
    """Creator withdraws a task that has not been assigned yet."""
    ids = member_task_ids(session, task_id)
    if not ids:
        return False

    reviewers = _reviewers(session, ids)
    values = _back_to_pending()
    values.update(status=TaskStatus.CANCELLED, cancelled_at=_now())
    if not _transition(
        session, ids, values,
        Task.status.in_(TaskStatus.NEGOTIABLE),
        Task.user_id == user_id,
    ):
        return False

    _reject_open_proposals(session, ids)
    _release_workers(session, reviewers)
    return True


# =============================================
# COMPLETION
# =============================================

@procedure('complete_task')
def complete_task(session, task_id, delivery_person_id, earnings_share=0.7):
    """
    Mark the worker's task(s) completed and credit earnings.

    Returns the number of rows this call moved to completed, or None when
    some member is not held by this worker. Earnings are written only for
    rows this call transitioned, so a repeated call adds nothing.
    """
    ids = member_task_ids(session, task_id)
    if not ids:
        return None

    held = session.execute(
        select(Task.id).where(
            Task.id.in_(ids),
            Task.delivery_man_id == delivery_person_id,
            Task.status.in_(TaskStatus.COMPLETABLE + (TaskStatus.COMPLETED,)),
        )
    ).scalars().all()
    if len(held) != len(ids):
        return None

    now = _now()
    completed = [
        member_id for member_id in ids
        if _update_tasks(
            session, [member_id],
            {'status': TaskStatus.COMPLETED, 'completed_at': now},
            Task.status.in_(TaskStatus.COMPLETABLE),
            Task.delivery_man_id == delivery_person_id,
        )
    ]
    if not completed:
        return 0

    prices = session.execute(
        select(Task.id, Task.price, Task.accepted_cost).where(Task.id.in_(completed))
    ).all()
    for row in prices:
        price = row.price if row.price is not None else row.accepted_cost
        if price is None:
            logger.warning(f"Task {row.id} completed without a price; no earnings recorded")
            continue
        amount = round(price * earnings_share, 2)
        session.add(DeliveryEarning(
            delivery_person_id=delivery_person_id,
            task_id=row.id,
            base_fee=amount,
            total_earnings=amount,
            type='base_fee',
            description='Task completion earnings',
            created_at=now,
        ))

    session.execute(
        update(DeliveryPersonnel)
        .where(DeliveryPersonnel.user_id == delivery_person_id)
        .values(
            is_available=True,
            total_deliveries=DeliveryPersonnel.total_deliveries + len(completed),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.flush()
    return len(completed)


# =============================================
# PROXIMITY
# =============================================

@procedure('get_tasks_near_location')
def get_tasks_near_location(session, latitude, longitude, radius_km=10.0):
    """Pending tasks within ``radius_km``, nearest first, each with distance_km."""
    min_lat, max_lat, min_lng, max_lng = get_bounding_box(latitude, longitude, radius_km)

    rows = session.execute(
        select(Task.__table__).where(
            Task.status.in_(TaskStatus.CLAIMABLE),
            Task.delivery_man_id.is_(None),
            Task.latitude >= min_lat,
            Task.latitude <= max_lat,
            Task.longitude >= min_lng,
            Task.longitude <= max_lng,
        )
    ).mappings().all()

    nearby = []
    for row in rows:
        km = distance(latitude, longitude, row['latitude'], row['longitude'])
        if km <= radius_km:
            item = dict(row)
            item['distance_km'] = round(km, 2)
            nearby.append(item)

    nearby.sort(key=lambda item: item['distance_km'])
    return nearby
