"""Task model for delivery errands negotiated between a user and a delivery worker."""

import uuid
from datetime import datetime
from taskdelivery import db


class TaskStatus:
    """Task status values and the groups the views and procedures filter on."""

    PENDING = 'pending'
    COST_REVIEW = 'cost_review'
    COST_PROPOSED = 'cost_proposed'
    USER_COUNTER_PROPOSED = 'user_counter_proposed'
    DELIVERY_COUNTER_PROPOSED = 'delivery_counter_proposed'
    ASSIGNED = 'assigned'
    SCHEDULED = 'scheduled'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    ALL = (
        PENDING,
        COST_REVIEW,
        COST_PROPOSED,
        USER_COUNTER_PROPOSED,
        DELIVERY_COUNTER_PROPOSED,
        ASSIGNED,
        SCHEDULED,
        COMPLETED,
        CANCELLED,
    )

    # Open to any worker
    CLAIMABLE = (PENDING,)

    # A worker holds the task while the price is being agreed
    NEGOTIATION = (
        COST_REVIEW,
        COST_PROPOSED,
        USER_COUNTER_PROPOSED,
        DELIVERY_COUNTER_PROPOSED,
    )

    # Statuses where the user has an offer to answer
    AWAITING_USER = (COST_PROPOSED, DELIVERY_COUNTER_PROPOSED)

    NEGOTIABLE = CLAIMABLE + NEGOTIATION
    WORKER_ACTIVE = (ASSIGNED,) + NEGOTIATION
    COMPLETABLE = (ASSIGNED, SCHEDULED)
    TERMINAL = (COMPLETED, CANCELLED)


def _new_id():
    return str(uuid.uuid4())


class Task(db.Model):
    """Task model for errands picked up by delivery workers."""

    __tablename__ = 'tasks'

    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    description = db.Column(db.Text, nullable=False, default='')
    location_name = db.Column(db.String(255), nullable=False, default='')
    location_purpose = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=False)
    longitude = db.Column(db.Float, nullable=False)
    additional_locations = db.Column(db.JSON, nullable=True)  # [{name, purpose, latitude, longitude}]
    scheduled_at = db.Column(db.DateTime, nullable=True)

    user_id = db.Column(db.String(64), nullable=False, index=True)  # Creator
    delivery_man_id = db.Column(db.String(64), nullable=True, index=True)  # Assignee
    reviewing_delivery_person_id = db.Column(db.String(64), nullable=True, index=True)  # Holds the negotiation

    image_url = db.Column(db.String(500), nullable=True)
    image_path = db.Column(db.String(500), nullable=True)
    special_instructions = db.Column(db.Text, nullable=True)  # Legacy rows embed 'group:<id>' here
    bundle_id = db.Column(db.String(64), nullable=True, index=True)

    status = db.Column(db.String(32), default=TaskStatus.PENDING, nullable=False, index=True)

    # Pricing / negotiation
    price = db.Column(db.Float, nullable=True)
    proposed_cost = db.Column(db.Float, nullable=True)
    accepted_cost = db.Column(db.Float, nullable=True)
    cost_notes = db.Column(db.Text, nullable=True)
    cost_proposed_at = db.Column(db.DateTime, nullable=True)
    cost_accepted_at = db.Column(db.DateTime, nullable=True)
    cost_proposed_by = db.Column(db.String(64), nullable=True)
    user_counter_cost = db.Column(db.Float, nullable=True)
    user_counter_notes = db.Column(db.Text, nullable=True)
    user_counter_at = db.Column(db.DateTime, nullable=True)
    negotiation_agreed_by = db.Column(db.String(20), nullable=True)  # 'user', 'delivery_man'

    # Assignment
    assignment_type = db.Column(db.String(20), nullable=True)  # 'manual', 'negotiated'
    assigned_by = db.Column(db.String(64), nullable=True)
    assignment_notes = db.Column(db.Text, nullable=True)

    # Per-stop progress
    location_completions = db.Column(db.JSON, nullable=True)  # [location index, ...]
    location_notes = db.Column(db.JSON, nullable=True)  # {'location_<index>': note}
    version = db.Column(db.Integer, default=1, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    assigned_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    proposals = db.relationship('TaskCostProposal', backref='task', lazy='dynamic')

    def __repr__(self):
        return f'<Task {self.id}: {self.status}>'
