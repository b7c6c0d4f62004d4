"""Delivery earnings ledger."""

import uuid
from datetime import datetime
from taskdelivery import db


class DeliveryEarning(db.Model):
    """Append-only ledger entry crediting a worker.

    Task completion writes exactly one row per completed task; the unique
    ``task_id`` makes a second credit for the same task impossible.
    """

    __tablename__ = 'delivery_earnings'

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    delivery_person_id = db.Column(db.String(64), nullable=False, index=True)
    task_id = db.Column(db.String(64), db.ForeignKey('tasks.id'), nullable=True, unique=True)
    order_id = db.Column(db.String(64), nullable=True, index=True)

    base_fee = db.Column(db.Float, default=0.0, nullable=False)
    distance_fee = db.Column(db.Float, default=0.0, nullable=False)
    performance_bonus = db.Column(db.Float, default=0.0, nullable=False)
    tip = db.Column(db.Float, default=0.0, nullable=False)
    penalty = db.Column(db.Float, default=0.0, nullable=False)
    total_earnings = db.Column(db.Float, nullable=False)

    type = db.Column(db.String(30), default='base_fee', nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<DeliveryEarning {self.id}: {self.total_earnings} for {self.delivery_person_id}>'
