"""Delivery personnel availability records."""

import uuid
from datetime import datetime
from taskdelivery import db


class DeliveryPersonnel(db.Model):
    """Availability and stats for a delivery worker.

    A worker must be both available and online to claim new work. Claiming
    or being assigned a task clears ``is_available``; completing or leaving a
    negotiation sets it again.
    """

    __tablename__ = 'delivery_personnel'

    VEHICLE_TYPES = ['motorcycle', 'bicycle', 'car', 'scooter']

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    vehicle_type = db.Column(db.String(20), default='motorcycle', nullable=False)
    is_available = db.Column(db.Boolean, default=True, nullable=False)
    is_online = db.Column(db.Boolean, default=False, nullable=False)
    rating = db.Column(db.Float, default=0.0, nullable=False)
    total_deliveries = db.Column(db.Integer, default=0, nullable=False)
    current_latitude = db.Column(db.Float, nullable=True)
    current_longitude = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<DeliveryPersonnel {self.user_id} available={self.is_available} online={self.is_online}>'
