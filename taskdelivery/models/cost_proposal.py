import uuid
from datetime import datetime
from taskdelivery import db


class ProposalStatus:
    PENDING = 'pending'
    USER_COUNTER = 'user_counter'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'

    ALL = (PENDING, USER_COUNTER, ACCEPTED, REJECTED)

    # The offer currently on the table for a task
    OPEN = (PENDING, USER_COUNTER)


class TaskCostProposal(db.Model):
    __tablename__ = 'task_cost_proposals'

    __table_args__ = (
        # One live offer per worker per task; counters supersede it in place
        db.Index(
            'uq_pending_proposal_per_worker',
            'task_id', 'delivery_person_id',
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    task_id = db.Column(db.String(64), db.ForeignKey('tasks.id'), nullable=False, index=True)
    delivery_person_id = db.Column(db.String(64), nullable=False, index=True)
    proposed_cost = db.Column(db.Float, nullable=False)
    cost_notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default=ProposalStatus.PENDING, nullable=False, index=True)
    proposed_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<TaskCostProposal {self.id}: {self.proposed_cost} - {self.status}>'
