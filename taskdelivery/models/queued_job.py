"""Background jobs stored in the database when Redis cannot take them."""

from datetime import datetime
from taskdelivery import db


class QueuedJob(db.Model):
    __tablename__ = 'job_queue'

    id = db.Column(db.Integer, primary_key=True)
    task_identifier = db.Column(db.String(100), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=True)
    run_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    max_attempts = db.Column(db.Integer, default=25, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    status = db.Column(db.String(20), default='queued', nullable=False, index=True)  # 'queued', 'running', 'done', 'failed'
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<QueuedJob {self.id}: {self.task_identifier} - {self.status}>'
