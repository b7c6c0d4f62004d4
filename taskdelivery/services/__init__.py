"""Service layer: task store, negotiation engine, job queue and real-time notifier.

Services are built once per application by ``init_services`` and kept in
``app.extensions``; routes and socket handlers fetch them with the getters
below instead of importing module-level singletons.
"""

from flask import current_app

from taskdelivery import db, socketio
from taskdelivery.services.job_queue import JobQueue
from taskdelivery.services.negotiation import NegotiationEngine
from taskdelivery.services.realtime import TaskChangeNotifier
from taskdelivery.services.task_store import TaskStore


def init_services(app):
    store = TaskStore(db.session)
    notifier = TaskChangeNotifier(socketio)

    app.extensions['task_store'] = store
    app.extensions['task_notifier'] = notifier
    app.extensions['negotiation_engine'] = NegotiationEngine(
        store,
        notifier=notifier,
        earnings_share=app.config['EARNINGS_SHARE'],
        near_radius_km=app.config['NEAR_RADIUS_KM'],
    )
    app.extensions['job_queue'] = JobQueue(
        db.session,
        redis_url=app.config.get('REDIS_URL'),
        max_retries=app.config['QUEUE_MAX_RETRIES'],
        initial_delay=app.config['RETRY_INITIAL_DELAY'],
    )


def get_engine() -> NegotiationEngine:
    return current_app.extensions['negotiation_engine']


def get_store() -> TaskStore:
    return current_app.extensions['task_store']


def get_job_queue() -> JobQueue:
    return current_app.extensions['job_queue']
