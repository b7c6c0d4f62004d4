"""
Pytest configuration and fixtures for testing the Task Delivery API.
"""

import os
import sys
from datetime import datetime, timedelta

import pytest
from faker import Faker

# Add the parent directory to path for imports
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from taskdelivery import create_app, db
from taskdelivery.models import Task, TaskStatus, DeliveryPersonnel
from taskdelivery.services.negotiation import NegotiationEngine
from taskdelivery.services.task_store import TaskStore
from taskdelivery.utils.auth import create_token

fake = Faker()

# Riga city centre
BASE_LAT = 56.9496
BASE_LNG = 24.1052


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    os.environ['JWT_SECRET_KEY'] = 'test-secret-key-for-testing'

    app = create_app('testing')

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client for each test function."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create a fresh database session for each test."""
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        yield db.session
        db.session.rollback()


@pytest.fixture
def store(db_session):
    return TaskStore(db_session)


@pytest.fixture
def engine(store):
    """Engine without a notifier; earnings share 70%."""
    return NegotiationEngine(store, earnings_share=0.7)


def create_task(**overrides):
    """Helper to create a pending task with sensible defaults. Returns its id."""
    data = {
        'user_id': fake.uuid4(),
        'description': fake.sentence(nb_words=6),
        'location_name': fake.street_address(),
        'location_purpose': 'pickup',
        'latitude': BASE_LAT,
        'longitude': BASE_LNG,
        'price': 500.0,
        'status': TaskStatus.PENDING,
    }
    data.update(overrides)
    task = Task(**data)
    db.session.add(task)
    db.session.commit()
    return task.id


def create_bundle(count, bundle_id=None, legacy=False, **overrides):
    """
    Helper to create ``count`` tasks of one multi-stop request.

    ``legacy=True`` links them only through the 'group:<id>' marker, the way
    rows written before the bundle_id column look.
    """
    bundle_id = bundle_id or fake.pystr(min_chars=8, max_chars=8).lower()
    user_id = overrides.pop('user_id', fake.uuid4())
    start = datetime.utcnow()
    ids = []
    for index in range(count):
        fields = dict(
            user_id=user_id,
            price=100.0,
            created_at=start + timedelta(seconds=index),
            location_name=f'Stop {index + 1}',
        )
        if legacy:
            fields['special_instructions'] = f'group:{bundle_id} ring twice'
        else:
            fields['bundle_id'] = bundle_id
        fields.update(overrides)
        ids.append(create_task(**fields))
    return bundle_id, ids


def create_worker(user_id=None, is_available=True, is_online=True, **overrides):
    """Helper to register a delivery worker. Returns the worker's user id."""
    worker = DeliveryPersonnel(
        user_id=user_id or fake.uuid4(),
        vehicle_type='bicycle',
        is_available=is_available,
        is_online=is_online,
        **overrides
    )
    db.session.add(worker)
    db.session.commit()
    return worker.user_id


def get_task(task_id):
    """Fresh copy of a task row (the store writes around the identity map)."""
    db.session.expire_all()
    return db.session.get(Task, task_id)


def get_worker(user_id):
    db.session.expire_all()
    return DeliveryPersonnel.query.filter_by(user_id=user_id).first()


def auth_headers_for(user_id):
    """Authorization header with a token for ``user_id`` (needs an app context)."""
    return {'Authorization': f'Bearer {create_token(user_id)}'}


@pytest.fixture
def user_id():
    return fake.uuid4()


@pytest.fixture
def worker(db_session):
    """An available, online delivery worker."""
    return create_worker()


@pytest.fixture
def second_worker(db_session):
    return create_worker()


@pytest.fixture
def task(db_session, user_id):
    """A pending task priced at 500 created by ``user_id``."""
    return create_task(user_id=user_id)
