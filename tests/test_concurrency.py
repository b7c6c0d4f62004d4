"""
Concurrent claims against a file-backed SQLite database.

Each thread gets its own connection and session, the way two web workers
would, and both release their claim at the same moment.
"""

import threading

import pytest
from faker import Faker
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

from taskdelivery import db
from taskdelivery.errors import PreconditionFailed
from taskdelivery.models import DeliveryPersonnel, Task, TaskStatus
from taskdelivery.services.negotiation import NegotiationEngine
from taskdelivery.services.task_store import TaskStore

fake = Faker()


@pytest.fixture
def race_db(tmp_path):
    """Sessionmaker on a database file; transactions take the write lock up front."""
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}", connect_args={'timeout': 10})

    @event.listens_for(engine, 'connect')
    def manual_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def begin_immediate(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')

    db.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    engine.dispose()


def seed(Session, worker_count):
    session = Session()
    task = Task(
        user_id=fake.uuid4(),
        description=fake.sentence(nb_words=6),
        location_name=fake.street_address(),
        latitude=56.9496,
        longitude=24.1052,
        price=500.0,
        status=TaskStatus.PENDING,
    )
    workers = [
        DeliveryPersonnel(user_id=fake.uuid4(), is_available=True, is_online=True)
        for _ in range(worker_count)
    ]
    session.add(task)
    session.add_all(workers)
    session.commit()
    ids = task.id, [w.user_id for w in workers]
    session.close()
    return ids


def race(Session, action, worker_ids):
    """Run ``action(engine, worker_id)`` in one thread per worker, all released together."""
    barrier = threading.Barrier(len(worker_ids))
    outcomes = {}

    def run(worker_id):
        session = Session()
        engine = NegotiationEngine(TaskStore(session))
        try:
            barrier.wait()
            outcomes[worker_id] = action(engine, worker_id)
        except Exception as e:
            outcomes[worker_id] = e
        finally:
            session.close()

    threads = [threading.Thread(target=run, args=(w,)) for w in worker_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


class TestConcurrentClaims:
    """Two workers claiming the same task at once"""

    def test_exactly_one_claim_wins(self, race_db):
        task_id, worker_ids = seed(race_db, 2)

        outcomes = race(race_db, lambda engine, w: engine.claim(task_id, w), worker_ids)

        winners = [w for w, outcome in outcomes.items() if outcome is True]
        losers = [w for w, outcome in outcomes.items() if isinstance(outcome, PreconditionFailed)]
        assert len(winners) == 1
        assert len(losers) == 1

        session = race_db()
        row = session.execute(select(Task).where(Task.id == task_id)).scalar_one()
        assert row.status == TaskStatus.COST_REVIEW
        assert row.reviewing_delivery_person_id == winners[0]
        loser = session.execute(
            select(DeliveryPersonnel).where(DeliveryPersonnel.user_id == losers[0])
        ).scalar_one()
        assert loser.is_available is True
        session.close()

    def test_claim_and_assign_race(self, race_db):
        """A claim racing a direct assignment still leaves a single holder."""
        task_id, (claimer, assigner) = seed(race_db, 2)

        def act(engine, worker_id):
            if worker_id == claimer:
                return engine.claim(task_id, worker_id)
            return engine.assign(task_id, worker_id)

        outcomes = race(race_db, act, [claimer, assigner])

        assert sorted(isinstance(o, PreconditionFailed) for o in outcomes.values()) == [False, True]
        assert [o for o in outcomes.values() if not isinstance(o, PreconditionFailed)] == [True]
