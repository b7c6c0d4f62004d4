"""
Tests for the negotiation engine against the SQLite test database.
"""

from unittest.mock import Mock

import pytest
from faker import Faker

from taskdelivery import db
from taskdelivery.errors import (
    InvalidState,
    NoProposal,
    NotFound,
    PreconditionFailed,
    TaskNotAvailable,
    ValidationError,
)
from taskdelivery.models import DeliveryEarning, TaskCostProposal, TaskStatus
from taskdelivery.services.negotiation import MAX_LOCATION_UPDATE_ATTEMPTS, NegotiationEngine
from taskdelivery.services.task_store import TaskStore

from conftest import create_bundle, create_task, create_worker, get_task, get_worker

fake = Faker()


def proposals_for(task_id):
    db.session.expire_all()
    return TaskCostProposal.query.filter_by(task_id=task_id).all()


def earnings_for(worker_id):
    db.session.expire_all()
    return DeliveryEarning.query.filter_by(delivery_person_id=worker_id).all()


class TestClaim:
    """Tests for claim / assign"""

    def test_claim_moves_task_to_cost_review(self, engine, task, worker):
        engine.claim(task, worker)

        row = get_task(task)
        assert row.status == TaskStatus.COST_REVIEW
        assert row.reviewing_delivery_person_id == worker
        assert get_worker(worker).is_available is False

    def test_second_claim_loses(self, engine, task, worker, second_worker):
        """Only one of two workers racing for a task holds it."""
        engine.claim(task, worker)

        with pytest.raises(TaskNotAvailable) as exc:
            engine.claim(task, second_worker)

        assert exc.value.operation == 'claim'
        assert exc.value.task_id == task
        assert get_task(task).reviewing_delivery_person_id == worker
        # The loser's reservation was rolled back
        assert get_worker(second_worker).is_available is True

    def test_claim_unknown_task(self, engine, worker):
        with pytest.raises(NotFound):
            engine.claim('no-such-task', worker)

    def test_claim_by_offline_worker(self, engine, task, db_session):
        offline = create_worker(is_online=False)

        with pytest.raises(TaskNotAvailable) as exc:
            engine.claim(task, offline)

        assert 'online' in exc.value.message
        assert get_task(task).status == TaskStatus.PENDING

    def test_claim_by_unregistered_worker(self, engine, task):
        with pytest.raises(NotFound):
            engine.claim(task, fake.uuid4())

    def test_busy_worker_cannot_claim_another(self, engine, worker, db_session):
        first = create_task()
        second = create_task()
        engine.claim(first, worker)

        with pytest.raises(TaskNotAvailable):
            engine.claim(second, worker)

    def test_repeated_claim_by_holder_succeeds(self, engine, task, worker):
        """Claiming again a task you already hold is a no-op, not a conflict."""
        engine.claim(task, worker)
        before = get_task(task).updated_at

        assert engine.claim(task, worker) is True

        row = get_task(task)
        assert row.status == TaskStatus.COST_REVIEW
        assert row.reviewing_delivery_person_id == worker
        assert row.updated_at == before
        assert get_worker(worker).is_available is False

    def test_repeated_bundle_claim_by_holder_succeeds(self, engine, worker, db_session):
        bundle_id, ids = create_bundle(2)
        group = f'group-{bundle_id}'
        engine.claim(group, worker)

        assert engine.claim(group, worker) is True
        assert [get_task(i).status for i in ids] == [TaskStatus.COST_REVIEW] * 2

    def test_assign_requires_listed_price(self, engine, worker, db_session):
        unpriced = create_task(price=None)

        with pytest.raises(InvalidState) as exc:
            engine.assign(unpriced, worker)

        assert 'price' in exc.value.message
        assert get_task(unpriced).status == TaskStatus.PENDING
        assert get_worker(worker).is_available is True

    def test_unpriced_task_can_still_be_negotiated(self, engine, worker, user_id, db_session):
        unpriced = create_task(price=None, user_id=user_id)
        engine.claim(unpriced, worker)
        engine.propose_cost(unpriced, worker, 300)
        engine.accept_proposed_cost(unpriced, user_id)

        result = engine.complete_task(unpriced, worker)

        assert result.completed_count == 1
        assert [e.total_earnings for e in earnings_for(worker)] == [pytest.approx(210)]

    def test_assign_at_listed_price(self, engine, task, worker):
        engine.assign(task, worker)

        row = get_task(task)
        assert row.status == TaskStatus.ASSIGNED
        assert row.delivery_man_id == worker
        assert row.assignment_type == 'manual'

    def test_claim_bundle_moves_every_member(self, engine, worker, db_session):
        bundle_id, ids = create_bundle(3)

        engine.claim(f'group-{bundle_id}', worker)

        assert {get_task(i).status for i in ids} == {TaskStatus.COST_REVIEW}

    def test_claim_legacy_marker_bundle(self, engine, worker, db_session):
        bundle_id, ids = create_bundle(2, legacy=True)

        engine.claim(f'group-{bundle_id}', worker)

        assert all(get_task(i).reviewing_delivery_person_id == worker for i in ids)

    def test_bundle_claim_is_all_or_nothing(self, engine, worker, db_session):
        """If one member is no longer pending, no member changes."""
        bundle_id, ids = create_bundle(2)
        member = get_task(ids[1])
        member.status = TaskStatus.CANCELLED
        db_session.commit()

        with pytest.raises(TaskNotAvailable):
            engine.claim(f'group-{bundle_id}', worker)

        assert get_task(ids[0]).status == TaskStatus.PENDING
        assert get_task(ids[0]).reviewing_delivery_person_id is None
        assert get_worker(worker).is_available is True


class TestProposals:
    """Tests for propose_cost / update_proposal / cancel_cost_review"""

    def test_propose_cost(self, engine, task, worker):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500, 'two bags')

        row = get_task(task)
        assert row.status == TaskStatus.COST_PROPOSED
        assert row.proposed_cost == 500
        pending = engine.list_proposals(task)
        assert len(pending) == 1
        assert pending[0].delivery_person_id == worker
        assert pending[0].cost_notes == 'two bags'

    def test_propose_without_claim(self, engine, task, worker):
        with pytest.raises(InvalidState):
            engine.propose_cost(task, worker, 500)

    def test_invalid_cost_is_rejected_before_the_store(self):
        store = Mock()
        engine = NegotiationEngine(store)

        for cost in (0, -5, float('nan'), float('inf'), 'ten', None, True):
            with pytest.raises(ValidationError):
                engine.propose_cost('t1', 'w1', cost)

        assert store.method_calls == []

    def test_missing_ids_are_rejected_before_the_store(self):
        store = Mock()
        engine = NegotiationEngine(store)

        with pytest.raises(ValidationError):
            engine.claim('', 'w1')
        with pytest.raises(ValidationError):
            engine.accept_proposed_cost('t1', None)

        assert store.method_calls == []

    def test_update_supersedes_pending_offer(self, engine, task, worker):
        """Revising a price leaves exactly one pending offer per worker."""
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.update_proposal(task, worker, 450)

        pending = engine.list_proposals(task)
        assert len(pending) == 1
        assert pending[0].proposed_cost == 450
        assert get_task(task).proposed_cost == 450

    def test_update_without_pending_offer(self, engine, task, worker):
        engine.claim(task, worker)

        with pytest.raises(InvalidState):
            engine.update_proposal(task, worker, 450)

    def test_cancel_cost_review_releases_task_and_worker(self, engine, task, worker):
        engine.claim(task, worker)
        engine.cancel_cost_review(task, worker)

        row = get_task(task)
        assert row.status == TaskStatus.PENDING
        assert row.reviewing_delivery_person_id is None
        assert get_worker(worker).is_available is True

    def test_bundle_proposal_is_split_across_members(self, engine, worker, db_session):
        bundle_id, ids = create_bundle(3)
        engine.claim(f'group-{bundle_id}', worker)

        engine.propose_cost(f'group-{bundle_id}', worker, 100)

        assert [get_task(i).proposed_cost for i in ids] == [33.34, 33.33, 33.33]
        assert len(engine.list_proposals(f'group-{bundle_id}')) == 3


class TestAccept:
    """Tests for accept_proposed_cost / accept_specific_proposal / reject_proposed_cost"""

    def test_happy_path(self, engine, task, worker, user_id):
        """claim, propose 500, accept, complete: one earning of 350."""
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.accept_proposed_cost(task, user_id)

        row = get_task(task)
        assert row.status == TaskStatus.ASSIGNED
        assert row.delivery_man_id == worker
        assert row.accepted_cost == 500
        assert row.negotiation_agreed_by == 'user'

        result = engine.complete_task(task, worker)

        assert result.completed_count == 1
        assert get_task(task).status == TaskStatus.COMPLETED
        earnings = earnings_for(worker)
        assert len(earnings) == 1
        assert earnings[0].total_earnings == pytest.approx(350)
        assert earnings[0].type == 'base_fee'
        personnel = get_worker(worker)
        assert personnel.is_available is True
        assert personnel.total_deliveries == 1

    def test_accept_without_proposal(self, engine, task, worker, user_id):
        engine.claim(task, worker)

        with pytest.raises(NoProposal):
            engine.accept_proposed_cost(task, user_id)

    def test_only_creator_can_accept(self, engine, task, worker):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)

        with pytest.raises(InvalidState):
            engine.accept_proposed_cost(task, fake.uuid4())

        assert get_task(task).status == TaskStatus.COST_PROPOSED

    def test_accept_specific_proposal(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        proposal_id = engine.list_proposals(task)[0].id

        engine.accept_specific_proposal(task, proposal_id, user_id)

        assert get_task(task).delivery_man_id == worker
        assert engine.list_proposals(task, status='accepted')[0].id == proposal_id

    def test_accept_unknown_proposal(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)

        with pytest.raises(NotFound):
            engine.accept_specific_proposal(task, 'nope', user_id)

    def test_reject_returns_task_to_pending(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)

        engine.reject_proposed_cost(task, user_id)

        row = get_task(task)
        assert row.status == TaskStatus.PENDING
        assert row.reviewing_delivery_person_id is None
        assert row.proposed_cost is None
        assert [p.status for p in proposals_for(task)] == ['rejected']
        assert get_worker(worker).is_available is True


class TestCounterOffers:
    """Tests for counter offers in both directions"""

    def test_counter_then_worker_accepts(self, engine, task, worker, user_id):
        """propose 500, user counters 400, worker accepts: assigned at 400."""
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.user_propose_counter_offer(task, user_id, 400, 'too much')

        row = get_task(task)
        assert row.status == TaskStatus.USER_COUNTER_PROPOSED
        assert row.user_counter_cost == 400

        engine.accept_user_counter_offer(task, worker)

        row = get_task(task)
        assert row.status == TaskStatus.ASSIGNED
        assert row.accepted_cost == 400
        assert row.negotiation_agreed_by == 'delivery_man'

    def test_worker_rejects_counter(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.user_propose_counter_offer(task, user_id, 400)

        engine.delivery_man_respond_to_counter_offer(task, worker, 'reject')

        assert get_task(task).status == TaskStatus.PENDING
        assert get_worker(worker).is_available is True

    def test_worker_counters_and_user_accepts(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.user_propose_counter_offer(task, user_id, 400)
        engine.delivery_man_respond_to_counter_offer(task, worker, 'counter', new_cost=450)

        row = get_task(task)
        assert row.status == TaskStatus.DELIVERY_COUNTER_PROPOSED
        assert row.proposed_cost == 450

        engine.accept_proposed_cost(task, user_id)

        assert get_task(task).accepted_cost == 450

    def test_counter_response_needs_new_cost(self, engine):
        with pytest.raises(ValidationError):
            engine.delivery_man_respond_to_counter_offer('t1', 'w1', 'counter')

    def test_unknown_response_type(self, engine):
        with pytest.raises(ValidationError):
            engine.delivery_man_respond_to_counter_offer('t1', 'w1', 'shrug')

    def test_counter_without_offer(self, engine, task, user_id):
        with pytest.raises(InvalidState):
            engine.user_propose_counter_offer(task, user_id, 400)


class TestFinalizeAndCancel:
    """Tests for finalize_cost_negotiation / cancel_cost_negotiation / cancel_task"""

    def test_finalize_assigns_reviewing_worker(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)
        engine.user_propose_counter_offer(task, user_id, 400)

        engine.finalize_cost_negotiation(task, 450, 'user')

        row = get_task(task)
        assert row.status == TaskStatus.ASSIGNED
        assert row.delivery_man_id == worker
        assert row.accepted_cost == 450
        assert [p.status for p in proposals_for(task)] == ['accepted']

    def test_finalize_without_negotiation(self, engine, task):
        with pytest.raises(InvalidState):
            engine.finalize_cost_negotiation(task, 450, 'user')

    def test_finalize_rejects_unknown_party(self, engine):
        with pytest.raises(ValidationError):
            engine.finalize_cost_negotiation('t1', 450, 'someone')

    def test_worker_cancels_negotiation(self, engine, task, worker):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)

        engine.cancel_cost_negotiation(task, 'delivery_man', worker)

        assert get_task(task).status == TaskStatus.PENDING
        assert get_worker(worker).is_available is True

    def test_stranger_cannot_cancel_negotiation(self, engine, task, worker):
        engine.claim(task, worker)

        with pytest.raises(InvalidState):
            engine.cancel_cost_negotiation(task, 'delivery_man', fake.uuid4())

    def test_user_cancels_task_under_review(self, engine, task, worker, user_id):
        engine.claim(task, worker)

        engine.cancel_task(task, user_id)

        row = get_task(task)
        assert row.status == TaskStatus.CANCELLED
        assert row.cancelled_at is not None
        assert get_worker(worker).is_available is True

    def test_assigned_task_cannot_be_cancelled(self, engine, task, worker, user_id):
        engine.assign(task, worker)

        with pytest.raises(InvalidState):
            engine.cancel_task(task, user_id)


class TestTerminalStates:
    """Completed and cancelled tasks never move again"""

    def test_completed_task_is_final(self, engine, task, worker, user_id, second_worker):
        engine.assign(task, worker)
        engine.complete_task(task, worker)

        with pytest.raises(TaskNotAvailable):
            engine.claim(task, second_worker)
        with pytest.raises(InvalidState):
            engine.cancel_task(task, user_id)
        with pytest.raises(InvalidState):
            engine.cancel_cost_negotiation(task, 'user', user_id)

        assert get_task(task).status == TaskStatus.COMPLETED

    def test_cancelled_task_cannot_be_claimed(self, engine, task, worker, user_id):
        engine.cancel_task(task, user_id)

        with pytest.raises(TaskNotAvailable):
            engine.claim(task, worker)


class TestComplete:
    """Tests for complete_task"""

    def test_bundle_completion_credits_each_member_once(self, engine, worker, db_session):
        bundle_id, ids = create_bundle(3)
        group = f'group-{bundle_id}'
        engine.assign(group, worker)

        result = engine.complete_task(group, worker)

        assert result.completed_count == 3
        assert len(earnings_for(worker)) == 3
        assert get_worker(worker).total_deliveries == 3

        repeat = engine.complete_task(group, worker)

        assert repeat.completed_count == 0
        assert repeat.already_completed
        assert len(earnings_for(worker)) == 3
        assert get_worker(worker).total_deliveries == 3

    def test_earnings_use_share_of_price(self, store, task, worker):
        engine = NegotiationEngine(store, earnings_share=0.8)
        engine.assign(task, worker)

        engine.complete_task(task, worker)

        assert earnings_for(worker)[0].total_earnings == pytest.approx(400)

    def test_complete_someone_elses_task(self, engine, task, worker, second_worker):
        engine.assign(task, worker)

        with pytest.raises(InvalidState):
            engine.complete_task(task, second_worker)

        assert get_task(task).status == TaskStatus.ASSIGNED

    def test_complete_unassigned_task(self, engine, task, worker):
        with pytest.raises(InvalidState):
            engine.complete_task(task, worker)


class TestStopProgress:
    """Tests for mark_location_as_completed / add_location_note"""

    @pytest.fixture
    def multi_stop(self, db_session):
        return create_task(additional_locations=[
            {'name': 'Pharmacy', 'purpose': 'pickup', 'latitude': 56.95, 'longitude': 24.11},
            {'name': 'Home', 'purpose': 'dropoff', 'latitude': 56.96, 'longitude': 24.12},
        ])

    def test_mark_stop_completed(self, engine, multi_stop):
        task = engine.mark_location_as_completed(multi_stop, 1)

        assert task.location_completions == [1]
        assert task.version == 2

    def test_marking_twice_is_a_no_op(self, engine, multi_stop):
        engine.mark_location_as_completed(multi_stop, 1)
        task = engine.mark_location_as_completed(multi_stop, 1)

        assert task.location_completions == [1]
        assert task.version == 2

    def test_stop_index_out_of_range(self, engine, multi_stop):
        with pytest.raises(ValidationError):
            engine.mark_location_as_completed(multi_stop, 3)

    def test_negative_index(self, engine, multi_stop):
        with pytest.raises(ValidationError):
            engine.mark_location_as_completed(multi_stop, -1)

    def test_notes_accumulate_per_stop(self, engine, multi_stop):
        engine.add_location_note(multi_stop, 0, 'gate code 1234')
        task = engine.add_location_note(multi_stop, 2, 'leave with neighbour')

        assert task.location_notes == {
            'location_0': 'gate code 1234',
            'location_2': 'leave with neighbour',
        }

    def test_empty_note(self, engine, multi_stop):
        with pytest.raises(ValidationError):
            engine.add_location_note(multi_stop, 0, '   ')

    def test_bundle_id_is_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.mark_location_as_completed('group-abc', 0)

    def test_unknown_task(self, engine, db_session):
        with pytest.raises(NotFound):
            engine.mark_location_as_completed('missing', 0)

    def test_gives_up_when_version_keeps_changing(self, db_session, multi_stop):
        """Every write loses the version race; the engine stops after a bounded number of tries."""
        store = TaskStore(db_session)
        store.update = Mock(return_value=[])
        engine = NegotiationEngine(store)

        with pytest.raises(PreconditionFailed):
            engine.mark_location_as_completed(multi_stop, 1)

        assert store.update.call_count == MAX_LOCATION_UPDATE_ATTEMPTS
        assert get_task(multi_stop).location_completions in (None, [])


class TestReads:
    """Tests for the list/read operations"""

    def test_available_collapses_bundles(self, engine, db_session):
        create_task()
        bundle_id, _ = create_bundle(2)

        tasks = engine.list_available()

        assert len(tasks) == 2
        assert tasks[-1].id == f'group-{bundle_id}'

    def test_claimed_task_leaves_available_list(self, engine, task, worker):
        engine.claim(task, worker)

        assert engine.list_available() == []
        assert [t.id for t in engine.list_cost_review(worker)] == [task]

    def test_offer_views(self, engine, task, worker, user_id):
        engine.claim(task, worker)
        engine.propose_cost(task, worker, 500)

        assert [t.id for t in engine.list_cost_proposed(user_id)] == [task]
        assert engine.list_cost_proposed(fake.uuid4()) == []

        engine.user_propose_counter_offer(task, user_id, 400)

        assert [t.id for t in engine.list_user_counter_proposed(worker)] == [task]

        engine.delivery_man_respond_to_counter_offer(task, worker, 'counter', new_cost=450)

        assert [t.id for t in engine.list_delivery_counter_proposed(user_id)] == [task]

    def test_assigned_and_completed_lists(self, engine, task, worker):
        engine.assign(task, worker)
        assert [t.id for t in engine.list_assigned(worker)] == [task]

        engine.complete_task(task, worker)
        assert engine.list_assigned(worker) == []
        assert [t.id for t in engine.list_completed(worker)] == [task]

    def test_worker_view_includes_held_negotiations(self, engine, worker, db_session):
        """The worker's own view matches what real-time pushes keep in it."""
        reviewing = create_task()
        engine.claim(reviewing, worker)
        create_task(status=TaskStatus.ASSIGNED, delivery_man_id=fake.uuid4())

        assert [t.id for t in engine.list_worker_tasks(worker)] == [reviewing]
        assert engine.list_assigned(worker) == []

    def test_list_near_filters_by_distance(self, engine, db_session):
        near = create_task(latitude=56.9500, longitude=24.1060)
        create_task(latitude=54.6872, longitude=25.2797)  # Vilnius

        tasks = engine.list_near(56.9496, 24.1052, 5)

        assert [t.id for t in tasks] == [near]

    def test_list_near_validates_coordinates(self, engine):
        with pytest.raises(ValidationError):
            engine.list_near(91, 24.1)
        with pytest.raises(ValidationError):
            engine.list_near(56.9, 24.1, 0)

    def test_get_task_for_bundle(self, engine, db_session):
        bundle_id, ids = create_bundle(2)

        task = engine.get_task(f'group-{bundle_id}')
        members = engine.get_members(f'group-{bundle_id}')

        assert task.member_count == 2
        assert [m.id for m in members] == ids

    def test_get_unknown_task(self, engine, db_session):
        with pytest.raises(NotFound):
            engine.get_task('group-nothing')

    def test_dashboard(self, engine, task, worker):
        engine.assign(task, worker)
        engine.complete_task(task, worker)

        data = engine.dashboard(worker)

        assert data['personnel'].user_id == worker
        assert data['completed_count'] == 1
        assert data['total_earnings'] == pytest.approx(350)
        assert data['assigned'] == []


class TestNotifications:
    """The engine pushes changed rows to its notifier"""

    def test_publish_after_transition(self, store, task, worker):
        notifier = Mock()
        engine = NegotiationEngine(store, notifier=notifier)

        engine.claim(task, worker)

        rows = notifier.publish.call_args[0][0]
        assert rows[0]['id'] == task
        assert rows[0]['status'] == TaskStatus.COST_REVIEW

    def test_notifier_failure_does_not_fail_the_call(self, store, task, worker):
        notifier = Mock()
        notifier.publish.side_effect = RuntimeError('socket down')
        engine = NegotiationEngine(store, notifier=notifier)

        assert engine.claim(task, worker) is True
        assert get_task(task).status == TaskStatus.COST_REVIEW
