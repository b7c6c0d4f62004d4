"""
Tests for parsing store rows into entities.
"""

from datetime import datetime

import pytest

from taskdelivery.errors import ValidationError
from taskdelivery.services.entities import (
    parse_cost_proposal,
    parse_delivery_personnel,
    parse_task,
)


def task_row(**fields):
    data = {
        'id': 't1',
        'user_id': 'u1',
        'status': 'pending',
        'latitude': 56.95,
        'longitude': 24.1,
        'created_at': datetime(2026, 3, 1, 9, 0),
    }
    data.update(fields)
    return data


class TestParseTask:
    """Tests for parse_task"""

    def test_minimal_row(self):
        task = parse_task(task_row())

        assert task.id == 't1'
        assert task.status == 'pending'
        assert task.additional_locations == []
        assert task.location_completions == []
        assert task.location_notes == {}
        assert task.version == 1
        assert not task.is_bundle

    def test_iso_timestamps_are_parsed(self):
        task = parse_task(task_row(created_at='2026-03-01T09:00:00', completed_at='2026-03-01T10:30:00'))

        assert task.created_at == datetime(2026, 3, 1, 9, 0)
        assert task.completed_at == datetime(2026, 3, 1, 10, 30)

    @pytest.mark.parametrize('missing', ['id', 'user_id', 'status', 'latitude', 'longitude', 'created_at'])
    def test_missing_required_field(self, missing):
        data = task_row()
        data[missing] = None

        with pytest.raises(ValidationError) as exc:
            parse_task(data)
        assert exc.value.details['field'] == missing

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            parse_task(task_row(status='lost'))

    def test_non_finite_number(self):
        with pytest.raises(ValidationError):
            parse_task(task_row(price=float('nan')))

    def test_bad_timestamp(self):
        with pytest.raises(ValidationError):
            parse_task(task_row(created_at='yesterday'))

    def test_to_dict_serializes_datetimes(self):
        data = parse_task(task_row()).to_dict()

        assert data['created_at'] == '2026-03-01T09:00:00'
        assert data['is_bundle'] is False


class TestParseCostProposal:
    """Tests for parse_cost_proposal"""

    def proposal_row(self, **fields):
        data = {
            'id': 'p1',
            'task_id': 't1',
            'delivery_person_id': 'w1',
            'proposed_cost': 25.0,
            'status': 'pending',
            'proposed_at': datetime(2026, 3, 1, 9, 0),
        }
        data.update(fields)
        return data

    def test_valid(self):
        proposal = parse_cost_proposal(self.proposal_row())

        assert proposal.proposed_cost == 25.0
        assert proposal.to_dict()['proposed_at'] == '2026-03-01T09:00:00'

    def test_cost_must_be_positive(self):
        with pytest.raises(ValidationError):
            parse_cost_proposal(self.proposal_row(proposed_cost=0))

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            parse_cost_proposal(self.proposal_row(status='maybe'))


class TestParseDeliveryPersonnel:
    """Tests for parse_delivery_personnel"""

    def test_can_take_work_needs_both_flags(self):
        assert parse_delivery_personnel({'user_id': 'w', 'is_available': True, 'is_online': True}).can_take_work
        assert not parse_delivery_personnel({'user_id': 'w', 'is_available': True, 'is_online': False}).can_take_work
        assert not parse_delivery_personnel({'user_id': 'w', 'is_available': False, 'is_online': True}).can_take_work

    def test_missing_flag_is_an_error(self):
        with pytest.raises(ValidationError):
            parse_delivery_personnel({'user_id': 'w', 'is_available': True})

    def test_defaults(self):
        worker = parse_delivery_personnel({'user_id': 'w', 'is_available': True, 'is_online': True})

        assert worker.rating == 0.0
        assert worker.total_deliveries == 0
        assert worker.to_dict()['can_take_work'] is True
