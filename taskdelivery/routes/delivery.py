"""Delivery worker routes (registration, online status, dashboard, earnings)."""

import logging

from flask import Blueprint, jsonify

from taskdelivery.errors import TaskDeliveryError, ValidationError
from taskdelivery.models import DeliveryPersonnel
from taskdelivery.routes.tasks.helpers import error_response, json_body, retrying, server_error
from taskdelivery.services import get_engine, get_store
from taskdelivery.utils import token_required

logger = logging.getLogger(__name__)

delivery_bp = Blueprint('delivery', __name__)


@delivery_bp.route('/register', methods=['POST'])
@token_required
def register(current_user_id):
    """Register the current user as a delivery worker. Body: vehicle_type."""
    try:
        vehicle_type = json_body().get('vehicle_type', 'motorcycle')
        if vehicle_type not in DeliveryPersonnel.VEHICLE_TYPES:
            raise ValidationError(f'vehicle_type must be one of: {", ".join(DeliveryPersonnel.VEHICLE_TYPES)}', field='vehicle_type')

        store = get_store()
        if store.get_personnel(current_user_id):
            return jsonify({'error': 'Already registered as a delivery worker'}), 409

        row = store.insert('delivery_personnel', {
            'user_id': current_user_id,
            'vehicle_type': vehicle_type,
            'is_available': True,
            'is_online': False,
        })
        logger.info(f"User {current_user_id} registered as delivery worker ({vehicle_type})")
        return jsonify({'message': 'Registered', 'personnel': _personnel_dict(row)}), 201
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('register', e)


@delivery_bp.route('/status', methods=['PUT'])
@token_required
def update_status(current_user_id):
    """Go online/offline and report position. Body: is_online, latitude, longitude.

    Availability is not settable here; claiming and completing work manage it.
    """
    try:
        data = json_body()
        patch = {}
        if 'is_online' in data:
            if not isinstance(data['is_online'], bool):
                raise ValidationError('is_online must be true or false', field='is_online')
            patch['is_online'] = data['is_online']
        for key, column in (('latitude', 'current_latitude'), ('longitude', 'current_longitude')):
            if data.get(key) is not None:
                if isinstance(data[key], bool) or not isinstance(data[key], (int, float)):
                    raise ValidationError(f'{key} must be a number', field=key)
                patch[column] = float(data[key])
        if not patch:
            raise ValidationError('Nothing to update')

        rows = get_store().update('delivery_personnel', patch, {'user_id': current_user_id})
        if not rows:
            return jsonify({'error': 'Not registered as a delivery worker'}), 404
        return jsonify({'personnel': _personnel_dict(rows[0])}), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('update_status', e)


@delivery_bp.route('/me', methods=['GET'])
@token_required
def dashboard(current_user_id):
    """Worker dashboard: status, open work, own tasks and earnings total."""
    try:
        data = retrying(lambda: get_engine().dashboard(current_user_id))
        personnel = data['personnel']
        return jsonify({
            'personnel': personnel.to_dict() if personnel else None,
            'available': [t.to_dict() for t in data['available']],
            'in_review': [t.to_dict() for t in data['in_review']],
            'awaiting_response': [t.to_dict() for t in data['awaiting_response']],
            'assigned': [t.to_dict() for t in data['assigned']],
            'completed_count': data['completed_count'],
            'total_earnings': data['total_earnings'],
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('dashboard', e)


@delivery_bp.route('/earnings', methods=['GET'])
@token_required
def earnings(current_user_id):
    try:
        rows = retrying(lambda: get_engine().earnings(current_user_id))
        return jsonify({
            'earnings': [_earning_dict(row) for row in rows],
            'total': round(sum(row['total_earnings'] or 0 for row in rows), 2),
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('earnings', e)


def _iso(value):
    return value.isoformat() if value else None


def _personnel_dict(row):
    return {
        'user_id': row['user_id'],
        'vehicle_type': row['vehicle_type'],
        'is_available': row['is_available'],
        'is_online': row['is_online'],
        'rating': row['rating'],
        'total_deliveries': row['total_deliveries'],
    }


def _earning_dict(row):
    return {
        'id': row['id'],
        'task_id': row['task_id'],
        'total_earnings': row['total_earnings'],
        'type': row['type'],
        'description': row['description'],
        'created_at': _iso(row['created_at']),
    }
