"""Create, list and read tasks."""

import logging
import math
import uuid
from datetime import datetime, timedelta

from flask import request, jsonify

from taskdelivery.errors import TaskDeliveryError, ValidationError
from taskdelivery.routes.tasks import tasks_bp
from taskdelivery.routes.tasks.helpers import (
    error_response,
    json_body,
    retrying,
    server_error,
    tasks_response,
)
from taskdelivery.services import get_engine, get_store
from taskdelivery.services.bundles import synthetic_task_id
from taskdelivery.services.procedures import split_cost
from taskdelivery.utils import token_required

logger = logging.getLogger(__name__)

MAX_STOPS = 10


def _number(data, key, required=True, bound=None):
    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f'{key} is required', field=key)
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f'{key} must be a number', field=key)
    if bound is not None and abs(value) > bound:
        raise ValidationError(f'{key} must be between -{bound} and {bound}', field=key)
    return float(value)


def _text(data, key, required=False):
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f'{key} is required', field=key)
        return None
    if not isinstance(value, str):
        raise ValidationError(f'{key} must be a string', field=key)
    return value.strip()


def _timestamp(data, key):
    value = data.get(key)
    if value is None:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f'{key} must be an ISO 8601 timestamp', field=key)


def _stop(data):
    """Location fields of one stop."""
    return {
        'location_name': _text(data, 'location_name', required=True),
        'location_purpose': _text(data, 'location_purpose'),
        'latitude': _number(data, 'latitude', bound=90),
        'longitude': _number(data, 'longitude', bound=180),
    }


def _additional_locations(data):
    extra = data.get('additional_locations') or []
    if not isinstance(extra, list):
        raise ValidationError('additional_locations must be a list', field='additional_locations')
    locations = []
    for item in extra:
        if not isinstance(item, dict):
            raise ValidationError('additional_locations entries must be objects', field='additional_locations')
        stop = _stop(item)
        locations.append({
            'name': stop['location_name'],
            'purpose': stop['location_purpose'],
            'latitude': stop['latitude'],
            'longitude': stop['longitude'],
        })
    return locations


def _build_rows(current_user_id, data):
    """Rows to insert: one task, or one per stop sharing a bundle id."""
    price = _number(data, 'price', required=False)
    if price is not None and price <= 0:
        raise ValidationError('price must be greater than 0', field='price')

    shared = {
        'user_id': current_user_id,
        'description': _text(data, 'description') or '',
        'scheduled_at': _timestamp(data, 'scheduled_at'),
        'special_instructions': _text(data, 'special_instructions'),
        'image_url': _text(data, 'image_url'),
    }

    stops = data.get('stops')
    if stops is None:
        row = dict(shared, price=price, additional_locations=_additional_locations(data), **_stop(data))
        return None, [row]

    if not isinstance(stops, list) or not 2 <= len(stops) <= MAX_STOPS:
        raise ValidationError(f'stops must be a list of 2 to {MAX_STOPS} locations', field='stops')
    if not all(isinstance(stop, dict) for stop in stops):
        raise ValidationError('stops entries must be objects', field='stops')

    bundle_id = uuid.uuid4().hex[:12]
    prices = split_cost(price, len(stops)) if price is not None else [None] * len(stops)
    now = datetime.utcnow()
    rows = []
    for index, (stop, stop_price) in enumerate(zip(stops, prices)):
        rows.append(dict(
            shared,
            bundle_id=bundle_id,
            price=stop_price,
            additional_locations=[],
            # Members keep their stop order
            created_at=now + timedelta(microseconds=index),
            **_stop(stop)
        ))
    return bundle_id, rows


@tasks_bp.route('', methods=['POST'])
@token_required
def create_task(current_user_id):
    """Create a task, or a multi-stop bundle when ``stops`` is given.

    Body:
        - location_name, latitude, longitude (single task) or stops: [{...}, ...]
        - description, location_purpose, additional_locations, scheduled_at,
          price, special_instructions, image_url
    """
    try:
        bundle_id, rows = _build_rows(current_user_id, json_body())
        inserted = get_store().insert_many('tasks', rows)

        task_id = synthetic_task_id(bundle_id) if bundle_id else inserted[0]['id']
        task = get_engine().get_task(task_id)
        logger.info(f"User {current_user_id} created task {task_id} ({len(rows)} stop(s))")

        return jsonify({'message': 'Task created', 'task': task.to_dict()}), 201
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('create_task', e)


@tasks_bp.route('', methods=['GET'])
def get_available_tasks():
    """Tasks open to any worker, bundles collapsed.

    Query params:
        - latitude, longitude: only tasks near this point
        - radius: Search radius in km (default NEAR_RADIUS_KM)
    """
    try:
        latitude = request.args.get('latitude', type=float)
        longitude = request.args.get('longitude', type=float)
        radius = request.args.get('radius', type=float)

        engine = get_engine()
        if latitude is not None and longitude is not None:
            tasks = retrying(lambda: engine.list_near(latitude, longitude, radius))
        else:
            if request.args.get('radius'):
                logger.warning('GET /api/tasks: radius provided without latitude/longitude - ignored')
            tasks = retrying(engine.list_available)

        return tasks_response(tasks)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_available_tasks', e)


@tasks_bp.route('/<task_id>', methods=['GET'])
@token_required
def get_task(current_user_id, task_id):
    """Get one task; ``group-<id>`` returns the bundle as a single task."""
    try:
        task = retrying(lambda: get_engine().get_task(task_id))
        return jsonify(task.to_dict()), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_task', e)


@tasks_bp.route('/<task_id>/members', methods=['GET'])
@token_required
def get_task_members(current_user_id, task_id):
    """The underlying tasks of a bundle (a single task returns itself)."""
    try:
        members = retrying(lambda: get_engine().get_members(task_id))
        return tasks_response(members)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_task_members', e)


@tasks_bp.route('/<task_id>/proposals', methods=['GET'])
@token_required
def get_task_proposals(current_user_id, task_id):
    """Cost proposals on a task. ``status`` filters (default pending, 'all' for history)."""
    try:
        status = request.args.get('status', 'pending')
        if status == 'all':
            status = None
        proposals = retrying(lambda: get_engine().list_proposals(task_id, status=status))
        return jsonify({
            'proposals': [p.to_dict() for p in proposals],
            'total': len(proposals),
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_task_proposals', e)
