"""Shared helper functions for task routes."""

import logging

from flask import current_app, jsonify, request

from taskdelivery.errors import TaskDeliveryError, ValidationError
from taskdelivery.utils.retry import with_retries

logger = logging.getLogger(__name__)


def error_response(error: TaskDeliveryError):
    """JSON body and status for a service error."""
    if error.status_code >= 500:
        logger.error(f"{error.operation} failed for task {error.task_id}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


def server_error(where, error):
    logger.error(f"Error in {where}: {error}", exc_info=True)
    return jsonify({'error': str(error)}), 500


def retrying(func):
    """Run ``func`` retrying transport failures per the app's retry policy."""
    return with_retries(
        func,
        attempts=current_app.config['RETRY_ATTEMPTS'],
        initial_delay=current_app.config['RETRY_INITIAL_DELAY'],
    )


def tasks_response(tasks):
    return jsonify({
        'tasks': [task.to_dict() for task in tasks],
        'total': len(tasks),
    }), 200


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def caller_role(task, current_user_id):
    """'user' for the task creator, 'delivery_man' for the worker holding it, else None."""
    if task.user_id == current_user_id:
        return 'user'
    if current_user_id in (task.reviewing_delivery_person_id, task.delivery_man_id):
        return 'delivery_man'
    return None
