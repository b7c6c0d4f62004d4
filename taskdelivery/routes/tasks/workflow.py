"""Task workflow/lifecycle routes (complete, cancel, per-stop progress)."""

import logging

from flask import jsonify

from taskdelivery.errors import TaskDeliveryError
from taskdelivery.routes.tasks import tasks_bp
from taskdelivery.routes.tasks.helpers import error_response, json_body, server_error
from taskdelivery.services import get_engine, get_job_queue
from taskdelivery.utils import enqueue_safe, token_required

logger = logging.getLogger(__name__)


@tasks_bp.route('/<task_id>/complete', methods=['POST'])
@token_required
def complete_task(current_user_id, task_id):
    """Worker completes an assigned task (every stop of a bundle).

    Not retried on transport failure: the client may repeat the call, which
    is safe because a repeat records no new earnings.
    """
    try:
        engine = get_engine()
        result = engine.complete_task(task_id, current_user_id)

        if result.completed_count:
            enqueue_safe(
                get_job_queue(), 'task_completed',
                task_id=task_id, delivery_man_id=current_user_id,
                completed_count=result.completed_count,
            )

        return jsonify({
            'message': 'Task already completed' if result.already_completed else 'Task completed',
            'result': result.to_dict(),
            'task': engine.get_task(task_id).to_dict(),
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('complete_task', e)


@tasks_bp.route('/<task_id>/cancel', methods=['POST'])
@token_required
def cancel_task(current_user_id, task_id):
    """Creator cancels a task that has not been assigned yet."""
    try:
        engine = get_engine()
        engine.cancel_task(task_id, current_user_id)
        return jsonify({
            'message': 'Task cancelled',
            'task': engine.get_task(task_id).to_dict(),
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('cancel_task', e)


@tasks_bp.route('/<task_id>/stops/<int:location_index>/complete', methods=['POST'])
@token_required
def complete_stop(current_user_id, task_id, location_index):
    """Assigned worker marks one stop of a task as done."""
    try:
        engine = get_engine()
        if engine.get_task(task_id).delivery_man_id != current_user_id:
            return jsonify({'error': 'Only the assigned worker can update stops'}), 403

        task = engine.mark_location_as_completed(task_id, location_index)
        return jsonify({'message': 'Stop completed', 'task': task.to_dict()}), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('complete_stop', e)


@tasks_bp.route('/<task_id>/stops/<int:location_index>/notes', methods=['POST'])
@token_required
def add_stop_note(current_user_id, task_id, location_index):
    """Assigned worker leaves a note on one stop. Body: note."""
    try:
        engine = get_engine()
        if engine.get_task(task_id).delivery_man_id != current_user_id:
            return jsonify({'error': 'Only the assigned worker can update stops'}), 403

        task = engine.add_location_note(task_id, location_index, json_body().get('note'))
        return jsonify({'message': 'Note saved', 'task': task.to_dict()}), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('add_stop_note', e)
