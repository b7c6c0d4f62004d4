"""Cost negotiation routes (claim, propose, counter, accept, reject, finalize)."""

import logging

from flask import jsonify

from taskdelivery.errors import TaskDeliveryError
from taskdelivery.routes.tasks import tasks_bp
from taskdelivery.routes.tasks.helpers import (
    caller_role,
    error_response,
    json_body,
    retrying,
    server_error,
)
from taskdelivery.services import get_engine, get_job_queue
from taskdelivery.utils import enqueue_safe, token_required

logger = logging.getLogger(__name__)


def _task_response(message, task_id, status_code=200):
    task = get_engine().get_task(task_id)
    return jsonify({'message': message, 'task': task.to_dict()}), status_code


def _assigned(task_id):
    """Follow-up after a task is assigned; the response does not wait for it."""
    task = get_engine().get_task(task_id)
    enqueue_safe(
        get_job_queue(), 'task_assigned',
        task_id=task_id, user_id=task.user_id, delivery_man_id=task.delivery_man_id,
    )
    return jsonify({'message': 'Task assigned', 'task': task.to_dict()}), 200


@tasks_bp.route('/<task_id>/claim', methods=['POST'])
@token_required
def claim_task(current_user_id, task_id):
    """Worker takes a pending task into cost review."""
    try:
        engine = get_engine()
        retrying(lambda: engine.claim(task_id, current_user_id))
        return _task_response('Task claimed for cost review', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('claim_task', e)


@tasks_bp.route('/<task_id>/assign', methods=['POST'])
@token_required
def assign_task(current_user_id, task_id):
    """Worker accepts a pending task at its listed price."""
    try:
        get_engine().assign(task_id, current_user_id)
        return _assigned(task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('assign_task', e)


@tasks_bp.route('/<task_id>/review/cancel', methods=['POST'])
@token_required
def cancel_review(current_user_id, task_id):
    try:
        get_engine().cancel_cost_review(task_id, current_user_id)
        return _task_response('Cost review cancelled', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('cancel_review', e)


@tasks_bp.route('/<task_id>/proposals', methods=['POST'])
@token_required
def propose_cost(current_user_id, task_id):
    """Worker proposes a price. Body: cost, notes."""
    try:
        data = json_body()
        engine = get_engine()
        retrying(lambda: engine.propose_cost(task_id, current_user_id, data.get('cost'), data.get('notes')))
        return _task_response('Cost proposed', task_id, 201)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('propose_cost', e)


@tasks_bp.route('/<task_id>/proposals', methods=['PUT'])
@token_required
def update_proposal(current_user_id, task_id):
    """Worker revises their pending price. Body: cost, notes."""
    try:
        data = json_body()
        get_engine().update_proposal(task_id, current_user_id, data.get('cost'), data.get('notes'))
        return _task_response('Proposal updated', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('update_proposal', e)


@tasks_bp.route('/<task_id>/accept', methods=['POST'])
@token_required
def accept_proposal(current_user_id, task_id):
    """User accepts a price. Body: proposal_id (optional, default the oldest pending)."""
    try:
        proposal_id = json_body().get('proposal_id')
        engine = get_engine()
        if proposal_id:
            engine.accept_specific_proposal(task_id, proposal_id, current_user_id)
        else:
            engine.accept_proposed_cost(task_id, current_user_id)
        return _assigned(task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('accept_proposal', e)


@tasks_bp.route('/<task_id>/reject', methods=['POST'])
@token_required
def reject_proposals(current_user_id, task_id):
    """User turns down the offer; the task goes back to pending."""
    try:
        get_engine().reject_proposed_cost(task_id, current_user_id)
        return _task_response('Offer rejected', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('reject_proposals', e)


@tasks_bp.route('/<task_id>/counter', methods=['POST'])
@token_required
def counter_offer(current_user_id, task_id):
    """User counters the worker's price. Body: cost, notes."""
    try:
        data = json_body()
        get_engine().user_propose_counter_offer(task_id, current_user_id, data.get('cost'), data.get('notes'))
        return _task_response('Counter offer sent', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('counter_offer', e)


@tasks_bp.route('/<task_id>/counter/respond', methods=['POST'])
@token_required
def respond_to_counter(current_user_id, task_id):
    """Worker answers a counter offer. Body: response_type (accept|reject|counter), new_cost, notes."""
    try:
        data = json_body()
        response_type = data.get('response_type')
        get_engine().delivery_man_respond_to_counter_offer(
            task_id, current_user_id, response_type,
            new_cost=data.get('new_cost'), notes=data.get('notes'),
        )
        if response_type == 'accept':
            return _assigned(task_id)
        return _task_response(f'Counter offer {response_type}ed', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('respond_to_counter', e)


@tasks_bp.route('/<task_id>/finalize', methods=['POST'])
@token_required
def finalize_negotiation(current_user_id, task_id):
    """Either party closes the negotiation at an agreed price. Body: final_cost."""
    try:
        data = json_body()
        engine = get_engine()
        role = caller_role(engine.get_task(task_id), current_user_id)
        if role is None:
            return jsonify({'error': 'Only the task creator or the reviewing worker can finalize'}), 403

        engine.finalize_cost_negotiation(task_id, data.get('final_cost'), role)
        return _assigned(task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('finalize_negotiation', e)


@tasks_bp.route('/<task_id>/negotiation/cancel', methods=['POST'])
@token_required
def cancel_negotiation(current_user_id, task_id):
    """Either party ends the negotiation; the task goes back to pending."""
    try:
        engine = get_engine()
        role = caller_role(engine.get_task(task_id), current_user_id)
        if role is None:
            return jsonify({'error': 'Only the task creator or the reviewing worker can cancel'}), 403

        engine.cancel_cost_negotiation(task_id, role, current_user_id)
        return _task_response('Negotiation cancelled', task_id)
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('cancel_negotiation', e)
