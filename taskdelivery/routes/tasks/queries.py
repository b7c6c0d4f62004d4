"""User-specific task query routes (in review, assigned, completed, offers)."""

from flask import jsonify

from taskdelivery.errors import TaskDeliveryError
from taskdelivery.routes.tasks import tasks_bp
from taskdelivery.routes.tasks.helpers import error_response, retrying, server_error, tasks_response
from taskdelivery.services import get_engine
from taskdelivery.utils import token_required


@tasks_bp.route('/review', methods=['GET'])
@token_required
def get_review_tasks(current_user_id):
    """Tasks the current worker is pricing (cost_review)."""
    try:
        return tasks_response(retrying(lambda: get_engine().list_cost_review(current_user_id)))
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_review_tasks', e)


@tasks_bp.route('/assigned', methods=['GET'])
@token_required
def get_assigned_tasks(current_user_id):
    """Tasks assigned to the current worker and not yet completed."""
    try:
        return tasks_response(retrying(lambda: get_engine().list_assigned(current_user_id)))
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_assigned_tasks', e)


@tasks_bp.route('/completed', methods=['GET'])
@token_required
def get_completed_tasks(current_user_id):
    try:
        return tasks_response(retrying(lambda: get_engine().list_completed(current_user_id)))
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_completed_tasks', e)


@tasks_bp.route('/offers', methods=['GET'])
@token_required
def get_offers(current_user_id):
    """The current user's tasks with a worker's price waiting for an answer."""
    try:
        engine = get_engine()
        proposed = retrying(lambda: engine.list_cost_proposed(current_user_id))
        countered = retrying(lambda: engine.list_delivery_counter_proposed(current_user_id))
        return jsonify({
            'cost_proposed': [t.to_dict() for t in proposed],
            'delivery_counter_proposed': [t.to_dict() for t in countered],
            'total': len(proposed) + len(countered),
        }), 200
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_offers', e)


@tasks_bp.route('/counter-offers', methods=['GET'])
@token_required
def get_counter_offers(current_user_id):
    """Counter offers from users waiting for the current worker's answer."""
    try:
        return tasks_response(retrying(lambda: get_engine().list_user_counter_proposed(current_user_id)))
    except TaskDeliveryError as e:
        return error_response(e)
    except Exception as e:
        return server_error('get_counter_offers', e)
