"""WebSocket events for real-time task views."""

from flask_socketio import emit, join_room, leave_room
from flask import request
import logging

from taskdelivery.services import get_engine
from taskdelivery.services.realtime import AVAILABLE_ROOM, assigned_room
from taskdelivery.utils.auth import decode_token

logger = logging.getLogger(__name__)


def _user_from(data):
    token = data.get('token') if isinstance(data, dict) else None
    return decode_token(token) if token else None


def register_socket_events(socketio):
    """Register all Socket.IO event handlers."""

    @socketio.on('connect')
    def handle_connect(auth):
        """Handle client connection."""
        token = None
        if auth and isinstance(auth, dict):
            token = auth.get('token')
        elif request.args.get('token'):
            token = request.args.get('token')

        if not token:
            logger.warning('Socket connection without token')
            return False

        user_id = decode_token(token)
        if not user_id:
            logger.warning('Socket connection with invalid token')
            return False

        logger.info(f'User {user_id} connected: {request.sid}')
        emit('connected', {'user_id': user_id})
        return True

    @socketio.on('disconnect')
    def handle_disconnect(*args):
        logger.info(f'Socket disconnected: {request.sid}')

    @socketio.on('subscribe_available_tasks')
    def handle_subscribe_available(data=None):
        """Join the available-tasks room and send the current list."""
        try:
            join_room(AVAILABLE_ROOM)
            tasks = get_engine().list_available()
            emit('available_tasks', {'tasks': [t.to_dict() for t in tasks]})
        except Exception as e:
            logger.error(f'Subscribe available tasks error: {e}')
            emit('error', {'message': 'Failed to load available tasks'})

    @socketio.on('subscribe_assigned_tasks')
    def handle_subscribe_assigned(data):
        """Join the caller's own task room; only the worker themself may subscribe."""
        try:
            user_id = _user_from(data)
            if not user_id:
                emit('error', {'message': 'Invalid token'})
                return

            join_room(assigned_room(user_id))
            tasks = get_engine().list_worker_tasks(user_id)
            emit('assigned_tasks', {'worker_id': user_id, 'tasks': [t.to_dict() for t in tasks]})
        except Exception as e:
            logger.error(f'Subscribe assigned tasks error: {e}')
            emit('error', {'message': 'Failed to load assigned tasks'})

    @socketio.on('unsubscribe')
    def handle_unsubscribe(data):
        """Leave the available room (view='available') or the caller's assigned room."""
        view = data.get('view') if isinstance(data, dict) else None
        if view == 'available':
            leave_room(AVAILABLE_ROOM)
        elif view == 'assigned':
            user_id = _user_from(data)
            if not user_id:
                emit('error', {'message': 'Invalid token'})
                return
            leave_room(assigned_room(user_id))
        else:
            emit('error', {'message': 'view must be "available" or "assigned"'})
            return
        emit('unsubscribed', {'view': view})
