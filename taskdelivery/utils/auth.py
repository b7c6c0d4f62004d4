"""Shared authentication utilities.

This module provides the JWT decorator used across all route files so
every endpoint authenticates the same way.
"""

from datetime import datetime, timedelta
from functools import wraps
from flask import request, jsonify, current_app
import jwt

TOKEN_ALGORITHM = 'HS256'


def _secret_key():
    return current_app.config['JWT_SECRET_KEY']


def create_token(user_id, expires_in=timedelta(days=7)):
    """Issue a token for ``user_id`` signed with the app's JWT secret."""
    payload = {
        'user_id': str(user_id),
        'exp': datetime.utcnow() + expires_in,
    }
    return jwt.encode(payload, _secret_key(), algorithm=TOKEN_ALGORITHM)


def decode_token(token):
    """Return the user id carried by ``token``, or None if it is not valid."""
    if token and token.startswith('Bearer '):
        token = token.split(' ')[1]
    try:
        payload = jwt.decode(token, _secret_key(), algorithms=[TOKEN_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    user_id = payload.get('user_id')
    return str(user_id) if user_id is not None else None


def token_required(f):
    """
    Decorator to require valid JWT token.

    Extracts user_id from JWT token and passes it as the first argument
    to the decorated function.

    Usage:
        @tasks_bp.route('/<task_id>/claim', methods=['POST'])
        @token_required
        def claim_task(current_user_id, task_id):
            ...
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization')

        if not auth_header:
            return jsonify({'error': 'Token is missing'}), 401

        try:
            # Support both "Bearer <token>" and raw token formats
            token = auth_header.split(' ')[1] if ' ' in auth_header else auth_header
            payload = jwt.decode(token, _secret_key(), algorithms=[TOKEN_ALGORITHM])
            current_user_id = str(payload['user_id'])
        except jwt.ExpiredSignatureError:
            return jsonify({'error': 'Token has expired'}), 401
        except (jwt.InvalidTokenError, KeyError):
            return jsonify({'error': 'Token is invalid'}), 401

        return f(current_user_id, *args, **kwargs)
    return decorated
