"""Shared utilities for the task delivery backend.

This package contains reusable utilities that are shared across
multiple route files to reduce code duplication.
"""

from taskdelivery.utils.auth import token_required, create_token, decode_token
from taskdelivery.utils.jobs import enqueue_safe
from taskdelivery.utils.retry import with_retries

__all__ = [
    'token_required',
    'create_token',
    'decode_token',
    'enqueue_safe',
    'with_retries',
]
