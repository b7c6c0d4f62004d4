"""
Error kinds raised by the task delivery services.

Every error carries the operation name and task id it was raised for, so
routes can log it and clients can tell "someone else took this task" apart
from "network problem, try again".
"""
from typing import Any, Dict, Optional


class TaskDeliveryError(Exception):
    """Base class for task delivery errors"""

    code = 'task_delivery_error'
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.operation = operation
        self.task_id = task_id
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error': self.message,
            'code': self.code,
            'operation': self.operation,
            'task_id': self.task_id,
            'retryable': self.retryable,
            'details': self.details,
        }

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.operation} task={self.task_id}: {self.message}>'


class ValidationError(TaskDeliveryError):
    """Raised when a caller-supplied argument is invalid (checked before any store call)"""

    code = 'validation_error'
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if field:
            self.details['field'] = field


class NotFound(TaskDeliveryError):
    """Raised when a referenced task, proposal or worker does not exist"""

    code = 'not_found'
    status_code = 404


class PreconditionFailed(TaskDeliveryError):
    """Raised when a business rule was not met at the store level"""

    code = 'precondition_failed'
    status_code = 409


class TaskNotAvailable(PreconditionFailed):
    """Task was taken by someone else, or the worker cannot take new work"""

    code = 'task_not_available'


class InvalidState(PreconditionFailed):
    """Task is not in the status the operation requires"""

    code = 'invalid_state'


class NoProposal(PreconditionFailed):
    """No pending cost proposal exists for the task"""

    code = 'no_proposal'


class TransportFailure(TaskDeliveryError):
    """Raised when the store could not be reached or timed out"""

    code = 'transport_failure'
    status_code = 503
    retryable = True
