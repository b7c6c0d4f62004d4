"""Follow-up job helpers for route handlers."""

import logging

logger = logging.getLogger(__name__)


def enqueue_safe(job_queue, task_identifier, **payload):
    """
    Schedule a follow-up job without letting a queue problem fail the request.

    The task transition is already committed by the time this runs; a job
    that cannot be queued is logged and dropped.

    Usage:
        enqueue_safe(get_job_queue(), 'task_completed', task_id=task_id)
    """
    try:
        result = job_queue.enqueue(task_identifier, payload)
    except Exception as e:
        logger.error(f"Job {task_identifier} not queued (non-critical): {e}")
        return None
    if not result.success:
        logger.error(f"Job {task_identifier} not queued (non-critical): {result.error}")
    return result
