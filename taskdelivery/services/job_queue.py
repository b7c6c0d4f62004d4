"""
Background job queue.

Fire-and-forget scheduling of follow-up work (notifications, payouts) after a
task is assigned or completed. Jobs go to Redis when it is configured and
reachable, otherwise into the ``job_queue`` table. ``enqueue`` never raises:
callers get a QueueResult and carry on.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import redis
from sqlalchemy.exc import SQLAlchemyError

from taskdelivery.models import QueuedJob
from taskdelivery.services import redis_client
from taskdelivery.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 25


@dataclass
class QueueResult:
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempt_count: int = 0
    method: str = 'none'  # 'redis', 'database' or 'none'
    duration: float = 0.0

    def to_dict(self):
        return {
            'success': self.success,
            'error': self.error,
            'error_code': self.error_code,
            'attempt_count': self.attempt_count,
            'method': self.method,
        }


class JobQueue:
    """Enqueue jobs with retries, Redis first and the database as fallback."""

    def __init__(self, session, redis_url=None, max_retries=3, initial_delay=1.0, sleep=time.sleep):
        self.session = session
        self.redis_url = redis_url
        self.max_retries = max(1, max_retries)
        self.initial_delay = initial_delay
        self._sleep = sleep

    def _redis(self):
        if not self.redis_url:
            return None
        return redis_client.get_redis(self.redis_url)

    def _push_redis(self, job):
        client = self._redis()
        if client is None:
            return QueueResult(False, 'Redis is not configured', 'REDIS_UNAVAILABLE', method='redis')
        try:
            redis_client.push_job(client, job)
            return QueueResult(True, method='redis')
        except redis.RedisError as e:
            return QueueResult(False, f'Redis push failed: {e}', 'REDIS_ERROR', method='redis')

    def _insert_row(self, job):
        try:
            self.session.add(QueuedJob(
                task_identifier=job['task_identifier'],
                payload=job['payload'],
                run_at=job['run_at'] or datetime.utcnow(),
                max_attempts=job['max_attempts'],
            ))
            self.session.commit()
            return QueueResult(True, method='database')
        except SQLAlchemyError as e:
            self.session.rollback()
            return QueueResult(False, f'Database insert failed: {e}', 'DATABASE_ERROR', method='database')

    def enqueue(self, task_identifier, payload=None, run_at=None, max_attempts=None) -> QueueResult:
        """Schedule ``task_identifier`` with ``payload``. Never raises."""
        started = time.monotonic()

        if not task_identifier:
            return QueueResult(False, 'task_identifier is required', 'INVALID_ARGUMENT')

        job = {
            'task_identifier': task_identifier,
            'payload': payload or {},
            'run_at': run_at,
            'max_attempts': max_attempts or DEFAULT_MAX_ATTEMPTS,
        }

        last = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = self._push_redis(job)
                if not result.success:
                    logger.debug(f"Redis enqueue of {task_identifier} failed: {result.error}")
                    result = self._insert_row(job)
            except Exception as e:
                result = QueueResult(False, f'Unexpected error: {e}', 'UNEXPECTED_ERROR')

            result.attempt_count = attempt
            result.duration = time.monotonic() - started
            if result.success:
                logger.info(f"Enqueued {task_identifier} via {result.method} (attempt {attempt})")
                return result

            last = result
            if attempt < self.max_retries:
                delay = backoff_delay(attempt, self.initial_delay)
                logger.warning(f"Enqueue of {task_identifier} failed ({last.error}); retrying in {delay:.2f}s")
                self._sleep(delay)

        logger.error(f"Failed to enqueue {task_identifier} after {self.max_retries} attempts: {last.error}")
        return QueueResult(
            False,
            f'Failed to enqueue after {self.max_retries} attempts. Last error: {last.error}',
            'MAX_RETRIES_EXCEEDED',
            attempt_count=self.max_retries,
            method='none',
            duration=time.monotonic() - started,
        )
