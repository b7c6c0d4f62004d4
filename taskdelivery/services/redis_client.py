"""Redis client for the background job queue."""

import json
import os
import redis
import logging

logger = logging.getLogger(__name__)

# Redis connection (lazy initialization)
_redis_client = None

# Job list consumed by the workers
QUEUE_KEY = "jobs:queue"


def get_redis(redis_url=None):
    """Get or create Redis connection."""
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = redis_url or os.environ.get('REDIS_URL')

    if not redis_url:
        logger.warning("REDIS_URL not set - jobs will be stored in the database queue")
        return None

    try:
        _redis_client = redis.from_url(redis_url, decode_responses=True)
        # Test connection
        _redis_client.ping()
        logger.info("Redis connected successfully")
        return _redis_client
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        return None


def push_job(client, job: dict) -> int:
    """Append a job to the queue. Raises redis.RedisError on failure."""
    return client.rpush(QUEUE_KEY, json.dumps(job, default=str))
