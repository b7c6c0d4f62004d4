"""Retry with exponential backoff for transport failures."""

import logging
import random
import time

from taskdelivery.errors import TransportFailure

logger = logging.getLogger(__name__)


def backoff_delay(attempt, initial_delay, multiplier=2.0, max_delay=30.0, jitter=0.25):
    """
    Delay before retry number ``attempt`` (1-based).

    Grows by ``multiplier`` each attempt, capped at ``max_delay``, with up to
    +/- ``jitter`` random variation.
    """
    if initial_delay <= 0:
        return 0
    delay = min(initial_delay * (multiplier ** (attempt - 1)), max_delay)
    spread = delay * jitter * random.random()
    return max(0, delay + spread if random.random() < 0.5 else delay - spread)


def with_retries(func, attempts=3, initial_delay=0.2, retry_on=(TransportFailure,), sleep=time.sleep):
    """
    Call ``func()`` and retry it when it raises one of ``retry_on``.

    Only use this for calls that are safe to repeat: reads, and mutations whose
    store-side precondition makes a repeat harmless (claim, propose).
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == attempts:
                logger.error(f"Giving up after {attempts} attempts: {e}")
                raise
            delay = backoff_delay(attempt, initial_delay)
            logger.warning(f"Attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
            sleep(delay)
