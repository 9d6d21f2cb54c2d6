from __future__ import annotations

import logging
import time

from django.db import OperationalError

logger = logging.getLogger(__name__)


class StaleWriteError(Exception):
    """A guarded write lost its race (version mismatch or duplicate lazy insert)."""


RETRYABLE_ERRORS = (StaleWriteError, OperationalError)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05, label: str = "operation"):
    """
    Execute ``func`` and retry it on concurrency-related failures.

    ``func`` must own its transaction (wrap its body in ``transaction.atomic``)
    so a failed attempt is rolled back before the next one starts. The last
    error is re-raised once ``attempts`` are exhausted.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(attempts):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            if attempt >= attempts - 1:
                logger.warning("retry_exhausted label=%s attempts=%s error=%s", label, attempts, exc)
                raise
            logger.info("retrying label=%s attempt=%s error=%s", label, attempt + 1, exc)
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
