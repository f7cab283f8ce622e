"""Bounded retry for read-side collaborator calls.

Only idempotent calls go through here (content-store get/put, ledger reads).
The mint call never does.
"""

import time
from typing import Callable, TypeVar

from pogpp.common.config import settings
from pogpp.common.logging import logger
from pogpp.common.metrics import retries_total

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    dependency: str,
    retry_on: tuple[type[BaseException], ...],
    attempts: int | None = None,
    backoff_seconds: float | None = None,
    service_name: str | None = None,
) -> T:
    """Call `fn`, retrying on `retry_on` with exponential backoff.

    The last error is re-raised once attempts are exhausted.
    """

    attempts = attempts or settings.collaborator_max_retries
    backoff = settings.collaborator_backoff_seconds if backoff_seconds is None else backoff_seconds
    service = service_name or settings.service_name
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            if attempt == attempts:
                raise
            retries_total.labels(service=service, dependency=dependency).inc()
            # Exponential backoff: base, 2*base, 4*base...
            delay = backoff * 2 ** (attempt - 1)
            logger.warning(
                "%s call failed attempt=%s/%s backoff_s=%s error=%s",
                dependency,
                attempt,
                attempts,
                delay,
                exc,
            )
            if delay > 0:
                time.sleep(delay)
    raise RuntimeError("unreachable")
