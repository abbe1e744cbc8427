from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from iom.config import RetryPolicy
from iom.domain.errors import ConflictError, UnauthorizedError
from iom.domain.models import Actor

log = logging.getLogger(__name__)

T = TypeVar("T")


def require_actor(actor: Actor | None) -> Actor:
    if actor is None:
        raise UnauthorizedError("An authenticated user is required for this operation.")
    return actor


def run_with_retry(func: Callable[[], T], policy: RetryPolicy | None = None) -> T:
    """
    Run a whole transactional operation, re-running it on ConflictError.

    The operation must open its own unit of work so every attempt re-reads
    current state from the store.
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.attempts):
        try:
            return func()
        except ConflictError as exc:
            if attempt >= policy.attempts - 1:
                raise
            delay = policy.backoff_base * (2 ** attempt)
            log.warning("conflict_retry attempt=%s delay=%.3f error=%s", attempt + 1, delay, exc)
            time.sleep(delay)
    raise ConflictError("Operation did not run.")
