from __future__ import annotations

import logging
import time
from typing import Any, Callable, Tuple, Type, TypeVar

from .errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
_BACKOFF_BASE_SECONDS = 0.05


def call_with_retries(
    fn: Callable[..., T],
    *args: Any,
    attempts: int = DEFAULT_ATTEMPTS,
    retry_on: Tuple[Type[BaseException], ...] = (PersistenceFailure,),
    backoff_base: float = _BACKOFF_BASE_SECONDS,
    **kwargs: Any,
) -> T:
    """
    Call fn(*args, **kwargs), retrying up to `attempts` times on retryable errors.

    The last error is re-raised; a mutation is never silently dropped.
    """
    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except retry_on as exc:
            if attempt + 1 >= attempts:
                raise
            wait = backoff_base * (2 ** attempt)
            logger.warning("Retrying %s after %s (attempt %d/%d)", getattr(fn, "__name__", fn), exc, attempt + 1, attempts)
            time.sleep(wait)
    raise RuntimeError("unreachable")
