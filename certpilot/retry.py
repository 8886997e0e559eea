# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Bounded exponential backoff for transient network failures."""
from typing import Callable, Optional, TypeVar
import logging
import threading

from .errors import IssuanceCancelled, TransientError

log = logging.getLogger(__name__)

T = TypeVar("T")


def sleep_or_cancel(seconds: float, cancel: Optional[threading.Event] = None) -> None:
    """Sleep for ``seconds``; raise IssuanceCancelled as soon as ``cancel`` is set."""
    if seconds <= 0:
        if cancel is not None and cancel.is_set():
            raise IssuanceCancelled("cancelled by request")
        return
    if cancel is None:
        cancel = threading.Event()
    if cancel.wait(timeout=seconds):
        raise IssuanceCancelled("cancelled by request")


def call_with_backoff(func: Callable[..., T], *args,
                      attempts: int = 3,
                      base_delay: float = 2.0,
                      max_delay: float = 60.0,
                      cancel: Optional[threading.Event] = None,
                      what: str = "",
                      **kwargs) -> T:
    """Call ``func`` and retry it on retryable TransientError.

    Waits base_delay * 2**attempt between tries (capped at max_delay). The
    last TransientError is re-raised once ``attempts`` calls have failed.
    """
    what = what or getattr(func, "__name__", "call")
    for attempt in range(attempts):
        try:
            return func(*args, **kwargs)
        except TransientError as exc:
            if not exc.retryable or attempt == attempts - 1:
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            log.warning("%s attempt %d/%d failed: %s; retrying in %.1fs",
                        what, attempt + 1, attempts, exc.detail, delay)
            sleep_or_cancel(delay, cancel)
    raise ValueError("attempts must be at least 1")
