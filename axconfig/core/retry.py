"""Bounded retry for individual device steps."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .errors import RETRYABLE_ERRORS

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_INTERVAL_SECONDS = 1.0


async def try_and_retry(
    task: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    interval: float = DEFAULT_INTERVAL_SECONDS,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_ERRORS,
) -> T:
    """Run ``task`` up to ``attempts`` times with a fixed delay between attempts.

    Only exceptions listed in ``retry_on`` trigger another attempt; anything
    else propagates immediately. The last failure is re-raised unchanged.
    """
    attempts = max(1, attempts)
    attempt = 0
    while True:
        if attempt > 0 and interval > 0:
            LOGGER.info("Retrying in %.1fs...", interval)
            await asyncio.sleep(interval)
        attempt += 1
        try:
            return await task()
        except retry_on as exc:
            LOGGER.warning("Failed attempt (%d/%d): %s", attempt, attempts, exc)
            if attempt >= attempts:
                raise
