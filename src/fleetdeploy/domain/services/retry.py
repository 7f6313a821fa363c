"""Bounded retry with exponential backoff for blocking remote operations."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from fleetdeploy.domain.errors import TransientRemoteError
from fleetdeploy.domain.models.retry import RetryPolicy
from fleetdeploy.infrastructure.observability.metrics import RETRY_ATTEMPTS


logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def is_transient(error: BaseException) -> bool:
    return isinstance(error, TransientRemoteError)


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    is_retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation(attempt)`` until it succeeds or the policy gives up.

    Only errors accepted by ``is_retryable`` are retried; anything else, or the
    last retryable error once ``max_attempts`` is spent, propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return await operation(attempt)
        except Exception as e:
            if not is_retryable(e) or not policy.should_retry(attempt):
                raise
            delay = policy.delay_for(attempt, rng)
            RETRY_ATTEMPTS.labels(operation=operation_name).inc()
            logger.warning(
                "retrying_operation",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=round(delay, 3),
                error=str(e),
            )
            await sleep(delay)
            attempt += 1
