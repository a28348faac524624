"""Retry and operation polling helpers shared by the executor and sub-managers."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .config import RetryPolicy
from .errors import ErrorClass, OperationTimeoutError, RemoteFailure, RemoteTransientError, classify
from .interfaces import ControlPlane, Operation, OperationState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound of the random jitter, as a fraction of the backoff
JITTER_FRACTION = 0.2


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    context: dict[str, Any] | None = None,
) -> T:
    """Await `call`, retrying retryable remote errors with exponential backoff.

    Non-retryable errors propagate unchanged. A retryable error that is still
    failing after `policy.max_attempts` attempts becomes RemoteFailure.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await call()
        except RemoteTransientError as e:
            if not policy.is_retryable(e.error_class):
                raise RemoteFailure(e.error_class, f"{description}: {e}") from e
            if attempt == policy.max_attempts:
                raise RemoteFailure(
                    e.error_class,
                    f"{description} failed after {attempt} attempts: {e}",
                ) from e

            backoff = policy.delay(attempt)
            wait_time = backoff + random.uniform(0, backoff * JITTER_FRACTION)
            logger.warning(
                f"{description} failed, retrying",
                extra={
                    **(context or {}),
                    "attempt": attempt,
                    "max_attempts": policy.max_attempts,
                    "wait_seconds": wait_time,
                    "error_class": e.error_class.value,
                },
            )
            await asyncio.sleep(wait_time)

    # max_attempts >= 1 is enforced by RetryPolicy, so the loop always returns or raises
    raise AssertionError("Retry loop exited without a result")


async def wait_for_operation(
    control_plane: ControlPlane,
    operation: Operation,
    poll_policy: RetryPolicy,
    retry_policy: RetryPolicy,
    context: dict[str, Any] | None = None,
) -> None:
    """Poll an operation until it reaches a terminal status.

    Raises:
        RemoteTransientError: The operation failed with a retryable class;
            the caller may resubmit it.
        RemoteFailure: The operation failed with a non-retryable class.
        OperationTimeoutError: Still pending after the poll limit.
    """
    for attempt in range(1, poll_policy.max_attempts + 1):
        status = await call_with_retry(
            lambda: control_plane.poll(operation),
            retry_policy,
            "Operation poll",
            context,
        )
        if status.state == OperationState.SUCCEEDED:
            return
        if status.state == OperationState.FAILED:
            raise classify(
                status.error_class or ErrorClass.INVALID_ARGUMENT,
                status.message or f"Operation on {operation.remote_id} failed",
            )
        if attempt < poll_policy.max_attempts:
            await asyncio.sleep(poll_policy.delay(attempt))

    logger.error(
        "Operation did not finish in time",
        extra={
            **(context or {}),
            "remote_id": operation.remote_id,
            "poll_attempts": poll_policy.max_attempts,
        },
    )
    raise OperationTimeoutError(
        f"Operation on {operation.remote_id} still pending after "
        f"{poll_policy.max_attempts} polls"
    )
