"""Shared plumbing for the Azure adapters: blocking calls and error mapping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)

from .errors import ErrorClass, RemoteError, RemoteTransientError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_ERROR_CODES = frozenset(
    {"QuotaExceeded", "OperationNotAllowed", "SkuNotAvailable", "ResourceQuotaExceeded"}
)


def error_class_for(error: AzureError) -> ErrorClass:
    """Map an Azure SDK exception to the engine's error class."""
    if isinstance(error, ClientAuthenticationError):
        return ErrorClass.UNAUTHENTICATED
    if isinstance(error, ResourceExistsError):
        return ErrorClass.ALREADY_EXISTS
    if isinstance(error, ResourceNotFoundError):
        return ErrorClass.NOT_FOUND
    if isinstance(error, (ServiceRequestError, ServiceResponseError)):
        return ErrorClass.TRANSIENT
    if isinstance(error, HttpResponseError):
        status = error.status_code or 0
        code = getattr(error.error, "code", None) if error.error is not None else None
        if code in QUOTA_ERROR_CODES:
            return ErrorClass.QUOTA_EXCEEDED
        if status == 429 or status >= 500:
            return ErrorClass.TRANSIENT
        if status == 401:
            return ErrorClass.UNAUTHENTICATED
        if status == 403:
            return ErrorClass.PERMISSION_DENIED
        if status == 404:
            return ErrorClass.NOT_FOUND
        if status == 409:
            return ErrorClass.ALREADY_EXISTS
        return ErrorClass.INVALID_ARGUMENT
    return ErrorClass.TRANSIENT


def to_remote_error(error: AzureError, operation_name: str) -> RemoteError:
    error_class = error_class_for(error)
    message = getattr(error, "message", None) or str(error)
    return classify(error_class, f"{operation_name}: {message}")


async def run_blocking(
    func: Callable[[], T],
    timeout_seconds: int,
    operation_name: str,
) -> T:
    """Run a blocking SDK call in the default executor with a timeout.

    Raises:
        RemoteError: Classified Azure failure, or a transient error on timeout.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=timeout_seconds)
    except TimeoutError as e:
        logger.error(
            f"{operation_name} timed out",
            extra={"timeout_seconds": timeout_seconds},
        )
        raise RemoteTransientError(f"{operation_name} timed out after {timeout_seconds}s") from e
    except AzureError as e:
        raise to_remote_error(e, operation_name) from e


def nested(data: Any, *path: str) -> Any:
    """Read a nested key from SDK property bags (dicts), None if any level is missing."""
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current
