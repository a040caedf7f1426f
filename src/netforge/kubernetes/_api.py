"""Shared plumbing for the Kubernetes-backed stores."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import urllib3
from kubernetes import client  # type: ignore[import-untyped]
from kubernetes.client.rest import ApiException  # type: ignore[import-untyped]

from netforge.config.settings import get_settings
from netforge.errors import (
    ConflictError,
    NotFoundError,
    StoreError,
    TransientStoreError,
)
from netforge.observability._logging import get_logger


log = get_logger(__name__)

T = TypeVar("T")

# HTTP Status codes
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def translate_api_error(
    exc: Exception,
    action: str,
    *,
    namespace: str,
    name: str,
    conflict: type[StoreError] = ConflictError,
) -> StoreError:
    """Map a client exception onto the store error taxonomy.

    ``conflict`` selects what a 409 means for the calling operation:
    ``AlreadyExistsError`` for creates, ``ConflictError`` for replaces.
    """
    details = {"namespace": namespace, "name": name, "action": action}

    if isinstance(exc, urllib3.exceptions.HTTPError):
        return TransientStoreError(
            f"failed to {action} '{name}' in namespace '{namespace}': {exc}",
            details=details,
        )

    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None) or str(exc)
    message = f"failed to {action} '{name}' in namespace '{namespace}', statusCode: {status} ({reason})"

    if status == HTTP_NOT_FOUND:
        return NotFoundError(message, status_code=status, details=details)
    if status == HTTP_CONFLICT:
        return conflict(message, status_code=status, details=details)
    if status in TRANSIENT_STATUS_CODES:
        return TransientStoreError(message, status_code=status, details=details)
    return StoreError(message, status_code=status, details=details)


class KubernetesStore:
    """Base for stores backed by one cluster's API server.

    The official client is synchronous; every call is offloaded to a thread
    so the event loop (and the lease heartbeat) keep running.
    """

    def __init__(
        self,
        api_client: client.ApiClient | None = None,
        *,
        request_timeout: int | None = None,
        read_retries: int | None = None,
        read_retry_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._api_client = api_client
        self._request_timeout = request_timeout or settings.kubernetes.api_timeout
        self._read_retries = (
            settings.lock.read_retries if read_retries is None else read_retries
        )
        self._read_retry_delay = (
            settings.lock.read_retry_delay_seconds
            if read_retry_delay is None
            else read_retry_delay
        )
        self._sleep = sleep

    async def _call_api(
        self,
        func: Callable[..., T],
        *args: Any,
        action: str,
        namespace: str,
        name: str,
        conflict: type[StoreError] = ConflictError,
        **kwargs: Any,
    ) -> T:
        """Run a blocking client call in a thread, translating failures."""
        kwargs.setdefault("_request_timeout", self._request_timeout)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (ApiException, urllib3.exceptions.HTTPError) as exc:
            raise translate_api_error(
                exc, action, namespace=namespace, name=name, conflict=conflict
            ) from exc

    async def _read_with_retry(self, read: Callable[[], Awaitable[T]], *, name: str) -> T:
        """Retry ``read`` on transient failures with a fixed backoff."""
        attempt = 0
        while True:
            try:
                return await read()
            except TransientStoreError as exc:
                if attempt >= self._read_retries:
                    log.warning(
                        "store_read_retries_exhausted",
                        name=name,
                        attempts=attempt + 1,
                        status=exc.status_code,
                    )
                    raise
                attempt += 1
                # could be the control plane has no resources available
                log.debug(
                    "store_read_retry",
                    name=name,
                    attempt=attempt,
                    delay=self._read_retry_delay,
                    status=exc.status_code,
                )
                await self._sleep(self._read_retry_delay)


__all__ = [
    "HTTP_CONFLICT",
    "HTTP_NOT_FOUND",
    "TRANSIENT_STATUS_CODES",
    "KubernetesStore",
    "translate_api_error",
]
