"""Structured errors for store, lock, and remote config operations."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


class NetforgeError(RuntimeError):
    """Base structured exception."""

    code = "netforge_error"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/status surfaces."""
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the error as a compact JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


# ============================================================================
# Store errors
# ============================================================================


class StoreError(NetforgeError):
    """Non-retryable API failure from a server-side store."""

    code = "store_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        merged.setdefault("status_code", status_code)
        super().__init__(message, retryable=retryable, details=merged)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """Retryable I/O failure that persisted past the retry budget."""

    code = "store_transient"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class NotFoundError(StoreError):
    code = "store_not_found"


class AlreadyExistsError(StoreError):
    code = "store_already_exists"


class ConflictError(StoreError):
    """Optimistic-concurrency race: the object changed since it was read."""

    code = "store_conflict"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


# ============================================================================
# Lock errors
# ============================================================================


class LockError(NetforgeError):
    code = "lock_error"


class LockAcquisitionError(LockError):
    """A store failure prevented acquisition."""

    code = "lock_acquisition_failed"


class LockTimeout(LockError):
    """A contended lock was not acquired within the allowed wait."""

    code = "lock_timeout"

    def __init__(
        self,
        namespace: str,
        name: str,
        waited_seconds: float,
        holder: str | None = None,
    ) -> None:
        message = (
            f"timed out after {waited_seconds:.1f}s waiting for lock '{name}' "
            f"in namespace '{namespace}'"
        )
        if holder:
            message += f", currently held by {holder}"
        super().__init__(
            message,
            retryable=True,
            details={"namespace": namespace, "name": name, "holder": holder},
        )
        self.namespace = namespace
        self.name = name
        self.holder = holder


class LockLost(LockError):
    """The lease stopped being ours while the guarded operation was running."""

    code = "lock_lost"

    def __init__(self, namespace: str, name: str, reason: str | None = None) -> None:
        message = f"lost lock '{name}' in namespace '{namespace}'"
        if reason:
            message += f": {reason}"
        super().__init__(
            message,
            retryable=True,
            details={"namespace": namespace, "name": name, "reason": reason},
        )
        self.namespace = namespace
        self.name = name


# ============================================================================
# Cluster / remote config errors
# ============================================================================


class UnknownClusterReference(NetforgeError):
    code = "unknown_cluster_reference"

    def __init__(self, reference: str) -> None:
        super().__init__(
            f"cluster reference '{reference}' is not mapped to a kubeconfig context; "
            f"map it with 'netforge cluster map --cluster-ref {reference} --context <context>'",
            details={"cluster_reference": reference},
        )
        self.reference = reference


class RemoteConfigError(NetforgeError):
    code = "remote_config_error"


class RemoteConfigMismatch(RemoteConfigError):
    """Two clusters hold diverging copies of the remote configuration."""

    code = "remote_config_mismatch"

    def __init__(self, cluster_a: str, cluster_b: str, *, report: Any = None) -> None:
        super().__init__(
            f"remote configuration of cluster '{cluster_b}' does not match "
            f"the one of cluster '{cluster_a}'",
            details={"cluster_a": cluster_a, "cluster_b": cluster_b},
        )
        self.cluster_a = cluster_a
        self.cluster_b = cluster_b
        self.report = report


class MigrationError(RemoteConfigError):
    code = "remote_config_migration_failed"

    def __init__(self, from_version: int, message: str) -> None:
        super().__init__(
            f"cannot migrate remote config from schema version {from_version}: {message}",
            details={"from_version": from_version},
        )
        self.from_version = from_version


__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "LockAcquisitionError",
    "LockError",
    "LockLost",
    "LockTimeout",
    "MigrationError",
    "NetforgeError",
    "NotFoundError",
    "RemoteConfigError",
    "RemoteConfigMismatch",
    "StoreError",
    "TransientStoreError",
    "UnknownClusterReference",
]
