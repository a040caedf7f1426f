"""Backend-neutral store interfaces.

The lock and remote config layers only need four capabilities from a
store: create, read, compare-and-swap replace, and delete. Any strongly
consistent store with conditional writes can stand in for the Kubernetes
implementations in :mod:`netforge.kubernetes`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Protocol


@dataclass(frozen=True)
class Lease:
    """Snapshot of a server-held lease.

    ``resource_version`` is the optimistic-concurrency token; a replace
    based on a stale snapshot fails with ``ConflictError``.
    """

    namespace: str
    name: str
    holder_identity: str | None
    lease_duration_seconds: float
    acquire_time: datetime | None = None
    renew_time: datetime | None = None
    transitions: int = 0
    resource_version: str | None = None

    @property
    def last_renewal(self) -> datetime | None:
        return self.renew_time or self.acquire_time

    @property
    def expires_at(self) -> datetime | None:
        last = self.last_renewal
        if last is None:
            return None
        return last + timedelta(seconds=self.lease_duration_seconds)

    def is_expired(self, now: datetime) -> bool:
        """A lease with no recorded renewal is treated as expired."""
        expires_at = self.expires_at
        return expires_at is None or expires_at <= now

    def evolve(self, **changes: object) -> Lease:
        return replace(self, **changes)  # type: ignore[arg-type]


@dataclass(frozen=True)
class ConfigMapRecord:
    """Snapshot of a stored key/value object."""

    namespace: str
    name: str
    data: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None


class LeaseStore(Protocol):
    """CRUD over the lease primitive of one cluster."""

    async def create(
        self, namespace: str, name: str, holder: str, duration_seconds: float
    ) -> Lease: ...

    async def read(self, namespace: str, name: str) -> Lease: ...

    async def renew(self, lease: Lease) -> Lease: ...

    async def transfer(self, lease: Lease, new_holder: str) -> Lease: ...

    async def delete(
        self, namespace: str, name: str, *, resource_version: str | None = None
    ) -> None: ...


class ConfigMapStore(Protocol):
    """CRUD over the key/value object primitive of one cluster."""

    async def read(self, namespace: str, name: str) -> ConfigMapRecord: ...

    async def create(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
    ) -> ConfigMapRecord: ...

    async def replace(self, record: ConfigMapRecord) -> ConfigMapRecord: ...

    async def delete(self, namespace: str, name: str) -> None: ...


__all__ = ["ConfigMapRecord", "ConfigMapStore", "Lease", "LeaseStore"]
