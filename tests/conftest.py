"""Pytest configuration and fixtures for NETFORGE tests."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock

import pytest

from netforge.config.local import LocalConfig
from netforge.errors import AlreadyExistsError, ConflictError, NotFoundError
from netforge.kubernetes.clusters import ClusterAddressBook, ClusterContext
from netforge.stores import ConfigMapRecord, Lease

if TYPE_CHECKING:
    from collections.abc import Generator


# Ensure we're using test configuration
os.environ.setdefault("NETFORGE_ENVIRONMENT", "development")
os.environ.setdefault("NETFORGE_OBSERVABILITY_LOG_LEVEL", "WARNING")


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from netforge.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class FakeLeaseStore:
    """In-memory lease store that enforces resource-version checks.

    Every call yields to the event loop once before touching state, so
    concurrent callers interleave the way separate processes would.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.leases: dict[tuple[str, str], Lease] = {}
        self.calls: list[str] = []
        self.renew_failures: list[Exception] = []
        self.create_failure: Exception | None = None
        self._clock = clock
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, lease: Lease) -> Lease:
        stored = lease if lease.resource_version else lease.evolve(resource_version=self._next_version())
        self.leases[(lease.namespace, lease.name)] = stored
        return stored

    async def create(
        self, namespace: str, name: str, holder: str, duration_seconds: float
    ) -> Lease:
        self.calls.append("create")
        await asyncio.sleep(0)
        if self.create_failure is not None:
            raise self.create_failure
        if (namespace, name) in self.leases:
            raise AlreadyExistsError(f"lease {name} exists", status_code=409)
        now = self._clock()
        return self.put(
            Lease(
                namespace=namespace,
                name=name,
                holder_identity=holder,
                lease_duration_seconds=duration_seconds,
                acquire_time=now,
                renew_time=now,
            )
        )

    async def read(self, namespace: str, name: str) -> Lease:
        self.calls.append("read")
        await asyncio.sleep(0)
        try:
            return self.leases[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"lease {name} not found", status_code=404) from None

    async def renew(self, lease: Lease) -> Lease:
        self.calls.append("renew")
        if self.renew_failures:
            await asyncio.sleep(0)
            raise self.renew_failures.pop(0)
        return await self._replace(lease.evolve(renew_time=self._clock()))

    async def transfer(self, lease: Lease, new_holder: str) -> Lease:
        self.calls.append("transfer")
        now = self._clock()
        return await self._replace(
            lease.evolve(
                holder_identity=new_holder,
                transitions=lease.transitions + 1,
                acquire_time=now,
                renew_time=now,
            )
        )

    async def delete(
        self, namespace: str, name: str, *, resource_version: str | None = None
    ) -> None:
        self.calls.append("delete")
        await asyncio.sleep(0)
        current = self.leases.get((namespace, name))
        if current is None:
            raise NotFoundError(f"lease {name} not found", status_code=404)
        if resource_version and resource_version != current.resource_version:
            raise ConflictError(f"lease {name} changed", status_code=409)
        del self.leases[(namespace, name)]

    async def _replace(self, lease: Lease) -> Lease:
        await asyncio.sleep(0)
        current = self.leases.get((lease.namespace, lease.name))
        if current is None:
            raise NotFoundError(f"lease {lease.name} not found", status_code=404)
        if current.resource_version != lease.resource_version:
            raise ConflictError(f"lease {lease.name} changed", status_code=409)
        return self.put(lease.evolve(resource_version=self._next_version()))


class FakeConfigMapStore:
    """In-memory config map store for one cluster."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], ConfigMapRecord] = {}
        self.reads = 0
        self.writes = 0
        self.failure: Exception | None = None
        self.replace_conflicts = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, record: ConfigMapRecord) -> ConfigMapRecord:
        stored = ConfigMapRecord(
            namespace=record.namespace,
            name=record.name,
            data=dict(record.data),
            labels=dict(record.labels),
            resource_version=self._next_version(),
        )
        self.records[(record.namespace, record.name)] = stored
        return stored

    def _fail(self) -> None:
        if self.failure is not None:
            raise self.failure

    async def read(self, namespace: str, name: str) -> ConfigMapRecord:
        self.reads += 1
        await asyncio.sleep(0)
        self._fail()
        try:
            return self.records[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"config map {name} not found", status_code=404) from None

    async def create(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
    ) -> ConfigMapRecord:
        await asyncio.sleep(0)
        self._fail()
        if (namespace, name) in self.records:
            raise AlreadyExistsError(f"config map {name} exists", status_code=409)
        self.writes += 1
        return self.put(ConfigMapRecord(namespace, name, data, labels or {}))

    async def replace(self, record: ConfigMapRecord) -> ConfigMapRecord:
        await asyncio.sleep(0)
        self._fail()
        current = self.records.get((record.namespace, record.name))
        if current is None:
            raise NotFoundError(f"config map {record.name} not found", status_code=404)
        if self.replace_conflicts:
            self.replace_conflicts -= 1
            # simulate a concurrent writer
            self.put(current)
            raise ConflictError(f"config map {record.name} changed", status_code=409)
        if record.resource_version != current.resource_version:
            raise ConflictError(f"config map {record.name} changed", status_code=409)
        self.writes += 1
        return self.put(record)

    async def delete(self, namespace: str, name: str) -> None:
        await asyncio.sleep(0)
        self._fail()
        if self.records.pop((namespace, name), None) is None:
            raise NotFoundError(f"config map {name} not found", status_code=404)


@pytest.fixture
def lease_store() -> FakeLeaseStore:
    return FakeLeaseStore()


@pytest.fixture
def config_stores() -> dict[str, FakeConfigMapStore]:
    """One fake config map store per cluster reference."""
    return {ref: FakeConfigMapStore() for ref in ("cluster-a", "cluster-b", "cluster-c")}


@pytest.fixture
def local_config() -> LocalConfig:
    return LocalConfig(
        cluster_refs={
            "cluster-a": "kind-a",
            "cluster-b": "kind-b",
            "cluster-c": "kind-c",
        }
    )


@pytest.fixture
def address_book(local_config: LocalConfig) -> ClusterAddressBook:
    """Address book with fake API clients and every cluster reachable."""
    book = ClusterAddressBook(local_config, api_client_factory=lambda ctx: MagicMock(name=ctx))
    book.test_connection = AsyncMock(return_value=True)  # type: ignore[method-assign]
    return book


@pytest.fixture
def store_factory(
    config_stores: dict[str, FakeConfigMapStore],
) -> Callable[[ClusterContext], FakeConfigMapStore]:
    def _factory(cluster: ClusterContext) -> FakeConfigMapStore:
        return config_stores[cluster.reference]

    return _factory
