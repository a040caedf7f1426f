"""Lease store backed by the Kubernetes Coordination API."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from kubernetes import client  # type: ignore[import-untyped]

from netforge.errors import AlreadyExistsError
from netforge.kubernetes._api import KubernetesStore
from netforge.observability._logging import get_logger
from netforge.stores import Lease


log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def lease_from_v1(obj: client.V1Lease) -> Lease:
    """Convert a client ``V1Lease`` into a :class:`Lease` snapshot."""
    metadata = obj.metadata
    spec = obj.spec or client.V1LeaseSpec()
    return Lease(
        namespace=metadata.namespace,
        name=metadata.name,
        holder_identity=spec.holder_identity,
        lease_duration_seconds=spec.lease_duration_seconds or 0,
        acquire_time=spec.acquire_time,
        renew_time=spec.renew_time,
        transitions=spec.lease_transitions or 0,
        resource_version=metadata.resource_version,
    )


def lease_to_v1(lease: Lease) -> client.V1Lease:
    """Convert a snapshot back into a ``V1Lease`` carrying its resource version."""
    return client.V1Lease(
        metadata=client.V1ObjectMeta(
            name=lease.name,
            namespace=lease.namespace,
            resource_version=lease.resource_version,
        ),
        spec=client.V1LeaseSpec(
            holder_identity=lease.holder_identity,
            # The API only accepts whole seconds.
            lease_duration_seconds=math.ceil(lease.lease_duration_seconds),
            acquire_time=lease.acquire_time,
            renew_time=lease.renew_time,
            lease_transitions=lease.transitions,
        ),
    )


class KubernetesLeaseStore(KubernetesStore):
    """CRUD over ``coordination.k8s.io/v1`` leases of one cluster.

    ``renew`` and ``transfer`` are replaces that carry the resource version
    of the snapshot they were derived from, so the API server rejects them
    with 409 (``ConflictError``) if anyone else wrote the lease in between.
    """

    def __init__(self, api_client: client.ApiClient | None = None, **kwargs: Any) -> None:
        super().__init__(api_client, **kwargs)
        self._api = client.CoordinationV1Api(api_client)

    async def create(
        self, namespace: str, name: str, holder: str, duration_seconds: float
    ) -> Lease:
        now = _now()
        body = lease_to_v1(
            Lease(
                namespace=namespace,
                name=name,
                holder_identity=holder,
                lease_duration_seconds=duration_seconds,
                acquire_time=now,
                renew_time=now,
            )
        )
        created = await self._call_api(
            self._api.create_namespaced_lease,
            namespace,
            body,
            action="create lease",
            namespace=namespace,
            name=name,
            conflict=AlreadyExistsError,
        )
        log.debug("lease_created", namespace=namespace, lease=name)
        return lease_from_v1(created)

    async def read(self, namespace: str, name: str) -> Lease:
        async def _read() -> Lease:
            obj = await self._call_api(
                self._api.read_namespaced_lease,
                name,
                namespace,
                action="read lease",
                namespace=namespace,
                name=name,
            )
            return lease_from_v1(obj)

        return await self._read_with_retry(_read, name=name)

    async def renew(self, lease: Lease) -> Lease:
        return await self._replace(lease.evolve(renew_time=_now()), action="renew lease")

    async def transfer(self, lease: Lease, new_holder: str) -> Lease:
        now = _now()
        transferred = lease.evolve(
            holder_identity=new_holder,
            transitions=lease.transitions + 1,
            acquire_time=now,
            renew_time=now,
        )
        return await self._replace(transferred, action="transfer lease")

    async def delete(
        self, namespace: str, name: str, *, resource_version: str | None = None
    ) -> None:
        options = client.V1DeleteOptions()
        if resource_version:
            options.preconditions = client.V1Preconditions(resource_version=resource_version)
        await self._call_api(
            self._api.delete_namespaced_lease,
            name,
            namespace,
            body=options,
            action="delete lease",
            namespace=namespace,
            name=name,
        )
        log.debug("lease_deleted", namespace=namespace, lease=name)

    async def _replace(self, lease: Lease, *, action: str) -> Lease:
        replaced = await self._call_api(
            self._api.replace_namespaced_lease,
            lease.name,
            lease.namespace,
            lease_to_v1(lease),
            action=action,
            namespace=lease.namespace,
            name=lease.name,
        )
        return lease_from_v1(replaced)


__all__ = ["KubernetesLeaseStore", "lease_from_v1", "lease_to_v1"]
