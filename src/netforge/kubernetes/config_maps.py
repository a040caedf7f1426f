"""ConfigMap store backed by the Kubernetes core API."""

from __future__ import annotations

from typing import Any

from kubernetes import client  # type: ignore[import-untyped]

from netforge.errors import AlreadyExistsError
from netforge.kubernetes._api import KubernetesStore
from netforge.observability._logging import get_logger
from netforge.stores import ConfigMapRecord


log = get_logger(__name__)


def record_from_v1(obj: client.V1ConfigMap) -> ConfigMapRecord:
    metadata = obj.metadata
    return ConfigMapRecord(
        namespace=metadata.namespace,
        name=metadata.name,
        data=dict(obj.data or {}),
        labels=dict(metadata.labels or {}),
        resource_version=metadata.resource_version,
    )


def record_to_v1(record: ConfigMapRecord) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=record.name,
            namespace=record.namespace,
            labels=dict(record.labels) or None,
            resource_version=record.resource_version,
        ),
        data=dict(record.data),
    )


class KubernetesConfigMapStore(KubernetesStore):
    """CRUD over ConfigMaps of one cluster.

    Objects are replaced wholesale. ``replace`` sends the resource version
    of the record it was given; a stale one yields ``ConflictError``.
    """

    def __init__(self, api_client: client.ApiClient | None = None, **kwargs: Any) -> None:
        super().__init__(api_client, **kwargs)
        self._api = client.CoreV1Api(api_client)

    async def read(self, namespace: str, name: str) -> ConfigMapRecord:
        async def _read() -> ConfigMapRecord:
            obj = await self._call_api(
                self._api.read_namespaced_config_map,
                name,
                namespace,
                action="read config map",
                namespace=namespace,
                name=name,
            )
            return record_from_v1(obj)

        return await self._read_with_retry(_read, name=name)

    async def create(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        labels: dict[str, str] | None = None,
    ) -> ConfigMapRecord:
        body = record_to_v1(
            ConfigMapRecord(namespace=namespace, name=name, data=data, labels=labels or {})
        )
        created = await self._call_api(
            self._api.create_namespaced_config_map,
            namespace,
            body,
            action="create config map",
            namespace=namespace,
            name=name,
            conflict=AlreadyExistsError,
        )
        log.debug("config_map_created", namespace=namespace, config_map=name)
        return record_from_v1(created)

    async def replace(self, record: ConfigMapRecord) -> ConfigMapRecord:
        replaced = await self._call_api(
            self._api.replace_namespaced_config_map,
            record.name,
            record.namespace,
            record_to_v1(record),
            action="replace config map",
            namespace=record.namespace,
            name=record.name,
        )
        log.debug("config_map_replaced", namespace=record.namespace, config_map=record.name)
        return record_from_v1(replaced)

    async def delete(self, namespace: str, name: str) -> None:
        await self._call_api(
            self._api.delete_namespaced_config_map,
            name,
            namespace,
            action="delete config map",
            namespace=namespace,
            name=name,
        )
        log.debug("config_map_deleted", namespace=namespace, config_map=name)


__all__ = ["KubernetesConfigMapStore", "record_from_v1", "record_to_v1"]
