"""Cluster reference resolution.

Maps user-facing cluster reference names to kubeconfig contexts and hands
out one API client per distinct context.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import urllib3
from kubernetes import client, config as k8s_config  # type: ignore[import-untyped]
from kubernetes.client.rest import ApiException  # type: ignore[import-untyped]

from netforge.config.local import LocalConfig
from netforge.config.settings import get_settings
from netforge.errors import NetforgeError, UnknownClusterReference
from netforge.observability._logging import get_logger


log = get_logger(__name__)


@dataclass(frozen=True)
class ClusterContext:
    """A resolved cluster reference."""

    reference: str
    context: str
    api_client: client.ApiClient


class ClusterAddressBook:
    """Resolves cluster references to contexts and live API clients.

    The reference -> context mapping comes from the local config file.
    Clients are created lazily and cached per context, so two references
    that point at the same context share a client.
    """

    def __init__(
        self,
        local_config: LocalConfig | None = None,
        *,
        kubeconfig_path: str | None = None,
        api_client_factory: Callable[[str], client.ApiClient] | None = None,
    ) -> None:
        settings = get_settings()
        self._local_config = local_config or LocalConfig()
        self._kubeconfig_path = kubeconfig_path or settings.kubernetes.kubeconfig
        self._default_context = settings.kubernetes.context
        self._api_client_factory = api_client_factory or self._load_api_client
        self._clients: dict[str, client.ApiClient] = {}

    @classmethod
    def from_file(cls, path: Path | None = None, **kwargs: object) -> ClusterAddressBook:
        """Build an address book from the local config file."""
        path = path or get_settings().kubernetes.local_config_path
        return cls(LocalConfig.load(path), **kwargs)  # type: ignore[arg-type]

    @property
    def local_config(self) -> LocalConfig:
        return self._local_config

    def references(self) -> list[str]:
        """All cluster references with a known context."""
        return list(self._local_config.cluster_refs)

    def context_for(self, reference: str) -> str | None:
        return self._local_config.cluster_refs.get(reference)

    def resolve(self, reference: str) -> ClusterContext:
        """Resolve ``reference`` to its context and API client.

        Raises:
            UnknownClusterReference: If the reference has no mapped context.
        """
        context = self.context_for(reference)
        if not context:
            raise UnknownClusterReference(reference)
        return ClusterContext(
            reference=reference,
            context=context,
            api_client=self.client_for_context(context),
        )

    def assign(self, reference: str, context: str) -> None:
        """Map ``reference`` to ``context`` (in memory; see :meth:`save`)."""
        previous = self._local_config.cluster_refs.get(reference)
        self._local_config.cluster_refs[reference] = context
        if previous != context:
            log.info("cluster_reference_mapped", cluster_ref=reference, context=context)

    def save(self, path: Path | None = None) -> None:
        self._local_config.save(path or get_settings().kubernetes.local_config_path)

    def client_for_context(self, context: str) -> client.ApiClient:
        api_client = self._clients.get(context)
        if api_client is None:
            api_client = self._api_client_factory(context)
            self._clients[context] = api_client
        return api_client

    def contexts(self) -> list[str]:
        """Names of all contexts in the kubeconfig."""
        try:
            contexts, _ = k8s_config.list_kube_config_contexts(config_file=self._kubeconfig_path)
        except k8s_config.ConfigException as exc:
            raise NetforgeError(f"failed to read kubeconfig contexts: {exc}") from exc
        return [entry["name"] for entry in contexts or []]

    def current_context(self) -> str:
        """The configured default context, else the kubeconfig's active one."""
        if self._default_context:
            return self._default_context
        try:
            _, active = k8s_config.list_kube_config_contexts(config_file=self._kubeconfig_path)
        except k8s_config.ConfigException as exc:
            raise NetforgeError(f"failed to read the active kubeconfig context: {exc}") from exc
        if not active:
            raise NetforgeError("kubeconfig has no active context")
        return str(active["name"])

    async def test_connection(self, context: str) -> bool:
        """Check that the API server behind ``context`` answers."""
        try:
            api_client = self.client_for_context(context)
            version_api = client.VersionApi(api_client)
            await asyncio.to_thread(
                version_api.get_code,
                _request_timeout=get_settings().kubernetes.api_timeout,
            )
        except (ApiException, urllib3.exceptions.HTTPError, k8s_config.ConfigException) as exc:
            log.warning("cluster_connection_failed", context=context, error=str(exc))
            return False
        except NetforgeError as exc:
            # context missing from the kubeconfig
            log.warning("cluster_connection_failed", context=context, error=exc.message)
            return False
        return True

    def _load_api_client(self, context: str) -> client.ApiClient:
        """Load kubeconfig for ``context`` into a dedicated ApiClient."""
        config_obj = client.Configuration()
        try:
            k8s_config.load_kube_config(
                config_file=self._kubeconfig_path,
                context=context,
                client_configuration=config_obj,
            )
        except k8s_config.ConfigException as exc:
            raise NetforgeError(f"failed to load kubeconfig context '{context}': {exc}") from exc
        log.debug("k8s_config_loaded", mode="kubeconfig", context=context)
        return client.ApiClient(config_obj)


__all__ = ["ClusterAddressBook", "ClusterContext"]
