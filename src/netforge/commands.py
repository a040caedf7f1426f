"""Deployment lifecycle commands.

Each mutating command is one unit of work: acquire the deployment lock on
the primary cluster, load or modify the remote configuration while the
lock is held, release. The lock handle is passed down explicitly so every
write checks that the lock is still ours.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from pathlib import Path

from netforge.config.local import DeploymentEntry
from netforge.config.settings import get_settings
from netforge.errors import NetforgeError, RemoteConfigMismatch
from netforge.kubernetes.clusters import ClusterAddressBook, ClusterContext
from netforge.kubernetes.leases import KubernetesLeaseStore
from netforge.lock.holder import LockHolder
from netforge.lock.manager import LeaseStatus, LockHandle, LockManager
from netforge.observability._logging import get_logger
from netforge.remote.manager import (
    ConsistencyReport,
    ContextPrompt,
    DeploymentSeed,
    ModifyResult,
    RemoteConfigManager,
    StoreFactory,
)
from netforge.remote.models import ClusterBinding, RemoteConfigDocument
from netforge.stores import LeaseStore


log = get_logger(__name__)

LeaseStoreFactory = Callable[[ClusterContext], LeaseStore]


def default_lease_store_factory(cluster: ClusterContext) -> LeaseStore:
    settings = get_settings()
    return KubernetesLeaseStore(
        cluster.api_client,
        request_timeout=settings.kubernetes.api_timeout,
        read_retries=settings.lock.read_retries,
        read_retry_delay=settings.lock.read_retry_delay_seconds,
    )


class DeploymentCommands:
    """Lock-guarded operations on the deployments of the local config.

    The first cluster listed for a deployment in the local config is its
    primary: it hosts the lease and the authoritative remote config copy.
    """

    def __init__(
        self,
        address_book: ClusterAddressBook,
        *,
        local_config_path: Path | None = None,
        lease_store_factory: LeaseStoreFactory | None = None,
        config_store_factory: StoreFactory | None = None,
        context_prompt: ContextPrompt | None = None,
        holder: LockHolder | None = None,
        command_line: str | None = None,
        lease_duration_seconds: float | None = None,
        max_wait_seconds: float | None = None,
    ) -> None:
        self._address_book = address_book
        self._local_config_path = local_config_path
        self._lease_store_factory = lease_store_factory or default_lease_store_factory
        self._config_store_factory = config_store_factory
        self._context_prompt = context_prompt
        self._holder = holder
        self._command_line = command_line
        self._lease_duration = lease_duration_seconds
        self._max_wait = max_wait_seconds

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create(
        self,
        deployment: str,
        namespace: str,
        cluster_ref: str,
        *,
        context: str | None = None,
        node_aliases: list[str] | None = None,
        seed: DeploymentSeed | None = None,
    ) -> RemoteConfigDocument:
        """Register a deployment locally and create its remote config."""
        existing = self._address_book.local_config.deployment(deployment)
        if existing is not None and existing.namespace != namespace:
            raise NetforgeError(
                f"deployment '{deployment}' already exists in namespace '{existing.namespace}'",
                details={"deployment": deployment},
            )
        if context:
            self._address_book.assign(cluster_ref, context)

        seed = seed or DeploymentSeed()
        if node_aliases:
            seed.node_aliases = list(node_aliases)

        entry = DeploymentEntry(namespace=namespace, clusters=[cluster_ref])
        async with self._locked(deployment, entry) as (handle, remote):
            document = await remote.load_or_create(deployment, cluster_ref, seed=seed, lock=handle)

        entry.clusters = [cluster_ref] + [ref for ref in document.clusters if ref != cluster_ref]
        self._address_book.local_config.deployments[deployment] = entry
        self._save_local_config()
        log.info("deployment_created", deployment=deployment, namespace=namespace)
        return document

    async def add_node(
        self, deployment: str, node_alias: str, cluster_ref: str | None = None
    ) -> ModifyResult:
        entry = self._deployment(deployment)
        target = cluster_ref or entry.clusters[0]
        context = self._address_book.context_for(target)

        def _add(document: RemoteConfigDocument) -> None:
            try:
                document.add_node(node_alias, target, context)
            except ValueError as exc:
                raise NetforgeError(str(exc), details={"deployment": deployment}) from exc

        async with self._locked(deployment, entry) as (handle, remote):
            await remote.load_or_create(deployment, entry.clusters[0], lock=handle, create=False)
            result = await remote.modify(_add, lock=handle, command=self._command_line)
        log.info("node_added", deployment=deployment, node=node_alias, cluster_ref=target)
        return result

    async def remove_node(self, deployment: str, node_alias: str) -> ModifyResult:
        entry = self._deployment(deployment)

        def _remove(document: RemoteConfigDocument) -> None:
            try:
                document.remove_node(node_alias)
            except ValueError as exc:
                raise NetforgeError(str(exc), details={"deployment": deployment}) from exc

        async with self._locked(deployment, entry) as (handle, remote):
            await remote.load_or_create(deployment, entry.clusters[0], lock=handle, create=False)
            result = await remote.modify(_remove, lock=handle, command=self._command_line)
        log.info("node_removed", deployment=deployment, node=node_alias)
        return result

    async def add_cluster(
        self,
        deployment: str,
        cluster_ref: str,
        *,
        context: str | None = None,
        dns_base_domain: str | None = None,
        dns_consensus_node_pattern: str | None = None,
    ) -> ModifyResult:
        """Attach another cluster; the fan-out creates its config copy."""
        entry = self._deployment(deployment)
        if context:
            self._address_book.assign(cluster_ref, context)
        # fail before locking if the new cluster cannot be addressed
        self._address_book.resolve(cluster_ref)

        def _attach(document: RemoteConfigDocument) -> None:
            primary = document.clusters[entry.clusters[0]]
            binding = ClusterBinding(
                name=cluster_ref,
                namespace=entry.namespace,
                deployment=deployment,
                dns_base_domain=dns_base_domain or primary.dns_base_domain,
                dns_consensus_node_pattern=(
                    dns_consensus_node_pattern or primary.dns_consensus_node_pattern
                ),
            )
            try:
                document.add_cluster(binding)
            except ValueError as exc:
                raise NetforgeError(str(exc), details={"deployment": deployment}) from exc

        async with self._locked(deployment, entry) as (handle, remote):
            await remote.load_or_create(deployment, entry.clusters[0], lock=handle, create=False)
            result = await remote.modify(_attach, lock=handle, command=self._command_line)

        if cluster_ref not in entry.clusters:
            entry.clusters.append(cluster_ref)
        self._save_local_config()
        log.info("cluster_added", deployment=deployment, cluster_ref=cluster_ref)
        return result

    def map_cluster(self, cluster_ref: str, context: str) -> None:
        """Record the kubeconfig context of ``cluster_ref`` in the local config."""
        self._address_book.assign(cluster_ref, context)
        self._save_local_config()

    async def destroy(self, deployment: str) -> ModifyResult | None:
        """Delete every cluster's remote config copy and forget the deployment."""
        entry = self._deployment(deployment)
        async with self._locked(deployment, entry) as (handle, remote):
            result = await remote.delete_all(lock=handle)

        if result is None or result.fully_replicated:
            self._address_book.local_config.deployments.pop(deployment, None)
            self._save_local_config()
        log.info("deployment_destroyed", deployment=deployment)
        return result

    async def check(self, deployment: str) -> ConsistencyReport:
        """Cross-check every member cluster's copy against the primary's."""
        entry = self._deployment(deployment)
        primary = entry.clusters[0]
        remote = self._remote(entry.namespace, primary)
        document = await remote.load(primary)
        references = [primary] + [ref for ref in document.clusters if ref != primary]

        try:
            report = await remote.validate_consistency(references)
        except RemoteConfigMismatch as exc:
            if exc.report is not None:
                self._persist_resolutions(exc.report)
            raise
        self._persist_resolutions(report)
        return report

    async def lock_status(self, deployment: str) -> LeaseStatus | None:
        entry = self._deployment(deployment)
        return await self._lock_manager(entry.clusters[0]).inspect(
            entry.namespace, self.lease_name(deployment)
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def lease_name(self, deployment: str) -> str:
        return get_settings().lock.lease_name or f"{deployment}-lock"

    def _deployment(self, name: str) -> DeploymentEntry:
        entry = self._address_book.local_config.deployment(name)
        if entry is None or not entry.clusters:
            raise NetforgeError(
                f"deployment '{name}' is not known locally; create it with "
                f"'netforge deployment create'",
                details={"deployment": name},
            )
        return entry

    def _lock_manager(self, primary: str) -> LockManager:
        store = self._lease_store_factory(self._address_book.resolve(primary))
        return LockManager(
            store,
            holder=self._holder,
            lease_duration_seconds=self._lease_duration,
            max_wait_seconds=self._max_wait,
        )

    def _remote(self, namespace: str, primary: str) -> RemoteConfigManager:
        return RemoteConfigManager(
            self._address_book,
            namespace,
            primary_cluster=primary,
            store_factory=self._config_store_factory,
            context_prompt=self._context_prompt,
        )

    @contextlib.asynccontextmanager
    async def _locked(
        self, deployment: str, entry: DeploymentEntry
    ) -> AsyncIterator[tuple[LockHandle, RemoteConfigManager]]:
        primary = entry.clusters[0]
        manager = self._lock_manager(primary)
        async with manager.lock(entry.namespace, self.lease_name(deployment)) as handle:
            yield handle, self._remote(entry.namespace, primary)

    def _persist_resolutions(self, report: ConsistencyReport) -> None:
        if report.resolved_contexts:
            self._save_local_config()

    def _save_local_config(self) -> None:
        self._address_book.save(self._local_config_path)


__all__ = ["DeploymentCommands", "default_lease_store_factory"]
