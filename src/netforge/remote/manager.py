"""Replicated remote configuration.

Every member cluster of a deployment stores its own copy of the
:class:`RemoteConfigDocument` in a ConfigMap. The primary cluster's copy is
authoritative: mutations are read from and written to the primary first,
then fanned out to the other members. Fan-out is not transactional; a
failed secondary write is reported, not rolled back, and
:meth:`RemoteConfigManager.validate_consistency` is how divergence is
detected afterwards.

Mutations must run while the caller holds the deployment lock. The manager
does not acquire it; when given the :class:`LockHandle` it checks that the
lock is still held between store calls and aborts with ``LockLost``.
"""

from __future__ import annotations

import dataclasses
import getpass
import inspect
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import yaml
from pydantic import ValidationError

from netforge.config.settings import get_settings
from netforge.errors import (
    AlreadyExistsError,
    ConflictError,
    NetforgeError,
    NotFoundError,
    RemoteConfigError,
    RemoteConfigMismatch,
)
from netforge.kubernetes.clusters import ClusterAddressBook, ClusterContext
from netforge.kubernetes.config_maps import KubernetesConfigMapStore
from netforge.lock.manager import LockHandle
from netforge.observability._logging import get_logger
from netforge.observability._metrics import (
    remote_config_mismatches_total,
    remote_config_writes_total,
)
from netforge.remote.migrations import migrate
from netforge.remote.models import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_DNS_BASE_DOMAIN,
    DEFAULT_DNS_CONSENSUS_NODE_PATTERN,
    ClusterBinding,
    ConsensusNode,
    DeploymentMetadata,
    RemoteConfigDocument,
)
from netforge.stores import ConfigMapRecord, ConfigMapStore
from netforge.version import __version__


log = get_logger(__name__)

StoreFactory = Callable[[ClusterContext], ConfigMapStore]
ContextPrompt = Callable[[str, list[str]], str]
Mutator = Callable[[RemoteConfigDocument], Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_store_factory(cluster: ClusterContext) -> ConfigMapStore:
    settings = get_settings()
    return KubernetesConfigMapStore(
        cluster.api_client,
        request_timeout=settings.kubernetes.api_timeout,
        read_retries=settings.lock.read_retries,
        read_retry_delay=settings.lock.read_retry_delay_seconds,
    )


@dataclass
class DeploymentSeed:
    """Initial topology of a new deployment."""

    node_aliases: list[str] = field(default_factory=list)
    dns_base_domain: str = DEFAULT_DNS_BASE_DOMAIN
    dns_consensus_node_pattern: str = DEFAULT_DNS_CONSENSUS_NODE_PATTERN


@dataclass
class ModifyResult:
    """Outcome of a mutation and its fan-out."""

    document: RemoteConfigDocument | None
    primary: str
    written: list[str] = field(default_factory=list)
    failed: dict[str, NetforgeError] = field(default_factory=dict)

    @property
    def fully_replicated(self) -> bool:
        return not self.failed


@dataclass
class ConsistencyReport:
    """What :meth:`RemoteConfigManager.validate_consistency` found."""

    checked: list[str] = field(default_factory=list)
    reachable: list[str] = field(default_factory=list)
    compared: list[str] = field(default_factory=list)
    reference_cluster: str | None = None
    mismatches: list[tuple[str, str]] = field(default_factory=list)
    unreachable: dict[str, str] = field(default_factory=dict)
    resolved_contexts: dict[str, str] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not self.mismatches

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


class RemoteConfigManager:
    """Loads, migrates, mutates and cross-checks one deployment's document.

    Args:
        address_book: Resolves cluster references to API clients.
        namespace: Namespace holding the ConfigMaps on every cluster.
        primary_cluster: Cluster holding the authoritative copy; also set
            by :meth:`load_or_create`.
        store_factory: Builds a ConfigMap store for a resolved cluster.
        context_prompt: Asked for a context when a cluster reference has
            none; called with the reference and the available contexts.
            Without one (or in quiet mode) the active context is used.
        updated_by: Identity recorded in document metadata and migrations.
    """

    def __init__(
        self,
        address_book: ClusterAddressBook,
        namespace: str,
        *,
        primary_cluster: str | None = None,
        store_factory: StoreFactory | None = None,
        context_prompt: ContextPrompt | None = None,
        updated_by: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = get_settings()
        self._address_book = address_book
        self._namespace = namespace
        self._store_factory = store_factory or default_store_factory
        self._context_prompt = context_prompt
        self._quiet = settings.quiet
        self._updated_by = (
            updated_by or address_book.local_config.user_identity or getpass.getuser()
        )
        self._clock = clock
        self._name = settings.remote_config.configmap_name
        self._data_key = settings.remote_config.data_key
        self._labels = dict(settings.remote_config.labels)
        self._max_attempts = settings.remote_config.max_write_attempts
        self._stores: dict[str, ConfigMapStore] = {}
        self._primary = primary_cluster

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def primary(self) -> str | None:
        return self._primary

    # ------------------------------------------------------------------
    # Load
    # ------------------------------------------------------------------

    async def load_or_create(
        self,
        deployment_name: str,
        primary_cluster: str,
        *,
        seed: DeploymentSeed | None = None,
        lock: LockHandle | None = None,
        create: bool = True,
    ) -> RemoteConfigDocument:
        """Read the document from ``primary_cluster``, creating it if absent.

        A stale document is migrated and written back before it is
        returned. With ``create=False`` an absent document is an error.

        Raises:
            RemoteConfigError: If the stored document is undecodable,
                belongs to another deployment, keeps losing write races,
                or is absent and ``create`` is False.
        """
        self._primary = primary_cluster
        _, store = self._store(primary_cluster)

        for _ in range(self._max_attempts):
            _check(lock)
            try:
                document, record, applied = await self._read_document(primary_cluster)
            except NotFoundError as exc:
                if not create:
                    raise RemoteConfigError(
                        f"deployment '{deployment_name}' has no remote config on cluster "
                        f"'{primary_cluster}'; recreate it with 'netforge deployment create'",
                        details={
                            "cluster_reference": primary_cluster,
                            "namespace": self._namespace,
                        },
                    ) from exc
                document = self._new_document(deployment_name, primary_cluster, seed or DeploymentSeed())
                _check(lock)
                try:
                    await store.create(
                        self._namespace, self._name, self._encode(document), self._labels
                    )
                except AlreadyExistsError:
                    # created concurrently
                    continue
                remote_config_writes_total.labels(cluster=primary_cluster, outcome="created").inc()
                log.info(
                    "remote_config_created",
                    deployment=deployment_name,
                    namespace=self._namespace,
                    cluster_ref=primary_cluster,
                    nodes=len(document.consensus_nodes),
                )
                return document

            if document.metadata.name != deployment_name:
                raise RemoteConfigError(
                    f"namespace '{self._namespace}' on cluster '{primary_cluster}' holds the "
                    f"remote config of deployment '{document.metadata.name}', "
                    f"not '{deployment_name}'",
                    details={"cluster_reference": primary_cluster, "namespace": self._namespace},
                )
            if not applied:
                return document

            self._touch(document)
            _check(lock)
            try:
                await store.replace(dataclasses.replace(record, data=self._encode(document)))
            except ConflictError:
                log.debug("remote_config_migration_conflict", cluster_ref=primary_cluster)
                continue
            remote_config_writes_total.labels(cluster=primary_cluster, outcome="migrated").inc()
            log.info(
                "remote_config_migration_persisted",
                cluster_ref=primary_cluster,
                from_versions=applied,
                schema_version=CURRENT_SCHEMA_VERSION,
            )
            return document

        raise self._attempts_exhausted(primary_cluster)

    async def load(self, cluster_reference: str | None = None) -> RemoteConfigDocument:
        """Read (and migrate in memory) the document of one cluster."""
        document, _, _ = await self._read_document(cluster_reference or self._require_primary())
        return document

    # ------------------------------------------------------------------
    # Modify
    # ------------------------------------------------------------------

    async def modify(
        self,
        mutator: Mutator,
        *,
        primary_cluster: str | None = None,
        lock: LockHandle | None = None,
        command: str | None = None,
    ) -> ModifyResult:
        """Apply ``mutator`` to the primary copy and fan the result out.

        The caller must hold the deployment lock. ``mutator`` receives the
        freshly read document and either edits it in place (returning None)
        or returns a replacement; it may be a coroutine function. It is
        re-run on a fresh read if the primary write loses a race.

        Raises:
            RemoteConfigError: If the result is invalid or the primary write
                kept conflicting.
            LockLost: If ``lock`` was lost before a write.
        """
        primary = primary_cluster or self._require_primary()
        _, store = self._store(primary)

        for _ in range(self._max_attempts):
            _check(lock)
            document, record, _ = await self._read_document(primary)
            outcome = mutator(document)
            if inspect.isawaitable(outcome):
                outcome = await outcome
            if isinstance(outcome, RemoteConfigDocument):
                document = outcome

            if command:
                document.add_command_to_history(command)
            self._touch(document)
            document = self._revalidate(document, primary)

            _check(lock)
            try:
                await store.replace(dataclasses.replace(record, data=self._encode(document)))
            except ConflictError:
                log.debug("remote_config_write_conflict", cluster_ref=primary)
                continue
            break
        else:
            raise self._attempts_exhausted(primary)

        remote_config_writes_total.labels(cluster=primary, outcome="success").inc()
        log.info("remote_config_written", cluster_ref=primary, primary=True)
        result = ModifyResult(document=document, primary=primary, written=[primary])

        for reference in document.clusters:
            if reference == primary:
                continue
            _check(lock)
            try:
                await self._write_copy(reference, document)
            except NetforgeError as exc:
                result.failed[reference] = exc
                remote_config_writes_total.labels(cluster=reference, outcome="failed").inc()
                log.warning(
                    "remote_config_replication_failed",
                    cluster_ref=reference,
                    error=exc.message,
                    code=exc.code,
                )
                continue
            result.written.append(reference)
            remote_config_writes_total.labels(cluster=reference, outcome="success").inc()
            log.info("remote_config_written", cluster_ref=reference, primary=False)

        return result

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    async def validate_consistency(
        self,
        cluster_references: Sequence[str],
        *,
        raise_on_mismatch: bool = True,
    ) -> ConsistencyReport:
        """Compare every cluster's copy against the first readable one.

        References are processed in the given order. Clusters without a
        mapped context get one from the prompt (or the active context),
        recorded in ``report.resolved_contexts`` for the caller to persist.
        Unreachable or unreadable clusters are recorded and skipped. With a
        single reference only the connectivity check runs.

        Raises:
            RemoteConfigMismatch: On the first disagreeing pair, unless
                ``raise_on_mismatch`` is False.
        """
        references = list(cluster_references)
        report = ConsistencyReport(checked=references)
        reference_document: RemoteConfigDocument | None = None
        reference_cluster = ""

        for reference in references:
            context = self._resolve_context(reference, report)
            if not await self._address_book.test_connection(context):
                report.unreachable[reference] = f"cannot connect to context '{context}'"
                continue
            report.reachable.append(reference)
            if len(references) == 1:
                break

            try:
                document, _, _ = await self._read_document(reference)
            except NetforgeError as exc:
                report.unreachable[reference] = exc.message
                log.warning("remote_config_unreadable", cluster_ref=reference, error=exc.message)
                continue

            report.compared.append(reference)
            if reference_document is None:
                reference_document = document
                report.reference_cluster = reference_cluster = reference
                continue

            if not reference_document.agrees_with(document):
                pair = (reference_cluster, reference)
                report.mismatches.append(pair)
                remote_config_mismatches_total.inc()
                log.error("remote_config_mismatch", cluster_a=pair[0], cluster_b=pair[1])
                if raise_on_mismatch:
                    raise RemoteConfigMismatch(*pair, report=report)

        log.info(
            "remote_config_validated",
            checked=len(report.checked),
            compared=len(report.compared),
            mismatches=len(report.mismatches),
            unreachable=sorted(report.unreachable),
        )
        return report

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def delete_all(
        self,
        cluster_references: Sequence[str] | None = None,
        *,
        lock: LockHandle | None = None,
    ) -> ModifyResult | None:
        """Delete every member cluster's copy, primary last.

        Without explicit references the member list is read from the
        primary. Returns None when there was nothing to delete.
        """
        primary = self._require_primary()
        document: RemoteConfigDocument | None = None
        if cluster_references is None:
            try:
                document = await self.load(primary)
            except NotFoundError:
                log.info("remote_config_absent", cluster_ref=primary)
                return None
            cluster_references = list(document.clusters)

        ordered = [ref for ref in cluster_references if ref != primary] + [primary]
        result = ModifyResult(
            document=document,
            primary=primary,
        )
        for reference in ordered:
            _check(lock)
            try:
                _, store = self._store(reference)
                await store.delete(self._namespace, self._name)
            except NotFoundError:
                pass
            except NetforgeError as exc:
                result.failed[reference] = exc
                log.warning("remote_config_delete_failed", cluster_ref=reference, error=exc.message)
                continue
            result.written.append(reference)
            log.info("remote_config_deleted", cluster_ref=reference)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_primary(self) -> str:
        if self._primary is None:
            raise RemoteConfigError("no primary cluster selected; load the deployment first")
        return self._primary

    def _store(self, reference: str) -> tuple[ClusterContext, ConfigMapStore]:
        cluster = self._address_book.resolve(reference)
        store = self._stores.get(cluster.context)
        if store is None:
            store = self._store_factory(cluster)
            self._stores[cluster.context] = store
        return cluster, store

    def _resolve_context(self, reference: str, report: ConsistencyReport) -> str:
        context = self._address_book.context_for(reference)
        if context:
            return context
        if self._context_prompt is None or self._quiet:
            context = self._address_book.current_context()
        else:
            context = self._context_prompt(reference, self._address_book.contexts())
        self._address_book.assign(reference, context)
        report.resolved_contexts[reference] = context
        return context

    async def _read_document(
        self, reference: str
    ) -> tuple[RemoteConfigDocument, ConfigMapRecord, list[int]]:
        _, store = self._store(reference)
        record = await store.read(self._namespace, self._name)
        payload = record.data.get(self._data_key)
        if not payload:
            raise RemoteConfigError(
                f"config map '{self._name}' on cluster '{reference}' has no "
                f"'{self._data_key}' entry",
                details={"cluster_reference": reference, "namespace": self._namespace},
            )
        try:
            raw = yaml.safe_load(payload)
        except yaml.YAMLError as exc:
            raise RemoteConfigError(
                f"remote config on cluster '{reference}' is not valid YAML: {exc}",
                details={"cluster_reference": reference},
            ) from exc
        if not isinstance(raw, dict):
            raise RemoteConfigError(
                f"remote config on cluster '{reference}' is not a mapping",
                details={"cluster_reference": reference},
            )

        raw, applied = migrate(raw, migrated_by=self._updated_by, now=self._clock())
        try:
            document = RemoteConfigDocument.model_validate(raw)
        except ValidationError as exc:
            raise RemoteConfigError(
                f"remote config on cluster '{reference}' is invalid: {exc}",
                details={"cluster_reference": reference},
            ) from exc
        return document, record, applied

    async def _write_copy(self, reference: str, document: RemoteConfigDocument) -> None:
        """Replace one secondary copy wholesale, creating it if missing."""
        _, store = self._store(reference)
        data = self._encode(document)
        for _ in range(self._max_attempts):
            try:
                record = await store.read(self._namespace, self._name)
            except NotFoundError:
                try:
                    await store.create(self._namespace, self._name, data, self._labels)
                except AlreadyExistsError:
                    continue
                return
            try:
                await store.replace(
                    dataclasses.replace(record, data=data, labels={**record.labels, **self._labels})
                )
            except ConflictError:
                continue
            return
        raise self._attempts_exhausted(reference)

    def _new_document(
        self, deployment_name: str, primary: str, seed: DeploymentSeed
    ) -> RemoteConfigDocument:
        binding = ClusterBinding(
            name=primary,
            namespace=self._namespace,
            deployment=deployment_name,
            dns_base_domain=seed.dns_base_domain,
            dns_consensus_node_pattern=seed.dns_consensus_node_pattern,
        )
        context = self._address_book.context_for(primary)
        return RemoteConfigDocument(
            metadata=DeploymentMetadata(
                name=deployment_name,
                namespace=self._namespace,
                schema_version=CURRENT_SCHEMA_VERSION,
                last_updated_at=self._clock(),
                last_updated_by=self._updated_by,
                cli_version=__version__,
            ),
            clusters={primary: binding},
            consensus_nodes=[
                ConsensusNode.for_cluster(alias, binding, context) for alias in seed.node_aliases
            ],
        )

    def _revalidate(self, document: RemoteConfigDocument, reference: str) -> RemoteConfigDocument:
        try:
            return RemoteConfigDocument.model_validate(document.to_dict())
        except ValidationError as exc:
            raise RemoteConfigError(
                f"modified remote config is invalid: {exc}",
                details={"cluster_reference": reference},
            ) from exc

    def _touch(self, document: RemoteConfigDocument) -> None:
        document.touch(self._updated_by, self._clock(), __version__)

    def _encode(self, document: RemoteConfigDocument) -> dict[str, str]:
        return {self._data_key: document.to_yaml()}

    def _attempts_exhausted(self, reference: str) -> RemoteConfigError:
        return RemoteConfigError(
            f"gave up writing remote config on cluster '{reference}' after "
            f"{self._max_attempts} conflicting attempts",
            retryable=True,
            details={"cluster_reference": reference, "namespace": self._namespace},
        )


def _check(lock: LockHandle | None) -> None:
    if lock is not None:
        lock.ensure_held()


__all__ = [
    "ConsistencyReport",
    "DeploymentSeed",
    "ModifyResult",
    "RemoteConfigManager",
    "default_store_factory",
]
