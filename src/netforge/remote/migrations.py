"""Forward migrations of the remote configuration document.

Migrations operate on the raw decoded YAML (plain dicts), because old
documents do not validate against the current models. Each migration
lifts a document from exactly one schema version to the next; they are
applied in order and every applied step is appended to the document's
``migrationHistory``.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from netforge.errors import MigrationError
from netforge.observability._logging import get_logger
from netforge.observability._metrics import remote_config_migrations_total
from netforge.remote.models import (
    CURRENT_SCHEMA_VERSION,
    DEFAULT_DNS_BASE_DOMAIN,
    DEFAULT_DNS_CONSENSUS_NODE_PATTERN,
    node_id_from_alias,
)


log = get_logger(__name__)

RawDocument = dict[str, Any]


class SchemaMigration:
    """Base class for a single version step."""

    from_version: int
    description: str = ""

    @property
    def to_version(self) -> int:
        return self.from_version + 1

    def apply(self, data: RawDocument) -> RawDocument:
        raise NotImplementedError


class LegacyLayoutMigration(SchemaMigration):
    """v0 -> v1: convert the legacy component-map layout.

    Legacy documents look like::

        metadata: {name: <namespace>, deploymentName: ..., lastUpdateBy: ...}
        clusters: {<ref>: <namespace> | {...binding...}}
        components: {consensusNodes: {<alias>: {name, nodeId, namespace, cluster}}}
        commandHistory: [...]
        lastExecutedCommand: ...
    """

    from_version = 0
    description = "convert legacy component layout"

    def apply(self, data: RawDocument) -> RawDocument:
        legacy = data.get("metadata") or {}
        if not isinstance(legacy, dict):
            raise MigrationError(self.from_version, "metadata is not a mapping")

        namespace = legacy.get("namespace") or legacy.get("name")
        deployment = legacy.get("deploymentName") or legacy.get("deployment") or namespace
        if not namespace:
            raise MigrationError(self.from_version, "metadata has no namespace")

        clusters: dict[str, Any] = {}
        for reference, binding in (data.get("clusters") or {}).items():
            if isinstance(binding, str):
                binding = {"namespace": binding}
            clusters[reference] = {
                "name": reference,
                "namespace": binding.get("namespace", namespace),
                "deployment": binding.get("deployment", deployment),
                "dnsBaseDomain": binding.get("dnsBaseDomain", DEFAULT_DNS_BASE_DOMAIN),
                "dnsConsensusNodePattern": binding.get(
                    "dnsConsensusNodePattern", DEFAULT_DNS_CONSENSUS_NODE_PATTERN
                ),
            }

        # single-cluster legacy documents may omit the node cluster
        default_cluster = next(iter(clusters)) if len(clusters) == 1 else None
        components = data.get("components") or {}
        nodes = []
        for alias, node in (components.get("consensusNodes") or {}).items():
            node = node or {}
            node_alias = node.get("name", alias)
            try:
                node_id = node["nodeId"] if "nodeId" in node else node_id_from_alias(node_alias)
            except ValueError as exc:
                raise MigrationError(self.from_version, str(exc)) from exc
            nodes.append(
                {
                    "nodeAlias": node_alias,
                    "nodeId": node_id,
                    "clusterReference": node.get("cluster") or default_cluster,
                    "namespace": node.get("namespace", namespace),
                }
            )

        history = data.get("commandHistory") or []
        return {
            "deploymentMetadata": {
                "name": deployment,
                "namespace": namespace,
                "schemaVersion": self.to_version,
                "lastUpdatedAt": legacy.get("lastUpdatedAt"),
                "lastUpdatedBy": legacy.get("lastUpdatedBy") or legacy.get("lastUpdateBy"),
                "cliVersion": legacy.get("cliVersion"),
            },
            "clusters": clusters,
            "consensusNodes": nodes,
            "migrationHistory": list(data.get("migrationHistory") or []),
            "history": {
                "commands": list(history),
                "lastExecutedCommand": data.get("lastExecutedCommand")
                or (history[-1] if history else None),
            },
        }


class NodeDnsMigration(SchemaMigration):
    """v1 -> v2: copy DNS settings from the cluster binding onto each node."""

    from_version = 1
    description = "add per-node DNS settings"

    def apply(self, data: RawDocument) -> RawDocument:
        clusters = data.get("clusters") or {}
        for node in data.get("consensusNodes") or []:
            binding = clusters.get(node.get("clusterReference")) or {}
            node.setdefault("dnsBase", binding.get("dnsBaseDomain", DEFAULT_DNS_BASE_DOMAIN))
            node.setdefault(
                "dnsPattern",
                binding.get("dnsConsensusNodePattern", DEFAULT_DNS_CONSENSUS_NODE_PATTERN),
            )
            node.setdefault("context", None)
        return data


MIGRATIONS: tuple[SchemaMigration, ...] = (LegacyLayoutMigration(), NodeDnsMigration())


def schema_version_of(data: RawDocument) -> int:
    """Schema version of a raw document; legacy documents have none (0)."""
    metadata = data.get("deploymentMetadata")
    if not isinstance(metadata, dict):
        return 0
    # the modern layout without an explicit version is the first modern schema
    version = metadata.get("schemaVersion", 1)
    if not isinstance(version, int) or isinstance(version, bool) or version < 0:
        raise MigrationError(0, f"invalid schema version {version!r}")
    return version


def migrate(
    data: RawDocument,
    *,
    migrated_by: str,
    now: datetime,
    target_version: int = CURRENT_SCHEMA_VERSION,
    migrations: Sequence[SchemaMigration] = MIGRATIONS,
) -> tuple[RawDocument, list[int]]:
    """Bring ``data`` up to ``target_version``.

    Returns the migrated copy and the ``from_version`` of every applied
    step, in order. The input is not modified.

    Raises:
        MigrationError: If the document is newer than ``target_version`` or
            a step is missing.
    """
    version = schema_version_of(data)
    if version > target_version:
        raise MigrationError(
            version,
            f"document schema is newer than this tool supports ({target_version}); upgrade netforge",
        )

    steps = {migration.from_version: migration for migration in migrations}
    applied: list[int] = []
    data = copy.deepcopy(data)
    while version < target_version:
        migration = steps.get(version)
        if migration is None:
            raise MigrationError(version, "no migration registered for this version")

        data = migration.apply(data)
        data["deploymentMetadata"]["schemaVersion"] = migration.to_version
        data.setdefault("migrationHistory", []).append(
            {
                "fromVersion": version,
                "migratedAt": now.isoformat(),
                "migratedBy": migrated_by,
            }
        )
        remote_config_migrations_total.labels(from_version=str(version)).inc()
        log.info(
            "remote_config_migrated",
            from_version=version,
            to_version=migration.to_version,
            step=migration.description,
        )
        applied.append(version)
        version = migration.to_version

    return data, applied


__all__ = [
    "MIGRATIONS",
    "LegacyLayoutMigration",
    "NodeDnsMigration",
    "SchemaMigration",
    "migrate",
    "schema_version_of",
]
