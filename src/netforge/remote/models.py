"""Pydantic models for the remote configuration document.

One document describes a deployment's cluster and consensus node
topology. A copy is stored as YAML in a ConfigMap on every member cluster;
all copies are meant to be identical.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator


CURRENT_SCHEMA_VERSION = 2

DEFAULT_DNS_BASE_DOMAIN = "cluster.local"
DEFAULT_DNS_CONSENSUS_NODE_PATTERN = "network-{nodeAlias}-svc.{namespace}.svc"

_NODE_ALIAS_PATTERN = re.compile(r"^node(\d+)$")


def node_id_from_alias(node_alias: str) -> int:
    """``node1`` -> 0, ``node2`` -> 1, ..."""
    match = _NODE_ALIAS_PATTERN.match(node_alias)
    if not match or int(match.group(1)) < 1:
        msg = f"invalid node alias '{node_alias}', expected node<N> with N >= 1"
        raise ValueError(msg)
    return int(match.group(1)) - 1


def node_alias_from_id(node_id: int) -> str:
    return f"node{node_id + 1}"


class DeploymentMetadata(BaseModel):
    """Identity and bookkeeping of the deployment."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(description="Deployment name")
    namespace: str = Field(description="Namespace hosting the deployment")
    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION, alias="schemaVersion", ge=0
    )
    last_updated_at: datetime | None = Field(default=None, alias="lastUpdatedAt")
    last_updated_by: str | None = Field(default=None, alias="lastUpdatedBy")
    cli_version: str | None = Field(default=None, alias="cliVersion")


class ClusterBinding(BaseModel):
    """Binding of one cluster reference to the deployment."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(description="Cluster reference")
    namespace: str
    deployment: str
    dns_base_domain: str = Field(default=DEFAULT_DNS_BASE_DOMAIN, alias="dnsBaseDomain")
    dns_consensus_node_pattern: str = Field(
        default=DEFAULT_DNS_CONSENSUS_NODE_PATTERN, alias="dnsConsensusNodePattern"
    )


class ConsensusNode(BaseModel):
    """One consensus node and where it runs."""

    model_config = ConfigDict(populate_by_name=True)

    node_alias: str = Field(alias="nodeAlias")
    node_id: int = Field(alias="nodeId", ge=0)
    cluster_reference: str = Field(alias="clusterReference")
    context: str | None = Field(default=None)
    namespace: str
    dns_base: str = Field(default=DEFAULT_DNS_BASE_DOMAIN, alias="dnsBase")
    dns_pattern: str = Field(default=DEFAULT_DNS_CONSENSUS_NODE_PATTERN, alias="dnsPattern")

    @classmethod
    def for_cluster(
        cls,
        node_alias: str,
        cluster: ClusterBinding,
        context: str | None = None,
    ) -> ConsensusNode:
        return cls(
            node_alias=node_alias,
            node_id=node_id_from_alias(node_alias),
            cluster_reference=cluster.name,
            context=context,
            namespace=cluster.namespace,
            dns_base=cluster.dns_base_domain,
            dns_pattern=cluster.dns_consensus_node_pattern,
        )

    @property
    def fqdn(self) -> str:
        """Fully qualified service name of the node."""
        host = self.dns_pattern.format(
            nodeAlias=self.node_alias,
            nodeId=self.node_id,
            namespace=self.namespace,
        )
        return f"{host}.{self.dns_base}"


class Migration(BaseModel):
    """Record of one applied schema migration."""

    model_config = ConfigDict(populate_by_name=True)

    from_version: int = Field(alias="fromVersion", ge=0)
    migrated_at: datetime = Field(alias="migratedAt")
    migrated_by: str = Field(alias="migratedBy")


class CommandHistory(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    commands: list[str] = Field(default_factory=list)
    last_executed_command: str | None = Field(default=None, alias="lastExecutedCommand")


class RemoteConfigDocument(BaseModel):
    """The replicated deployment configuration."""

    model_config = ConfigDict(populate_by_name=True)

    metadata: DeploymentMetadata = Field(alias="deploymentMetadata")
    clusters: dict[str, ClusterBinding] = Field(default_factory=dict)
    consensus_nodes: list[ConsensusNode] = Field(default_factory=list, alias="consensusNodes")
    migration_history: list[Migration] = Field(default_factory=list, alias="migrationHistory")
    history: CommandHistory = Field(default_factory=CommandHistory)

    @model_validator(mode="after")
    def check_topology(self) -> RemoteConfigDocument:
        for reference, binding in self.clusters.items():
            if binding.name != reference:
                msg = f"cluster binding '{binding.name}' is stored under key '{reference}'"
                raise ValueError(msg)

        seen: set[str] = set()
        for node in self.consensus_nodes:
            if node.node_alias in seen:
                msg = f"duplicate node alias '{node.node_alias}'"
                raise ValueError(msg)
            seen.add(node.node_alias)
            if node.cluster_reference not in self.clusters:
                msg = (
                    f"node '{node.node_alias}' references unknown cluster "
                    f"'{node.cluster_reference}'"
                )
                raise ValueError(msg)

        versions = [migration.from_version for migration in self.migration_history]
        if any(later <= earlier for earlier, later in zip(versions, versions[1:])):
            msg = f"migration history is not strictly increasing: {versions}"
            raise ValueError(msg)
        return self

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False)

    def topology(self) -> dict[str, Any]:
        """The parts that must agree across clusters."""
        data = self.model_dump(
            mode="json", by_alias=True, include={"clusters", "consensus_nodes"}
        )
        data["consensusNodes"] = sorted(data["consensusNodes"], key=lambda n: n["nodeAlias"])
        return data

    def agrees_with(self, other: RemoteConfigDocument) -> bool:
        return self.topology() == other.topology()

    # ------------------------------------------------------------------
    # Mutators
    # ------------------------------------------------------------------

    def node(self, node_alias: str) -> ConsensusNode | None:
        return next((n for n in self.consensus_nodes if n.node_alias == node_alias), None)

    def add_cluster(self, binding: ClusterBinding) -> None:
        if binding.name in self.clusters:
            msg = f"cluster '{binding.name}' is already part of deployment '{self.metadata.name}'"
            raise ValueError(msg)
        self.clusters[binding.name] = binding

    def remove_cluster(self, reference: str) -> ClusterBinding:
        if reference not in self.clusters:
            msg = f"cluster '{reference}' is not part of deployment '{self.metadata.name}'"
            raise ValueError(msg)
        hosted = [n.node_alias for n in self.consensus_nodes if n.cluster_reference == reference]
        if hosted:
            msg = f"cluster '{reference}' still hosts nodes: {', '.join(hosted)}"
            raise ValueError(msg)
        return self.clusters.pop(reference)

    def add_node(self, node_alias: str, cluster_reference: str, context: str | None = None) -> ConsensusNode:
        if self.node(node_alias) is not None:
            msg = f"node '{node_alias}' already exists in deployment '{self.metadata.name}'"
            raise ValueError(msg)
        binding = self.clusters.get(cluster_reference)
        if binding is None:
            msg = f"cluster '{cluster_reference}' is not part of deployment '{self.metadata.name}'"
            raise ValueError(msg)
        node = ConsensusNode.for_cluster(node_alias, binding, context)
        self.consensus_nodes.append(node)
        return node

    def remove_node(self, node_alias: str) -> ConsensusNode:
        node = self.node(node_alias)
        if node is None:
            msg = f"node '{node_alias}' does not exist in deployment '{self.metadata.name}'"
            raise ValueError(msg)
        self.consensus_nodes.remove(node)
        return node

    def add_command_to_history(self, command: str) -> None:
        self.history.commands.append(command)
        self.history.last_executed_command = command

    def touch(self, updated_by: str, at: datetime, cli_version: str | None = None) -> None:
        self.metadata.last_updated_by = updated_by
        self.metadata.last_updated_at = at
        if cli_version:
            self.metadata.cli_version = cli_version


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_DNS_BASE_DOMAIN",
    "DEFAULT_DNS_CONSENSUS_NODE_PATTERN",
    "ClusterBinding",
    "CommandHistory",
    "ConsensusNode",
    "DeploymentMetadata",
    "Migration",
    "RemoteConfigDocument",
    "node_alias_from_id",
    "node_id_from_alias",
]
