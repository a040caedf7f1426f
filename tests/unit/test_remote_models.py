"""Unit tests for remote configuration document models."""

from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from netforge.remote.models import (
    ClusterBinding,
    ConsensusNode,
    DeploymentMetadata,
    RemoteConfigDocument,
    node_alias_from_id,
    node_id_from_alias,
)


def make_document() -> RemoteConfigDocument:
    return RemoteConfigDocument(
        metadata=DeploymentMetadata(name="deploy-1", namespace="ns1"),
        clusters={
            "cluster-a": ClusterBinding(name="cluster-a", namespace="ns1", deployment="deploy-1"),
            "cluster-b": ClusterBinding(
                name="cluster-b",
                namespace="ns1",
                deployment="deploy-1",
                dns_base_domain="b.example",
                dns_consensus_node_pattern="{nodeAlias}-{nodeId}.{namespace}",
            ),
        },
    )


class TestNodeIds:
    """Node alias <-> id derivation."""

    @pytest.mark.parametrize(("alias", "node_id"), [("node1", 0), ("node2", 1), ("node10", 9)])
    def test_alias_to_id(self, alias: str, node_id: int) -> None:
        assert node_id_from_alias(alias) == node_id
        assert node_alias_from_id(node_id) == alias

    @pytest.mark.parametrize("alias", ["node0", "n1", "node", "node-1", "Node1"])
    def test_invalid_alias(self, alias: str) -> None:
        with pytest.raises(ValueError, match="invalid node alias"):
            node_id_from_alias(alias)


class TestDocument:
    """Tests for document invariants and mutators."""

    def test_add_node_inherits_cluster_dns(self) -> None:
        document = make_document()

        node = document.add_node("node2", "cluster-b", context="kind-b")

        assert node.node_id == 1
        assert node.context == "kind-b"
        assert node.dns_base == "b.example"
        assert node.fqdn == "node2-1.ns1.b.example"

    def test_default_fqdn(self) -> None:
        node = make_document().add_node("node1", "cluster-a")

        assert node.fqdn == "network-node1-svc.ns1.svc.cluster.local"

    def test_duplicate_alias_rejected(self) -> None:
        document = make_document()
        document.add_node("node1", "cluster-a")

        with pytest.raises(ValueError, match="already exists"):
            document.add_node("node1", "cluster-b")

    def test_node_on_unknown_cluster_rejected(self) -> None:
        with pytest.raises(ValueError, match="not part of deployment"):
            make_document().add_node("node1", "cluster-z")

    def test_validation_rejects_duplicate_aliases(self) -> None:
        data = make_document().to_dict()
        node = ConsensusNode(
            node_alias="node1", node_id=0, cluster_reference="cluster-a", namespace="ns1"
        ).model_dump(by_alias=True)
        data["consensusNodes"] = [node, node]

        with pytest.raises(ValidationError, match="duplicate node alias"):
            RemoteConfigDocument.model_validate(data)

    def test_validation_rejects_dangling_cluster_reference(self) -> None:
        data = make_document().to_dict()
        data["consensusNodes"] = [
            {"nodeAlias": "node1", "nodeId": 0, "clusterReference": "cluster-z", "namespace": "ns1"}
        ]

        with pytest.raises(ValidationError, match="unknown cluster"):
            RemoteConfigDocument.model_validate(data)

    def test_validation_rejects_non_increasing_migrations(self) -> None:
        data = make_document().to_dict()
        data["migrationHistory"] = [
            {"fromVersion": 1, "migratedAt": "2025-01-01T00:00:00Z", "migratedBy": "a"},
            {"fromVersion": 1, "migratedAt": "2025-01-02T00:00:00Z", "migratedBy": "b"},
        ]

        with pytest.raises(ValidationError, match="strictly increasing"):
            RemoteConfigDocument.model_validate(data)

    def test_remove_cluster_with_nodes_rejected(self) -> None:
        document = make_document()
        document.add_node("node1", "cluster-b")

        with pytest.raises(ValueError, match="still hosts nodes"):
            document.remove_cluster("cluster-b")

        document.remove_node("node1")
        assert document.remove_cluster("cluster-b").name == "cluster-b"

    def test_history(self) -> None:
        document = make_document()
        document.add_command_to_history("netforge deployment create")
        document.add_command_to_history("netforge node add")

        assert document.history.commands == ["netforge deployment create", "netforge node add"]
        assert document.history.last_executed_command == "netforge node add"


class TestSerialization:
    """Stored YAML layout."""

    def test_yaml_uses_camel_case_keys(self) -> None:
        document = make_document()
        document.add_node("node1", "cluster-a")

        data = yaml.safe_load(document.to_yaml())

        assert list(data) == [
            "deploymentMetadata",
            "clusters",
            "consensusNodes",
            "migrationHistory",
            "history",
        ]
        assert data["deploymentMetadata"]["schemaVersion"] == 2
        assert data["clusters"]["cluster-b"]["dnsConsensusNodePattern"].startswith("{nodeAlias}")
        assert data["consensusNodes"][0]["clusterReference"] == "cluster-a"
        assert RemoteConfigDocument.model_validate(data) == document

    def test_topology_ignores_node_order(self) -> None:
        first = make_document()
        first.add_node("node1", "cluster-a")
        first.add_node("node2", "cluster-b")
        second = make_document()
        second.add_node("node2", "cluster-b")
        second.add_node("node1", "cluster-a")

        assert first.agrees_with(second)
