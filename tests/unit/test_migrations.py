"""Unit tests for remote config schema migrations."""

from __future__ import annotations

import copy
from datetime import UTC, datetime
from typing import Any

import pytest

from netforge.errors import MigrationError
from netforge.remote.migrations import (
    MIGRATIONS,
    NodeDnsMigration,
    migrate,
    schema_version_of,
)
from netforge.remote.models import CURRENT_SCHEMA_VERSION, RemoteConfigDocument


NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)


@pytest.fixture
def legacy_document() -> dict[str, Any]:
    """A document in the layout that predates schema versions."""
    return {
        "metadata": {
            "name": "ns1",
            "deploymentName": "deploy-1",
            "lastUpdatedAt": "2024-05-01T10:00:00Z",
            "lastUpdateBy": "alice@example.com",
            "cliVersion": "0.1.0",
        },
        "clusters": {
            "cluster-a": "ns1",
            "cluster-b": {"namespace": "ns1", "deployment": "deploy-1", "dnsBaseDomain": "b.local"},
        },
        "components": {
            "consensusNodes": {
                "node1": {"name": "node1", "nodeId": 0, "namespace": "ns1", "cluster": "cluster-a"},
                "node2": {"name": "node2", "namespace": "ns1", "cluster": "cluster-b"},
            }
        },
        "commandHistory": ["deployment create", "node add"],
        "lastExecutedCommand": "node add",
    }


@pytest.fixture
def v1_document() -> dict[str, Any]:
    return {
        "deploymentMetadata": {"name": "deploy-1", "namespace": "ns1", "schemaVersion": 1},
        "clusters": {
            "cluster-a": {
                "name": "cluster-a",
                "namespace": "ns1",
                "deployment": "deploy-1",
                "dnsBaseDomain": "a.local",
                "dnsConsensusNodePattern": "{nodeAlias}.{namespace}",
            }
        },
        "consensusNodes": [
            {"nodeAlias": "node1", "nodeId": 0, "clusterReference": "cluster-a", "namespace": "ns1"}
        ],
        "migrationHistory": [],
    }


class TestMigrate:
    """Tests for the migration runner."""

    def test_applies_steps_in_order(self, legacy_document: dict[str, Any]) -> None:
        """Test that a document two versions behind gets both steps, oldest first."""
        migrated, applied = migrate(legacy_document, migrated_by="bob", now=NOW)

        assert applied == [0, 1]
        history = migrated["migrationHistory"]
        assert [entry["fromVersion"] for entry in history] == [0, 1]
        assert all(entry["migratedBy"] == "bob" for entry in history)
        assert migrated["deploymentMetadata"]["schemaVersion"] == CURRENT_SCHEMA_VERSION

    def test_result_validates_against_models(self, legacy_document: dict[str, Any]) -> None:
        migrated, _ = migrate(legacy_document, migrated_by="bob", now=NOW)

        document = RemoteConfigDocument.model_validate(migrated)

        assert document.metadata.name == "deploy-1"
        assert document.metadata.namespace == "ns1"
        assert document.metadata.last_updated_by == "alice@example.com"
        assert document.metadata.cli_version == "0.1.0"
        assert document.node("node2").node_id == 1
        assert document.node("node2").dns_base == "b.local"
        assert document.history.commands == ["deployment create", "node add"]
        assert document.history.last_executed_command == "node add"

    def test_input_is_not_modified(self, legacy_document: dict[str, Any]) -> None:
        original = copy.deepcopy(legacy_document)

        migrate(legacy_document, migrated_by="bob", now=NOW)

        assert legacy_document == original

    def test_one_version_behind_applies_one_step(self, v1_document: dict[str, Any]) -> None:
        migrated, applied = migrate(v1_document, migrated_by="bob", now=NOW)

        assert applied == [1]
        node = migrated["consensusNodes"][0]
        assert node["dnsBase"] == "a.local"
        assert node["dnsPattern"] == "{nodeAlias}.{namespace}"
        assert node["context"] is None

    def test_current_document_is_untouched(self, v1_document: dict[str, Any]) -> None:
        current, _ = migrate(v1_document, migrated_by="bob", now=NOW)

        again, applied = migrate(current, migrated_by="carol", now=NOW)

        assert applied == []
        assert again == current

    def test_newer_document_is_rejected(self, v1_document: dict[str, Any]) -> None:
        v1_document["deploymentMetadata"]["schemaVersion"] = CURRENT_SCHEMA_VERSION + 1

        with pytest.raises(MigrationError, match="newer"):
            migrate(v1_document, migrated_by="bob", now=NOW)

    def test_missing_step_is_an_error(self, legacy_document: dict[str, Any]) -> None:
        with pytest.raises(MigrationError) as exc_info:
            migrate(legacy_document, migrated_by="bob", now=NOW, migrations=[NodeDnsMigration()])

        assert exc_info.value.from_version == 0

    def test_registered_steps_are_contiguous(self) -> None:
        assert [m.from_version for m in MIGRATIONS] == list(range(CURRENT_SCHEMA_VERSION))


class TestSchemaVersion:
    """Tests for version detection."""

    def test_legacy_layout_is_version_zero(self, legacy_document: dict[str, Any]) -> None:
        assert schema_version_of(legacy_document) == 0

    def test_modern_layout_without_version_is_version_one(self) -> None:
        assert schema_version_of({"deploymentMetadata": {"name": "d"}}) == 1

    def test_invalid_version(self) -> None:
        with pytest.raises(MigrationError):
            schema_version_of({"deploymentMetadata": {"schemaVersion": "two"}})

    def test_legacy_node_without_cluster_in_single_cluster_document(self) -> None:
        migrated, _ = migrate(
            {
                "metadata": {"name": "ns1"},
                "clusters": {"cluster-a": "ns1"},
                "components": {"consensusNodes": {"node1": {}}},
            },
            migrated_by="bob",
            now=NOW,
        )

        assert migrated["consensusNodes"][0]["clusterReference"] == "cluster-a"
        assert migrated["consensusNodes"][0]["nodeId"] == 0
