"""Unit tests for cluster reference resolution."""

from __future__ import annotations

import os
from unittest.mock import MagicMock, patch

import pytest
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException

from netforge.config.local import LocalConfig
from netforge.config.settings import reload_settings
from netforge.errors import NetforgeError, UnknownClusterReference
from netforge.kubernetes.clusters import ClusterAddressBook


@pytest.fixture
def book() -> ClusterAddressBook:
    config = LocalConfig(cluster_refs={"a": "kind-a", "b": "kind-b", "a-alias": "kind-a"})
    return ClusterAddressBook(config, api_client_factory=lambda ctx: MagicMock(name=ctx))


class TestResolve:
    """Tests for reference -> context resolution."""

    def test_resolve_known_reference(self, book: ClusterAddressBook) -> None:
        cluster = book.resolve("a")

        assert cluster.reference == "a"
        assert cluster.context == "kind-a"

    def test_unknown_reference_raises_with_remediation(self, book: ClusterAddressBook) -> None:
        with pytest.raises(UnknownClusterReference) as exc_info:
            book.resolve("zzz")

        assert "netforge cluster map --cluster-ref zzz --context" in str(exc_info.value)
        assert exc_info.value.details == {"cluster_reference": "zzz"}

    def test_one_client_per_context(self) -> None:
        """Test that references sharing a context share an API client."""
        factory = MagicMock(side_effect=lambda ctx: MagicMock(name=ctx))
        book = ClusterAddressBook(
            LocalConfig(cluster_refs={"a": "kind-a", "a-alias": "kind-a"}),
            api_client_factory=factory,
        )

        first = book.resolve("a")
        second = book.resolve("a-alias")

        assert first.api_client is second.api_client
        factory.assert_called_once_with("kind-a")

    def test_references_lists_mapped_names(self, book: ClusterAddressBook) -> None:
        assert book.references() == ["a", "b", "a-alias"]

    def test_assign_and_save(self, book: ClusterAddressBook, tmp_path) -> None:
        path = tmp_path / "local-config.yaml"
        book.assign("c", "kind-c")
        book.save(path)

        reloaded = ClusterAddressBook.from_file(path)

        assert reloaded.context_for("c") == "kind-c"


class TestKubeconfig:
    """Tests that read the kubeconfig."""

    def test_current_context(self, book: ClusterAddressBook) -> None:
        with patch(
            "netforge.kubernetes.clusters.k8s_config.list_kube_config_contexts",
            return_value=([{"name": "kind-a"}, {"name": "kind-b"}], {"name": "kind-b"}),
        ):
            assert book.current_context() == "kind-b"
            assert book.contexts() == ["kind-a", "kind-b"]

    def test_unreadable_kubeconfig(self, book: ClusterAddressBook) -> None:
        with patch(
            "netforge.kubernetes.clusters.k8s_config.list_kube_config_contexts",
            side_effect=k8s_config.ConfigException("no config"),
        ):
            with pytest.raises(NetforgeError, match="no config"):
                book.current_context()

    def test_configured_context_wins(self) -> None:
        """Test that NETFORGE_K8S_CONTEXT is used before the kubeconfig's active one."""
        with patch.dict(os.environ, {"NETFORGE_K8S_CONTEXT": "kind-default"}):
            reload_settings()
            book = ClusterAddressBook(LocalConfig())

        with patch(
            "netforge.kubernetes.clusters.k8s_config.list_kube_config_contexts"
        ) as list_contexts:
            assert book.current_context() == "kind-default"

        list_contexts.assert_not_called()


class TestConnection:
    """Connectivity check."""

    @pytest.mark.asyncio
    async def test_reachable(self, book: ClusterAddressBook) -> None:
        with patch("netforge.kubernetes.clusters.client.VersionApi") as version_api:
            assert await book.test_connection("kind-a") is True

        version_api.return_value.get_code.assert_called_once()

    @pytest.mark.asyncio
    async def test_unreachable(self, book: ClusterAddressBook) -> None:
        with patch("netforge.kubernetes.clusters.client.VersionApi") as version_api:
            version_api.return_value.get_code.side_effect = ApiException(status=503)

            assert await book.test_connection("kind-a") is False

    @pytest.mark.asyncio
    async def test_context_missing_from_kubeconfig(self) -> None:
        """Test that a context the kubeconfig cannot load reports unreachable."""

        def factory(context: str) -> MagicMock:
            raise NetforgeError(f"failed to load kubeconfig context '{context}'")

        book = ClusterAddressBook(LocalConfig(), api_client_factory=factory)

        with patch("netforge.kubernetes.clusters.client.VersionApi") as version_api:
            assert await book.test_connection("gone") is False

        version_api.assert_not_called()
