"""Unit tests for logging configuration and metrics."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from netforge.errors import LockTimeout
from netforge.lock.holder import LockHolder
from netforge.lock.manager import LockManager
from netforge.observability import configure_logging, get_logger
from netforge.observability._metrics import registry

if TYPE_CHECKING:
    from tests.conftest import FakeLeaseStore


def sample(name: str, **labels: str) -> float:
    return registry.get_sample_value(f"netforge_{name}", labels or None) or 0.0


class TestLoggingConfiguration:
    """Tests for logging configuration."""

    def test_configure_logging_json(self) -> None:
        logger = configure_logging(level="INFO", format_type="json")
        assert hasattr(logger, "info")

    def test_configure_logging_console(self) -> None:
        logger = configure_logging(level="DEBUG", format_type="console")
        assert hasattr(logger, "debug")

    def test_get_logger_binds_context(self) -> None:
        """Test that initial context is bound to the logger."""
        logger = get_logger("netforge.test", component="lock")

        assert hasattr(logger, "warning")
        assert hasattr(logger, "bind")


class TestMetrics:
    """Lock operations are counted in the metrics registry."""

    @pytest.mark.asyncio
    async def test_acquisition_outcomes_counted(self, lease_store: FakeLeaseStore) -> None:
        manager = LockManager(
            lease_store, holder=LockHolder("alice", "laptop", 1), max_wait_seconds=0
        )
        created = sample("lock_acquisitions_total", outcome="created")
        renewed = sample("lock_acquisitions_total", outcome="renewed")

        first = await manager.acquire("ns1", "deploy-lock")
        second = await manager.acquire("ns1", "deploy-lock")
        await second.release()
        await first.release()

        assert sample("lock_acquisitions_total", outcome="created") == created + 1
        assert sample("lock_acquisitions_total", outcome="renewed") == renewed + 1

    @pytest.mark.asyncio
    async def test_timeout_counted(self, lease_store: FakeLeaseStore) -> None:
        owner = LockManager(lease_store, holder=LockHolder("bob", "elsewhere", 1))
        contender = LockManager(
            lease_store, holder=LockHolder("alice", "laptop", 1), max_wait_seconds=0
        )
        before = sample("lock_acquisitions_total", outcome="timeout")

        handle = await owner.acquire("ns1", "deploy-lock")
        with pytest.raises(LockTimeout):
            await contender.acquire("ns1", "deploy-lock")
        await handle.release()

        assert sample("lock_acquisitions_total", outcome="timeout") == before + 1
