"""NETFORGE Prometheus metrics.

Counters and histograms for the deployment lock and the remote
configuration fan-out. Registered in the default registry when metrics are
enabled, otherwise in a private registry so instrumentation stays a no-op.
"""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from netforge.config.settings import get_settings


_settings = get_settings()

registry = REGISTRY if _settings.observability.metrics_enabled else CollectorRegistry()


# ============================================================================
# Lock metrics
# ============================================================================

lock_acquisitions_total = Counter(
    name="lock_acquisitions_total",
    documentation="Deployment lock acquisition attempts by outcome",
    labelnames=["outcome"],
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)

lock_renewals_total = Counter(
    name="lock_renewals_total",
    documentation="Background lease renewals by outcome",
    labelnames=["outcome"],
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)

lock_lost_total = Counter(
    name="lock_lost_total",
    documentation="Locks lost while held because renewal failed",
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)

lock_wait_seconds = Histogram(
    name="lock_wait_seconds",
    documentation="Time spent waiting to acquire the deployment lock",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 20, 30, 60, 120),
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)


# ============================================================================
# Remote config metrics
# ============================================================================

remote_config_writes_total = Counter(
    name="remote_config_writes_total",
    documentation="Remote config writes per cluster by outcome",
    labelnames=["cluster", "outcome"],
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)

remote_config_mismatches_total = Counter(
    name="remote_config_mismatches_total",
    documentation="Cross-cluster remote config divergences detected",
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)

remote_config_migrations_total = Counter(
    name="remote_config_migrations_total",
    documentation="Remote config schema migrations applied",
    labelnames=["from_version"],
    registry=registry,
    namespace=_settings.observability.metrics_namespace,
)


__all__ = [
    "lock_acquisitions_total",
    "lock_lost_total",
    "lock_renewals_total",
    "lock_wait_seconds",
    "registry",
    "remote_config_migrations_total",
    "remote_config_mismatches_total",
    "remote_config_writes_total",
]
