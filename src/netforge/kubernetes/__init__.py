"""NETFORGE Kubernetes package.

Cluster reference resolution and the Kubernetes-backed lease and
ConfigMap stores.
"""

from netforge.kubernetes.clusters import ClusterAddressBook, ClusterContext
from netforge.kubernetes.config_maps import KubernetesConfigMapStore
from netforge.kubernetes.leases import KubernetesLeaseStore


__all__ = [
    "ClusterAddressBook",
    "ClusterContext",
    "KubernetesConfigMapStore",
    "KubernetesLeaseStore",
]
