"""NETFORGE - multi-cluster test network orchestration.

Provisions and manages a distributed test network spread across one or
more Kubernetes clusters, serializing concurrent commands with a
lease-based deployment lock and keeping a replicated remote configuration
consistent across every member cluster.
"""

from netforge.version import __version__


__all__ = ["__version__"]
