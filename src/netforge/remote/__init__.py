"""Replicated remote configuration document."""

from netforge.remote.manager import (
    ConsistencyReport,
    DeploymentSeed,
    ModifyResult,
    RemoteConfigManager,
)
from netforge.remote.migrations import migrate
from netforge.remote.models import (
    CURRENT_SCHEMA_VERSION,
    ClusterBinding,
    ConsensusNode,
    RemoteConfigDocument,
)


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "ClusterBinding",
    "ConsensusNode",
    "ConsistencyReport",
    "DeploymentSeed",
    "ModifyResult",
    "RemoteConfigDocument",
    "RemoteConfigManager",
    "migrate",
]
