"""Local cluster/context mapping.

The user-maintained file that maps cluster references to kubeconfig
contexts and lists which clusters belong to each deployment::

    clusterRefs:
      cluster-a: kind-cluster-a
    deployments:
      deploy-1:
        namespace: ns1
        clusters: [cluster-a]
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from netforge.errors import NetforgeError


class DeploymentEntry(BaseModel):
    """Local record of one deployment."""

    namespace: str = Field(description="Namespace the deployment lives in")
    clusters: list[str] = Field(
        default_factory=list,
        description="Cluster references that belong to the deployment",
    )


class LocalConfig(BaseModel):
    """On-disk cluster reference mapping."""

    cluster_refs: dict[str, str] = Field(
        default_factory=dict,
        alias="clusterRefs",
        description="Cluster reference -> kubeconfig context",
    )
    deployments: dict[str, DeploymentEntry] = Field(default_factory=dict)
    user_identity: str | None = Field(
        default=None,
        alias="userIdentity",
        description="Identity recorded in remote config updates (e.g. email)",
    )

    model_config = {"populate_by_name": True}

    @classmethod
    def load(cls, path: Path) -> LocalConfig:
        """Load from ``path``; a missing file yields an empty config.

        Raises:
            NetforgeError: If the file is not valid YAML or not a valid mapping.
        """
        if not path.exists():
            return cls()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return cls.model_validate(data)
        except (yaml.YAMLError, ValidationError) as exc:
            raise NetforgeError(
                f"local config '{path}' is invalid: {exc}",
                details={"path": str(path)},
            ) from exc

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = self.model_dump(by_alias=True, exclude_none=True)
        path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")

    def deployment(self, name: str) -> DeploymentEntry | None:
        return self.deployments.get(name)


__all__ = ["DeploymentEntry", "LocalConfig"]
