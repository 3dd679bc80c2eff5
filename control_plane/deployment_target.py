from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from control_plane.ccp_client import ClusterControlPlaneClient, ConnectError, as_int


class DeploymentTargetError(Exception):
    pass


@dataclass
class DeploymentTarget:
    id: str
    project_id: int
    cluster_id: int
    namespace: str
    name: str = ""
    is_preview: bool = False


def _from_proto(dt: Dict[str, Any], project_id: int) -> DeploymentTarget:
    return DeploymentTarget(
        id=str(dt.get("id") or ""),
        project_id=as_int(dt.get("projectId"), project_id),
        cluster_id=as_int(dt.get("clusterId")),
        namespace=str(dt.get("namespace") or ""),
        name=str(dt.get("name") or ""),
        is_preview=bool(dt.get("isPreview", False)),
    )


async def deployment_target_details(
    project_id: int,
    cluster_id: int,
    deployment_target_id: str,
    ccp_client: Optional[ClusterControlPlaneClient],
) -> DeploymentTarget:
    """
    Resolve a deployment target through the cluster control plane and check it belongs to `cluster_id`.
    """
    if not project_id:
        raise DeploymentTargetError("must provide a project id")
    if not cluster_id:
        raise DeploymentTargetError("must provide a cluster id")
    if not deployment_target_id:
        raise DeploymentTargetError("must provide a deployment target id")
    if ccp_client is None:
        raise DeploymentTargetError("cluster control plane client is nil")

    try:
        resp = await ccp_client.deployment_target_details(project_id, deployment_target_id)
    except ConnectError as e:
        raise DeploymentTargetError(f"error getting deployment target details from cluster control plane client: {e}") from e
    if resp is None or not isinstance(resp.get("deploymentTarget"), dict):
        raise DeploymentTargetError("deployment target details resp is nil")

    target = _from_proto(resp["deploymentTarget"], project_id)
    if target.cluster_id != cluster_id:
        raise DeploymentTargetError("deployment target cluster id does not match cluster id")
    return target


async def default_deployment_target(
    project_id: int,
    cluster_id: int,
    ccp_client: Optional[ClusterControlPlaneClient],
) -> Optional[DeploymentTarget]:
    """
    Default target of a cluster, or None when the control plane has none.
    """
    if not project_id:
        raise DeploymentTargetError("must provide a project id")
    if not cluster_id:
        raise DeploymentTargetError("must provide a cluster id")
    if ccp_client is None:
        raise DeploymentTargetError("cluster control plane client is nil")

    try:
        resp = await ccp_client.default_deployment_target(project_id, cluster_id)
    except ConnectError as e:
        raise DeploymentTargetError(f"error getting default deployment target from cluster control plane client: {e}") from e
    if resp is None:
        return None
    dt = resp.get("deploymentTarget")
    if not isinstance(dt, dict) or not dt.get("id"):
        return None
    target = _from_proto(dt, project_id)
    if not target.cluster_id:
        target.cluster_id = cluster_id
    return target


__all__ = [
    "DeploymentTarget",
    "DeploymentTargetError",
    "deployment_target_details",
    "default_deployment_target",
]
