"""
Client for the external cluster control plane.

The service speaks the Connect protocol; this client uses its JSON codec over plain
HTTP POST, so no generated stubs are needed:

    POST {base}/porter.v1.ClusterControlPlaneService/{Method}
    Content-Type: application/json
    Connect-Protocol-Version: 1

Request and response bodies are protobuf-JSON (lowerCamelCase keys). Errors come back
as a non-200 status with {"code": "...", "message": "..."}.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from control_plane.config import CONFIG, Config
from control_plane.otel import observe_ccp_call

logger = logging.getLogger(__name__)

SERVICE_PATH = "porter.v1.ClusterControlPlaneService"

# Connect error codes keyed by the HTTP status they map to when the body is unreadable
_HTTP_TO_CONNECT_CODE = {
    400: "invalid_argument",
    401: "unauthenticated",
    403: "permission_denied",
    404: "not_found",
    408: "deadline_exceeded",
    409: "aborted",
    429: "resource_exhausted",
    501: "unimplemented",
    502: "unavailable",
    503: "unavailable",
    504: "deadline_exceeded",
}


class ConnectError(Exception):
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ClusterControlPlaneClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls, config: Config = CONFIG) -> "ClusterControlPlaneClient":
        return cls(
            config.CLUSTER_CONTROL_PLANE_URL,
            token=config.CLUSTER_CONTROL_PLANE_TOKEN,
            timeout=float(config.CCP_TIMEOUT_SECONDS),
        )

    def _headers(self) -> Dict[str, str]:
        h = {"Content-Type": "application/json", "Connect-Protocol-Version": "1"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    async def call(self, method: str, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Unary Connect call. Returns the response message, or None when the server sent an empty body.
        """
        t0 = time.perf_counter()
        code = "ok"
        try:
            try:
                resp = await self._http.post(f"/{SERVICE_PATH}/{method}", json=message, headers=self._headers())
            except httpx.TimeoutException as e:
                code = "deadline_exceeded"
                raise ConnectError(code, f"{method} timed out: {e}") from e
            except httpx.HTTPError as e:
                code = "unavailable"
                raise ConnectError(code, f"{method} transport error: {e}") from e

            if resp.status_code != 200:
                err = _error_from_response(resp)
                code = err.code
                raise err

            if not resp.content or not resp.content.strip():
                return None
            try:
                body = resp.json()
            except ValueError as e:
                code = "internal"
                raise ConnectError(code, f"{method} returned invalid JSON: {e}") from e
            if body is None:
                return None
            if not isinstance(body, dict):
                code = "internal"
                raise ConnectError(code, f"{method} returned a non-object message")
            return body
        finally:
            observe_ccp_call(method, code, time.perf_counter() - t0)
            logger.debug("ccp call method=%s code=%s", method, code)

    async def current_app_revision(self, project_id: int, app_id: int, deployment_target_id: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "CurrentAppRevision",
            {"projectId": project_id, "appId": app_id, "deploymentTargetId": deployment_target_id},
        )

    async def latest_app_revisions(self, project_id: int, deployment_target_id: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "LatestAppRevisions",
            {"projectId": project_id, "deploymentTargetId": deployment_target_id},
        )

    async def deployment_target_details(self, project_id: int, deployment_target_id: str) -> Optional[Dict[str, Any]]:
        return await self.call(
            "DeploymentTargetDetails",
            {"projectId": project_id, "deploymentTargetId": deployment_target_id},
        )

    async def default_deployment_target(self, project_id: int, cluster_id: int) -> Optional[Dict[str, Any]]:
        return await self.call(
            "DefaultDeploymentTarget",
            {"projectId": project_id, "clusterId": cluster_id},
        )

    async def update_app(
        self,
        project_id: int,
        deployment_target_id: str,
        b64_app_proto: Optional[str] = None,
        deletions: Optional[Dict[str, List[str]]] = None,
        app_revision_id: Optional[str] = None,
        force_build: bool = False,
        variables: Optional[Dict[str, str]] = None,
        secrets: Optional[Dict[str, str]] = None,
        is_env_override: bool = False,
    ) -> Optional[Dict[str, Any]]:
        message: Dict[str, Any] = {
            "projectId": project_id,
            "deploymentTargetIdentifier": {"id": deployment_target_id},
            "isForceBuild": bool(force_build),
        }
        if b64_app_proto:
            message["b64AppProto"] = b64_app_proto
        if app_revision_id:
            message["appRevisionId"] = app_revision_id
        if deletions:
            message["deletions"] = {
                "serviceNames": list(deletions.get("service_names") or []),
                "predeploy": list(deletions.get("predeploy") or []),
                "envGroupNames": list(deletions.get("env_group_names") or []),
            }
        if variables or secrets:
            message["appEnv"] = {"variables": dict(variables or {}), "secrets": dict(secrets or {})}
        if is_env_override:
            message["isEnvOverride"] = True
        return await self.call("UpdateApp", message)

    async def apply_app(
        self,
        project_id: int,
        deployment_target_id: str,
        app_revision_id: str,
        force_build: bool = False,
        variables: Optional[Dict[str, str]] = None,
        secrets: Optional[Dict[str, str]] = None,
        hard_env_update: bool = False,
    ) -> Optional[Dict[str, Any]]:
        message: Dict[str, Any] = {
            "projectId": project_id,
            "deploymentTargetId": deployment_target_id,
            "appRevisionId": app_revision_id,
            "forceBuild": bool(force_build),
        }
        if variables:
            message["variables"] = dict(variables)
        if secrets:
            message["secrets"] = dict(secrets)
        if hard_env_update:
            message["hardEnvUpdate"] = True
        return await self.call("ApplyApp", message)

    async def update_app_build_settings(
        self,
        project_id: int,
        deployment_target_id: str,
        app_name: str,
        build_settings: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        return await self.call(
            "UpdateAppBuildSettings",
            {
                "projectId": project_id,
                "deploymentTargetId": deployment_target_id,
                "appName": app_name,
                "buildSettings": build_settings,
            },
        )

    async def aclose(self) -> None:
        await self._http.aclose()


def _error_from_response(resp: httpx.Response) -> ConnectError:
    code = _HTTP_TO_CONNECT_CODE.get(resp.status_code, "unknown")
    message = resp.text[:400] if resp.text else f"http status {resp.status_code}"
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body.get("code") or code)
        message = str(body.get("message") or message)
    return ConnectError(code, message)


def as_int(val: Any, default: int = 0) -> int:
    """int64 fields arrive as JSON strings in protobuf-JSON."""
    if val is None or val == "":
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


__all__ = ["ClusterControlPlaneClient", "ConnectError", "SERVICE_PATH", "as_int"]
