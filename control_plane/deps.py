"""
FastAPI dependencies for downstream clients. Each is built lazily once per process and
can be replaced with `app.dependency_overrides` in tests.
"""

from __future__ import annotations

import threading
from typing import Optional

from control_plane.addons import HelmRunner, SubprocessHelmRunner
from control_plane.ccp_client import ClusterControlPlaneClient
from control_plane.config import CONFIG
from control_plane.github_actions import GitHubClient
from control_plane.kube_agent import AgentGetter, OutOfClusterAgentGetter
from control_plane.repository import Repository, get_repository_from_env

_lock = threading.Lock()
_repository: Optional[Repository] = None
_ccp_client: Optional[ClusterControlPlaneClient] = None
_agent_getter: Optional[AgentGetter] = None
_helm_runner: Optional[HelmRunner] = None


def get_repository() -> Repository:
    global _repository
    with _lock:
        if _repository is None:
            _repository = get_repository_from_env(CONFIG)
        return _repository


def get_ccp_client() -> ClusterControlPlaneClient:
    global _ccp_client
    with _lock:
        if _ccp_client is None:
            _ccp_client = ClusterControlPlaneClient.from_config(CONFIG)
        return _ccp_client


def get_agent_getter() -> AgentGetter:
    global _agent_getter
    with _lock:
        if _agent_getter is None:
            _agent_getter = OutOfClusterAgentGetter(CONFIG)
        return _agent_getter


def get_github_client() -> Optional[GitHubClient]:
    """None when no GitHub token is configured."""
    if not CONFIG.GITHUB_TOKEN:
        return None
    return GitHubClient.from_config(CONFIG)


def get_helm_runner() -> HelmRunner:
    global _helm_runner
    with _lock:
        if _helm_runner is None:
            _helm_runner = SubprocessHelmRunner(CONFIG.HELM_BIN, timeout=float(CONFIG.HELM_TIMEOUT_SECONDS))
        return _helm_runner


async def close_clients() -> None:
    global _ccp_client, _agent_getter
    with _lock:
        client, _ccp_client = _ccp_client, None
        agents, _agent_getter = _agent_getter, None
    if client is not None:
        await client.aclose()
    if agents is not None:
        agents.close()


__all__ = [
    "get_repository",
    "get_ccp_client",
    "get_agent_getter",
    "get_github_client",
    "get_helm_runner",
    "close_clients",
]
