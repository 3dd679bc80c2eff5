from __future__ import annotations

import json
import os
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from fastapi.testclient import TestClient

from control_plane import deps
from control_plane.addons import AddOnError, HelmRunner
from control_plane.ccp_client import SERVICE_PATH, ClusterControlPlaneClient
from control_plane.github_actions import GitHubClient
from control_plane.kube_agent import AgentError, AgentGetter
from control_plane.repository import Cluster, MemoryRepository, PorterApp, Project

PROJECT_ID = 1
CLUSTER_ID = 2
APP_ID = 10
APP_NAME = "web-app"
DT_ID = "6c1e8f7a-3f9a-4a44-9b3b-2f4d1c0b9e11"
REV_ID = "0f6f2c1d-8a3e-4c2b-9f55-7d2e8b1a4c90"
INSTANCE_ID = "a2b7c9d1-1111-4e2f-8a9b-3c4d5e6f7a8b"

PREFIX = f"/api/projects/{PROJECT_ID}/clusters/{CLUSTER_ID}"


class EnvPatch:
    def __init__(self, **overrides: str) -> None:
        self.overrides = overrides
        self.prev: dict[str, Optional[str]] = {}

    def __enter__(self):
        for k, v in self.overrides.items():
            self.prev[k] = os.getenv(k)
            os.environ[k] = v
        return self

    def __exit__(self, exc_type, exc, tb):
        for k, old in self.prev.items():
            if old is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = old


def seeded_repo() -> MemoryRepository:
    repo = MemoryRepository()
    repo.add_project(Project(id=PROJECT_ID, name="proj"))
    repo.add_cluster(Cluster(id=CLUSTER_ID, project_id=PROJECT_ID, name="cluster", kube_context="kind-cluster"))
    repo.add_porter_app(PorterApp(id=APP_ID, project_id=PROJECT_ID, cluster_id=CLUSTER_ID, name=APP_NAME, repo_name="acme/web", git_branch="main"))
    return repo


def app_revision_proto(
    rev_id: str = REV_ID,
    name: str = APP_NAME,
    status: str = "APP_REVISION_STATUS_DEPLOYED",
) -> Dict[str, Any]:
    return {
        "id": rev_id,
        "app": {
            "name": name,
            "serviceList": [{"name": "web", "type": "SERVICE_TYPE_WEB", "port": 8080, "webConfig": {}}],
        },
        "status": status,
        "revisionNumber": "3",
        "createdAt": "2024-01-02T03:04:05.123456789Z",
        "updatedAt": "2024-01-02T03:05:00Z",
        "deploymentTarget": {"id": DT_ID, "name": "default"},
        "appInstanceId": INSTANCE_ID,
        "projectId": str(PROJECT_ID),
    }


Responder = Callable[[Dict[str, Any]], Tuple[int, Any]]


def ccp_client(responses: Dict[str, Any]) -> Tuple[ClusterControlPlaneClient, List[Tuple[str, Dict[str, Any]]]]:
    """
    Control plane client backed by httpx.MockTransport.

    `responses` maps RPC method -> (status, body) or a callable(request_json) -> (status, body).
    Returns the client and the list of (method, request_json) calls it received.
    """
    calls: List[Tuple[str, Dict[str, Any]]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        assert request.url.path == f"/{SERVICE_PATH}/{method}", f"unexpected path {request.url.path}"
        assert request.headers.get("connect-protocol-version") == "1", "missing Connect-Protocol-Version header"
        body = json.loads(request.content or b"{}")
        calls.append((method, body))
        stub = responses.get(method)
        if stub is None:
            return httpx.Response(404, json={"code": "unimplemented", "message": f"{method} not stubbed"})
        status, payload = stub(body) if callable(stub) else stub
        if payload is None:
            return httpx.Response(status, content=b"")
        return httpx.Response(status, json=payload)

    client = ClusterControlPlaneClient("http://ccp.test", transport=httpx.MockTransport(handler))
    return client, calls


class FakeAgent:
    def __init__(self, pods: Optional[List[Dict[str, Any]]] = None, error: Optional[str] = None) -> None:
        self.pods = pods or []
        self.error = error
        self.calls: List[Tuple[str, str]] = []

    async def get_pods_by_label(self, selector: str, namespace: str = "") -> List[Dict[str, Any]]:
        self.calls.append((selector, namespace))
        if self.error:
            raise AgentError(self.error)
        return self.pods


class FakeAgentGetter(AgentGetter):
    def __init__(self, agent: Optional[FakeAgent] = None, error: Optional[str] = None) -> None:
        self.agent = agent or FakeAgent()
        self.error = error
        self.clusters: List[Cluster] = []

    def get_agent(self, cluster: Cluster):
        self.clusters.append(cluster)
        if self.error:
            raise AgentError(self.error)
        return self.agent


class FakeHelmRunner(HelmRunner):
    def __init__(self, releases: Optional[List[Dict[str, Any]]] = None, error: Optional[str] = None) -> None:
        self.releases = releases or []
        self.error = error
        self.calls: List[List[str]] = []

    async def run(self, args: List[str]) -> str:
        self.calls.append(list(args))
        if self.error:
            raise AddOnError(self.error)
        return json.dumps(self.releases)


def github_client(handler: Callable[[httpx.Request], httpx.Response]) -> GitHubClient:
    return GitHubClient("gh-token", base_url="https://github.test", transport=httpx.MockTransport(handler))


def make_client(
    repo: Optional[MemoryRepository] = None,
    ccp: Optional[ClusterControlPlaneClient] = None,
    agents: Optional[AgentGetter] = None,
    helm: Optional[HelmRunner] = None,
    gh: Optional[GitHubClient] = None,
) -> TestClient:
    from control_plane.app import app

    repo = repo if repo is not None else seeded_repo()
    if ccp is None:
        ccp, _ = ccp_client({})
    app.dependency_overrides.clear()
    app.dependency_overrides[deps.get_repository] = lambda: repo
    app.dependency_overrides[deps.get_ccp_client] = lambda: ccp
    app.dependency_overrides[deps.get_agent_getter] = lambda: agents or FakeAgentGetter()
    app.dependency_overrides[deps.get_helm_runner] = lambda: helm or FakeHelmRunner()
    app.dependency_overrides[deps.get_github_client] = lambda: gh
    return TestClient(app)
