#!/usr/bin/env python3
# control_plane/app.py
# FastAPI control plane for apps running on Kubernetes clusters: app revisions, pod status,
# deployment targets, app file parsing, GitHub Actions wiring and add-ons. Serves the prebuilt
# dashboard when present.
#
# Key integrations:
# - Cluster control plane (Connect RPC): control_plane/ccp_client.py
# - Kubernetes agents: control_plane/kube_agent.py
# - Repository (memory | postgres): control_plane/repository.py
# - App files: libs/app_spec/parser.py, revisions: libs/app_revision/revision.py
#
# Notes:
# - Upstream failures are passed through once as {"error": "<message>: <cause>"}; no retries.
# - RBAC supports AUTH_MODE=none|static with AUTH_TOKENS_JSON plus project API tokens.

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from control_plane.addons import ALL_NAMESPACES, AddOnError, HelmRunner, list_addons
from control_plane.apierrors import ErrPassThroughToClient, install_error_handlers
from control_plane.ccp_client import ClusterControlPlaneClient, ConnectError
from control_plane.config import CONFIG
from control_plane.deployment_target import (
    DeploymentTargetError,
    default_deployment_target,
    deployment_target_details,
)
from control_plane.deps import (
    close_clients,
    get_agent_getter,
    get_ccp_client,
    get_github_client,
    get_helm_runner,
    get_repository,
)
from control_plane.github_actions import (
    BranchExistsError,
    GitHubClient,
    GitHubError,
    PullRequestOptions,
    WorkflowRunNotFoundError,
    create_secret_and_open_pr,
    render_workflow,
    workflow_filename,
    workflow_path,
)
from control_plane.kube_agent import AgentError, AgentGetter
from control_plane.otel import metrics, new_span, setup_logging, setup_otel, span_error, with_attributes
from control_plane.rbac import (
    ADDONS_READ,
    APPS_READ,
    APPS_WRITE,
    CI_WRITE,
    ProjectScope,
    project_scope_dependency,
)
from control_plane.repository import Repository, RepositoryError
from libs.app_revision.notifications import NotificationConversionError, notification_from_app_event
from libs.app_revision.revision import RevisionEncodingError, encoded_revision_from_proto
from libs.app_spec.parser import AppSpecError, decode_app_proto, encode_app_proto, parse_b64_v2
from libs.app_spec.validator import validate_app_proto, validate_build_settings

logger = logging.getLogger(__name__)

PREFIX = "/api/projects/{project_id}/clusters/{cluster_id}"

CLI_ACTION_PREFIX = "CLI_ACTION_"
CLI_ACTIONS = ("NONE", "BUILD", "TRACK_PREDEPLOY")

NIL_UUID = uuid.UUID(int=0)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await close_clients()


app = FastAPI(title="Porter Control Plane", version=CONFIG.CP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG.CORS_ALLOW_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Accept", "Authorization", "Content-Type", "X-CSRF-Token"],
    expose_headers=["Link"],
    allow_credentials=False,
    max_age=300,
)
install_error_handlers(app)

if CONFIG.ENABLE_OTEL:
    setup_otel(app, version=CONFIG.CP_VERSION)
else:
    setup_logging("control-plane", CONFIG.CP_VERSION, json_logs=False)
logger.info("config: %s", CONFIG.safe_repr())


# ----------------------------
# Request models
# ----------------------------

class ParseAppRequest(BaseModel):
    b64_yaml: str
    app_name: Optional[str] = None


class Deletions(BaseModel):
    service_names: List[str] = Field(default_factory=list)
    predeploy: List[str] = Field(default_factory=list)
    env_group_names: List[str] = Field(default_factory=list)


class UpdateAppRequest(BaseModel):
    deployment_target_id: str
    b64_app_proto: Optional[str] = None
    app_revision_id: Optional[str] = None
    deletions: Deletions = Field(default_factory=Deletions)
    force_build: bool = False
    variables: Dict[str, str] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict)
    is_env_override: bool = False


class ApplyAppRequest(BaseModel):
    deployment_target_id: str
    app_revision_id: str
    force_build: bool = False
    variables: Dict[str, str] = Field(default_factory=dict)
    secrets: Dict[str, str] = Field(default_factory=dict)
    hard_env_update: bool = False


class UpdateBuildSettingsRequest(BaseModel):
    deployment_target_id: str
    build_settings: Dict[str, Any]


class CreateSecretAndOpenPRRequest(BaseModel):
    github_app_installation_id: int
    github_repo_owner: str
    github_repo_name: str
    branch: str
    open_pr: bool = False
    porter_yaml_path: Optional[str] = None
    previews_workflow_filename: Optional[str] = None


# ----------------------------
# Helpers
# ----------------------------

def _scope_attrs(scope: ProjectScope) -> Dict[str, Any]:
    return {"project-id": scope.project.id, "cluster-id": scope.cluster.id}


def _cli_action(raw: Any) -> str:
    s = str(raw or "").strip().upper()
    if s.startswith(CLI_ACTION_PREFIX):
        s = s[len(CLI_ACTION_PREFIX):]
    if s in ("", "UNSPECIFIED"):
        return "NONE"
    if s not in CLI_ACTIONS:
        raise ValueError(f"unknown cli action {raw!r}")
    return s


def _parse_uuid(span, raw: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except (ValueError, TypeError) as e:
        raise ErrPassThroughToClient(span_error(span, e, f"invalid {what}"), 400)


@asynccontextmanager
async def _closing(gh: Optional[GitHubClient]) -> AsyncIterator[Optional[GitHubClient]]:
    try:
        yield gh
    finally:
        if gh is not None:
            await gh.aclose()


# ----------------------------
# Routes: health
# ----------------------------

@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    return {"ok": True, "ts": int(time.time())}


# ----------------------------
# Routes: app revisions
# ----------------------------

@app.get(PREFIX + "/apps/{porter_app_name}/latest")
async def latest_app_revision(
    porter_app_name: str,
    deployment_target_id: str = "",
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
    repo: Repository = Depends(get_repository),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-latest-app-revision") as span:
        with_attributes(span, {**_scope_attrs(scope), "app-name": porter_app_name, "deployment-target-id": deployment_target_id})
        dt_id = _parse_uuid(span, deployment_target_id, "deployment target id")

        try:
            apps = repo.read_porter_apps_by_project_id_and_name(scope.project.id, porter_app_name)
        except RepositoryError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting porter app from repo"), 400)
        if not apps:
            raise ErrPassThroughToClient(span_error(span, None, "no porter apps returned"), 400)
        if len(apps) > 1:
            raise ErrPassThroughToClient(
                span_error(span, None, "multiple porter apps returned; unable to determine which one to use"), 400
            )
        porter_app = apps[0]
        if not porter_app.id:
            raise ErrPassThroughToClient(span_error(span, None, "porter app id is missing"), 500)
        with_attributes(span, {"app-id": porter_app.id})

        try:
            resp = await ccp.current_app_revision(scope.project.id, porter_app.id, str(dt_id))
        except ConnectError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting current app revision"), 400)
        if resp is None:
            raise ErrPassThroughToClient(span_error(span, None, "current app revision response is nil"), 500)

        try:
            revision = encoded_revision_from_proto(resp.get("appRevision"))
        except RevisionEncodingError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error encoding app revision"), 500)
        with_attributes(span, {"app-revision-id": revision.id, "app-instance-id": revision.app_instance_id})

        try:
            events = repo.read_notifications_by_app_revision_id(revision.app_instance_id, revision.id)
        except RepositoryError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting notifications from repo"), 500)

        notifications = []
        for event in events:
            try:
                n = notification_from_app_event(event)
            except NotificationConversionError as e:
                with_attributes(span, {"notification-conversion-error": str(e)})
                continue
            if n is None or not n.scope:
                continue
            notifications.append(n.model_dump(mode="json"))

        return {"app_revision": revision.to_api(), "notifications": notifications}


@app.get(PREFIX + "/apps/revisions")
async def latest_app_revisions(
    deployment_target_id: str = "",
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
    repo: Repository = Depends(get_repository),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-list-app-revisions") as span:
        with_attributes(span, {**_scope_attrs(scope), "deployment-target-id": deployment_target_id})
        dt_id = _parse_uuid(span, deployment_target_id, "deployment target id")
        if dt_id == NIL_UUID:
            raise ErrPassThroughToClient(span_error(span, None, "deployment target id is nil"), 400)

        try:
            resp = await ccp.latest_app_revisions(scope.project.id, str(dt_id))
        except ConnectError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting latest app revisions"), 500)
        if resp is None:
            raise ErrPassThroughToClient(span_error(span, None, "latest app revisions response is nil"), 500)

        out = []
        for app_revision in resp.get("appRevisions") or []:
            try:
                revision = encoded_revision_from_proto(app_revision)
            except RevisionEncodingError as e:
                raise ErrPassThroughToClient(span_error(span, e, "error encoding app revision"), 500)
            app_name = str(app_revision["app"].get("name") or "")
            try:
                porter_app = repo.read_porter_app_by_name(scope.cluster.id, app_name)
            except RepositoryError as e:
                raise ErrPassThroughToClient(span_error(span, e, "error getting porter app from repo"), 500)
            if porter_app is None:
                raise ErrPassThroughToClient(span_error(span, None, f"porter app {app_name} not found"), 500)
            out.append({"app_revision": revision.to_api(), "source": porter_app.to_api()})

        with_attributes(span, {"app-revision-count": len(out)})
        return {"app_revisions": out}


# ----------------------------
# Routes: pods & deployment targets
# ----------------------------

@app.get(PREFIX + "/apps/{porter_app_name}/pods")
async def pod_status(
    porter_app_name: str,
    deployment_target_id: str = "",
    service: str = "",
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
    agents: AgentGetter = Depends(get_agent_getter),
):
    with new_span("serve-pod-status") as span:
        with_attributes(
            span,
            {
                **_scope_attrs(scope),
                "app-name": porter_app_name,
                "deployment-target-id": deployment_target_id,
                "service-name": service,
            },
        )
        if not deployment_target_id:
            raise ErrPassThroughToClient(span_error(span, None, "must provide deployment target id"), 400)

        try:
            target = await deployment_target_details(scope.project.id, scope.cluster.id, deployment_target_id, ccp)
        except DeploymentTargetError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting deployment target details"), 500)
        with_attributes(span, {"namespace": target.namespace})

        try:
            agent = await agents.aget_agent(scope.cluster)
        except AgentError as e:
            raise ErrPassThroughToClient(span_error(span, e, "unable to get agent"), 500)

        selector = f"porter.run/deployment-target-id={deployment_target_id},porter.run/app-name={porter_app_name}"
        if service:
            selector = f"porter.run/service-name={service}," + selector
        with_attributes(span, {"label-selector": selector})

        try:
            pods = await agent.get_pods_by_label(selector, target.namespace)
        except AgentError as e:
            raise ErrPassThroughToClient(span_error(span, e, "unable to get pods by label"), 500)
        return pods


@app.get(PREFIX + "/default-deployment-target")
async def get_default_deployment_target(
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-default-deployment-target") as span:
        with_attributes(span, _scope_attrs(scope))
        if not scope.project.validate_apply_v2:
            raise ErrPassThroughToClient(span_error(span, None, "project does not have apply v2 enabled"), 400)
        try:
            target = await default_deployment_target(scope.project.id, scope.cluster.id, ccp)
        except DeploymentTargetError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error getting default deployment target"), 500)
        if target is None:
            raise ErrPassThroughToClient(span_error(span, None, "default deployment target not found"), 404)
        with_attributes(span, {"deployment-target-id": target.id})
        return {"deployment_target_id": target.id}


# ----------------------------
# Routes: app files, update & apply
# ----------------------------

@app.post(PREFIX + "/apps/parse")
async def parse_app(
    req: ParseAppRequest,
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
):
    with new_span("serve-parse-app") as span:
        with_attributes(span, {**_scope_attrs(scope), "app-name": req.app_name})
        try:
            parsed = parse_b64_v2(req.b64_yaml, req.app_name)
        except AppSpecError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error parsing app file"), 400)
        return {
            "b64_app_proto": encode_app_proto(parsed.app),
            "env_variables": parsed.env_variables,
            "env_secrets": parsed.env_secrets,
        }


@app.post(PREFIX + "/apps/update")
async def update_app(
    req: UpdateAppRequest,
    scope: ProjectScope = Depends(project_scope_dependency([APPS_WRITE])),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-update-app") as span:
        with_attributes(span, {**_scope_attrs(scope), "deployment-target-id": req.deployment_target_id})
        dt_id = _parse_uuid(span, req.deployment_target_id, "deployment target id")
        if not req.b64_app_proto and not req.app_revision_id:
            raise ErrPassThroughToClient(span_error(span, None, "must provide either app proto or app revision id"), 400)
        if req.app_revision_id:
            _parse_uuid(span, req.app_revision_id, "app revision id")
        if req.b64_app_proto:
            try:
                app_proto = decode_app_proto(req.b64_app_proto)
                validate_app_proto(app_proto)
            except AppSpecError as e:
                raise ErrPassThroughToClient(span_error(span, e, "invalid app proto"), 400)
            with_attributes(span, {"app-name": app_proto["name"]})

        try:
            resp = await ccp.update_app(
                scope.project.id,
                str(dt_id),
                b64_app_proto=req.b64_app_proto,
                deletions=req.deletions.model_dump(),
                app_revision_id=req.app_revision_id,
                force_build=req.force_build,
                variables=req.variables,
                secrets=req.secrets,
                is_env_override=req.is_env_override,
            )
        except ConnectError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error updating app"), 500)
        if resp is None:
            raise ErrPassThroughToClient(span_error(span, None, "update app response is nil"), 500)
        try:
            cli_action = _cli_action(resp.get("cliAction"))
        except ValueError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error reading cli action"), 500)
        app_revision_id = str(resp.get("appRevisionId") or "")
        with_attributes(span, {"app-revision-id": app_revision_id, "cli-action": cli_action})
        return {"app_revision_id": app_revision_id, "cli_action": cli_action}


@app.post(PREFIX + "/apps/apply")
async def apply_app(
    req: ApplyAppRequest,
    scope: ProjectScope = Depends(project_scope_dependency([APPS_WRITE])),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-apply-app") as span:
        with_attributes(
            span,
            {
                **_scope_attrs(scope),
                "deployment-target-id": req.deployment_target_id,
                "app-revision-id": req.app_revision_id,
            },
        )
        dt_id = _parse_uuid(span, req.deployment_target_id, "deployment target id")
        rev_id = _parse_uuid(span, req.app_revision_id, "app revision id")

        try:
            resp = await ccp.apply_app(
                scope.project.id,
                str(dt_id),
                str(rev_id),
                force_build=req.force_build,
                variables=req.variables,
                secrets=req.secrets,
                hard_env_update=req.hard_env_update,
            )
        except ConnectError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error applying app"), 500)
        if resp is None:
            raise ErrPassThroughToClient(span_error(span, None, "apply app response is nil"), 500)
        try:
            cli_action = _cli_action(resp.get("cliAction"))
        except ValueError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error reading cli action"), 500)
        app_revision_id = str(resp.get("appRevisionId") or rev_id)
        with_attributes(span, {"cli-action": cli_action})
        return {"app_revision_id": app_revision_id, "cli_action": cli_action}


@app.post(PREFIX + "/apps/{porter_app_name}/build-settings")
async def update_app_build_settings(
    porter_app_name: str,
    req: UpdateBuildSettingsRequest,
    scope: ProjectScope = Depends(project_scope_dependency([APPS_WRITE])),
    ccp: ClusterControlPlaneClient = Depends(get_ccp_client),
):
    with new_span("serve-update-app-build-settings") as span:
        with_attributes(
            span,
            {
                **_scope_attrs(scope),
                "app-name": porter_app_name,
                "deployment-target-id": req.deployment_target_id,
            },
        )
        dt_id = _parse_uuid(span, req.deployment_target_id, "deployment target id")
        try:
            validate_build_settings(req.build_settings)
        except AppSpecError as e:
            raise ErrPassThroughToClient(span_error(span, e, "invalid build settings"), 400)
        with_attributes(span, {"build-method": req.build_settings["method"]})

        try:
            await ccp.update_app_build_settings(scope.project.id, str(dt_id), porter_app_name, req.build_settings)
        except ConnectError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error updating build settings"), 500)
        return {}


# ----------------------------
# Routes: GitHub Actions
# ----------------------------

@app.get(PREFIX + "/applications/{stack_name}/github-action")
async def get_github_action(
    stack_name: str,
    branch: str = "",
    porter_yaml_path: Optional[str] = None,
    workflow_type: str = Query("create", alias="type"),
    scope: ProjectScope = Depends(project_scope_dependency([APPS_READ])),
):
    with new_span("serve-github-action") as span:
        with_attributes(span, {**_scope_attrs(scope), "stack-name": stack_name, "branch": branch, "type": workflow_type})
        if not branch:
            raise ErrPassThroughToClient(span_error(span, None, "must provide a branch"), 400)
        if workflow_type not in ("create", "preview"):
            raise ErrPassThroughToClient(span_error(span, None, f"unknown workflow type {workflow_type!r}"), 400)
        preview = workflow_type == "preview"
        contents = render_workflow(
            scope.project.id,
            scope.cluster.id,
            stack_name,
            branch,
            porter_yaml_path=porter_yaml_path,
            server_url=CONFIG.SERVER_URL,
            preview=preview,
        )
        return {"path": workflow_path(stack_name, preview), "contents": contents}


@app.post(PREFIX + "/applications/{stack_name}/pr")
async def create_secret_and_open_github_pr(
    stack_name: str,
    req: CreateSecretAndOpenPRRequest,
    scope: ProjectScope = Depends(project_scope_dependency([CI_WRITE])),
    repo: Repository = Depends(get_repository),
    gh: Optional[GitHubClient] = Depends(get_github_client),
):
    async with _closing(gh):
        with new_span("serve-create-secret-and-open-pr") as span:
            with_attributes(
                span,
                {
                    **_scope_attrs(scope),
                    "stack-name": stack_name,
                    "repo": f"{req.github_repo_owner}/{req.github_repo_name}",
                    "open-pr": req.open_pr,
                },
            )
            counter = metrics().github_pull_requests_total
            if not (req.github_app_installation_id and req.github_repo_owner and req.github_repo_name and req.branch):
                raise ErrPassThroughToClient(span_error(span, None, "missing github repository details"), 400)
            if gh is None:
                counter.labels(result="error").inc()
                raise ErrPassThroughToClient(span_error(span, None, "github client is not configured"), 500)

            opts = PullRequestOptions(
                github_repo_owner=req.github_repo_owner,
                github_repo_name=req.github_repo_name,
                branch=req.branch,
                open_pr=req.open_pr,
                porter_yaml_path=req.porter_yaml_path,
                previews_workflow_filename=req.previews_workflow_filename,
            )
            try:
                url = await create_secret_and_open_pr(
                    repo, gh, scope.project, scope.cluster, stack_name, opts, server_url=CONFIG.SERVER_URL
                )
            except BranchExistsError as e:
                counter.labels(result="branch_exists").inc()
                raise ErrPassThroughToClient(
                    span_error(span, e, "unable to create PR to merge workflow files into protected branch"), 400
                )
            except GitHubError as e:
                counter.labels(result="error").inc()
                raise ErrPassThroughToClient(span_error(span, e, "error creating secret and opening pull request"), 500)
            except RepositoryError as e:
                counter.labels(result="error").inc()
                raise ErrPassThroughToClient(span_error(span, e, "error storing deploy token"), 500)

            counter.labels(result="opened" if url else "secret_only").inc()
            with_attributes(span, {"pull-request-url": url})
            return {"url": url}


@app.post(PREFIX + "/apps/{porter_app_name}/rerun-workflow")
async def rerun_app_workflow(
    porter_app_name: str,
    scope: ProjectScope = Depends(project_scope_dependency([CI_WRITE])),
    repo: Repository = Depends(get_repository),
    gh: Optional[GitHubClient] = Depends(get_github_client),
):
    async with _closing(gh):
        with new_span("serve-rerun-app-workflow") as span:
            with_attributes(span, {**_scope_attrs(scope), "app-name": porter_app_name})
            try:
                porter_app = repo.read_porter_app_by_name(scope.cluster.id, porter_app_name)
            except RepositoryError as e:
                raise ErrPassThroughToClient(span_error(span, e, "error getting porter app from repo"), 500)
            if porter_app is None:
                raise ErrPassThroughToClient(span_error(span, None, f"porter app {porter_app_name} not found"), 404)

            owner, _, name = (porter_app.repo_name or "").partition("/")
            if not (owner and name and porter_app.git_branch):
                raise ErrPassThroughToClient(
                    span_error(span, None, "porter app is not connected to a github repository branch"), 400
                )
            with_attributes(span, {"repo": porter_app.repo_name, "branch": porter_app.git_branch})
            if gh is None:
                raise ErrPassThroughToClient(span_error(span, None, "github client is not configured"), 500)

            try:
                url = await gh.rerun_latest_workflow(
                    owner, name, workflow_filename(porter_app_name), porter_app.git_branch
                )
            except WorkflowRunNotFoundError as e:
                raise ErrPassThroughToClient(span_error(span, e, "no workflow run to re-run"), 400)
            except GitHubError as e:
                raise ErrPassThroughToClient(span_error(span, e, "error re-running workflow"), 500)
            with_attributes(span, {"workflow-run-url": url})
            return {"url": url}


# ----------------------------
# Routes: add-ons
# ----------------------------

@app.get(PREFIX + "/addons")
async def get_addons(
    namespace: str = ALL_NAMESPACES,
    search: str = "",
    limit: int = Query(50, ge=1, le=1000),
    scope: ProjectScope = Depends(project_scope_dependency([ADDONS_READ])),
    runner: HelmRunner = Depends(get_helm_runner),
):
    with new_span("serve-list-addons") as span:
        with_attributes(span, {**_scope_attrs(scope), "namespace": namespace, "search": search, "limit": limit})
        try:
            addons = await list_addons(runner, scope.cluster, namespace=namespace, search=search, limit=limit)
        except AddOnError as e:
            raise ErrPassThroughToClient(span_error(span, e, "error listing add-ons"), 500)
        with_attributes(span, {"addon-count": len(addons)})
        return [a.to_api() for a in addons]


# ----------------------------
# Dashboard (prebuilt SPA)
# ----------------------------

class SPAStaticFiles(StaticFiles):
    """Serves index.html for unknown paths so client-side routes resolve."""

    async def get_response(self, path: str, scope):
        try:
            return await super().get_response(path, scope)
        except StarletteHTTPException as e:
            if e.status_code != 404 or path.startswith("api/"):
                raise
            return await super().get_response("index.html", scope)


def mount_dashboard(target: FastAPI, directory: str) -> bool:
    d = Path(directory)
    if not (d / "index.html").exists():
        logger.info("dashboard not mounted; %s has no index.html", d)
        return False
    target.mount("/", SPAStaticFiles(directory=str(d), html=True), name="dashboard")
    return True


# mounted last so API routes take precedence
mount_dashboard(app, CONFIG.DASHBOARD_DIR)


# ----------------------------
# Entrypoint
# ----------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("control_plane.app:app", host=CONFIG.CP_HOST, port=CONFIG.CP_PORT)
