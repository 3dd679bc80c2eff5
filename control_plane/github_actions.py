"""
GitHub Actions wiring for apps.

- render_workflow(): the workflow that runs `porter apply` on push (or on pull requests for previews)
- GitHubClient: the handful of GitHub REST calls needed to store the deploy token as a
  repository secret and open a pull request adding the workflow
- create_secret_and_open_pr(): the whole flow behind POST /applications/{stack}/pr
- GitHubClient.rerun_latest_workflow(): re-runs an app's deploy workflow on its branch
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import yaml
from nacl import encoding, public

from control_plane.config import CONFIG, Config
from control_plane.repository import Cluster, Project, Repository

logger = logging.getLogger(__name__)

SETUP_CLI_ACTION = "porter-dev/setup-porter@v0.1.0"
CHECKOUT_ACTION = "actions/checkout@v3"


class GitHubError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"github returned {status_code}: {message}")


class BranchExistsError(GitHubError):
    pass


class WorkflowRunNotFoundError(GitHubError):
    pass


def secret_name(project_id: int, cluster_id: int) -> str:
    return f"PORTER_STACK_{project_id}_{cluster_id}"


def workflow_filename(stack_name: str, preview: bool = False) -> str:
    kind = "preview" if preview else "stack"
    return f"porter_{kind}_{stack_name}.yml"


def workflow_path(stack_name: str, preview: bool = False) -> str:
    return f".github/workflows/{workflow_filename(stack_name, preview)}"


def branch_name(stack_name: str) -> str:
    return f"porter-stack-{stack_name}"


def render_workflow(
    project_id: int,
    cluster_id: int,
    stack_name: str,
    branch: str,
    porter_yaml_path: Optional[str] = None,
    server_url: Optional[str] = None,
    preview: bool = False,
) -> str:
    """
    GitHub Actions YAML deploying `stack_name` with the CLI.
    """
    if preview:
        trigger: Dict[str, Any] = {
            "pull_request": {
                "paths": ["**", "!./github/workflows/porter-**"],
                "types": ["opened", "synchronize"],
            }
        }
        name = "Deploy to Preview Environment"
    else:
        trigger = {"push": {"branches": [branch]}}
        name = "Deploy to Porter"

    cmd = "exec porter apply"
    if porter_yaml_path:
        cmd += f" -f {porter_yaml_path}"
    if preview:
        cmd += " --preview"

    env = {
        "PORTER_CLUSTER": str(cluster_id),
        "PORTER_HOST": server_url or CONFIG.SERVER_URL,
        "PORTER_PROJECT": str(project_id),
        "PORTER_STACK_NAME": stack_name,
        "PORTER_TAG": "${{ steps.vars.outputs.sha_short }}",
        "PORTER_TOKEN": "${{ secrets.%s }}" % secret_name(project_id, cluster_id),
    }
    if preview:
        env["PORTER_PR_NUMBER"] = "${{ github.event.number }}"
        env["PORTER_REPO_NAME"] = "${{ github.event.repository.name }}"

    workflow = {
        "on": trigger,
        "name": name,
        "jobs": {
            "porter-deploy": {
                "runs-on": "ubuntu-latest",
                "steps": [
                    {"name": "Checkout code", "uses": CHECKOUT_ACTION},
                    {
                        "name": "Set Github tag",
                        "id": "vars",
                        "run": 'echo "sha_short=$(git rev-parse --short HEAD)" >> $GITHUB_OUTPUT',
                    },
                    {"name": "Setup porter", "uses": SETUP_CLI_ACTION},
                    {"name": "Deploy stack", "timeout-minutes": 30, "run": cmd, "env": env},
                ],
            }
        },
    }
    return yaml.safe_dump(workflow, sort_keys=False, default_flow_style=False)


def seal_secret(public_key_b64: str, value: str) -> str:
    """Encrypt a secret for the GitHub secrets API (libsodium sealed box)."""
    key = public.PublicKey(public_key_b64.encode("utf-8"), encoding.Base64Encoder())
    sealed = public.SealedBox(key).encrypt(value.encode("utf-8"))
    return base64.b64encode(sealed).decode("utf-8")


class GitHubClient:
    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )

    @classmethod
    def from_config(cls, config: Config = CONFIG) -> "GitHubClient":
        return cls(config.GITHUB_TOKEN or "", base_url=config.GITHUB_API_URL)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            resp = await self._http.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise GitHubError(0, f"{method} {path}: {e}") from e
        if resp.status_code >= 300:
            message = resp.text[:400]
            try:
                body = resp.json()
                if isinstance(body, dict) and body.get("message"):
                    message = str(body["message"])
            except ValueError:
                pass
            raise GitHubError(resp.status_code, message)
        return resp

    async def get_repo_public_key(self, owner: str, repo: str) -> Dict[str, str]:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/actions/secrets/public-key")
        return resp.json()

    async def create_or_update_secret(
        self, owner: str, repo: str, name: str, value: str, key: Optional[Dict[str, str]] = None
    ) -> None:
        if key is None:
            key = await self.get_repo_public_key(owner, repo)
        await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/actions/secrets/{name}",
            json={"encrypted_value": seal_secret(key["key"], value), "key_id": key["key_id"]},
        )

    async def get_branch_sha(self, owner: str, repo: str, branch: str) -> str:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}")
        return str(resp.json()["object"]["sha"])

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> None:
        try:
            await self._request(
                "POST",
                f"/repos/{owner}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha},
            )
        except GitHubError as e:
            if e.status_code == 422:
                raise BranchExistsError(e.status_code, f"branch {branch} already exists") from e
            raise

    async def get_file_sha(self, owner: str, repo: str, path: str, ref: str) -> Optional[str]:
        try:
            resp = await self._request("GET", f"/repos/{owner}/{repo}/contents/{path}", params={"ref": ref})
        except GitHubError as e:
            if e.status_code == 404:
                return None
            raise
        body = resp.json()
        return body.get("sha") if isinstance(body, dict) else None

    async def put_file(self, owner: str, repo: str, path: str, content: str, message: str, branch: str) -> None:
        payload: Dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
            "branch": branch,
        }
        sha = await self.get_file_sha(owner, repo, path, branch)
        if sha:
            payload["sha"] = sha
        await self._request("PUT", f"/repos/{owner}/{repo}/contents/{path}", json=payload)

    async def create_pull_request(self, owner: str, repo: str, title: str, head: str, base: str, body: str) -> str:
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        return str(resp.json().get("html_url") or "")

    async def rerun_latest_workflow(self, owner: str, repo: str, filename: str, branch: str) -> str:
        """
        Re-run the most recent run of `filename` on `branch` and return its URL. A run that
        is still queued or in progress is returned as is.
        """
        resp = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/actions/workflows/{filename}/runs",
            params={"branch": branch, "per_page": "1"},
        )
        body = resp.json()
        runs = body.get("workflow_runs") if isinstance(body, dict) else None
        if not runs:
            raise WorkflowRunNotFoundError(404, f"no runs of {filename} on branch {branch}")
        run = runs[0]
        if run.get("status") not in ("queued", "in_progress"):
            await self._request("POST", f"/repos/{owner}/{repo}/actions/runs/{run['id']}/rerun")
            logger.info("re-ran workflow %s on %s/%s branch=%s run=%s", filename, owner, repo, branch, run["id"])
        return str(run.get("html_url") or "")

    async def aclose(self) -> None:
        await self._http.aclose()


@dataclass
class PullRequestOptions:
    github_repo_owner: str
    github_repo_name: str
    branch: str
    open_pr: bool = False
    porter_yaml_path: Optional[str] = None
    previews_workflow_filename: Optional[str] = None


async def create_secret_and_open_pr(
    repo: Repository,
    gh: GitHubClient,
    project: Project,
    cluster: Cluster,
    stack_name: str,
    opts: PullRequestOptions,
    server_url: Optional[str] = None,
) -> Optional[str]:
    """
    Store a fresh project API token as the repository secret and, if asked, open a pull
    request adding the workflow(s). Returns the pull request URL or None.
    """
    owner, name = opts.github_repo_owner, opts.github_repo_name
    # the token is only minted once the repository key is readable
    key = await gh.get_repo_public_key(owner, name)
    token, raw_token = repo.create_api_token(project.id, f"github-actions-{stack_name}")
    try:
        await gh.create_or_update_secret(owner, name, secret_name(project.id, cluster.id), raw_token, key=key)
    except GitHubError:
        repo.revoke_api_token(token.id)
        raise
    logger.info("stored deploy secret for %s/%s stack=%s", owner, name, stack_name)

    if not opts.open_pr:
        return None

    head = branch_name(stack_name)
    sha = await gh.get_branch_sha(owner, name, opts.branch)
    await gh.create_branch(owner, name, head, sha)

    contents = render_workflow(
        project.id, cluster.id, stack_name, opts.branch, opts.porter_yaml_path, server_url
    )
    await gh.put_file(
        owner, name, workflow_path(stack_name), contents, f"Create porter_stack_{stack_name}.yml file", head
    )
    if opts.previews_workflow_filename:
        preview = render_workflow(
            project.id, cluster.id, stack_name, opts.branch, opts.porter_yaml_path, server_url, preview=True
        )
        await gh.put_file(
            owner, name, opts.previews_workflow_filename, preview, f"Create preview workflow for {stack_name}", head
        )

    url = await gh.create_pull_request(
        owner,
        name,
        title=f"Enable Porter Application to deploy {stack_name} on push to {opts.branch}",
        head=head,
        base=opts.branch,
        body="Merging this pull request adds a GitHub Actions workflow that deploys this application on every push.",
    )

    app = repo.read_porter_app_by_name(cluster.id, stack_name)
    if app is not None:
        app.pull_request_url = url
        repo.update_porter_app(app)
    return url


__all__ = [
    "GitHubClient",
    "GitHubError",
    "BranchExistsError",
    "WorkflowRunNotFoundError",
    "PullRequestOptions",
    "create_secret_and_open_pr",
    "render_workflow",
    "workflow_path",
    "workflow_filename",
    "secret_name",
    "seal_secret",
]
