from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fastapi import Depends, Request

from control_plane.apierrors import ErrForbidden, ErrInternal, ErrPassThroughToClient, ErrUnauthorized
from control_plane.deps import get_repository
from control_plane.repository import Cluster, Project, Repository, RepositoryError, hash_token

logger = logging.getLogger(__name__)

# Centralized scope constants/mapping
APPS_READ = "apps:read"
APPS_WRITE = "apps:write"
ADDONS_READ = "addons:read"
CI_WRITE = "ci:write"
SCOPES = {
    "APPS_READ": APPS_READ,
    "APPS_WRITE": APPS_WRITE,
    "ADDONS_READ": ADDONS_READ,
    "CI_WRITE": CI_WRITE,
}
ALL_SCOPES = frozenset(SCOPES.values())

# project API tokens (the ones written into CI secrets) can deploy but not wire CI
API_TOKEN_SCOPES = frozenset({APPS_READ, APPS_WRITE})


@dataclass
class AuthContext:
    subject: str
    scopes: Set[str]
    project_ids: Optional[Set[int]] = None

    def can_access_project(self, project_id: int) -> bool:
        return self.project_ids is None or project_id in self.project_ids


@dataclass
class ProjectScope:
    project: Project
    cluster: Cluster
    auth: AuthContext


def _load_static_tokens() -> Dict[str, Dict[str, Any]]:
    """
    Parse AUTH_TOKENS_JSON env var (plain or base64 JSON):
      {"tokenA":{"subject":"ci","scopes":["apps:read","apps:write"],"project_ids":[1]}}
    Returns a dict[token] -> identity payload
    """
    raw = (os.getenv("AUTH_TOKENS_JSON", "") or "").strip()
    if not raw:
        return {}
    if not raw.startswith("{"):
        try:
            raw = base64.b64decode(raw, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("AUTH_TOKENS_JSON is neither JSON nor base64 JSON")
            return {}
    try:
        data = json.loads(raw)
    except ValueError:
        logger.warning("AUTH_TOKENS_JSON is not valid JSON")
        return {}
    if not isinstance(data, dict):
        return {}
    return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, dict)}


def _ensure_scope_set(scopes_val: Any) -> Set[str]:
    if isinstance(scopes_val, (list, set, tuple)):
        return {str(s) for s in scopes_val}
    if isinstance(scopes_val, str):
        # allow comma-separated string
        return {s.strip() for s in scopes_val.split(",") if s.strip()}
    return set()


def _ensure_project_ids(val: Any) -> Optional[Set[int]]:
    if val is None:
        return None
    if isinstance(val, (list, set, tuple)):
        return {int(v) for v in val}
    return {int(val)}


def _missing_scopes(required: Iterable[str], granted: Set[str]) -> Set[str]:
    return {s for s in required if s not in granted}


def _bearer_token(request: Request) -> str:
    authz = request.headers.get("authorization")
    if not authz:
        raise ErrUnauthorized(ValueError("missing Authorization header"))
    parts = authz.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise ErrUnauthorized(ValueError("invalid Authorization scheme"))
    return parts[1]


def _resolve_token(token: str, repo: Repository) -> AuthContext:
    identity = _load_static_tokens().get(token)
    if identity is not None:
        try:
            project_ids = _ensure_project_ids(identity.get("project_ids"))
        except (TypeError, ValueError):
            raise ErrForbidden(ValueError("invalid token (bad project_ids)"))
        return AuthContext(
            subject=str(identity.get("subject") or "user"),
            scopes=_ensure_scope_set(identity.get("scopes")),
            project_ids=project_ids,
        )

    try:
        api_token = repo.read_api_token_by_hash(hash_token(token))
    except RepositoryError as e:
        raise ErrInternal(e)
    if api_token is None or api_token.revoked:
        raise ErrForbidden(ValueError("invalid token"))
    return AuthContext(
        subject=f"api-token:{api_token.id}",
        scopes=set(API_TOKEN_SCOPES),
        project_ids={api_token.project_id},
    )


def rbac_dependency(required_scopes: Iterable[str]) -> Callable[..., Any]:
    """
    Returns a FastAPI dependency that:
      - Allows anonymous with every scope when AUTH_MODE=none (default)
      - Resolves the bearer token when AUTH_MODE=static (static map, then project API tokens)
      - Validates required_scopes
    On failure:
      - 401 if the header is missing or not a bearer token
      - 403 if the token is unknown or lacks a scope
    """
    req_scopes = [str(s) for s in required_scopes]

    async def _dep(request: Request, repo: Repository = Depends(get_repository)) -> AuthContext:
        mode = (os.getenv("AUTH_MODE", "none") or "none").strip().lower()

        if mode != "static":
            ctx = AuthContext(subject="anonymous", scopes=set(ALL_SCOPES))
            request.state.auth_ctx = ctx
            return ctx

        ctx = _resolve_token(_bearer_token(request), repo)
        missing = _missing_scopes(req_scopes, ctx.scopes)
        if missing:
            raise ErrForbidden(ValueError(f"missing_scope: {sorted(missing)}"))
        request.state.auth_ctx = ctx
        return ctx

    return _dep


def project_scope_dependency(required_scopes: List[str]) -> Callable[..., Any]:
    """
    Dependency for /api/projects/{project_id}/clusters/{cluster_id}/... routes: authenticates,
    then loads the project and cluster and checks the caller may access them.
    """

    async def _dep(
        project_id: int,
        cluster_id: int,
        auth: AuthContext = Depends(rbac_dependency(required_scopes)),
        repo: Repository = Depends(get_repository),
    ) -> ProjectScope:
        try:
            project = repo.read_project(project_id)
            cluster = repo.read_cluster(project_id, cluster_id) if project is not None else None
        except RepositoryError as e:
            raise ErrInternal(e)
        if project is None:
            raise ErrPassThroughToClient(ValueError("project not found"), 404)
        if cluster is None:
            raise ErrPassThroughToClient(ValueError("cluster not found"), 404)
        if not auth.can_access_project(project.id):
            raise ErrForbidden(ValueError(f"token cannot access project {project.id}"))
        return ProjectScope(project=project, cluster=cluster, auth=auth)

    return _dep


__all__ = [
    "AuthContext",
    "ProjectScope",
    "rbac_dependency",
    "project_scope_dependency",
    "APPS_READ",
    "APPS_WRITE",
    "ADDONS_READ",
    "CI_WRITE",
    "SCOPES",
]
