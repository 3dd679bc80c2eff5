"""
Repository layer: projects, clusters, app records, app events and project API tokens.

Two backends share the `Repository` interface:
- MemoryRepository: thread-safe dicts, optionally seeded from a JSON file (local/dev and tests)
- PostgresRepository: psycopg v3, lazy autocommit connection with liveness checks

Seed file format (MemoryRepository):
{
  "projects": [{"id": 1, "name": "p"}],
  "clusters": [{"id": 1, "project_id": 1, "name": "c", "kube_context": "kind-c"}],
  "porter_apps": [{"id": 1, "project_id": 1, "cluster_id": 1, "name": "web"}],
  "porter_app_events": [{"id": "...", "porter_app_id": 1, "type": "NOTIFICATION", "metadata": {...}}]
}
"""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from control_plane.config import CONFIG, Config

logger = logging.getLogger(__name__)

EVENT_TYPE_NOTIFICATION = "NOTIFICATION"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat().replace("+00:00", "Z") if ts is not None else None


def _parse_ts(val: Any) -> Optional[datetime]:
    if val is None or isinstance(val, datetime):
        return val
    s = str(val).strip()
    if not s:
        return None
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


class RepositoryError(Exception):
    pass


@dataclass
class Project:
    id: int
    name: str
    validate_apply_v2: bool = True


@dataclass
class Cluster:
    id: int
    project_id: int
    name: str
    kube_context: Optional[str] = None


@dataclass
class PorterApp:
    id: int
    project_id: int
    cluster_id: int
    name: str
    repo_name: Optional[str] = None
    git_repo_id: Optional[int] = None
    git_branch: Optional[str] = None
    build_context: Optional[str] = None
    builder: Optional[str] = None
    buildpacks: Optional[str] = None
    dockerfile: Optional[str] = None
    image_repo_uri: Optional[str] = None
    porter_yaml_path: Optional[str] = None
    pull_request_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_api(self) -> Dict[str, Any]:
        out = asdict(self)
        out["created_at"] = _iso(self.created_at)
        out["updated_at"] = _iso(self.updated_at)
        return out


@dataclass
class PorterAppEvent:
    id: str
    porter_app_id: int
    type: str
    status: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deployment_target_id: Optional[str] = None
    app_instance_id: Optional[str] = None


@dataclass
class APIToken:
    id: str
    project_id: int
    name: str
    token_hash: str
    created_at: Optional[datetime] = None
    revoked: bool = False


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _from_row(cls, row: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in row.items() if k in names}
    for ts_key in ("created_at", "updated_at"):
        if ts_key in kwargs:
            kwargs[ts_key] = _parse_ts(kwargs[ts_key])
    return cls(**kwargs)


class Repository:
    def read_project(self, project_id: int) -> Optional[Project]:
        raise NotImplementedError

    def read_cluster(self, project_id: int, cluster_id: int) -> Optional[Cluster]:
        raise NotImplementedError

    def read_porter_apps_by_project_id_and_name(self, project_id: int, name: str) -> List[PorterApp]:
        raise NotImplementedError

    def read_porter_app_by_name(self, cluster_id: int, name: str) -> Optional[PorterApp]:
        raise NotImplementedError

    def update_porter_app(self, app: PorterApp) -> PorterApp:
        raise NotImplementedError

    def read_notifications_by_app_revision_id(self, app_instance_id: str, app_revision_id: str) -> List[PorterAppEvent]:
        raise NotImplementedError

    def create_api_token(self, project_id: int, name: str) -> Tuple[APIToken, str]:
        raise NotImplementedError

    def read_api_token_by_hash(self, token_hash: str) -> Optional[APIToken]:
        raise NotImplementedError

    def revoke_api_token(self, token_id: str) -> None:
        raise NotImplementedError


class MemoryRepository(Repository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.projects: Dict[int, Project] = {}
        self.clusters: Dict[int, Cluster] = {}
        self.porter_apps: Dict[int, PorterApp] = {}
        self.events: Dict[str, PorterAppEvent] = {}
        self.api_tokens: Dict[str, APIToken] = {}

    # seeding helpers (also used by tests)
    def add_project(self, project: Project) -> Project:
        with self._lock:
            self.projects[project.id] = project
        return project

    def add_cluster(self, cluster: Cluster) -> Cluster:
        with self._lock:
            self.clusters[cluster.id] = cluster
        return cluster

    def add_porter_app(self, app: PorterApp) -> PorterApp:
        now = _now()
        app.created_at = app.created_at or now
        app.updated_at = app.updated_at or now
        with self._lock:
            self.porter_apps[app.id] = app
        return app

    def add_event(self, event: PorterAppEvent) -> PorterAppEvent:
        event.created_at = event.created_at or _now()
        event.updated_at = event.updated_at or event.created_at
        with self._lock:
            self.events[event.id] = event
        return event

    def load_seed(self, path: str) -> None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise RepositoryError(f"unable to read seed file {path}: {e}") from e
        for row in data.get("projects", []):
            self.add_project(_from_row(Project, row))
        for row in data.get("clusters", []):
            self.add_cluster(_from_row(Cluster, row))
        for row in data.get("porter_apps", []):
            self.add_porter_app(_from_row(PorterApp, row))
        for row in data.get("porter_app_events", []):
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.add_event(_from_row(PorterAppEvent, row))
        logger.info(
            "seeded memory repository from %s: projects=%d clusters=%d apps=%d events=%d",
            path, len(self.projects), len(self.clusters), len(self.porter_apps), len(self.events),
        )

    def read_project(self, project_id: int) -> Optional[Project]:
        return self.projects.get(project_id)

    def read_cluster(self, project_id: int, cluster_id: int) -> Optional[Cluster]:
        c = self.clusters.get(cluster_id)
        if c is None or c.project_id != project_id:
            return None
        return c

    def read_porter_apps_by_project_id_and_name(self, project_id: int, name: str) -> List[PorterApp]:
        with self._lock:
            return [a for a in self.porter_apps.values() if a.project_id == project_id and a.name == name]

    def read_porter_app_by_name(self, cluster_id: int, name: str) -> Optional[PorterApp]:
        with self._lock:
            for a in self.porter_apps.values():
                if a.cluster_id == cluster_id and a.name == name:
                    return a
        return None

    def update_porter_app(self, app: PorterApp) -> PorterApp:
        with self._lock:
            if app.id not in self.porter_apps:
                raise RepositoryError(f"porter app {app.id} not found")
            app.updated_at = _now()
            self.porter_apps[app.id] = app
        return app

    def read_notifications_by_app_revision_id(self, app_instance_id: str, app_revision_id: str) -> List[PorterAppEvent]:
        with self._lock:
            out = [
                e for e in self.events.values()
                if e.type == EVENT_TYPE_NOTIFICATION
                and e.app_instance_id == app_instance_id
                and str((e.metadata or {}).get("app_revision_id", "")) == app_revision_id
            ]
        epoch = datetime.fromtimestamp(0, tz=timezone.utc)
        return sorted(out, key=lambda e: e.created_at or epoch, reverse=True)

    def create_api_token(self, project_id: int, name: str) -> Tuple[APIToken, str]:
        raw = secrets.token_urlsafe(32)
        tok = APIToken(id=str(uuid.uuid4()), project_id=project_id, name=name, token_hash=hash_token(raw), created_at=_now())
        with self._lock:
            self.api_tokens[tok.token_hash] = tok
        return tok, raw

    def read_api_token_by_hash(self, token_hash: str) -> Optional[APIToken]:
        return self.api_tokens.get(token_hash)

    def revoke_api_token(self, token_id: str) -> None:
        with self._lock:
            for tok in self.api_tokens.values():
                if tok.id == token_id:
                    tok.revoked = True


_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS projects (
      id BIGSERIAL PRIMARY KEY,
      name TEXT NOT NULL,
      validate_apply_v2 BOOLEAN NOT NULL DEFAULT TRUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS clusters (
      id BIGSERIAL PRIMARY KEY,
      project_id BIGINT NOT NULL REFERENCES projects(id),
      name TEXT NOT NULL,
      kube_context TEXT
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS porter_apps (
      id BIGSERIAL PRIMARY KEY,
      project_id BIGINT NOT NULL REFERENCES projects(id),
      cluster_id BIGINT NOT NULL REFERENCES clusters(id),
      name TEXT NOT NULL,
      repo_name TEXT,
      git_repo_id BIGINT,
      git_branch TEXT,
      build_context TEXT,
      builder TEXT,
      buildpacks TEXT,
      dockerfile TEXT,
      image_repo_uri TEXT,
      porter_yaml_path TEXT,
      pull_request_url TEXT,
      created_at TIMESTAMPTZ DEFAULT NOW(),
      updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS porter_apps_project_name_idx ON porter_apps(project_id, name);",
    """
    CREATE TABLE IF NOT EXISTS porter_app_events (
      id UUID PRIMARY KEY,
      porter_app_id BIGINT NOT NULL,
      type TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT '',
      metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
      deployment_target_id UUID,
      app_instance_id UUID,
      created_at TIMESTAMPTZ DEFAULT NOW(),
      updated_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS porter_app_events_instance_idx ON porter_app_events(app_instance_id, type);",
    """
    CREATE TABLE IF NOT EXISTS api_tokens (
      id UUID PRIMARY KEY,
      project_id BIGINT NOT NULL REFERENCES projects(id),
      name TEXT NOT NULL,
      token_hash TEXT NOT NULL UNIQUE,
      revoked BOOLEAN NOT NULL DEFAULT FALSE,
      created_at TIMESTAMPTZ DEFAULT NOW()
    );
    """,
]

_PORTER_APP_COLUMNS = [f.name for f in fields(PorterApp)]


class PostgresRepository(Repository):
    def __init__(self, database_url: str, connect_timeout: int = 5) -> None:
        self.database_url = database_url
        self.connect_timeout = connect_timeout
        self._conn: Optional[psycopg.Connection] = None
        self._lock = threading.Lock()

    def _connect(self) -> psycopg.Connection:
        return psycopg.connect(
            self.database_url,
            connect_timeout=self.connect_timeout,
            autocommit=True,
            row_factory=dict_row,
        )

    def get_conn(self) -> psycopg.Connection:
        """
        Lazy connection helper; autocommit with liveness checks.
        """
        try:
            if self._conn is None or self._conn.closed:
                self._conn = self._connect()
            else:
                try:
                    with self._conn.cursor() as cur:
                        cur.execute("SELECT 1;")
                except psycopg.Error:
                    logger.warning("db connection lost; reconnecting")
                    self._conn.close()
                    self._conn = self._connect()
        except psycopg.Error as e:
            self._conn = None
            raise RepositoryError(f"db connect error: {e}") from e
        return self._conn

    def _query(self, query: Any, params: Any = None) -> List[Dict[str, Any]]:
        with self._lock:
            conn = self.get_conn()
            try:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    if cur.description is None:
                        return []
                    return list(cur.fetchall())
            except psycopg.Error as e:
                raise RepositoryError(str(e)) from e

    def ensure_schema(self) -> None:
        for stmt in _SCHEMA_STATEMENTS:
            self._query(stmt)
        logger.info("ensured repository schema")

    def read_project(self, project_id: int) -> Optional[Project]:
        rows = self._query("SELECT id, name, validate_apply_v2 FROM projects WHERE id = %s", (project_id,))
        return _from_row(Project, rows[0]) if rows else None

    def read_cluster(self, project_id: int, cluster_id: int) -> Optional[Cluster]:
        rows = self._query(
            "SELECT id, project_id, name, kube_context FROM clusters WHERE id = %s AND project_id = %s",
            (cluster_id, project_id),
        )
        return _from_row(Cluster, rows[0]) if rows else None

    def _select_apps(self, where: str, params: Tuple[Any, ...]) -> List[PorterApp]:
        query = sql.SQL("SELECT {cols} FROM porter_apps WHERE " + where + " ORDER BY id").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in _PORTER_APP_COLUMNS)
        )
        return [_from_row(PorterApp, r) for r in self._query(query, params)]

    def read_porter_apps_by_project_id_and_name(self, project_id: int, name: str) -> List[PorterApp]:
        return self._select_apps("project_id = %s AND name = %s", (project_id, name))

    def read_porter_app_by_name(self, cluster_id: int, name: str) -> Optional[PorterApp]:
        apps = self._select_apps("cluster_id = %s AND name = %s", (cluster_id, name))
        return apps[0] if apps else None

    def update_porter_app(self, app: PorterApp) -> PorterApp:
        cols = [c for c in _PORTER_APP_COLUMNS if c not in ("id", "created_at", "updated_at")]
        query = sql.SQL("UPDATE porter_apps SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING {cols}").format(
            assignments=sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(c)) for c in cols
            ),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in _PORTER_APP_COLUMNS),
        )
        rows = self._query(query, tuple(getattr(app, c) for c in cols) + (app.id,))
        if not rows:
            raise RepositoryError(f"porter app {app.id} not found")
        return _from_row(PorterApp, rows[0])

    def read_notifications_by_app_revision_id(self, app_instance_id: str, app_revision_id: str) -> List[PorterAppEvent]:
        rows = self._query(
            """
            SELECT id::text AS id, porter_app_id, type, status, metadata, created_at, updated_at,
                   deployment_target_id::text AS deployment_target_id, app_instance_id::text AS app_instance_id
            FROM porter_app_events
            WHERE app_instance_id = %s AND type = %s AND metadata->>'app_revision_id' = %s
            ORDER BY created_at DESC
            """,
            (app_instance_id, EVENT_TYPE_NOTIFICATION, app_revision_id),
        )
        return [_from_row(PorterAppEvent, r) for r in rows]

    def create_api_token(self, project_id: int, name: str) -> Tuple[APIToken, str]:
        raw = secrets.token_urlsafe(32)
        rows = self._query(
            """
            INSERT INTO api_tokens (id, project_id, name, token_hash)
            VALUES (%s, %s, %s, %s)
            RETURNING id::text AS id, project_id, name, token_hash, revoked, created_at
            """,
            (str(uuid.uuid4()), project_id, name, hash_token(raw)),
        )
        return _from_row(APIToken, rows[0]), raw

    def read_api_token_by_hash(self, token_hash: str) -> Optional[APIToken]:
        rows = self._query(
            "SELECT id::text AS id, project_id, name, token_hash, revoked, created_at FROM api_tokens WHERE token_hash = %s",
            (token_hash,),
        )
        return _from_row(APIToken, rows[0]) if rows else None

    def revoke_api_token(self, token_id: str) -> None:
        self._query("UPDATE api_tokens SET revoked = TRUE WHERE id = %s", (token_id,))


def get_repository_from_env(config: Config = CONFIG) -> Repository:
    """
    Factory: REPOSITORY_BACKEND=memory|postgres (postgres requires DATABASE_URL).
    """
    backend = config.REPOSITORY_BACKEND
    if backend == "postgres":
        if not config.DATABASE_URL:
            raise RepositoryError("REPOSITORY_BACKEND=postgres requires DATABASE_URL")
        repo = PostgresRepository(config.DATABASE_URL, connect_timeout=config.DB_CONNECT_TIMEOUT)
        repo.ensure_schema()
        return repo
    mem = MemoryRepository()
    if config.REPOSITORY_SEED_PATH:
        mem.load_seed(config.REPOSITORY_SEED_PATH)
    return mem


__all__ = [
    "Project",
    "Cluster",
    "PorterApp",
    "PorterAppEvent",
    "APIToken",
    "Repository",
    "RepositoryError",
    "MemoryRepository",
    "PostgresRepository",
    "get_repository_from_env",
    "hash_token",
    "EVENT_TYPE_NOTIFICATION",
]
