from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from control_plane.config import Config
from control_plane.repository import (
    MemoryRepository,
    PorterApp,
    PorterAppEvent,
    RepositoryError,
    get_repository_from_env,
    hash_token,
)

SEED = {
    "projects": [{"id": 1, "name": "acme"}, {"id": 2, "name": "legacy", "validate_apply_v2": False}],
    "clusters": [{"id": 10, "project_id": 1, "name": "prod", "kube_context": "prod-ctx"}],
    "porter_apps": [
        {"id": 100, "project_id": 1, "cluster_id": 10, "name": "web", "repo_name": "acme/web",
         "created_at": "2024-01-01T00:00:00Z"},
    ],
    "porter_app_events": [
        {"porter_app_id": 100, "type": "NOTIFICATION", "app_instance_id": "inst",
         "metadata": {"app_revision_id": "rev-1", "scope": "SERVICE"}, "created_at": "2024-01-02T00:00:00Z"},
        {"porter_app_id": 100, "type": "BUILD", "app_instance_id": "inst",
         "metadata": {"app_revision_id": "rev-1"}},
    ],
}


def _seeded(tmp_path) -> MemoryRepository:
    path = tmp_path / "seed.json"
    path.write_text(json.dumps(SEED), encoding="utf-8")
    repo = MemoryRepository()
    repo.load_seed(str(path))
    return repo


def test_load_seed(tmp_path) -> None:
    repo = _seeded(tmp_path)
    assert repo.read_project(1).name == "acme"
    assert repo.read_project(2).validate_apply_v2 is False
    assert repo.read_cluster(1, 10).kube_context == "prod-ctx"
    assert repo.read_cluster(2, 10) is None, "cluster must belong to the project"
    app = repo.read_porter_app_by_name(10, "web")
    assert app.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert app.to_api()["created_at"] == "2024-01-01T00:00:00Z"
    assert len(repo.events) == 2


def test_load_seed_errors(tmp_path) -> None:
    repo = MemoryRepository()
    with pytest.raises(RepositoryError):
        repo.load_seed(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(RepositoryError):
        repo.load_seed(str(bad))


def test_apps_by_project_and_name() -> None:
    repo = MemoryRepository()
    repo.add_porter_app(PorterApp(id=1, project_id=1, cluster_id=1, name="web"))
    repo.add_porter_app(PorterApp(id=2, project_id=1, cluster_id=2, name="web"))
    repo.add_porter_app(PorterApp(id=3, project_id=2, cluster_id=3, name="web"))
    assert sorted(a.id for a in repo.read_porter_apps_by_project_id_and_name(1, "web")) == [1, 2]
    assert repo.read_porter_apps_by_project_id_and_name(1, "api") == []
    assert repo.read_porter_app_by_name(3, "web").id == 3
    assert repo.read_porter_app_by_name(3, "api") is None


def test_update_porter_app() -> None:
    repo = MemoryRepository()
    app = repo.add_porter_app(PorterApp(id=1, project_id=1, cluster_id=1, name="web"))
    before = app.updated_at
    app.pull_request_url = "https://github.com/acme/web/pull/2"
    repo.update_porter_app(app)
    assert repo.porter_apps[1].pull_request_url == "https://github.com/acme/web/pull/2"
    assert repo.porter_apps[1].updated_at >= before
    with pytest.raises(RepositoryError):
        repo.update_porter_app(PorterApp(id=99, project_id=1, cluster_id=1, name="ghost"))


def test_notifications_filtered_and_newest_first() -> None:
    repo = MemoryRepository()
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def add(eid, minutes, type_="NOTIFICATION", instance="inst", rev="rev-1"):
        repo.add_event(
            PorterAppEvent(
                id=eid,
                porter_app_id=1,
                type=type_,
                app_instance_id=instance,
                metadata={"app_revision_id": rev},
                created_at=t0 + timedelta(minutes=minutes),
            )
        )

    add("old", 1)
    add("new", 5)
    add("build", 6, type_="BUILD")
    add("other-instance", 7, instance="inst-2")
    add("other-revision", 8, rev="rev-2")

    ids = [e.id for e in repo.read_notifications_by_app_revision_id("inst", "rev-1")]
    assert ids == ["new", "old"]


def test_api_tokens_are_hashed() -> None:
    repo = MemoryRepository()
    tok, raw = repo.create_api_token(7, "ci")
    assert tok.token_hash == hash_token(raw)
    assert raw not in repo.api_tokens
    assert repo.read_api_token_by_hash(hash_token(raw)).project_id == 7
    assert repo.read_api_token_by_hash(hash_token("other")) is None


def test_revoke_api_token() -> None:
    repo = MemoryRepository()
    tok, raw = repo.create_api_token(7, "ci")
    other, _ = repo.create_api_token(7, "ci-2")
    repo.revoke_api_token(tok.id)
    assert repo.read_api_token_by_hash(hash_token(raw)).revoked is True
    assert other.revoked is False


def test_repository_factory(tmp_path) -> None:
    cfg = Config()
    cfg.REPOSITORY_BACKEND = "memory"
    cfg.REPOSITORY_SEED_PATH = None
    assert isinstance(get_repository_from_env(cfg), MemoryRepository)

    path = tmp_path / "seed.json"
    path.write_text(json.dumps(SEED), encoding="utf-8")
    cfg.REPOSITORY_SEED_PATH = str(path)
    assert get_repository_from_env(cfg).read_project(1) is not None

    cfg.REPOSITORY_BACKEND = "postgres"
    cfg.DATABASE_URL = None
    with pytest.raises(RepositoryError):
        get_repository_from_env(cfg)
