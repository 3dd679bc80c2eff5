from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from control_plane.ccp_client import SERVICE_PATH, ClusterControlPlaneClient, ConnectError, as_int


def _client(handler, token=None) -> ClusterControlPlaneClient:
    return ClusterControlPlaneClient("http://ccp.test/", token=token, transport=httpx.MockTransport(handler))


def _run(coro):
    return asyncio.run(coro)


def test_call_posts_connect_json() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = dict(request.headers)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"appRevisions": []})

    client = _client(handler, token="ccp-token")
    out = _run(client.latest_app_revisions(3, "dt-1"))
    assert out == {"appRevisions": []}
    assert seen["path"] == f"/{SERVICE_PATH}/LatestAppRevisions"
    assert seen["headers"]["connect-protocol-version"] == "1"
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["headers"]["authorization"] == "Bearer ccp-token"
    assert seen["body"] == {"projectId": 3, "deploymentTargetId": "dt-1"}


def test_no_authorization_without_token() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={})

    _run(_client(handler).default_deployment_target(1, 2))
    assert seen["auth"] is None


def test_empty_body_is_none() -> None:
    client = _client(lambda request: httpx.Response(200, content=b""))
    assert _run(client.current_app_revision(1, 2, "dt")) is None
    client = _client(lambda request: httpx.Response(200, content=b"null"))
    assert _run(client.current_app_revision(1, 2, "dt")) is None


def test_error_body_is_connect_error() -> None:
    client = _client(lambda request: httpx.Response(404, json={"code": "not_found", "message": "no such target"}))
    with pytest.raises(ConnectError) as ei:
        _run(client.deployment_target_details(1, "dt"))
    assert ei.value.code == "not_found"
    assert str(ei.value) == "not_found: no such target"


def test_unreadable_error_maps_http_status() -> None:
    client = _client(lambda request: httpx.Response(503, content=b"upstream down"))
    with pytest.raises(ConnectError) as ei:
        _run(client.apply_app(1, "dt", "rev"))
    assert ei.value.code == "unavailable"
    assert ei.value.message == "upstream down"


def test_timeout_and_transport_errors() -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ConnectError) as ei:
        _run(_client(timeout).latest_app_revisions(1, "dt"))
    assert ei.value.code == "deadline_exceeded"

    with pytest.raises(ConnectError) as ei:
        _run(_client(refused).latest_app_revisions(1, "dt"))
    assert ei.value.code == "unavailable"


def test_non_object_response_is_internal() -> None:
    client = _client(lambda request: httpx.Response(200, json=[1, 2]))
    with pytest.raises(ConnectError) as ei:
        _run(client.latest_app_revisions(1, "dt"))
    assert ei.value.code == "internal"


def test_update_app_message_shape() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"appRevisionId": "rev"})

    client = _client(handler)
    _run(client.update_app(1, "dt", app_revision_id="rev"))
    assert seen["body"] == {
        "projectId": 1,
        "deploymentTargetIdentifier": {"id": "dt"},
        "isForceBuild": False,
        "appRevisionId": "rev",
    }


def test_env_and_build_settings_messages() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path.rsplit("/", 1)[-1], json.loads(request.content)))
        return httpx.Response(200, json={})

    client = _client(handler)
    _run(client.update_app(1, "dt", app_revision_id="rev", secrets={"KEY": "v"}, is_env_override=True))
    _run(client.apply_app(1, "dt", "rev", variables={"PORT": "80"}, hard_env_update=True))
    _run(client.update_app_build_settings(1, "dt", "web", {"method": "docker"}))

    method, body = seen[0]
    assert method == "UpdateApp"
    assert body["appEnv"] == {"variables": {}, "secrets": {"KEY": "v"}}
    assert body["isEnvOverride"] is True
    assert seen[1] == (
        "ApplyApp",
        {
            "projectId": 1,
            "deploymentTargetId": "dt",
            "appRevisionId": "rev",
            "forceBuild": False,
            "variables": {"PORT": "80"},
            "hardEnvUpdate": True,
        },
    )
    assert seen[2] == (
        "UpdateAppBuildSettings",
        {"projectId": 1, "deploymentTargetId": "dt", "appName": "web", "buildSettings": {"method": "docker"}},
    )


def test_as_int() -> None:
    assert as_int("42") == 42
    assert as_int(7) == 7
    assert as_int(None) == 0
    assert as_int("", default=-1) == -1
    assert as_int("nope", default=3) == 3
