from __future__ import annotations

import base64
import json
from pathlib import Path

import pytest

from libs.app_spec.parser import (
    AppSpecError,
    decode_app_proto,
    encode_app_proto,
    parse_b64_v2,
    parse_v2,
)
from libs.app_spec.validator import is_valid, validate_app_proto, validate_build_settings

TESTDATA = Path(__file__).parent / "testdata"


def _sample() -> str:
    return (TESTDATA / "v2_app.yaml").read_text(encoding="utf-8")


def test_parse_sample_app() -> None:
    parsed = parse_v2(_sample())
    app = parsed.app
    assert app["name"] == "shop"
    # unquoted version-like tags are read as strings
    assert app["image"] == {"repository": "ghcr.io/acme/shop", "tag": "2024.05.1"}
    assert app["envGroups"] == [{"name": "shared-secrets"}]

    web, worker, job = app["serviceList"]
    assert web["type"] == "SERVICE_TYPE_WEB"
    assert web["port"] == 8000
    assert web["webConfig"]["autoscaling"]["maxInstances"] == 4
    assert web["webConfig"]["domains"] == [{"name": "shop.example.com"}]
    assert web["webConfig"]["healthCheck"] == {"enabled": True, "httpPath": "/healthz"}

    assert worker["type"] == "SERVICE_TYPE_WORKER"
    assert worker["instancesOptional"] == 2
    assert worker["workerConfig"] == {}

    assert job["type"] == "SERVICE_TYPE_JOB"
    assert job["jobConfig"] == {
        "cron": "0 3 * * *",
        "suspendCron": False,
        "timeoutSeconds": 600,
        "allowConcurrentOptional": False,
    }

    assert app["predeploy"] == {
        "name": "pre-deploy",
        "type": "SERVICE_TYPE_JOB",
        "runOptional": "python -m migrate",
        "jobConfig": {},
        "ramMegabytes": 256,
    }
    assert parsed.env_variables == {"LOG_LEVEL": "info", "WORKERS": "4", "FEATURE_X": "true"}
    assert parsed.env_secrets == {}


def test_app_name_from_request_when_file_has_none() -> None:
    text = "version: v2\nservices:\n  - name: api\n    type: worker\n    run: ./api\n"
    parsed = parse_v2(text, app_name="billing")
    assert parsed.app["name"] == "billing"
    assert parsed.app["serviceList"][0]["runOptional"] == "./api"
    assert "image" not in parsed.app

    with pytest.raises(AppSpecError) as ei:
        parse_v2(text)
    assert ei.value.path == "name"


def test_image_tag_defaults_to_latest() -> None:
    text = "version: v2\nname: a\nimage:\n  repository: nginx\nservices: []\n"
    assert parse_v2(text).app["image"] == {"repository": "nginx", "tag": "latest"}


@pytest.mark.parametrize(
    "text, fragment",
    [
        ("", "app file is empty"),
        ("version: v2\nname: a\nservices: [\n", "invalid yaml"),
        ("version: v1\nname: a\nservices: []\n", "version"),
        ("version: v2\nname: a\nservices:\n  - name: w\n    type: web\n", "web services must set a port"),
        (
            "version: v2\nname: a\nservices:\n  - {name: w, type: worker}\n  - {name: w, type: worker}\n",
            "duplicate service name",
        ),
        ("version: v2\nname: a\nservices:\n  - {name: j, type: job, cron: '* * *'}\n", "five fields"),
        (
            "version: v2\nname: a\nservices:\n  - {name: j, type: job, domains: [{name: x.com}]}\n",
            "job services do not support domains",
        ),
        ("version: v2\nname: a\nservices:\n  - {name: w, type: worker, cron: '* * * * *'}\n", "job settings"),
        (
            "version: v2\nname: a\nservices:\n  - {name: w, type: worker, domains: [{name: x.com}]}\n",
            "worker services do not support domains",
        ),
        ("version: v2\nname: a\nservices:\n  - {name: Bad_Name, type: worker}\n", "services[0].name"),
        ("version: v2\nname: a\nservices: []\nextra: 1\n", "extra"),
    ],
)
def test_invalid_app_files(text, fragment) -> None:
    with pytest.raises(AppSpecError) as ei:
        parse_v2(text)
    assert fragment in str(ei.value), f"{fragment!r} not in {str(ei.value)!r}"


def test_parse_b64() -> None:
    b64 = base64.b64encode(_sample().encode("utf-8")).decode("ascii")
    assert parse_b64_v2(b64, "shop").app["name"] == "shop"
    with pytest.raises(AppSpecError):
        parse_b64_v2(b64, "other")
    with pytest.raises(AppSpecError):
        parse_b64_v2("not base64!")


def test_encode_decode_app_proto() -> None:
    app = parse_v2(_sample()).app
    encoded = encode_app_proto(app)
    assert json.loads(base64.b64decode(encoded)) == app
    assert decode_app_proto(encoded) == app
    with pytest.raises(AppSpecError):
        decode_app_proto(base64.b64encode(b"[1, 2]").decode("ascii"))
    with pytest.raises(AppSpecError):
        decode_app_proto(base64.b64encode(b"{nope").decode("ascii"))


def test_validate_app_proto_rules() -> None:
    validate_app_proto({"name": "a", "serviceList": [{"name": "w", "type": "SERVICE_TYPE_WORKER", "workerConfig": {}}]})
    bad = [
        {"serviceList": []},
        {"name": "a", "serviceList": {"w": {}}},
        {"name": "a", "serviceList": [{"name": "w", "type": "SERVICE_TYPE_CRON"}]},
        {"name": "a", "serviceList": [{"name": "w", "type": "SERVICE_TYPE_WEB", "jobConfig": {}}]},
        {"name": "a", "serviceList": [{"type": "SERVICE_TYPE_WEB"}]},
        {"name": "a", "env": {"PORT": 8080}},
    ]
    for app in bad:
        with pytest.raises(AppSpecError):
            validate_app_proto(app)


@pytest.mark.parametrize(
    "build, fragment",
    [
        ({}, "non-empty object"),
        ([], "non-empty object"),
        ({"context": "./"}, "build method"),
        ({"method": "docker", "dockerfile": 3}, "dockerfile must be a string"),
        ({"method": "pack", "buildpacks": "heroku/nodejs"}, "buildpacks must be a list"),
        ({"method": "pack", "cache": True}, "unknown build setting"),
    ],
)
def test_build_settings_rules(build, fragment) -> None:
    validate_build_settings({"method": "docker", "context": ".", "dockerfile": "./Dockerfile"})
    with pytest.raises(AppSpecError) as ei:
        validate_build_settings(build)
    assert fragment in str(ei.value)


def test_is_valid() -> None:
    ok, err = is_valid({"version": "v2", "services": []})
    assert ok and err is None
    ok, err = is_valid({"version": "v2"})
    assert not ok and "services" in err
