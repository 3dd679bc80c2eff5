"""
App file (v2) validator

Public API:
- validate_app_yaml(obj: dict) -> None
- validate_app_proto(app: dict) -> None
- is_valid(obj: dict) -> (bool, Optional[str])

Both validators raise AppSpecError on invalid input and return None on success.

Example:
    from libs.app_spec.validator import validate_app_yaml
    validate_app_yaml({"version": "v2", "services": [{"name": "web", "type": "web", "port": 8080}]})
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

SCHEMA_PATH = Path(__file__).parent / "schema.json"

SERVICE_TYPE_WEB = "SERVICE_TYPE_WEB"
SERVICE_TYPE_WORKER = "SERVICE_TYPE_WORKER"
SERVICE_TYPE_JOB = "SERVICE_TYPE_JOB"
SERVICE_TYPES = (SERVICE_TYPE_WEB, SERVICE_TYPE_WORKER, SERVICE_TYPE_JOB)


class AppSpecError(ValueError):
    def __init__(self, message: str, path: str = "") -> None:
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


def load_schema(path: Path | None = None) -> Dict[str, Any]:
    """
    Load the app file JSON Schema (Draft 2020-12).
    """
    p = path or SCHEMA_PATH
    return json.loads(p.read_text(encoding="utf-8"))


SCHEMA: Dict[str, Any] = load_schema()
VALIDATOR = Draft202012Validator(SCHEMA)


def _path(parts) -> str:
    out = ""
    for p in parts:
        out += f"[{p}]" if isinstance(p, int) else (f".{p}" if out else str(p))
    return out


def _check_cron(expr: str, where: str) -> None:
    if len(expr.split()) != 5:
        raise AppSpecError(f"cron schedule {expr!r} must have five fields", where)


def validate_app_yaml(obj: Dict[str, Any]) -> None:
    """
    Validate a parsed v2 app file: JSON Schema first, then the cross-field rules.
    """
    if not isinstance(obj, dict):
        raise AppSpecError("app file must be a mapping")
    err = best_match(VALIDATOR.iter_errors(obj))
    if err is not None:
        raise AppSpecError(err.message, _path(err.absolute_path))

    seen = set()
    for i, svc in enumerate(obj.get("services") or []):
        where = f"services[{i}]"
        name = svc["name"]
        if name in seen:
            raise AppSpecError(f"duplicate service name {name!r}", where)
        seen.add(name)
        kind = svc["type"]
        if kind == "web" and "port" not in svc:
            raise AppSpecError("web services must set a port", where)
        if kind == "job":
            for key in ("autoscaling", "domains", "healthCheck"):
                if key in svc:
                    raise AppSpecError(f"job services do not support {key}", where)
            if svc.get("cron"):
                _check_cron(svc["cron"], where + ".cron")
        elif any(k in svc for k in ("cron", "suspendCron", "allowConcurrent", "timeoutSeconds")):
            raise AppSpecError(f"{kind} services do not support job settings", where)
        if kind == "worker" and svc.get("domains"):
            raise AppSpecError("worker services do not support domains", where)


def _check_service_proto(svc: Any, where: str) -> str:
    if not isinstance(svc, dict):
        raise AppSpecError("service must be an object", where)
    name = svc.get("name")
    if not isinstance(name, str) or not name:
        raise AppSpecError("service name is required", where)
    kind = svc.get("type")
    if kind not in SERVICE_TYPES:
        raise AppSpecError(f"unknown service type {kind!r}", where)
    config_key = {
        SERVICE_TYPE_WEB: "webConfig",
        SERVICE_TYPE_WORKER: "workerConfig",
        SERVICE_TYPE_JOB: "jobConfig",
    }[kind]
    for other in ("webConfig", "workerConfig", "jobConfig"):
        if other != config_key and svc.get(other) is not None:
            raise AppSpecError(f"{other} does not match service type {kind}", where)
    return name


def validate_app_proto(app: Any) -> None:
    """
    Structural check of a decoded app message before it is forwarded upstream.
    """
    if not isinstance(app, dict):
        raise AppSpecError("app must be an object")
    if not isinstance(app.get("name"), str) or not app["name"]:
        raise AppSpecError("app name is required", "name")
    services: List[Any] = app.get("serviceList") or []
    if not isinstance(services, list):
        raise AppSpecError("serviceList must be a list", "serviceList")
    seen = set()
    for i, svc in enumerate(services):
        name = _check_service_proto(svc, f"serviceList[{i}]")
        if name in seen:
            raise AppSpecError(f"duplicate service name {name!r}", f"serviceList[{i}]")
        seen.add(name)
    env = app.get("env")
    if env is not None and (not isinstance(env, dict) or not all(isinstance(v, str) for v in env.values())):
        raise AppSpecError("env values must be strings", "env")


def validate_build_settings(build: Any) -> None:
    """
    Check a build block sent on its own, outside an app message.
    """
    if not isinstance(build, dict) or not build:
        raise AppSpecError("build settings must be a non-empty object", "build")
    if build.get("method") not in ("pack", "docker"):
        raise AppSpecError("build method must be one of pack, docker", "build.method")
    for key, value in build.items():
        if key == "buildpacks":
            if not isinstance(value, list) or not all(isinstance(b, str) for b in value):
                raise AppSpecError("buildpacks must be a list of strings", "build.buildpacks")
        elif key in ("context", "method", "builder", "dockerfile"):
            if not isinstance(value, str):
                raise AppSpecError(f"{key} must be a string", f"build.{key}")
        else:
            raise AppSpecError(f"unknown build setting {key!r}", "build")


def is_valid(obj: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
    """
    Helper that returns (True, None) if valid else (False, error_message).
    """
    try:
        validate_app_yaml(obj)
        return True, None
    except AppSpecError as e:
        return False, str(e)


__all__ = [
    "AppSpecError",
    "validate_app_yaml",
    "validate_app_proto",
    "validate_build_settings",
    "is_valid",
    "SCHEMA",
    "SERVICE_TYPE_WEB",
    "SERVICE_TYPE_WORKER",
    "SERVICE_TYPE_JOB",
]
