"""
Parses v2 app files (porter.yaml) into the app message forwarded to the cluster control plane.

The message uses protobuf-JSON field names so it can be base64 encoded and sent as
`b64AppProto` without further translation.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from libs.app_revision.revision import encode_app
from libs.app_spec.validator import (
    SERVICE_TYPE_JOB,
    SERVICE_TYPE_WEB,
    SERVICE_TYPE_WORKER,
    AppSpecError,
    validate_app_proto,
    validate_app_yaml,
)

PREDEPLOY_SERVICE_NAME = "pre-deploy"

_SERVICE_TYPES = {"web": SERVICE_TYPE_WEB, "worker": SERVICE_TYPE_WORKER, "job": SERVICE_TYPE_JOB}


@dataclass
class ParsedApp:
    app: Dict[str, Any]
    env_variables: Dict[str, str] = field(default_factory=dict)
    env_secrets: Dict[str, str] = field(default_factory=dict)


def _env_value(val: Any) -> str:
    if isinstance(val, bool):
        return "true" if val else "false"
    return str(val)


def _copy(src: Dict[str, Any], keys) -> Dict[str, Any]:
    return {k: src[k] for k in keys if k in src}


def _autoscaling(svc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    a = svc.get("autoscaling")
    if not a:
        return None
    return _copy(a, ("enabled", "minInstances", "maxInstances", "cpuThresholdPercent", "memoryThresholdPercent"))


def _service(svc: Dict[str, Any]) -> Dict[str, Any]:
    kind = _SERVICE_TYPES[svc["type"]]
    out: Dict[str, Any] = {"name": svc["name"], "type": kind}
    if "run" in svc:
        out["runOptional"] = svc["run"]
    if "instances" in svc:
        out["instancesOptional"] = int(svc["instances"])
    out.update(_copy(svc, ("port", "cpuCores", "ramMegabytes")))

    if kind == SERVICE_TYPE_WEB:
        web: Dict[str, Any] = {}
        if _autoscaling(svc) is not None:
            web["autoscaling"] = _autoscaling(svc)
        if svc.get("domains"):
            web["domains"] = [{"name": d["name"]} for d in svc["domains"]]
        if svc.get("healthCheck"):
            web["healthCheck"] = _copy(svc["healthCheck"], ("enabled", "httpPath"))
        if "private" in svc:
            web["private"] = bool(svc["private"])
        out["webConfig"] = web
    elif kind == SERVICE_TYPE_WORKER:
        worker: Dict[str, Any] = {}
        if _autoscaling(svc) is not None:
            worker["autoscaling"] = _autoscaling(svc)
        out["workerConfig"] = worker
    else:
        job: Dict[str, Any] = _copy(svc, ("cron", "suspendCron", "timeoutSeconds"))
        if "allowConcurrent" in svc:
            job["allowConcurrentOptional"] = bool(svc["allowConcurrent"])
        out["jobConfig"] = job
    return out


def _predeploy(pre: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "name": PREDEPLOY_SERVICE_NAME,
        "type": SERVICE_TYPE_JOB,
        "runOptional": pre["run"],
        "jobConfig": {},
    }
    out.update(_copy(pre, ("cpuCores", "ramMegabytes")))
    return out


def app_from_yaml(obj: Dict[str, Any], app_name: Optional[str] = None) -> Dict[str, Any]:
    name = obj.get("name") or ""
    if app_name and name and name != app_name:
        raise AppSpecError(f"app name {name!r} does not match {app_name!r}", "name")
    name = name or app_name or ""
    if not name:
        raise AppSpecError("app name is required", "name")

    app: Dict[str, Any] = {"name": name}
    if obj.get("image"):
        img = obj["image"]
        app["image"] = {"repository": img["repository"], "tag": str(img.get("tag") or "latest")}
    if obj.get("build"):
        app["build"] = _copy(obj["build"], ("context", "method", "builder", "buildpacks", "dockerfile"))
    app["serviceList"] = [_service(s) for s in obj.get("services") or []]
    if obj.get("predeploy"):
        app["predeploy"] = _predeploy(obj["predeploy"])
    if obj.get("envGroups"):
        app["envGroups"] = [{"name": g} for g in obj["envGroups"]]
    return app


def parse_v2(text: str, app_name: Optional[str] = None) -> ParsedApp:
    """
    Parse and validate a v2 app file. Raises AppSpecError on any problem.
    """
    try:
        obj = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise AppSpecError(f"invalid yaml: {e}") from e
    if obj is None:
        raise AppSpecError("app file is empty")
    validate_app_yaml(obj)

    app = app_from_yaml(obj, app_name)
    validate_app_proto(app)
    env = {str(k): _env_value(v) for k, v in (obj.get("env") or {}).items()}
    return ParsedApp(app=app, env_variables=env)


def parse_b64_v2(b64_yaml: str, app_name: Optional[str] = None) -> ParsedApp:
    try:
        text = base64.b64decode(b64_yaml, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise AppSpecError(f"unable to decode base64 app file: {e}") from e
    return parse_v2(text, app_name)


def encode_app_proto(app: Dict[str, Any]) -> str:
    return encode_app(app)


def decode_app_proto(b64: str) -> Dict[str, Any]:
    try:
        raw = base64.b64decode(b64, validate=True)
        app = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise AppSpecError(f"unable to decode app proto: {e}") from e
    if not isinstance(app, dict):
        raise AppSpecError("app proto must be an object")
    return app


__all__ = [
    "ParsedApp",
    "parse_v2",
    "parse_b64_v2",
    "app_from_yaml",
    "encode_app_proto",
    "decode_app_proto",
    "AppSpecError",
]
