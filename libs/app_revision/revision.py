"""
App revision encoding.

Turns the protobuf-JSON AppRevision message returned by the cluster control plane
into the shape the dashboard consumes:

    {
      "b64_app_proto": "<base64 of the compact JSON app message>",
      "status": "DEPLOYED",
      "app_revision_id": "...",
      "revision_number": 3,
      "created_at": "2024-01-01T00:00:00Z",
      "updated_at": "2024-01-01T00:00:00Z",
      "deployment_target": {"id": "...", "name": "default"},
      "app_instance_id": "..."
    }
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

STATUS_PREFIX = "APP_REVISION_STATUS_"
STATUS_UNKNOWN = "UNKNOWN"

KNOWN_STATUSES = frozenset(
    {
        "CREATED",
        "AWAITING_BUILD_ARTIFACT",
        "AWAITING_PREDEPLOY",
        "READY_TO_APPLY",
        "DEPLOYED",
        "BUILD_CANCELED",
        "BUILD_FAILED",
        "PREDEPLOY_FAILED",
        "DEPLOY_FAILED",
        "ROLLBACK_SUCCESSFUL",
        "ROLLBACK_FAILED",
    }
)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


class RevisionEncodingError(ValueError):
    pass


class DeploymentTargetRef(BaseModel):
    id: str = ""
    name: str = ""


class Revision(BaseModel):
    b64_app_proto: str
    status: str
    id: str = Field(serialization_alias="app_revision_id")
    revision_number: int = 0
    created_at: datetime = _EPOCH
    updated_at: datetime = _EPOCH
    deployment_target: DeploymentTargetRef = Field(default_factory=DeploymentTargetRef)
    app_instance_id: str = ""

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def encode_app(app: Dict[str, Any]) -> str:
    raw = json.dumps(app, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def normalize_status(raw: Any) -> str:
    s = str(raw or "").strip().upper()
    if s.startswith(STATUS_PREFIX):
        s = s[len(STATUS_PREFIX):]
    if s in ("", "UNSPECIFIED", STATUS_UNKNOWN):
        return STATUS_UNKNOWN
    if s not in KNOWN_STATUSES:
        raise RevisionEncodingError(f"unknown app revision status {raw!r}")
    return s


def parse_timestamp(raw: Any) -> datetime:
    """RFC 3339 protobuf Timestamp; missing values map to the epoch."""
    if raw is None or raw == "":
        return _EPOCH
    if isinstance(raw, datetime):
        return raw
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # protobuf emits up to nanosecond precision; datetime takes microseconds
    if "." in s:
        head, _, tail = s.partition(".")
        frac = ""
        rest = ""
        for i, ch in enumerate(tail):
            if not ch.isdigit():
                rest = tail[i:]
                break
            frac += ch
        s = f"{head}.{frac[:6].ljust(6, '0')}{rest}"
    try:
        ts = datetime.fromisoformat(s)
    except ValueError as e:
        raise RevisionEncodingError(f"invalid timestamp {raw!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def encoded_revision_from_proto(app_revision: Optional[Dict[str, Any]]) -> Revision:
    if app_revision is None:
        raise RevisionEncodingError("current app revision definition is nil")
    if not isinstance(app_revision, dict):
        raise RevisionEncodingError("app revision is not an object")
    app = app_revision.get("app")
    if not isinstance(app, dict):
        raise RevisionEncodingError("app proto is nil")
    rev_id = str(app_revision.get("id") or "")
    if not rev_id:
        raise RevisionEncodingError("app revision id is empty")

    dt = app_revision.get("deploymentTarget") or {}
    if not isinstance(dt, dict):
        raise RevisionEncodingError("deployment target is malformed")
    try:
        revision_number = int(app_revision.get("revisionNumber") or 0)
    except (TypeError, ValueError) as e:
        raise RevisionEncodingError(f"invalid revision number {app_revision.get('revisionNumber')!r}") from e

    return Revision(
        b64_app_proto=encode_app(app),
        status=normalize_status(app_revision.get("status")),
        id=rev_id,
        revision_number=revision_number,
        created_at=parse_timestamp(app_revision.get("createdAt")),
        updated_at=parse_timestamp(app_revision.get("updatedAt")),
        deployment_target=DeploymentTargetRef(
            id=str(dt.get("id") or app_revision.get("deploymentTargetId") or ""),
            name=str(dt.get("name") or ""),
        ),
        app_instance_id=str(app_revision.get("appInstanceId") or ""),
    )


__all__ = [
    "Revision",
    "DeploymentTargetRef",
    "RevisionEncodingError",
    "encoded_revision_from_proto",
    "encode_app",
    "normalize_status",
    "parse_timestamp",
    "KNOWN_STATUSES",
]
