from __future__ import annotations

# Notifications are stored as NOTIFICATION app events whose metadata holds the payload
# reported by the in-cluster agent.

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from libs.app_revision.revision import parse_timestamp

EVENT_TYPE_NOTIFICATION = "NOTIFICATION"

SCOPE_APPLICATION = "APPLICATION"
SCOPE_REVISION = "REVISION"
SCOPE_SERVICE = "SERVICE"


class NotificationConversionError(ValueError):
    pass


class NotificationError(BaseModel):
    code: int = 0
    message: str = ""


class NotificationDeployment(BaseModel):
    status: str = ""


class Notification(BaseModel):
    id: str = ""
    scope: str = ""
    app_revision_id: str = ""
    service_name: str = ""
    agent_event_id: int = 0
    agent_summary: str = ""
    agent_detail: str = ""
    error: NotificationError = Field(default_factory=NotificationError)
    deployment: NotificationDeployment = Field(default_factory=NotificationDeployment)
    timestamp: Optional[datetime] = None


def notification_from_app_event(event: Any) -> Optional[Notification]:
    """
    Convert a repository PorterAppEvent into a Notification.

    Returns None when the event carries no metadata; raises NotificationConversionError
    when the event is not a notification or its metadata is malformed.
    """
    if event is None:
        raise NotificationConversionError("event is nil")
    if getattr(event, "type", None) != EVENT_TYPE_NOTIFICATION:
        raise NotificationConversionError(f"event {getattr(event, 'id', '')} is not a notification")
    metadata = getattr(event, "metadata", None)
    if not metadata:
        return None
    if not isinstance(metadata, dict):
        raise NotificationConversionError("notification metadata is not an object")

    payload = dict(metadata)
    payload["id"] = str(getattr(event, "id", "") or payload.get("id") or "")
    ts = payload.get("timestamp")
    try:
        payload["timestamp"] = parse_timestamp(ts) if ts else getattr(event, "created_at", None)
        return Notification.model_validate(payload)
    except (ValidationError, ValueError) as e:
        raise NotificationConversionError(f"unable to read notification metadata: {e}") from e


__all__ = [
    "Notification",
    "NotificationConversionError",
    "notification_from_app_event",
    "SCOPE_APPLICATION",
    "SCOPE_REVISION",
    "SCOPE_SERVICE",
]
