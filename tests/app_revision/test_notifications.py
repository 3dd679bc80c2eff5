from __future__ import annotations

from datetime import datetime, timezone

import pytest

from control_plane.repository import PorterAppEvent
from libs.app_revision.notifications import (
    NotificationConversionError,
    notification_from_app_event,
)

CREATED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _event(metadata, type_: str = "NOTIFICATION") -> PorterAppEvent:
    return PorterAppEvent(id="evt-1", porter_app_id=1, type=type_, metadata=metadata, created_at=CREATED)


def test_full_notification() -> None:
    n = notification_from_app_event(
        _event(
            {
                "scope": "SERVICE",
                "app_revision_id": "rev-1",
                "service_name": "worker",
                "agent_event_id": 7,
                "agent_summary": "worker crashed",
                "agent_detail": "exit code 1",
                "error": {"code": 1, "message": "crash loop"},
                "deployment": {"status": "FAILURE"},
                "timestamp": "2024-03-01T12:05:00Z",
            }
        )
    )
    assert n is not None
    assert n.id == "evt-1"
    assert n.scope == "SERVICE"
    assert n.error.message == "crash loop"
    assert n.deployment.status == "FAILURE"
    assert n.timestamp == datetime(2024, 3, 1, 12, 5, tzinfo=timezone.utc)


def test_timestamp_defaults_to_event_creation() -> None:
    n = notification_from_app_event(_event({"scope": "REVISION", "app_revision_id": "rev-1"}))
    assert n.timestamp == CREATED
    assert n.error.code == 0
    assert n.deployment.status == ""


def test_empty_metadata_is_none() -> None:
    assert notification_from_app_event(_event({})) is None


def test_rejects_non_notifications_and_bad_metadata() -> None:
    with pytest.raises(NotificationConversionError):
        notification_from_app_event(None)
    with pytest.raises(NotificationConversionError):
        notification_from_app_event(_event({"scope": "SERVICE"}, type_="BUILD"))
    with pytest.raises(NotificationConversionError):
        notification_from_app_event(_event(["not", "a", "dict"]))
    with pytest.raises(NotificationConversionError):
        notification_from_app_event(_event({"scope": "SERVICE", "agent_event_id": "seven"}))
