from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from conftest import FakePostgrestClient, api_error

from app.services.events import (
    CertificateEventRepository,
    CertificateEventType,
    CreateCertificateEventData,
    calculate_changes,
    determine_event_type,
)
from app.services.results import CertificateError


def _event(certificate_id: str = "cert-1", **overrides: Any) -> CreateCertificateEventData:
    values: dict[str, Any] = {
        "certificate_id": certificate_id,
        "actor_user_id": "admin-1",
        "actor_role": "admin",
        "event_type": CertificateEventType.UPDATED,
        "changes": {"notes": {"before": None, "after": "call back"}},
    }
    values.update(overrides)
    return CreateCertificateEventData(**values)


def test_calculate_changes_only_reports_patched_fields() -> None:
    before = {"status": "pending", "notes": "", "cost": None, "record_number": "RN-1"}
    after = {"status": "completed", "notes": "done", "cost": 1500, "record_number": "RN-1"}

    changes = calculate_changes(before, after, ["status", "notes", "unknown"])

    assert changes == {
        "status": {"before": "pending", "after": "completed"},
        "notes": {"before": None, "after": "done"},
    }


def test_determine_event_type() -> None:
    assert determine_event_type(["status"]) is CertificateEventType.STATUS_CHANGED
    assert determine_event_type(["status", "notes"]) is CertificateEventType.UPDATED
    assert determine_event_type(["cost"]) is CertificateEventType.UPDATED


def test_create_and_list_events_newest_first(fake_client: FakePostgrestClient) -> None:
    events = CertificateEventRepository(fake_client)

    created = asyncio.run(events.create(_event(event_type=CertificateEventType.CREATED, changes=None)))
    asyncio.run(events.create(_event()))
    asyncio.run(events.create(_event("cert-2")))
    listed = asyncio.run(events.list_by_certificate_id("cert-1", limit=10))

    assert created.ok
    assert created.value.event_type == "created"
    assert created.value.changes is None
    assert isinstance(created.value.created_at, datetime)
    assert [event.event_type for event in listed.value] == ["updated", "created"]
    assert listed.value[0].changes == {"notes": {"before": None, "after": "call back"}}


def test_list_events_pages(fake_client: FakePostgrestClient) -> None:
    events = CertificateEventRepository(fake_client)
    for index in range(3):
        asyncio.run(events.create(_event(changes={"index": index})))

    page = asyncio.run(events.list_by_certificate_id("cert-1", limit=2, offset=1))

    assert [event.changes["index"] for event in page.value] == [1, 0]


def test_create_rejects_unknown_actor_role(fake_client: FakePostgrestClient) -> None:
    events = CertificateEventRepository(fake_client)

    result = asyncio.run(events.create(_event(actor_role="robot")))

    assert result.error is CertificateError.ACCESS_DENIED
    assert fake_client.calls == []


def test_record_does_not_raise_when_storage_fails(fake_client: FakePostgrestClient) -> None:
    fake_client.fail("certificate_events", api_error("42501", "permission denied for table certificate_events"))
    events = CertificateEventRepository(fake_client)

    asyncio.run(events.record(_event()))

    assert fake_client.table("certificate_events") == []
    assert len(fake_client.calls_to("certificate_events", "insert")) == 1


def test_list_events_reports_database_error(fake_client: FakePostgrestClient) -> None:
    fake_client.fail("certificate_events", api_error("08006", "connection failure"))
    events = CertificateEventRepository(fake_client)

    result = asyncio.run(events.list_by_certificate_id("cert-1", limit=10))

    assert result.error is CertificateError.DATABASE_ERROR
