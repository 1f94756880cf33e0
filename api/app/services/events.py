from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from functools import lru_cache
import logging
from typing import Any

import httpx
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError

from app.services.database import describe_error, get_postgrest_client, is_invalid_identifier_error
from app.services.entities import CertificateEntity
from app.services.mapper import parse_timestamp
from app.services.results import CertificateError, Result

logger = logging.getLogger(__name__)

EVENTS_TABLE = "certificate_events"
EVENT_ACTOR_ROLES = {"client", "admin"}

# Fields captured in the "created" event payload.
CREATED_SNAPSHOT_FIELDS = ("certificate_type", "record_number", "parties_name", "notes", "priority", "status")


class CertificateEventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    TAGS_CHANGED = "tags_changed"
    BULK_UPDATED = "bulk_updated"
    COMMENT_ADDED = "comment_added"


@dataclass(frozen=True, slots=True)
class CertificateEvent:
    id: str
    certificate_id: str
    actor_user_id: str
    actor_role: str
    event_type: str
    changes: dict[str, Any] | None
    created_at: datetime


@dataclass(slots=True)
class CreateCertificateEventData:
    certificate_id: str
    actor_user_id: str
    actor_role: str
    event_type: CertificateEventType
    changes: dict[str, Any] | None = None


def snapshot_certificate(entity: CertificateEntity) -> dict[str, Any]:
    """JSON-safe view of the fields tracked by the audit trail, keyed like patch fields."""
    return {
        "certificate_type": entity.certificate_type,
        "record_number": entity.record_number,
        "parties_name": entity.parties_name,
        "notes": entity.notes,
        "priority": entity.priority.value,
        "status": entity.status.name,
        "cost": _json_amount(entity.cost),
        "additional_cost": _json_amount(entity.additional_cost),
        "order_number": entity.order_number,
        "payment_type_id": entity.payment_type_id,
        "payment_type": entity.payment_type or entity.payment_type_id,
        "payment_date": entity.payment_date.isoformat() if entity.payment_date else None,
    }


def calculate_changes(
    before: Mapping[str, Any],
    after: Mapping[str, Any],
    fields: Iterable[str],
) -> dict[str, dict[str, Any]]:
    """Map each patched field to its ``before``/``after`` values; blank strings read as None."""
    return {
        field: {"before": _normalize_empty(before.get(field)), "after": _normalize_empty(after.get(field))}
        for field in fields
        if field in before or field in after
    }


def determine_event_type(fields: Iterable[str]) -> CertificateEventType:
    changed = list(fields)
    if changed == ["status"]:
        return CertificateEventType.STATUS_CHANGED
    return CertificateEventType.UPDATED


def created_event_changes(entity: CertificateEntity) -> dict[str, Any]:
    snapshot = snapshot_certificate(entity)
    return {"after": {field: snapshot[field] for field in CREATED_SNAPSHOT_FIELDS}}


class CertificateEventRepository:
    def __init__(self, client: AsyncPostgrestClient) -> None:
        self.client = client

    async def create(self, data: CreateCertificateEventData) -> Result[CertificateEvent]:
        if data.actor_role not in EVENT_ACTOR_ROLES:
            return Result.failure(CertificateError.ACCESS_DENIED)
        try:
            response = (
                await self.client.from_(EVENTS_TABLE)
                .insert(
                    {
                        "certificate_id": data.certificate_id,
                        "actor_user_id": data.actor_user_id,
                        "actor_role": data.actor_role,
                        "event_type": CertificateEventType(data.event_type).value,
                        "changes": data.changes,
                    }
                )
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.error(
                "failed to create certificate event certificate_id=%s event_type=%s %s",
                data.certificate_id,
                data.event_type,
                describe_error(exc),
            )
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        rows = response.data or []
        if not rows:
            return Result.failure(CertificateError.DATABASE_ERROR)
        return Result.success(self._row_to_event(rows[0]))

    async def record(self, data: CreateCertificateEventData) -> None:
        """Store an audit event; a failure is logged and never fails the caller's operation."""
        result = await self.create(data)
        if not result.ok:
            logger.warning(
                "certificate event not recorded certificate_id=%s event_type=%s error=%s",
                data.certificate_id,
                data.event_type,
                result.error.name,
            )

    async def list_by_certificate_id(
        self,
        certificate_id: str,
        *,
        limit: int,
        offset: int = 0,
    ) -> Result[list[CertificateEvent]]:
        try:
            response = (
                await self.client.from_(EVENTS_TABLE)
                .select("*")
                .eq("certificate_id", certificate_id)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
        except APIError as exc:
            if is_invalid_identifier_error(exc):
                return Result.success([])
            logger.error("failed to list certificate events certificate_id=%s %s", certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
        except httpx.HTTPError as exc:
            logger.error("failed to list certificate events certificate_id=%s %s", certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        return Result.success([self._row_to_event(row) for row in response.data or []])

    @staticmethod
    def _row_to_event(row: dict[str, Any]) -> CertificateEvent:
        changes = row.get("changes")
        return CertificateEvent(
            id=str(row["id"]),
            certificate_id=row["certificate_id"],
            actor_user_id=row.get("actor_user_id") or "",
            actor_role=row.get("actor_role") or "client",
            event_type=row.get("event_type") or "",
            changes=changes if isinstance(changes, dict) else None,
            created_at=parse_timestamp(row["created_at"]),
        )


def _normalize_empty(value: Any) -> Any:
    if value is None or value == "":
        return None
    return value


def _json_amount(value: Decimal | None) -> int | str | None:
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return str(value)


@lru_cache
def get_event_repository() -> CertificateEventRepository:
    return CertificateEventRepository(get_postgrest_client())
