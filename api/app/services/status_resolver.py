from __future__ import annotations

from collections.abc import Iterable
import logging

import httpx
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError

from app.services.database import describe_error
from app.services.entities import DEFAULT_STATUS_COLOR, DEFAULT_STATUS_NAME, CertificateStatusInfo
from app.services.results import CertificateError, Result

logger = logging.getLogger(__name__)

STATUS_TABLE = "certificate_status"
STATUS_INFO_COLUMNS = "id,name,display_name,color,can_edit_certificate,is_final"


class CertificateStatusResolver:
    """Lookups against the pre-seeded ``certificate_status`` table.

    Unlike certificate types, statuses are never created on demand.
    """

    def __init__(self, client: AsyncPostgrestClient) -> None:
        self.client = client

    async def resolve_status_id(self, status_name: str) -> Result[str]:
        normalized_status = (status_name or "").strip().lower()
        if not normalized_status:
            return Result.failure(CertificateError.INVALID_STATUS)

        try:
            response = (
                await self.client.from_(STATUS_TABLE).select("id").eq("name", normalized_status).limit(1).execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to look up certificate status name=%s %s", normalized_status, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        rows = response.data or []
        if not rows:
            logger.warning("certificate status not found name=%s", normalized_status)
            return Result.failure(CertificateError.INVALID_STATUS)
        return Result.success(rows[0]["id"])

    async def fetch_status_info_map(self, ids: Iterable[str]) -> dict[str, CertificateStatusInfo]:
        """Return status metadata keyed by id.

        Failures are logged and produce an empty map; callers fall back to the
        default status display for ids that are missing.
        """
        unique_ids = list(dict.fromkeys(status_id for status_id in ids if status_id))
        if not unique_ids:
            return {}

        try:
            response = await self.client.from_(STATUS_TABLE).select(STATUS_INFO_COLUMNS).in_("id", unique_ids).execute()
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to fetch certificate status info ids=%s %s", len(unique_ids), describe_error(exc))
            return {}

        status_map: dict[str, CertificateStatusInfo] = {}
        for row in response.data or []:
            status_map[row["id"]] = CertificateStatusInfo(
                id=row["id"],
                name=row.get("name") or "",
                display_name=row.get("display_name") or row.get("name") or "",
                color=row.get("color") or DEFAULT_STATUS_COLOR,
                can_edit_certificate=bool(row.get("can_edit_certificate", True)),
                is_final=bool(row.get("is_final", False)),
            )
        return status_map

    async def get_default_status_id(self) -> Result[str]:
        return await self.resolve_status_id(DEFAULT_STATUS_NAME)

    async def can_edit_certificate(self, status_id: str) -> bool:
        try:
            response = (
                await self.client.from_(STATUS_TABLE)
                .select("can_edit_certificate")
                .eq("id", status_id)
                .limit(1)
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.warning("could not check status edit permission status_id=%s %s", status_id, describe_error(exc))
            return False

        rows = response.data or []
        if not rows:
            logger.warning("could not check status edit permission status_id=%s: status not found", status_id)
            return False
        return bool(rows[0].get("can_edit_certificate"))
