from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
import logging
from typing import Any

import httpx
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError
from postgrest.types import CountMethod

from app.services.database import describe_error, is_missing_relation_error
from app.services.entities import CertificateTypeInfo, PaginatedCertificateTypes
from app.services.mapper import parse_timestamp
from app.services.results import CertificateError, Result

logger = logging.getLogger(__name__)

# Ordered candidates for the certificate type lookup table. Older deployments
# used different names; the first table that exists wins.
CERTIFICATE_TYPE_TABLES: tuple[str, ...] = ("certificates_type",)

UNIQUE_VIOLATION_CODE = "23505"

ErrorClassifier = Callable[[APIError], bool]


@dataclass(frozen=True, slots=True)
class TableOutcome:
    """Outcome of one request against one candidate table."""

    id: str | None = None
    error: APIError | Exception | None = None

    @property
    def found(self) -> bool:
        return self.id is not None


def escape_like(value: str) -> str:
    """Escape ``value`` for a PostgREST ``ilike`` pattern.

    PostgREST rewrites every ``*`` to ``%`` before the pattern reaches
    Postgres, and a backslash does not survive that rewrite. A literal ``*``
    is therefore sent as the single-character wildcard ``_``; exact lookups
    compare the returned names afterwards.
    """
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_").replace("*", "_")


def same_type_name(left: str | None, right: str) -> bool:
    return isinstance(left, str) and left.strip().casefold() == right.strip().casefold()


class CertificateTypeResolver:
    def __init__(
        self,
        client: AsyncPostgrestClient,
        tables: Sequence[str] = CERTIFICATE_TYPE_TABLES,
        is_missing_relation: ErrorClassifier = is_missing_relation_error,
    ) -> None:
        self.client = client
        self.tables = tuple(tables)
        self._is_missing_relation = is_missing_relation

    async def resolve_type_id(self, certificate_type: str) -> Result[str]:
        """Return the id for ``certificate_type``, creating the row when missing."""
        normalized_type = (certificate_type or "").strip()
        if not normalized_type:
            return Result.failure(CertificateError.INVALID_CERTIFICATE_TYPE)

        for table in self.tables:
            lookup = await self._find_type_in_table(table, normalized_type)
            if lookup.found:
                return Result.success(lookup.id)
            if lookup.error is not None:
                if self._skippable(lookup.error):
                    continue
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(lookup.error))

            created = await self._create_type_in_table(table, normalized_type)
            if created.found:
                return Result.success(created.id)
            if created.error is not None:
                if self._skippable(created.error):
                    continue
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(created.error))

        logger.error("certificate type table not found certificate_type=%s tables=%s", normalized_type, self.tables)
        return Result.failure(CertificateError.INVALID_CERTIFICATE_TYPE)

    async def fetch_type_name_map(self, ids: Iterable[str]) -> dict[str, str]:
        unique_ids = list(dict.fromkeys(type_id for type_id in ids if type_id))
        if not unique_ids:
            return {}

        for table in self.tables:
            try:
                response = await self.client.from_(table).select("id,name").in_("id", unique_ids).execute()
            except APIError as exc:
                if self._is_missing_relation(exc):
                    continue
                logger.error("failed to fetch certificate type names table=%s %s", table, describe_error(exc))
                return {}
            except httpx.HTTPError as exc:
                logger.error("failed to fetch certificate type names table=%s %s", table, describe_error(exc))
                return {}

            # An existing table is authoritative even when nothing matched.
            return {row["id"]: row["name"] for row in response.data or []}

        return {}

    async def find_type_ids_by_search(self, search: str) -> list[str]:
        pattern = f"%{escape_like(search)}%"

        for table in self.tables:
            try:
                response = await self.client.from_(table).select("id").ilike("name", pattern).execute()
            except APIError as exc:
                if self._is_missing_relation(exc):
                    continue
                logger.error("failed to search certificate types table=%s search=%s %s", table, search, describe_error(exc))
                return []
            except httpx.HTTPError as exc:
                logger.error("failed to search certificate types table=%s search=%s %s", table, search, describe_error(exc))
                return []

            rows = response.data or []
            if rows:
                return [row["id"] for row in rows]

        return []

    async def list_types(
        self,
        *,
        search: str | None = None,
        limit: int,
        offset: int = 0,
    ) -> Result[PaginatedCertificateTypes]:
        """Page through certificate types, newest first, from the first existing table."""
        search_value = (search or "").strip()
        for table in self.tables:
            query = self.client.from_(table).select("*", count=CountMethod.exact)
            if search_value:
                query = query.ilike("name", f"%{escape_like(search_value)}%")
            try:
                response = await query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
            except APIError as exc:
                if self._is_missing_relation(exc):
                    continue
                logger.error("failed to list certificate types table=%s %s", table, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
            except httpx.HTTPError as exc:
                logger.error("failed to list certificate types table=%s %s", table, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            types = [_row_to_type_info(row) for row in response.data or [] if row.get("id") and row.get("name")]
            return Result.success(
                PaginatedCertificateTypes(data=types, total=response.count or 0, limit=limit, offset=offset)
            )

        logger.error("certificate type table not found tables=%s", self.tables)
        return Result.success(PaginatedCertificateTypes(limit=limit, offset=offset))

    def _skippable(self, error: APIError | Exception) -> bool:
        return isinstance(error, APIError) and self._is_missing_relation(error)

    async def _find_type_in_table(self, table: str, type_name: str) -> TableOutcome:
        try:
            response = (
                await self.client.from_(table).select("id,name").ilike("name", escape_like(type_name)).execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.warning(
                "certificate type lookup failed table=%s certificate_type=%s %s",
                table,
                type_name,
                describe_error(exc),
            )
            return TableOutcome(error=exc)

        for row in response.data or []:
            if same_type_name(row.get("name"), type_name):
                return TableOutcome(id=row["id"])
        return TableOutcome()

    async def _create_type_in_table(self, table: str, type_name: str) -> TableOutcome:
        try:
            response = await self.client.from_(table).insert({"name": type_name}).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION_CODE:
                # Created concurrently by another request; read it back.
                return await self._find_type_in_table(table, type_name)
            logger.warning(
                "certificate type insert failed table=%s certificate_type=%s %s",
                table,
                type_name,
                describe_error(exc),
            )
            return TableOutcome(error=exc)
        except httpx.HTTPError as exc:
            logger.warning(
                "certificate type insert failed table=%s certificate_type=%s %s",
                table,
                type_name,
                describe_error(exc),
            )
            return TableOutcome(error=exc)

        rows = response.data or []
        if rows:
            logger.info("created certificate type table=%s certificate_type=%s id=%s", table, type_name, rows[0]["id"])
            return TableOutcome(id=rows[0]["id"])
        return TableOutcome()


def _row_to_type_info(row: dict[str, Any]) -> CertificateTypeInfo:
    created_at = row.get("created_at")
    return CertificateTypeInfo(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        is_active=row.get("is_active") is not False,
        created_at=parse_timestamp(created_at) if created_at else None,
    )
