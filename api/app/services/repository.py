from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
import logging
from typing import Any

import httpx
from opentelemetry import trace
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError
from postgrest.types import CountMethod

from app.core.config import get_settings
from app.services.database import (
    describe_error,
    get_postgrest_client,
    is_invalid_identifier_error,
    is_invalid_input_error,
    is_not_found_error,
)
from app.services.entities import (
    DEFAULT_TAG_COLOR,
    CertificateEntity,
    CertificatePriority,
    CertificateTag,
    CreateCertificateData,
    ListCertificatesOptions,
    PaginatedCertificates,
    PaginatedCertificateTypes,
)
from app.services.mapper import CertificateRowMapper
from app.services.results import CertificateError, Result
from app.services.search import format_array_search_value, is_array_literal_error, normalize_search_value
from app.services.status_resolver import CertificateStatusResolver
from app.services.type_resolver import CERTIFICATE_TYPE_TABLES, CertificateTypeResolver

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CERTIFICATES_TABLE = "certificates"
PAYMENT_TYPE_TABLE = "payment_type"
TAG_ASSIGNMENTS_TABLE = "certificate_tag_assignments"
TAG_JOIN_SELECT = "certificate_id,tag_id,certificate_tags(id,name,color)"
DEFAULT_PAGE_SIZE = 50

# Patch keys accepted by ``update``; anything else is ignored.
UPDATABLE_FIELDS = frozenset(
    {
        "certificate_type",
        "record_number",
        "parties_name",
        "notes",
        "priority",
        "status",
        "cost",
        "additional_cost",
        "order_number",
        "payment_type_id",
        "payment_date",
    }
)


class CertificateRepository:
    """Certificate persistence over PostgREST.

    Every public method returns a :class:`Result`; expected failures (missing
    rows, unknown lookups, transport errors) never raise.
    """

    def __init__(
        self,
        client: AsyncPostgrestClient,
        *,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int | None = None,
        type_tables: Sequence[str] = CERTIFICATE_TYPE_TABLES,
    ) -> None:
        self.client = client
        self.default_page_size = max(1, default_page_size)
        self.max_page_size = max_page_size
        self.mapper = CertificateRowMapper()
        self.type_resolver = CertificateTypeResolver(client, tables=type_tables)
        self.status_resolver = CertificateStatusResolver(client)

    async def create(self, data: CreateCertificateData) -> Result[CertificateEntity]:
        with tracer.start_as_current_span("certificates.create"):
            type_result = await self.type_resolver.resolve_type_id(data.certificate_type)
            if not type_result.ok:
                return Result.failure(type_result.error, type_result.details)

            status_result = await self.status_resolver.get_default_status_id()
            if not status_result.ok:
                return Result.failure(status_result.error, status_result.details)

            insert_data = self._build_insert_data(data, type_result.value, status_result.value)
            try:
                response = await self.client.from_(CERTIFICATES_TABLE).insert(insert_data).execute()
            except APIError as exc:
                if is_invalid_input_error(exc):
                    logger.warning("rejected certificate insert user_id=%s %s", data.user_id, describe_error(exc))
                    return Result.failure(CertificateError.INVALID_INPUT, describe_error(exc))
                logger.error("failed to create certificate user_id=%s %s", data.user_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
            except httpx.HTTPError as exc:
                logger.error("failed to create certificate user_id=%s %s", data.user_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            rows = response.data or []
            if not rows:
                logger.error("certificate insert returned no row user_id=%s", data.user_id)
                return Result.failure(CertificateError.DATABASE_ERROR)

            return await self._hydrate_one(rows[0], certificate_type_name=data.certificate_type.strip())

    async def find_by_id(self, certificate_id: str) -> Result[CertificateEntity]:
        with tracer.start_as_current_span("certificates.find_by_id") as span:
            span.set_attribute("certificate.id", certificate_id)
            row_result = await self._fetch_row(certificate_id)
            if not row_result.ok:
                return Result.failure(row_result.error, row_result.details)
            return await self._hydrate_one(row_result.value)

    async def find_all(self, options: ListCertificatesOptions) -> Result[PaginatedCertificates]:
        with tracer.start_as_current_span("certificates.find_all") as span:
            limit = self._resolve_limit(options.limit)
            offset = max(0, options.offset or 0)

            search_value = normalize_search_value(options.search) if options.search else ""
            search_type_ids = await self.type_resolver.find_type_ids_by_search(search_value) if search_value else []

            status_id: str | None = None
            if options.status:
                status_result = await self.status_resolver.resolve_status_id(options.status)
                if status_result.ok:
                    status_id = status_result.value
                else:
                    # Kept for compatibility: an unknown status does not fail the listing.
                    logger.warning(
                        "dropping unresolved status filter status=%s error=%s",
                        options.status,
                        status_result.error.name,
                    )

            span.set_attribute("certificates.limit", limit)
            span.set_attribute("certificates.offset", offset)
            span.set_attribute("certificates.search", bool(search_value))

            try:
                response = await self._execute_list_query(
                    options,
                    status_id=status_id,
                    search_value=search_value,
                    search_type_ids=search_type_ids,
                    limit=limit,
                    offset=offset,
                    include_party_names=True,
                )
            except APIError as exc:
                if not (search_value and is_array_literal_error(exc.message)):
                    logger.error("failed to list certificates %s", describe_error(exc))
                    return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
                logger.warning("party_names is not an array column; retrying search without it")
                try:
                    response = await self._execute_list_query(
                        options,
                        status_id=status_id,
                        search_value=search_value,
                        search_type_ids=search_type_ids,
                        limit=limit,
                        offset=offset,
                        include_party_names=False,
                    )
                except (APIError, httpx.HTTPError) as retry_exc:
                    logger.error("failed to list certificates %s", describe_error(retry_exc))
                    return Result.failure(CertificateError.DATABASE_ERROR, describe_error(retry_exc))
            except httpx.HTTPError as exc:
                logger.error("failed to list certificates %s", describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            rows = response.data or []
            entities = await self._hydrate_many(rows)
            if len(entities) != len(rows):
                logger.warning("dropped unmappable certificate rows count=%s", len(rows) - len(entities))

            return Result.success(
                PaginatedCertificates(
                    data=entities,
                    total=response.count or 0,
                    limit=limit,
                    offset=offset,
                )
            )

    async def update(
        self,
        certificate_id: str,
        patch: Mapping[str, Any],
        *,
        require_editable: bool = False,
    ) -> Result[CertificateEntity]:
        """Apply ``patch`` to one certificate.

        Only keys present in ``patch`` are written; an explicit ``None`` clears
        a nullable column. With ``require_editable`` the current status must
        allow edits. Values the database rejects (bad references, malformed
        ids in payload fields) come back as ``INVALID_INPUT``.
        """
        with tracer.start_as_current_span("certificates.update") as span:
            span.set_attribute("certificate.id", certificate_id)
            # A malformed or unknown id is reported here, so write errors below
            # always concern the patch values.
            row_result = await self._fetch_row(certificate_id, columns="id,status_id")
            if not row_result.ok:
                return Result.failure(row_result.error, row_result.details)
            if require_editable and not await self.status_resolver.can_edit_certificate(
                row_result.value.get("status_id")
            ):
                return Result.failure(CertificateError.CANNOT_BE_EDITED)

            update_result = await self._build_update_data(patch)
            if not update_result.ok:
                return Result.failure(update_result.error, update_result.details)

            update_data = update_result.value
            if not update_data:
                return await self.find_by_id(certificate_id)
            update_data["updated_at"] = datetime.now(timezone.utc).isoformat()

            try:
                response = (
                    await self.client.from_(CERTIFICATES_TABLE).update(update_data).eq("id", certificate_id).execute()
                )
            except APIError as exc:
                if is_invalid_input_error(exc):
                    logger.warning("rejected certificate update id=%s %s", certificate_id, describe_error(exc))
                    return Result.failure(CertificateError.INVALID_INPUT, describe_error(exc))
                if is_not_found_error(exc):
                    return Result.failure(CertificateError.NOT_FOUND)
                logger.error("failed to update certificate id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
            except httpx.HTTPError as exc:
                logger.error("failed to update certificate id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            rows = response.data or []
            if not rows:
                return Result.failure(CertificateError.NOT_FOUND)
            return await self._hydrate_one(rows[0])

    async def delete(self, certificate_id: str) -> Result[None]:
        with tracer.start_as_current_span("certificates.delete") as span:
            span.set_attribute("certificate.id", certificate_id)
            try:
                response = await self.client.from_(CERTIFICATES_TABLE).delete().eq("id", certificate_id).execute()
            except APIError as exc:
                if is_invalid_identifier_error(exc):
                    return Result.failure(CertificateError.NOT_FOUND)
                logger.error("failed to delete certificate id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
            except httpx.HTTPError as exc:
                logger.error("failed to delete certificate id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            if not response.data:
                return Result.failure(CertificateError.NOT_FOUND)
            logger.info("deleted certificate id=%s", certificate_id)
            return Result.success(None)

    async def replace_tags(self, certificate_id: str, tag_ids: Iterable[str]) -> Result[CertificateEntity]:
        """Replace every tag assignment of a certificate with ``tag_ids``.

        New assignments are inserted before stale ones are removed, so a
        rejected tag id leaves the current tags in place.
        """
        with tracer.start_as_current_span("certificates.replace_tags"):
            existing = await self._fetch_row(certificate_id, columns="id")
            if not existing.ok:
                return Result.failure(existing.error, existing.details)

            unique_tag_ids = list(dict.fromkeys(tag_id for tag_id in tag_ids if tag_id))
            try:
                current = (
                    await self.client.from_(TAG_ASSIGNMENTS_TABLE)
                    .select("tag_id")
                    .eq("certificate_id", certificate_id)
                    .execute()
                )
                assigned = {row.get("tag_id") for row in current.data or []}
                missing = [tag_id for tag_id in unique_tag_ids if tag_id not in assigned]
                if missing:
                    await self.client.from_(TAG_ASSIGNMENTS_TABLE).insert(
                        [{"certificate_id": certificate_id, "tag_id": tag_id} for tag_id in missing]
                    ).execute()

                stale = self.client.from_(TAG_ASSIGNMENTS_TABLE).delete().eq("certificate_id", certificate_id)
                if unique_tag_ids:
                    stale = stale.not_.in_("tag_id", unique_tag_ids)
                await stale.execute()
            except APIError as exc:
                if is_invalid_input_error(exc):
                    logger.warning("rejected certificate tags id=%s %s", certificate_id, describe_error(exc))
                    return Result.failure(CertificateError.INVALID_TAG, describe_error(exc))
                logger.error("failed to replace certificate tags id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
            except httpx.HTTPError as exc:
                logger.error("failed to replace certificate tags id=%s %s", certificate_id, describe_error(exc))
                return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

            return await self.find_by_id(certificate_id)

    async def list_types(
        self,
        *,
        search: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> Result[PaginatedCertificateTypes]:
        return await self.type_resolver.list_types(
            search=search,
            limit=self._resolve_limit(limit),
            offset=max(0, offset),
        )

    async def _fetch_row(self, certificate_id: str, *, columns: str = "*") -> Result[dict[str, Any]]:
        try:
            response = (
                await self.client.from_(CERTIFICATES_TABLE).select(columns).eq("id", certificate_id).single().execute()
            )
        except APIError as exc:
            if is_not_found_error(exc) or is_invalid_identifier_error(exc):
                return Result.failure(CertificateError.NOT_FOUND)
            logger.error("failed to fetch certificate id=%s %s", certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
        except httpx.HTTPError as exc:
            logger.error("failed to fetch certificate id=%s %s", certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        if not response.data:
            return Result.failure(CertificateError.NOT_FOUND)
        return Result.success(response.data)

    async def _execute_list_query(
        self,
        options: ListCertificatesOptions,
        *,
        status_id: str | None,
        search_value: str,
        search_type_ids: list[str],
        limit: int,
        offset: int,
        include_party_names: bool,
    ):
        query = self.client.from_(CERTIFICATES_TABLE).select("*", count=CountMethod.exact)

        if options.user_id:
            query = query.eq("user_id", options.user_id)
        if options.date_from:
            query = query.gte("created_at", _to_iso(options.date_from))
        if options.date_to:
            query = query.lte("created_at", _to_iso(options.date_to))
        if status_id:
            query = query.eq("status_id", status_id)
        if options.priority:
            priority = CertificatePriority.parse(options.priority) or CertificatePriority.NORMAL
            query = query.eq("priority", self.mapper.priority_to_db(priority))

        search_conditions = self._build_search_conditions(
            search_value,
            search_type_ids,
            include_party_names=include_party_names,
        )
        if search_conditions:
            query = query.or_(",".join(search_conditions))

        query = query.order("created_at", desc=True).range(offset, offset + limit - 1)
        return await query.execute()

    @staticmethod
    def _build_search_conditions(
        search_value: str,
        search_type_ids: list[str],
        *,
        include_party_names: bool = True,
    ) -> list[str]:
        if not search_value:
            return []
        conditions = [
            f"record_number.ilike.%{search_value}%",
            f"order_number.ilike.%{search_value}%",
        ]
        if include_party_names:
            conditions.append(f"party_names.cs.{{{format_array_search_value(search_value)}}}")
        if search_type_ids:
            conditions.append(f"certificate_type_id.in.({','.join(search_type_ids)})")
        return conditions

    def _resolve_limit(self, limit: int | None) -> int:
        resolved = limit if limit and limit > 0 else self.default_page_size
        if self.max_page_size is not None:
            resolved = min(resolved, self.max_page_size)
        return resolved

    async def _hydrate_one(
        self,
        row: Mapping[str, Any],
        *,
        certificate_type_name: str | None = None,
    ) -> Result[CertificateEntity]:
        type_ids = [] if certificate_type_name else [row.get("certificate_type_id")]
        type_names, payment_names, status_infos, tags_map = await asyncio.gather(
            self.type_resolver.fetch_type_name_map(type_ids),
            self._fetch_payment_type_name_map([row.get("payment_type_id")]),
            self.status_resolver.fetch_status_info_map([row.get("status_id")]),
            self._fetch_tags_map([row.get("id")]),
        )

        entity = self.mapper.map_to_entity(
            row,
            certificate_type_name or self.mapper.resolve_certificate_type_name(row, type_names),
            self.mapper.resolve_payment_type_name(row, payment_names),
            tags_map.get(row.get("id"), []),
            status_infos.get(row.get("status_id")),
        )
        if entity is None:
            return Result.failure(CertificateError.UNEXPECTED_ERROR)
        return Result.success(entity)

    async def _hydrate_many(self, rows: Sequence[Mapping[str, Any]]) -> list[CertificateEntity]:
        if not rows:
            return []
        type_names, payment_names, status_infos, tags_map = await asyncio.gather(
            self.type_resolver.fetch_type_name_map(row.get("certificate_type_id") for row in rows),
            self._fetch_payment_type_name_map(row.get("payment_type_id") for row in rows),
            self.status_resolver.fetch_status_info_map(row.get("status_id") for row in rows),
            self._fetch_tags_map(row.get("id") for row in rows),
        )
        return self.mapper.map_many_to_entities(rows, type_names, payment_names, tags_map, status_infos)

    async def _fetch_payment_type_name_map(self, ids: Iterable[str | None]) -> dict[str, str]:
        unique_ids = list(dict.fromkeys(payment_type_id for payment_type_id in ids if payment_type_id))
        if not unique_ids:
            return {}
        try:
            response = await self.client.from_(PAYMENT_TYPE_TABLE).select("id,name").in_("id", unique_ids).execute()
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to fetch payment type names %s", describe_error(exc))
            return {}
        return {row["id"]: row["name"] for row in response.data or []}

    async def _fetch_tags_map(self, certificate_ids: Iterable[str | None]) -> dict[str, list[CertificateTag]]:
        unique_ids = list(dict.fromkeys(certificate_id for certificate_id in certificate_ids if certificate_id))
        if not unique_ids:
            return {}
        try:
            response = (
                await self.client.from_(TAG_ASSIGNMENTS_TABLE)
                .select(TAG_JOIN_SELECT)
                .in_("certificate_id", unique_ids)
                .order("created_at")
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to fetch certificate tags %s", describe_error(exc))
            return {}

        pairs = [(row.get("certificate_id"), row.get("certificate_tags")) for row in response.data or []]
        return fold_tag_pairs(pairs)

    def _build_insert_data(self, data: CreateCertificateData, certificate_type_id: str, status_id: str) -> dict[str, Any]:
        return {
            "user_id": data.user_id,
            "certificate_type_id": certificate_type_id,
            "status_id": status_id,
            "record_number": data.record_number,
            "party_names": self.mapper.format_party_names(data.parties_name),
            "observations": data.notes,
            "priority": self.mapper.priority_to_db(data.priority),
            "order_number": data.order_number,
        }

    async def _build_update_data(self, patch: Mapping[str, Any]) -> Result[dict[str, Any]]:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            logger.warning("ignoring unknown certificate patch fields=%s", sorted(unknown))

        update_data: dict[str, Any] = {}

        if "certificate_type" in patch:
            type_result = await self.type_resolver.resolve_type_id(patch["certificate_type"] or "")
            if not type_result.ok:
                return Result.failure(type_result.error, type_result.details)
            update_data["certificate_type_id"] = type_result.value

        if "status" in patch:
            status_result = await self.status_resolver.resolve_status_id(patch["status"] or "")
            if not status_result.ok:
                return Result.failure(status_result.error, status_result.details)
            update_data["status_id"] = status_result.value

        if "priority" in patch:
            priority = CertificatePriority.parse(patch["priority"])
            if priority is None:
                return Result.failure(CertificateError.INVALID_PRIORITY)
            update_data["priority"] = self.mapper.priority_to_db(priority)

        if "record_number" in patch:
            record_number = patch["record_number"]
            if not isinstance(record_number, str) or not record_number.strip():
                return Result.failure(CertificateError.INVALID_INPUT, "record_number cannot be empty")
            update_data["record_number"] = record_number
        if "parties_name" in patch:
            update_data["party_names"] = self.mapper.format_party_names(patch["parties_name"])
        if "notes" in patch:
            update_data["observations"] = patch["notes"]
        for amount_field in ("cost", "additional_cost"):
            if amount_field not in patch:
                continue
            try:
                update_data[amount_field] = _amount_to_db(patch[amount_field])
            except ValueError as exc:
                return Result.failure(CertificateError.INVALID_INPUT, f"{amount_field}: {exc}")
        if "order_number" in patch:
            update_data["order_number"] = patch["order_number"]
        if "payment_type_id" in patch:
            update_data["payment_type_id"] = patch["payment_type_id"]
        if "payment_date" in patch:
            update_data["payment_date"] = _date_to_db(patch["payment_date"])

        return Result.success(update_data)


def fold_tag_pairs(pairs: Iterable[tuple[str | None, Any]]) -> dict[str, list[CertificateTag]]:
    """Group (certificate id, embedded tag) pairs into certificate id -> tags.

    Pairs whose tag is missing (dangling assignment) are skipped.
    """
    tags_map: dict[str, list[CertificateTag]] = defaultdict(list)
    seen: set[tuple[str, str]] = set()
    for certificate_id, tag in pairs:
        if isinstance(tag, list):
            tag = tag[0] if tag else None
        if not certificate_id or not isinstance(tag, Mapping) or not tag.get("id"):
            logger.debug("skipping tag assignment without tag certificate_id=%s", certificate_id)
            continue
        key = (certificate_id, tag["id"])
        if key in seen:
            continue
        seen.add(key)
        tags_map[certificate_id].append(
            CertificateTag(id=tag["id"], name=tag.get("name") or "", color=tag.get("color") or DEFAULT_TAG_COLOR)
        )
    return dict(tags_map)


def _to_iso(value: datetime | date | str) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _amount_to_db(value: Any) -> int | None:
    # cost and additional_cost are bigint columns holding whole amounts in cents.
    if value is None:
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a number: {value!r}") from exc
    if not amount.is_finite() or amount < 0 or amount != amount.to_integral_value():
        raise ValueError(f"expected a whole non-negative amount in cents, got {value}")
    return int(amount)


def _date_to_db(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)[:10]


@lru_cache
def get_repository() -> CertificateRepository:
    settings = get_settings()
    return CertificateRepository(
        get_postgrest_client(),
        default_page_size=settings.default_page_size,
        max_page_size=settings.max_page_size,
    )
