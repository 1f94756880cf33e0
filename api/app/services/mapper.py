from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any

from app.services.entities import (
    DEFAULT_STATUS_INFO,
    PRIORITY_TO_DB,
    CertificateEntity,
    CertificatePriority,
    CertificateStatus,
    CertificateStatusInfo,
    CertificateTag,
)

logger = logging.getLogger(__name__)

CertificateRow = Mapping[str, Any]
RowAccessor = Callable[[CertificateRow], Any]

_PARTY_NAME_SPLIT_RE = re.compile(r"[,;\n]+")


def _column(name: str) -> RowAccessor:
    def accessor(row: CertificateRow) -> Any:
        return row.get(name)

    accessor.__name__ = f"column_{name}"
    return accessor


# Legacy migrations renamed these columns; earlier entries win.
PARTIES_NAME_ACCESSORS: tuple[RowAccessor, ...] = (
    _column("party_names"),
    _column("parties_names"),
    _column("parties_name"),
)
NOTES_ACCESSORS: tuple[RowAccessor, ...] = (
    _column("observations"),
    _column("notes"),
)
CERTIFICATE_TYPE_ACCESSORS: tuple[RowAccessor, ...] = (
    _column("certificate_type"),
    _column("certificate_type_id"),
)


def _display_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        joined = ", ".join(str(item) for item in value if item not in (None, ""))
        return joined or None
    text = str(value)
    return text if text.strip() else None


def first_non_empty(row: CertificateRow, accessors: Sequence[RowAccessor]) -> str | None:
    for accessor in accessors:
        value = _display_value(accessor(row))
        if value is not None:
            return value
    return None


class CertificateRowMapper:
    """Converts ``certificates`` rows into :class:`CertificateEntity` snapshots.

    The mapper never performs I/O: lookup names, tags and status metadata are
    resolved by the caller and passed in. ``default_status_info`` is used when a
    row's status could not be resolved; pass ``None`` to reject such rows.
    """

    def __init__(self, default_status_info: CertificateStatusInfo | None = DEFAULT_STATUS_INFO) -> None:
        self.default_status_info = default_status_info

    def map_to_entity(
        self,
        row: CertificateRow,
        certificate_type_name: str | None = None,
        payment_type_name: str | None = None,
        tags: Iterable[CertificateTag] | None = None,
        status_info: CertificateStatusInfo | None = None,
    ) -> CertificateEntity | None:
        row_id = row.get("id")
        info = status_info or self.default_status_info
        if info is None:
            logger.warning("certificate row has unknown status id=%s status_id=%s", row_id, row.get("status_id"))
            return None

        try:
            status = CertificateStatus.from_info(info)
        except ValueError as exc:
            logger.warning("certificate row has invalid status id=%s error=%s", row_id, exc)
            return None

        priority = self.priority_from_db(row.get("priority"))

        try:
            return CertificateEntity.create(
                id=row_id,
                user_id=row["user_id"],
                certificate_type=certificate_type_name or self._certificate_type_from_row(row),
                record_number=row["record_number"],
                parties_name=self.resolve_parties_name(row),
                notes=self.resolve_notes(row),
                priority=priority,
                status=status,
                cost=_parse_amount(row.get("cost")),
                additional_cost=_parse_amount(row.get("additional_cost")),
                order_number=row.get("order_number"),
                payment_type_id=row.get("payment_type_id"),
                payment_type=payment_type_name or row.get("payment_type_id"),
                payment_date=_parse_date(row.get("payment_date")),
                tags=list(tags or ()),
                created_at=parse_timestamp(row["created_at"]),
                updated_at=parse_timestamp(row["updated_at"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("failed to map certificate row id=%s error=%s", row_id, exc)
            return None

    def map_many_to_entities(
        self,
        rows: Iterable[CertificateRow],
        type_name_map: Mapping[str, str],
        payment_type_name_map: Mapping[str, str],
        tags_map: Mapping[str, list[CertificateTag]] | None = None,
        status_info_map: Mapping[str, CertificateStatusInfo] | None = None,
    ) -> list[CertificateEntity]:
        tags_map = tags_map or {}
        status_info_map = status_info_map or {}
        entities: list[CertificateEntity] = []
        for row in rows:
            entity = self.map_to_entity(
                row,
                self.resolve_certificate_type_name(row, type_name_map),
                self.resolve_payment_type_name(row, payment_type_name_map),
                tags_map.get(row.get("id"), []),
                status_info_map.get(row.get("status_id")),
            )
            if entity is not None:
                entities.append(entity)
        return entities

    @staticmethod
    def priority_to_db(priority: CertificatePriority) -> int:
        return PRIORITY_TO_DB[priority]

    @staticmethod
    def priority_from_db(value: Any) -> CertificatePriority:
        parsed = CertificatePriority.parse(value)
        if parsed is not None:
            return parsed
        if isinstance(value, bool):
            return CertificatePriority.NORMAL
        numeric: float | None = None
        if isinstance(value, (int, float, Decimal)):
            numeric = float(value)
        elif isinstance(value, str):
            try:
                numeric = float(value)
            except ValueError:
                numeric = None
        if numeric is not None and numeric >= PRIORITY_TO_DB[CertificatePriority.URGENT]:
            return CertificatePriority.URGENT
        return CertificatePriority.NORMAL

    @staticmethod
    def resolve_parties_name(row: CertificateRow) -> str:
        return first_non_empty(row, PARTIES_NAME_ACCESSORS) or ""

    @staticmethod
    def resolve_notes(row: CertificateRow) -> str | None:
        return first_non_empty(row, NOTES_ACCESSORS)

    def resolve_certificate_type_name(self, row: CertificateRow, type_name_map: Mapping[str, str]) -> str:
        if row.get("certificate_type"):
            return row["certificate_type"]
        type_id = row.get("certificate_type_id")
        if type_id:
            return type_name_map.get(type_id, type_id)
        return ""

    @staticmethod
    def resolve_payment_type_name(row: CertificateRow, payment_type_name_map: Mapping[str, str]) -> str | None:
        payment_type_id = row.get("payment_type_id")
        if not payment_type_id:
            return None
        return payment_type_name_map.get(payment_type_id, payment_type_id)

    @staticmethod
    def format_party_names(value: Any) -> list[str]:
        """Split a display string back into the ``party_names`` array column."""
        if not isinstance(value, str):
            return []
        return [name.strip() for name in _PARTY_NAME_SPLIT_RE.split(value) if name.strip()]

    @staticmethod
    def _certificate_type_from_row(row: CertificateRow) -> str:
        return first_non_empty(row, CERTIFICATE_TYPE_ACCESSORS) or ""


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise TypeError(f"expected ISO timestamp, got {type(value).__name__}")


def _parse_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"invalid monetary amount: {value!r}") from exc
