from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

DEFAULT_STATUS_NAME = "pending"
DEFAULT_STATUS_COLOR = "#6b7280"
DEFAULT_TAG_COLOR = "#6B7280"


class CertificatePriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"

    @classmethod
    def parse(cls, value: Any) -> CertificatePriority | None:
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                return None
        return None


# Numeric encoding stored in certificates.priority.
PRIORITY_TO_DB: dict[CertificatePriority, int] = {
    CertificatePriority.NORMAL: 1,
    CertificatePriority.URGENT: 2,
}


@dataclass(frozen=True, slots=True)
class CertificateStatusInfo:
    """Denormalised row of ``certificate_status`` used for display."""

    id: str
    name: str
    display_name: str
    color: str
    can_edit_certificate: bool
    is_final: bool


DEFAULT_STATUS_INFO = CertificateStatusInfo(
    id="",
    name=DEFAULT_STATUS_NAME,
    display_name="Pendente",
    color=DEFAULT_STATUS_COLOR,
    can_edit_certificate=True,
    is_final=False,
)


@dataclass(frozen=True, slots=True)
class CertificateStatus:
    id: str
    name: str
    display_name: str
    color: str
    can_edit_certificate: bool
    is_final: bool

    @classmethod
    def from_info(cls, info: CertificateStatusInfo) -> CertificateStatus:
        if not isinstance(info.name, str) or not info.name.strip():
            raise ValueError("status name must be a non-empty string")
        return cls(
            id=info.id or "",
            name=info.name.strip().lower(),
            display_name=info.display_name or info.name,
            color=info.color or DEFAULT_STATUS_COLOR,
            can_edit_certificate=bool(info.can_edit_certificate),
            is_final=bool(info.is_final),
        )


@dataclass(frozen=True, slots=True)
class CertificateTag:
    id: str
    name: str
    color: str = DEFAULT_TAG_COLOR


@dataclass(frozen=True, slots=True)
class CertificateEntity:
    """Immutable snapshot of a certificate request.

    Build instances through :meth:`create`, which validates the value objects
    and removes duplicate tag ids.
    """

    id: str
    user_id: str
    certificate_type: str
    record_number: str
    parties_name: str
    notes: str | None
    priority: CertificatePriority
    status: CertificateStatus
    cost: Decimal | None
    additional_cost: Decimal | None
    order_number: str | None
    payment_type_id: str | None
    payment_type: str | None
    payment_date: date | None
    tags: tuple[CertificateTag, ...]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def create(
        cls,
        *,
        id: str,
        user_id: str,
        certificate_type: str,
        record_number: str,
        parties_name: str,
        notes: str | None,
        priority: CertificatePriority,
        status: CertificateStatus,
        cost: Decimal | None,
        additional_cost: Decimal | None,
        order_number: str | None,
        payment_type_id: str | None,
        payment_type: str | None,
        payment_date: date | None,
        tags: list[CertificateTag] | tuple[CertificateTag, ...],
        created_at: datetime,
        updated_at: datetime,
    ) -> CertificateEntity:
        if not isinstance(id, str) or not id:
            raise ValueError("certificate id must be a non-empty string")
        if not isinstance(record_number, str):
            raise ValueError("record_number is required")
        if not isinstance(priority, CertificatePriority):
            raise ValueError(f"invalid priority: {priority!r}")
        if not isinstance(status, CertificateStatus):
            raise ValueError(f"invalid status: {status!r}")

        unique_tags: list[CertificateTag] = []
        seen: set[str] = set()
        for tag in tags:
            if tag.id in seen:
                continue
            seen.add(tag.id)
            unique_tags.append(tag)

        return cls(
            id=id,
            user_id=user_id,
            certificate_type=certificate_type,
            record_number=record_number,
            parties_name=parties_name,
            notes=notes,
            priority=priority,
            status=status,
            cost=cost,
            additional_cost=additional_cost,
            order_number=order_number,
            payment_type_id=payment_type_id,
            payment_type=payment_type,
            payment_date=payment_date,
            tags=tuple(unique_tags),
            created_at=created_at,
            updated_at=updated_at,
        )

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def can_be_edited(self) -> bool:
        return self.status.can_edit_certificate

    def total_cost(self) -> Decimal:
        return (self.cost or Decimal(0)) + (self.additional_cost or Decimal(0))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "certificate_type": self.certificate_type,
            "record_number": self.record_number,
            "parties_name": self.parties_name,
            "notes": self.notes,
            "priority": self.priority.value,
            "status": {
                "id": self.status.id,
                "name": self.status.name,
                "display_name": self.status.display_name,
                "color": self.status.color,
                "can_edit_certificate": self.status.can_edit_certificate,
                "is_final": self.status.is_final,
            },
            "cost": self.cost,
            "additional_cost": self.additional_cost,
            "order_number": self.order_number,
            "payment_type_id": self.payment_type_id,
            "payment_type": self.payment_type,
            "payment_date": self.payment_date,
            "tags": [{"id": tag.id, "name": tag.name, "color": tag.color} for tag in self.tags],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class CreateCertificateData:
    user_id: str
    certificate_type: str
    record_number: str
    parties_name: str = ""
    notes: str | None = None
    priority: CertificatePriority = CertificatePriority.NORMAL
    order_number: str | None = None


@dataclass(slots=True)
class ListCertificatesOptions:
    user_id: str | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    status: str | None = None
    priority: CertificatePriority | None = None
    limit: int | None = None
    offset: int = 0


@dataclass(slots=True)
class PaginatedCertificates:
    data: list[CertificateEntity] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0


@dataclass(frozen=True, slots=True)
class CertificateComment:
    id: str
    certificate_id: str
    user_id: str
    user_role: str
    user_name: str
    content: str
    created_at: datetime


@dataclass(slots=True)
class CreateCommentData:
    certificate_id: str
    user_id: str
    user_role: str
    user_name: str
    content: str


@dataclass(frozen=True, slots=True)
class CertificateTypeInfo:
    id: str
    name: str
    description: str | None = None
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(slots=True)
class PaginatedCertificateTypes:
    data: list[CertificateTypeInfo] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0
