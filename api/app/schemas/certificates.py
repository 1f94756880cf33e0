from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.services.bulk_update import BULK_UPDATE_MAX_CERTIFICATES, BulkUpdateOutcome
from app.services.entities import (
    CertificateComment,
    CertificateEntity,
    CertificateTypeInfo,
    PaginatedCertificates,
    PaginatedCertificateTypes,
)
from app.services.events import CertificateEvent

PriorityValue = Literal["normal", "urgent"]

# Patch fields a client may set on their own certificate; the rest are admin only.
CLIENT_PATCH_FIELDS = frozenset({"certificate_type", "record_number", "parties_name", "notes", "priority"})


class CertificateStatusOut(BaseModel):
    id: str
    name: str
    display_name: str
    color: str
    can_edit_certificate: bool
    is_final: bool


class CertificateTagOut(BaseModel):
    id: str
    name: str
    color: str


class CertificateOut(BaseModel):
    id: str
    user_id: str
    certificate_type: str
    record_number: str
    parties_name: str
    notes: str | None = None
    priority: PriorityValue
    status: CertificateStatusOut
    cost: Decimal | None = None
    additional_cost: Decimal | None = None
    total_cost: Decimal
    order_number: str | None = None
    payment_type_id: str | None = None
    payment_type: str | None = None
    payment_date: date | None = None
    tags: list[CertificateTagOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, entity: CertificateEntity) -> "CertificateOut":
        return cls(**entity.to_dict(), total_cost=entity.total_cost())


class CertificateListOut(BaseModel):
    data: list[CertificateOut]
    total: int
    limit: int
    offset: int

    @classmethod
    def from_page(cls, page: PaginatedCertificates) -> "CertificateListOut":
        return cls(
            data=[CertificateOut.from_entity(entity) for entity in page.data],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )


class CertificateCreateRequest(BaseModel):
    certificate_type: str = Field(min_length=1, max_length=200)
    record_number: str = Field(min_length=1, max_length=100)
    parties_name: str = ""
    notes: str | None = None
    priority: PriorityValue = "normal"
    order_number: str | None = None
    # Admins may file on behalf of a client; ignored for clients.
    user_id: str | None = None


class CertificatePatchRequest(BaseModel):
    certificate_type: str | None = Field(default=None, min_length=1, max_length=200)
    record_number: str | None = Field(default=None, min_length=1, max_length=100)
    parties_name: str | None = None
    notes: str | None = None
    priority: PriorityValue | None = None
    status: str | None = Field(default=None, min_length=1)
    # Whole amounts in cents; the columns are bigint.
    cost: int | None = Field(default=None, ge=0)
    additional_cost: int | None = Field(default=None, ge=0)
    order_number: str | None = None
    payment_type_id: str | None = None
    payment_date: date | None = None


class TagsUpdateRequest(BaseModel):
    tag_ids: list[str] = Field(default_factory=list)


class CommentCreateRequest(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class CommentOut(BaseModel):
    id: str
    certificate_id: str
    user_id: str
    user_role: str
    user_name: str
    content: str
    created_at: datetime

    @classmethod
    def from_comment(cls, comment: CertificateComment) -> "CommentOut":
        return cls(
            id=comment.id,
            certificate_id=comment.certificate_id,
            user_id=comment.user_id,
            user_role=comment.user_role,
            user_name=comment.user_name,
            content=comment.content,
            created_at=comment.created_at,
        )


class CertificateTypeOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_active: bool = True
    created_at: datetime | None = None

    @classmethod
    def from_info(cls, info: CertificateTypeInfo) -> "CertificateTypeOut":
        return cls(
            id=info.id,
            name=info.name,
            description=info.description,
            is_active=info.is_active,
            created_at=info.created_at,
        )


class CertificateTypeListOut(BaseModel):
    data: list[CertificateTypeOut]
    total: int
    limit: int
    offset: int

    @classmethod
    def from_page(cls, page: PaginatedCertificateTypes) -> "CertificateTypeListOut":
        return cls(
            data=[CertificateTypeOut.from_info(info) for info in page.data],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )


class CertificateEventOut(BaseModel):
    id: str
    certificate_id: str
    actor_user_id: str
    actor_role: str
    event_type: str
    changes: dict[str, Any] | None = None
    created_at: datetime

    @classmethod
    def from_event(cls, event: CertificateEvent) -> "CertificateEventOut":
        return cls(
            id=event.id,
            certificate_id=event.certificate_id,
            actor_user_id=event.actor_user_id,
            actor_role=event.actor_role,
            event_type=event.event_type,
            changes=event.changes,
            created_at=event.created_at,
        )


class BulkIndividualUpdate(BaseModel):
    certificate_id: str = Field(min_length=1)
    status: str | None = Field(default=None, min_length=1)
    priority: PriorityValue | None = None
    cost: int | None = Field(default=None, ge=0)
    additional_cost: int | None = Field(default=None, ge=0)
    order_number: str | None = None
    payment_type_id: str | None = None
    payment_date: date | None = None


class BulkUpdateRequest(BaseModel):
    certificate_ids: list[str] = Field(min_length=1, max_length=BULK_UPDATE_MAX_CERTIFICATES)
    notes: str | None = None
    tag_ids: list[str] | None = None
    comment: str | None = Field(default=None, max_length=5000)
    updates: list[BulkIndividualUpdate] = Field(default_factory=list)

    def individual_updates(self) -> dict[str, dict[str, Any]]:
        return {
            update.certificate_id: update.model_dump(exclude_unset=True, exclude={"certificate_id"})
            for update in self.updates
        }


class FailedCertificateUpdateOut(BaseModel):
    certificate_id: str
    record_number: str
    error: str


class BulkUpdateOut(BaseModel):
    success_count: int
    failed_count: int
    updated: list[CertificateOut]
    failed: list[FailedCertificateUpdateOut]

    @classmethod
    def from_outcome(cls, outcome: BulkUpdateOutcome) -> "BulkUpdateOut":
        return cls(
            success_count=len(outcome.updated),
            failed_count=len(outcome.failed),
            updated=[CertificateOut.from_entity(entity) for entity in outcome.updated],
            failed=[
                FailedCertificateUpdateOut(
                    certificate_id=item.certificate_id,
                    record_number=item.record_number,
                    error=item.error.value,
                )
                for item in outcome.failed
            ],
        )
