from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from app.services.comments import CertificateCommentRepository
from app.services.entities import CertificateEntity, CreateCommentData
from app.services.events import (
    CertificateEventRepository,
    CertificateEventType,
    CreateCertificateEventData,
    calculate_changes,
    snapshot_certificate,
)
from app.services.repository import CertificateRepository
from app.services.results import CertificateError, Result

logger = logging.getLogger(__name__)

BULK_UPDATE_MAX_CERTIFICATES = 50

# Per-certificate fields a bulk request may set; global notes, tags and comment apply to all.
BULK_INDIVIDUAL_FIELDS = frozenset(
    {"status", "priority", "cost", "additional_cost", "order_number", "payment_type_id", "payment_date"}
)


@dataclass(slots=True)
class BulkUpdateCommand:
    certificate_ids: list[str]
    actor_user_id: str
    actor_role: str
    actor_name: str = ""
    notes: str | None = None
    tag_ids: list[str] | None = None
    comment: str | None = None
    individual_updates: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BlockedCertificate:
    certificate_id: str
    record_number: str
    reason: str


@dataclass(frozen=True, slots=True)
class FailedCertificateUpdate:
    certificate_id: str
    record_number: str
    error: CertificateError


@dataclass(slots=True)
class BulkUpdateOutcome:
    updated: list[CertificateEntity] = field(default_factory=list)
    failed: list[FailedCertificateUpdate] = field(default_factory=list)


def find_blocked_certificates(certificates: list[CertificateEntity]) -> list[BlockedCertificate]:
    blocked = []
    for certificate in certificates:
        if certificate.status.is_final:
            reason = f"status is final ({certificate.status.display_name})"
        elif not certificate.status.can_edit_certificate:
            reason = f"status {certificate.status.display_name!r} does not allow edits"
        else:
            continue
        blocked.append(BlockedCertificate(certificate.id, certificate.record_number, reason))
    return blocked


class CertificateBulkUpdater:
    """Apply one admin change set to many certificates.

    The whole batch is refused when any certificate is missing or locked by its
    status. Past that point each certificate is updated on its own and
    failures are collected instead of aborting the batch.
    """

    def __init__(
        self,
        repository: CertificateRepository,
        events: CertificateEventRepository,
        comments: CertificateCommentRepository,
    ) -> None:
        self.repository = repository
        self.events = events
        self.comments = comments

    async def execute(self, command: BulkUpdateCommand) -> Result[BulkUpdateOutcome]:
        certificate_ids = list(dict.fromkeys(filter(None, command.certificate_ids)))
        if not certificate_ids:
            return Result.failure(CertificateError.BULK_UPDATE_EMPTY)
        if len(certificate_ids) > BULK_UPDATE_MAX_CERTIFICATES:
            return Result.failure(CertificateError.BULK_UPDATE_LIMIT_EXCEEDED)

        logger.info("bulk update started actor=%s count=%s", command.actor_user_id, len(certificate_ids))

        found = await asyncio.gather(*(self.repository.find_by_id(certificate_id) for certificate_id in certificate_ids))
        missing = [
            certificate_id
            for certificate_id, result in zip(certificate_ids, found)
            if result.error is CertificateError.NOT_FOUND
        ]
        if missing:
            logger.warning("bulk update refused missing_ids=%s", missing)
            return Result.failure(CertificateError.NOT_FOUND, missing)
        for result in found:
            if not result.ok:
                return Result.failure(result.error, result.details)

        certificates = [result.value for result in found]
        blocked = find_blocked_certificates(certificates)
        if blocked:
            logger.warning("bulk update refused blocked_count=%s actor=%s", len(blocked), command.actor_user_id)
            return Result.failure(CertificateError.BULK_UPDATE_BLOCKED, blocked)

        outcome = BulkUpdateOutcome()
        for certificate in certificates:
            patch = self._build_patch(certificate.id, command)
            if not patch:
                outcome.updated.append(certificate)
                continue

            result = await self.repository.update(certificate.id, patch)
            if not result.ok:
                outcome.failed.append(FailedCertificateUpdate(certificate.id, certificate.record_number, result.error))
                continue

            changes: dict[str, Any] = calculate_changes(
                snapshot_certificate(certificate),
                snapshot_certificate(result.value),
                patch,
            )
            changes.update(bulk_operation=True, total_certificates=len(certificate_ids))
            await self.events.record(
                CreateCertificateEventData(
                    certificate_id=certificate.id,
                    actor_user_id=command.actor_user_id,
                    actor_role=command.actor_role,
                    event_type=CertificateEventType.BULK_UPDATED,
                    changes=changes,
                )
            )
            outcome.updated.append(result.value)

        if command.tag_ids:
            outcome.updated = [await self._apply_tags(certificate, command) for certificate in outcome.updated]
        if command.comment and command.comment.strip():
            for certificate in outcome.updated:
                await self._add_comment(certificate, command)

        logger.info(
            "bulk update finished actor=%s updated=%s failed=%s",
            command.actor_user_id,
            len(outcome.updated),
            len(outcome.failed),
        )
        return Result.success(outcome)

    @staticmethod
    def _build_patch(certificate_id: str, command: BulkUpdateCommand) -> dict[str, Any]:
        patch: dict[str, Any] = {}
        if command.notes is not None and command.notes.strip():
            patch["notes"] = command.notes
        individual = command.individual_updates.get(certificate_id) or {}
        for key, value in individual.items():
            if key in BULK_INDIVIDUAL_FIELDS:
                patch[key] = value
        return patch

    async def _apply_tags(self, certificate: CertificateEntity, command: BulkUpdateCommand) -> CertificateEntity:
        previous_tags = [tag.id for tag in certificate.tags]
        result = await self.repository.replace_tags(certificate.id, command.tag_ids or [])
        if not result.ok:
            logger.warning("bulk tag update failed id=%s error=%s", certificate.id, result.error.name)
            return certificate

        new_tags = [tag.id for tag in result.value.tags]
        if set(previous_tags) != set(new_tags):
            await self.events.record(
                CreateCertificateEventData(
                    certificate_id=certificate.id,
                    actor_user_id=command.actor_user_id,
                    actor_role=command.actor_role,
                    event_type=CertificateEventType.TAGS_CHANGED,
                    changes={"bulk_operation": True, "previous_tags": previous_tags, "new_tags": new_tags},
                )
            )
        return result.value

    async def _add_comment(self, certificate: CertificateEntity, command: BulkUpdateCommand) -> None:
        result = await self.comments.create(
            CreateCommentData(
                certificate_id=certificate.id,
                user_id=command.actor_user_id,
                user_role=command.actor_role,
                user_name=command.actor_name or "Admin",
                content=command.comment.strip(),
            )
        )
        if not result.ok:
            logger.warning("bulk comment failed id=%s error=%s", certificate.id, result.error.name)
            return
        await self.events.record(
            CreateCertificateEventData(
                certificate_id=certificate.id,
                actor_user_id=command.actor_user_id,
                actor_role=command.actor_role,
                event_type=CertificateEventType.COMMENT_ADDED,
                changes={"bulk_operation": True, "comment_id": result.value.id},
            )
        )
