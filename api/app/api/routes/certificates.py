from dataclasses import asdict
from datetime import datetime
import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status as http_status

from app.core.auth import Principal
from app.core.security import get_principal
from app.schemas.certificates import (
    CLIENT_PATCH_FIELDS,
    BulkUpdateOut,
    BulkUpdateRequest,
    CertificateCreateRequest,
    CertificateEventOut,
    CertificateListOut,
    CertificateOut,
    CertificatePatchRequest,
    CertificateTypeListOut,
    CommentCreateRequest,
    CommentOut,
    PriorityValue,
    TagsUpdateRequest,
)
from app.services.bulk_update import BulkUpdateCommand, CertificateBulkUpdater
from app.services.comments import CertificateCommentRepository, get_comment_repository
from app.services.entities import (
    CertificateEntity,
    CertificatePriority,
    CreateCertificateData,
    CreateCommentData,
    ListCertificatesOptions,
)
from app.services.events import (
    CertificateEventRepository,
    CertificateEventType,
    CreateCertificateEventData,
    calculate_changes,
    created_event_changes,
    determine_event_type,
    get_event_repository,
    snapshot_certificate,
)
from app.services.repository import UPDATABLE_FIELDS, CertificateRepository, get_repository
from app.services.results import CertificateError

router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[CertificateError, int] = {
    CertificateError.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    CertificateError.ACCESS_DENIED: http_status.HTTP_403_FORBIDDEN,
    CertificateError.CANNOT_BE_EDITED: http_status.HTTP_403_FORBIDDEN,
    CertificateError.INVALID_STATUS: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.INVALID_CERTIFICATE_TYPE: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.INVALID_PRIORITY: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.INVALID_INPUT: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.INVALID_TAG: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.BULK_UPDATE_EMPTY: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.BULK_UPDATE_LIMIT_EXCEEDED: http_status.HTTP_400_BAD_REQUEST,
    CertificateError.BULK_UPDATE_BLOCKED: http_status.HTTP_409_CONFLICT,
    CertificateError.DATABASE_ERROR: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    CertificateError.UNEXPECTED_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def raise_for_error(error: CertificateError | None) -> NoReturn:
    error = error or CertificateError.UNEXPECTED_ERROR
    raise HTTPException(status_code=ERROR_STATUS_CODES[error], detail=error.value)


async def _get_visible_certificate(
    repository: CertificateRepository,
    certificate_id: str,
    principal: Principal,
) -> CertificateEntity:
    result = await repository.find_by_id(certificate_id)
    if not result.ok:
        raise_for_error(result.error)
    entity = result.value
    if not principal.is_admin and not entity.is_owned_by(principal.subject):
        raise_for_error(CertificateError.ACCESS_DENIED)
    return entity


@router.get("", response_model=CertificateListOut)
async def list_certificates(
    search: str | None = Query(default=None, min_length=1),
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    certificate_status: str | None = Query(default=None, alias="status", min_length=1),
    priority: PriorityValue | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    user_id: str | None = Query(default=None, min_length=1),
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
) -> CertificateListOut:
    options = ListCertificatesOptions(
        # Clients only ever see their own certificates.
        user_id=user_id if principal.is_admin else principal.subject,
        search=search,
        date_from=date_from,
        date_to=date_to,
        status=certificate_status,
        priority=CertificatePriority.parse(priority),
        limit=limit,
        offset=offset,
    )
    result = await repository.find_all(options)
    if not result.ok:
        raise_for_error(result.error)
    return CertificateListOut.from_page(result.value)


@router.post("", response_model=CertificateOut, status_code=http_status.HTTP_201_CREATED)
async def create_certificate(
    payload: CertificateCreateRequest,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    events: CertificateEventRepository = Depends(get_event_repository),
) -> CertificateOut:
    owner_id = payload.user_id if principal.is_admin and payload.user_id else principal.subject
    result = await repository.create(
        CreateCertificateData(
            user_id=owner_id,
            certificate_type=payload.certificate_type,
            record_number=payload.record_number,
            parties_name=payload.parties_name,
            notes=payload.notes,
            priority=CertificatePriority(payload.priority),
            order_number=payload.order_number,
        )
    )
    if not result.ok:
        raise_for_error(result.error)
    logger.info("certificate created id=%s user_id=%s actor=%s", result.value.id, owner_id, principal.subject)
    await events.record(
        CreateCertificateEventData(
            certificate_id=result.value.id,
            actor_user_id=principal.subject,
            actor_role=principal.role.value,
            event_type=CertificateEventType.CREATED,
            changes=created_event_changes(result.value),
        )
    )
    return CertificateOut.from_entity(result.value)


@router.get("/types", response_model=CertificateTypeListOut)
async def list_certificate_types(
    search: str | None = Query(default=None, min_length=1),
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
) -> CertificateTypeListOut:
    result = await repository.list_types(search=search, limit=limit, offset=offset)
    if not result.ok:
        raise_for_error(result.error)
    return CertificateTypeListOut.from_page(result.value)


@router.post("/bulk-update", response_model=BulkUpdateOut)
async def bulk_update_certificates(
    payload: BulkUpdateRequest,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    events: CertificateEventRepository = Depends(get_event_repository),
    comments: CertificateCommentRepository = Depends(get_comment_repository),
) -> BulkUpdateOut:
    try:
        principal.require_admin()
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    updater = CertificateBulkUpdater(repository, events, comments)
    result = await updater.execute(
        BulkUpdateCommand(
            certificate_ids=payload.certificate_ids,
            actor_user_id=principal.subject,
            actor_role=principal.role.value,
            actor_name=principal.display_name,
            notes=payload.notes,
            tag_ids=payload.tag_ids,
            comment=payload.comment,
            individual_updates=payload.individual_updates(),
        )
    )
    if not result.ok:
        if result.error is CertificateError.BULK_UPDATE_BLOCKED:
            raise HTTPException(
                status_code=ERROR_STATUS_CODES[result.error],
                detail={"message": result.error.value, "blocked": [asdict(item) for item in result.details]},
            )
        raise_for_error(result.error)
    return BulkUpdateOut.from_outcome(result.value)


@router.get("/{certificate_id}", response_model=CertificateOut)
async def get_certificate(
    certificate_id: str,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
) -> CertificateOut:
    entity = await _get_visible_certificate(repository, certificate_id, principal)
    return CertificateOut.from_entity(entity)


@router.patch("/{certificate_id}", response_model=CertificateOut)
async def patch_certificate(
    certificate_id: str,
    payload: CertificatePatchRequest,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    events: CertificateEventRepository = Depends(get_event_repository),
) -> CertificateOut:
    patch = payload.model_dump(exclude_unset=True)

    if not principal.is_admin:
        forbidden = sorted(set(patch) - CLIENT_PATCH_FIELDS)
        if forbidden:
            raise HTTPException(
                status_code=http_status.HTTP_403_FORBIDDEN,
                detail=f"fields require admin role: {', '.join(forbidden)}",
            )
    previous = await _get_visible_certificate(repository, certificate_id, principal)

    result = await repository.update(certificate_id, patch, require_editable=not principal.is_admin)
    if not result.ok:
        raise_for_error(result.error)

    changed_fields = [field for field in patch if field in UPDATABLE_FIELDS]
    if changed_fields:
        await events.record(
            CreateCertificateEventData(
                certificate_id=certificate_id,
                actor_user_id=principal.subject,
                actor_role=principal.role.value,
                event_type=determine_event_type(changed_fields),
                changes=calculate_changes(
                    snapshot_certificate(previous),
                    snapshot_certificate(result.value),
                    changed_fields,
                ),
            )
        )
    return CertificateOut.from_entity(result.value)


@router.delete("/{certificate_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_certificate(
    certificate_id: str,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
) -> Response:
    try:
        principal.require_admin()
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    result = await repository.delete(certificate_id)
    if not result.ok:
        raise_for_error(result.error)
    logger.info("certificate deleted id=%s actor=%s", certificate_id, principal.subject)
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)


@router.put("/{certificate_id}/tags", response_model=CertificateOut)
async def replace_certificate_tags(
    certificate_id: str,
    payload: TagsUpdateRequest,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    events: CertificateEventRepository = Depends(get_event_repository),
) -> CertificateOut:
    try:
        principal.require_admin()
    except PermissionError as exc:
        raise HTTPException(status_code=http_status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    previous = await _get_visible_certificate(repository, certificate_id, principal)
    result = await repository.replace_tags(certificate_id, payload.tag_ids)
    if not result.ok:
        raise_for_error(result.error)

    previous_tags = [tag.id for tag in previous.tags]
    new_tags = [tag.id for tag in result.value.tags]
    if set(previous_tags) != set(new_tags):
        await events.record(
            CreateCertificateEventData(
                certificate_id=certificate_id,
                actor_user_id=principal.subject,
                actor_role=principal.role.value,
                event_type=CertificateEventType.TAGS_CHANGED,
                changes={"previous_tags": previous_tags, "new_tags": new_tags},
            )
        )
    return CertificateOut.from_entity(result.value)


@router.get("/{certificate_id}/events", response_model=list[CertificateEventOut])
async def list_certificate_events(
    certificate_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    events: CertificateEventRepository = Depends(get_event_repository),
) -> list[CertificateEventOut]:
    await _get_visible_certificate(repository, certificate_id, principal)
    result = await events.list_by_certificate_id(certificate_id, limit=limit, offset=offset)
    if not result.ok:
        raise_for_error(result.error)
    return [CertificateEventOut.from_event(event) for event in result.value]


@router.get("/{certificate_id}/comments", response_model=list[CommentOut])
async def list_certificate_comments(
    certificate_id: str,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    comments: CertificateCommentRepository = Depends(get_comment_repository),
) -> list[CommentOut]:
    await _get_visible_certificate(repository, certificate_id, principal)
    result = await comments.list_by_certificate_id(certificate_id)
    if not result.ok:
        raise_for_error(result.error)
    return [CommentOut.from_comment(comment) for comment in result.value]


@router.post(
    "/{certificate_id}/comments",
    response_model=CommentOut,
    status_code=http_status.HTTP_201_CREATED,
)
async def create_certificate_comment(
    certificate_id: str,
    payload: CommentCreateRequest,
    principal: Principal = Depends(get_principal),
    repository: CertificateRepository = Depends(get_repository),
    comments: CertificateCommentRepository = Depends(get_comment_repository),
) -> CommentOut:
    await _get_visible_certificate(repository, certificate_id, principal)
    result = await comments.create(
        CreateCommentData(
            certificate_id=certificate_id,
            user_id=principal.subject,
            user_role=principal.role.value,
            user_name=principal.display_name,
            content=payload.content,
        )
    )
    if not result.ok:
        raise_for_error(result.error)
    return CommentOut.from_comment(result.value)


@router.delete("/{certificate_id}/comments/{comment_id}", status_code=http_status.HTTP_204_NO_CONTENT)
async def delete_certificate_comment(
    certificate_id: str,
    comment_id: str,
    principal: Principal = Depends(get_principal),
    comments: CertificateCommentRepository = Depends(get_comment_repository),
) -> Response:
    found = await comments.find_by_id(comment_id)
    if not found.ok:
        raise_for_error(found.error)
    comment = found.value
    if comment is None or comment.certificate_id != certificate_id:
        raise_for_error(CertificateError.NOT_FOUND)
    if not principal.is_admin and comment.user_id != principal.subject:
        raise_for_error(CertificateError.ACCESS_DENIED)

    result = await comments.delete(comment_id)
    if not result.ok:
        raise_for_error(result.error)
    return Response(status_code=http_status.HTTP_204_NO_CONTENT)
