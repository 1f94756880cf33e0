from __future__ import annotations

from functools import lru_cache
import logging
from typing import Any

import httpx
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError

from app.services.database import (
    describe_error,
    get_postgrest_client,
    is_invalid_identifier_error,
    is_not_found_error,
)
from app.services.entities import CertificateComment, CreateCommentData
from app.services.mapper import parse_timestamp
from app.services.results import CertificateError, Result

logger = logging.getLogger(__name__)

COMMENTS_TABLE = "certificate_comments"
COMMENT_ROLES = {"client", "admin"}


class CertificateCommentRepository:
    def __init__(self, client: AsyncPostgrestClient) -> None:
        self.client = client

    async def create(self, data: CreateCommentData) -> Result[CertificateComment]:
        if data.user_role not in COMMENT_ROLES:
            return Result.failure(CertificateError.ACCESS_DENIED)
        try:
            response = (
                await self.client.from_(COMMENTS_TABLE)
                .insert(
                    {
                        "certificate_id": data.certificate_id,
                        "user_id": data.user_id,
                        "user_role": data.user_role,
                        "user_name": data.user_name,
                        "content": data.content,
                    }
                )
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to create comment certificate_id=%s %s", data.certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        rows = response.data or []
        if not rows:
            return Result.failure(CertificateError.DATABASE_ERROR)
        return Result.success(self._row_to_comment(rows[0]))

    async def list_by_certificate_id(self, certificate_id: str) -> Result[list[CertificateComment]]:
        try:
            response = (
                await self.client.from_(COMMENTS_TABLE)
                .select("*")
                .eq("certificate_id", certificate_id)
                .order("created_at")
                .execute()
            )
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to list comments certificate_id=%s %s", certificate_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        return Result.success([self._row_to_comment(row) for row in response.data or []])

    async def find_by_id(self, comment_id: str) -> Result[CertificateComment | None]:
        try:
            response = await self.client.from_(COMMENTS_TABLE).select("*").eq("id", comment_id).single().execute()
        except APIError as exc:
            if is_not_found_error(exc) or is_invalid_identifier_error(exc):
                return Result.success(None)
            logger.error("failed to fetch comment id=%s %s", comment_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
        except httpx.HTTPError as exc:
            logger.error("failed to fetch comment id=%s %s", comment_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))

        if not response.data:
            return Result.success(None)
        return Result.success(self._row_to_comment(response.data))

    async def delete(self, comment_id: str) -> Result[None]:
        try:
            await self.client.from_(COMMENTS_TABLE).delete().eq("id", comment_id).execute()
        except (APIError, httpx.HTTPError) as exc:
            logger.error("failed to delete comment id=%s %s", comment_id, describe_error(exc))
            return Result.failure(CertificateError.DATABASE_ERROR, describe_error(exc))
        return Result.success(None)

    @staticmethod
    def _row_to_comment(row: dict[str, Any]) -> CertificateComment:
        return CertificateComment(
            id=row["id"],
            certificate_id=row["certificate_id"],
            user_id=row["user_id"],
            user_role=row["user_role"],
            user_name=row["user_name"],
            content=row["content"],
            created_at=parse_timestamp(row["created_at"]),
        )


@lru_cache
def get_comment_repository() -> CertificateCommentRepository:
    return CertificateCommentRepository(get_postgrest_client())
