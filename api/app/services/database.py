from __future__ import annotations

from functools import lru_cache

import httpx
from postgrest import AsyncPostgrestClient
from postgrest.exceptions import APIError

from app.core.config import get_settings

# PostgREST: ``.single()`` matched zero (or several) rows.
NOT_FOUND_CODE = "PGRST116"
# 42P01 undefined_table; PGRST205 table missing from the schema cache.
MISSING_RELATION_CODES = frozenset({"42P01", "PGRST205"})
# 22P02 invalid_text_representation, e.g. a malformed uuid in a filter.
INVALID_TEXT_REPRESENTATION_CODE = "22P02"
# Integrity violations caused by the written values rather than the target row.
NOT_NULL_VIOLATION_CODE = "23502"
FOREIGN_KEY_VIOLATION_CODE = "23503"
CHECK_VIOLATION_CODE = "23514"
NUMERIC_OUT_OF_RANGE_CODE = "22003"
INVALID_INPUT_CODES = frozenset(
    {
        INVALID_TEXT_REPRESENTATION_CODE,
        NUMERIC_OUT_OF_RANGE_CODE,
        NOT_NULL_VIOLATION_CODE,
        FOREIGN_KEY_VIOLATION_CODE,
        CHECK_VIOLATION_CODE,
    }
)


class DatabaseUnavailableError(Exception):
    """Raised when the PostgREST endpoint is not configured."""


def is_not_found_error(error: APIError) -> bool:
    return error.code == NOT_FOUND_CODE


def is_invalid_identifier_error(error: APIError) -> bool:
    return error.code == INVALID_TEXT_REPRESENTATION_CODE


def is_invalid_input_error(error: APIError) -> bool:
    """Classify write errors caused by a bad value or a dangling reference."""
    return error.code in INVALID_INPUT_CODES


def is_missing_relation_error(error: APIError | None) -> bool:
    """Classify errors caused by a table that does not exist in this schema."""
    if error is None:
        return False
    if error.code in MISSING_RELATION_CODES:
        return True
    message = (error.message or "").lower()
    if "schema cache" in message:
        return True
    return "relation" in message and "does not exist" in message


def describe_error(error: Exception) -> str:
    if isinstance(error, APIError):
        return f"code={error.code} message={error.message}"
    return f"{type(error).__name__}: {error}"


@lru_cache
def get_postgrest_client() -> AsyncPostgrestClient:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise DatabaseUnavailableError("CT_SUPABASE_URL and CT_SUPABASE_SERVICE_ROLE_KEY are required")

    base_url = f"{settings.supabase_url.rstrip('/')}/rest/v1"
    # Service role key bypasses RLS; access rules are enforced by the API layer.
    return AsyncPostgrestClient(
        base_url,
        schema=settings.supabase_schema,
        headers={
            "apikey": settings.supabase_service_role_key,
            "Authorization": f"Bearer {settings.supabase_service_role_key}",
        },
        http_client=httpx.AsyncClient(timeout=settings.postgrest_timeout_seconds, follow_redirects=True),
    )


async def close_postgrest_client() -> None:
    if get_postgrest_client.cache_info().currsize == 0:
        return
    client = get_postgrest_client()
    await client.aclose()
    get_postgrest_client.cache_clear()
