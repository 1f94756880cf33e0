from __future__ import annotations

import asyncio

from conftest import FakePostgrestClient, api_error

from app.services.comments import CertificateCommentRepository
from app.services.entities import CreateCommentData
from app.services.results import CertificateError


def _comment(certificate_id: str = "cert-1", **overrides: str) -> CreateCommentData:
    values = {
        "certificate_id": certificate_id,
        "user_id": "user-1",
        "user_role": "client",
        "user_name": "Maria",
        "content": "Any update?",
    }
    values.update(overrides)
    return CreateCommentData(**values)


def test_create_and_list_comments_in_creation_order(fake_client: FakePostgrestClient) -> None:
    repository = CertificateCommentRepository(fake_client)

    first = asyncio.run(repository.create(_comment()))
    second = asyncio.run(repository.create(_comment(user_id="admin-1", user_role="admin", content="In progress")))
    asyncio.run(repository.create(_comment(certificate_id="cert-2")))

    assert first.ok and second.ok
    listed = asyncio.run(repository.list_by_certificate_id("cert-1"))
    assert [comment.content for comment in listed.value] == ["Any update?", "In progress"]
    assert listed.value[1].user_role == "admin"


def test_create_rejects_unknown_role(fake_client: FakePostgrestClient) -> None:
    repository = CertificateCommentRepository(fake_client)

    result = asyncio.run(repository.create(_comment(user_role="guest")))

    assert result.error is CertificateError.ACCESS_DENIED
    assert fake_client.table("certificate_comments") == []


def test_find_by_id_returns_none_for_missing_or_malformed_ids(fake_client: FakePostgrestClient) -> None:
    repository = CertificateCommentRepository(fake_client)
    created = asyncio.run(repository.create(_comment())).value

    assert asyncio.run(repository.find_by_id(created.id)).value == created
    assert asyncio.run(repository.find_by_id("missing")).value is None

    fake_client.fail("certificate_comments", api_error("22P02", 'invalid input syntax for type uuid: "x"'))
    malformed = asyncio.run(repository.find_by_id("x"))
    assert malformed.ok
    assert malformed.value is None


def test_delete_comment(fake_client: FakePostgrestClient) -> None:
    repository = CertificateCommentRepository(fake_client)
    created = asyncio.run(repository.create(_comment())).value

    assert asyncio.run(repository.delete(created.id)).ok
    assert fake_client.table("certificate_comments") == []


def test_database_errors_are_reported(fake_client: FakePostgrestClient) -> None:
    fake_client.fail("certificate_comments", api_error("08006", "connection failure"))
    repository = CertificateCommentRepository(fake_client)

    assert asyncio.run(repository.create(_comment())).error is CertificateError.DATABASE_ERROR
    assert asyncio.run(repository.list_by_certificate_id("cert-1")).error is CertificateError.DATABASE_ERROR
    assert asyncio.run(repository.find_by_id("c")).error is CertificateError.DATABASE_ERROR
    assert asyncio.run(repository.delete("c")).error is CertificateError.DATABASE_ERROR
