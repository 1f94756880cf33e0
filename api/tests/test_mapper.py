from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

from app.services.entities import (
    DEFAULT_STATUS_INFO,
    CertificatePriority,
    CertificateStatusInfo,
    CertificateTag,
)
from app.services.mapper import CertificateRowMapper

REVIEW_STATUS = CertificateStatusInfo(
    id="status-review",
    name="In_Review",
    display_name="Em análise",
    color="#f59e0b",
    can_edit_certificate=False,
    is_final=False,
)


def _row(**overrides: Any) -> dict[str, Any]:
    row: dict[str, Any] = {
        "id": "cert-1",
        "user_id": "user-1",
        "certificate_type_id": "type-1",
        "status_id": "status-review",
        "record_number": "RN-001",
        "party_names": ["Maria Silva", "João Souza"],
        "observations": "urgent copy",
        "priority": 1,
        "cost": "120.50",
        "additional_cost": None,
        "order_number": "PO-7",
        "payment_type_id": "pay-1",
        "payment_date": "2024-02-10",
        "created_at": "2024-02-01T10:00:00+00:00",
        "updated_at": "2024-02-02T10:00:00+00:00",
    }
    row.update(overrides)
    return row


def test_map_to_entity_resolves_names_status_and_tags() -> None:
    mapper = CertificateRowMapper()
    tags = [CertificateTag(id="t1", name="VIP", color="#ff0000"), CertificateTag(id="t1", name="VIP")]

    entity = mapper.map_to_entity(_row(), "Nascimento", "PIX", tags, REVIEW_STATUS)

    assert entity is not None
    assert entity.certificate_type == "Nascimento"
    assert entity.payment_type == "PIX"
    assert entity.parties_name == "Maria Silva, João Souza"
    assert entity.notes == "urgent copy"
    assert entity.priority is CertificatePriority.NORMAL
    assert entity.status.name == "in_review"
    assert entity.status.display_name == "Em análise"
    assert entity.can_be_edited() is False
    assert entity.cost == Decimal("120.50")
    assert entity.total_cost() == Decimal("120.50")
    assert entity.payment_date == date(2024, 2, 10)
    assert [tag.id for tag in entity.tags] == ["t1"]


def test_map_to_entity_uses_default_status_when_unresolved() -> None:
    entity = CertificateRowMapper().map_to_entity(_row())

    assert entity is not None
    assert entity.status.name == DEFAULT_STATUS_INFO.name
    assert entity.status.display_name == "Pendente"
    assert entity.certificate_type == "type-1"
    assert entity.payment_type == "pay-1"


def test_map_to_entity_rejects_unresolved_status_without_default() -> None:
    mapper = CertificateRowMapper(default_status_info=None)

    assert mapper.map_to_entity(_row()) is None


def test_map_to_entity_returns_none_for_broken_rows() -> None:
    mapper = CertificateRowMapper()

    assert mapper.map_to_entity(_row(id=None)) is None
    assert mapper.map_to_entity(_row(created_at=None)) is None
    assert mapper.map_to_entity(_row(cost="not-a-number")) is None

    empty_status = CertificateStatusInfo(
        id="s", name=" ", display_name="", color="", can_edit_certificate=True, is_final=False
    )
    assert mapper.map_to_entity(_row(), status_info=empty_status) is None


def test_legacy_column_fallbacks() -> None:
    mapper = CertificateRowMapper()
    legacy = _row(party_names=None, parties_name="Ana", observations=None, notes="legacy note")

    assert mapper.resolve_parties_name(legacy) == "Ana"
    assert mapper.resolve_notes(legacy) == "legacy note"
    assert mapper.resolve_parties_name(_row(party_names=[], parties_names="", parties_name=None)) == ""
    assert mapper.resolve_notes(_row(observations=None)) is None


def test_priority_encoding() -> None:
    mapper = CertificateRowMapper()

    assert mapper.priority_to_db(CertificatePriority.NORMAL) == 1
    assert mapper.priority_to_db(CertificatePriority.URGENT) == 2
    assert mapper.priority_from_db(2) is CertificatePriority.URGENT
    assert mapper.priority_from_db(5) is CertificatePriority.URGENT
    assert mapper.priority_from_db("2") is CertificatePriority.URGENT
    assert mapper.priority_from_db("urgent") is CertificatePriority.URGENT
    assert mapper.priority_from_db(1) is CertificatePriority.NORMAL
    assert mapper.priority_from_db(None) is CertificatePriority.NORMAL
    assert mapper.priority_from_db("garbage") is CertificatePriority.NORMAL


def test_map_many_drops_unmappable_rows_and_uses_lookup_maps() -> None:
    mapper = CertificateRowMapper()
    rows = [
        _row(id="a", certificate_type_id="type-1"),
        _row(id="b", certificate_type_id="type-2", record_number=None),
        _row(id="c", certificate_type_id="type-unknown", payment_type_id=None),
    ]

    entities = mapper.map_many_to_entities(
        rows,
        {"type-1": "Nascimento", "type-2": "Casamento"},
        {"pay-1": "PIX"},
        {"a": [CertificateTag(id="t1", name="VIP")]},
        {"status-review": REVIEW_STATUS},
    )

    assert [entity.id for entity in entities] == ["a", "c"]
    assert entities[0].certificate_type == "Nascimento"
    assert [tag.name for tag in entities[0].tags] == ["VIP"]
    assert entities[1].certificate_type == "type-unknown"
    assert entities[1].payment_type is None
    assert entities[1].tags == ()


def test_format_party_names_splits_display_string() -> None:
    assert CertificateRowMapper.format_party_names("Maria, João;Ana\nPedro ,") == ["Maria", "João", "Ana", "Pedro"]
    assert CertificateRowMapper.format_party_names(None) == []
