from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import os
import re
from typing import Any
import uuid

from postgrest.exceptions import APIError
import pytest

# Keep the global tracer provider untouched while the app module is imported under test.
os.environ.setdefault("CT_OTEL_ENABLED", "false")

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

# Embedded resources understood by ``select``: (table, embedded table) -> foreign key column.
EMBEDS: dict[tuple[str, str], str] = {
    ("certificate_tag_assignments", "certificate_tags"): "tag_id",
}
UNIQUE_COLUMNS: dict[str, tuple[str, ...]] = {
    "certificates_type": ("name",),
    "certificate_status": ("name",),
}


def api_error(code: str, message: str) -> APIError:
    return APIError({"message": message, "code": code, "hint": None, "details": None})


def missing_relation_error(table: str) -> APIError:
    return api_error("42P01", f'relation "public.{table}" does not exist')


@dataclass
class FakeResponse:
    data: Any
    count: int | None = None


@dataclass
class _Failure:
    table: str
    error: APIError
    operation: str | None
    when: Callable[[FakeQuery], bool] | None
    remaining: int | None


@dataclass
class FakeCall:
    table: str
    operation: str
    payload: Any = None
    filters: list[tuple[str, str, Any]] = field(default_factory=list)
    or_filters: str | None = None


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quoted = False
    escaped = False
    current: list[str] = []
    for char in text:
        if escaped:
            current.append(char)
            escaped = False
            continue
        if char == "\\":
            current.append(char)
            escaped = True
            continue
        if char == '"':
            quoted = not quoted
        elif not quoted and char in "({":
            depth += 1
        elif not quoted and char in ")}":
            depth -= 1
        if char == "," and depth == 0 and not quoted:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    if current:
        parts.append("".join(current))
    return [part.strip() for part in parts if part.strip()]


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    # PostgREST turns every "*" into "%" before Postgres sees the pattern.
    pattern = pattern.replace("*", "%")
    out: list[str] = []
    index = 0
    while index < len(pattern):
        char = pattern[index]
        if char == "\\" and index + 1 < len(pattern):
            out.append(re.escape(pattern[index + 1]))
            index += 2
            continue
        if char == "%":
            out.append(".*")
        elif char == "_":
            out.append(".")
        else:
            out.append(re.escape(char))
        index += 1
    return re.compile("".join(out), re.IGNORECASE | re.DOTALL)


def _parse_array_literal(literal: str) -> list[str]:
    inner = literal.strip()[1:-1]
    values = []
    for item in _split_top_level(inner):
        if item.startswith('"') and item.endswith('"'):
            item = item[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        values.append(item)
    return values


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _matches(row: dict[str, Any], column: str, operator: str, value: Any) -> bool:
    if operator.startswith("not."):
        return row.get(column) is not None and not _matches(row, column, operator[4:], value)
    current = row.get(column)
    if operator == "eq":
        return current is not None and current == value
    if operator == "in":
        return current in value
    if operator == "ilike":
        return isinstance(current, str) and bool(_like_to_regex(value).fullmatch(current))
    if operator in {"gte", "lte"}:
        if current is None:
            return False
        left, right = _comparable(current), _comparable(value)
        return left >= right if operator == "gte" else left <= right
    if operator == "cs":
        if current is None:
            return False
        if not isinstance(current, list):
            raise api_error("22P02", f'malformed array literal: "{current}"')
        return all(item in current for item in _parse_array_literal(value))
    raise AssertionError(f"unsupported operator {operator}")


def _matches_or(row: dict[str, Any], expression: str) -> bool:
    for condition in _split_top_level(expression):
        column, operator, raw = condition.split(".", 2)
        if operator == "in":
            value: Any = [item.strip() for item in raw.strip()[1:-1].split(",") if item.strip()]
        else:
            value = raw
        if _matches(row, column, operator, value):
            return True
    return False


class FakeQuery:
    def __init__(self, db: FakePostgrestClient, table: str) -> None:
        self.db = db
        self.table = table
        self.operation = "select"
        self.columns = "*"
        self.count_requested = False
        self.payload: Any = None
        self.filters: list[tuple[str, str, Any]] = []
        self.or_filters: str | None = None
        self.orders: list[tuple[str, bool]] = []
        self.offset = 0
        self.limit_value: int | None = None
        self.single_row = False
        self.negate_next = False

    @property
    def not_(self) -> FakeQuery:
        self.negate_next = True
        return self

    def _filter(self, column: str, operator: str, value: Any) -> FakeQuery:
        if self.negate_next:
            self.negate_next = False
            operator = f"not.{operator}"
        self.filters.append((column, operator, value))
        return self

    def select(self, columns: str = "*", count: Any = None) -> FakeQuery:
        self.operation = "select"
        self.columns = columns
        self.count_requested = count is not None
        return self

    def insert(self, payload: dict[str, Any] | list[dict[str, Any]]) -> FakeQuery:
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict[str, Any]) -> FakeQuery:
        self.operation = "update"
        self.payload = payload
        return self

    def delete(self) -> FakeQuery:
        self.operation = "delete"
        return self

    def eq(self, column: str, value: Any) -> FakeQuery:
        return self._filter(column, "eq", value)

    def gte(self, column: str, value: Any) -> FakeQuery:
        return self._filter(column, "gte", value)

    def lte(self, column: str, value: Any) -> FakeQuery:
        return self._filter(column, "lte", value)

    def ilike(self, column: str, pattern: str) -> FakeQuery:
        return self._filter(column, "ilike", pattern)

    def in_(self, column: str, values: list[Any]) -> FakeQuery:
        return self._filter(column, "in", list(values))

    def or_(self, expression: str) -> FakeQuery:
        self.or_filters = expression
        return self

    def order(self, column: str, *, desc: bool = False) -> FakeQuery:
        self.orders.append((column, desc))
        return self

    def range(self, start: int, end: int) -> FakeQuery:
        self.offset = start
        self.limit_value = end - start + 1
        return self

    def limit(self, size: int) -> FakeQuery:
        self.limit_value = size
        return self

    def single(self) -> FakeQuery:
        self.single_row = True
        return self

    async def execute(self) -> FakeResponse:
        self.db.calls.append(
            FakeCall(
                table=self.table,
                operation=self.operation,
                payload=self.payload,
                filters=list(self.filters),
                or_filters=self.or_filters,
            )
        )
        self.db.raise_configured_failure(self)

        if self.operation == "insert":
            return FakeResponse(data=self._insert())

        matched = self._matching_rows()
        if self.operation == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResponse(data=[dict(row) for row in matched])
        if self.operation == "delete":
            ids = {id(row) for row in matched}
            self.db.tables[self.table] = [row for row in self.db.table(self.table) if id(row) not in ids]
            return FakeResponse(data=[dict(row) for row in matched])

        rows = matched
        for column, desc in reversed(self.orders):
            rows = sorted(rows, key=lambda row: (row.get(column) is None, row.get(column) or ""), reverse=desc)
        total = len(rows)
        rows = rows[self.offset :]
        if self.limit_value is not None:
            rows = rows[: self.limit_value]
        projected = [self._project(row) for row in rows]

        if self.single_row:
            if len(projected) != 1:
                raise api_error("PGRST116", "JSON object requested, multiple (or no) rows returned")
            return FakeResponse(data=projected[0], count=total if self.count_requested else None)
        return FakeResponse(data=projected, count=total if self.count_requested else None)

    def _matching_rows(self) -> list[dict[str, Any]]:
        rows = []
        for row in self.db.table(self.table):
            if not all(_matches(row, column, operator, value) for column, operator, value in self.filters):
                continue
            if self.or_filters and not _matches_or(row, self.or_filters):
                continue
            rows.append(row)
        return rows

    def _insert(self) -> list[dict[str, Any]]:
        payloads = self.payload if isinstance(self.payload, list) else [self.payload]
        inserted = []
        for payload in payloads:
            row = self.db.new_row(self.table, payload)
            for column in UNIQUE_COLUMNS.get(self.table, ()):
                if any(existing.get(column) == row.get(column) for existing in self.db.table(self.table)):
                    raise api_error("23505", f'duplicate key value violates unique constraint "{self.table}_{column}_key"')
            self.db.table(self.table).append(row)
            inserted.append(dict(row))
        return inserted

    def _project(self, row: dict[str, Any]) -> dict[str, Any]:
        if self.columns.strip() == "*":
            return dict(row)
        projected: dict[str, Any] = {}
        for column in _split_top_level(self.columns):
            if "(" not in column:
                projected[column] = row.get(column)
                continue
            embedded_table, _, embedded_columns = column.partition("(")
            foreign_key = EMBEDS[(self.table, embedded_table)]
            target = next(
                (item for item in self.db.table(embedded_table) if item.get("id") == row.get(foreign_key)),
                None,
            )
            if target is None:
                projected[embedded_table] = None
            else:
                wanted = [name.strip() for name in embedded_columns.rstrip(")").split(",")]
                projected[embedded_table] = {name: target.get(name) for name in wanted}
        return projected


class FakePostgrestClient:
    """In-memory stand-in for ``AsyncPostgrestClient`` covering the calls the repositories make."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[FakeCall] = []
        self.failures: list[_Failure] = []
        self._tick = 0

    def from_(self, table: str) -> FakeQuery:
        return FakeQuery(self, table)

    def table(self, name: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(name, [])

    def next_timestamp(self) -> str:
        self._tick += 1
        return (BASE_TIME + timedelta(minutes=self._tick)).isoformat()

    def new_row(self, table: str, payload: dict[str, Any]) -> dict[str, Any]:
        row = dict(payload)
        row.setdefault("id", str(uuid.uuid4()))
        timestamp = self.next_timestamp()
        row.setdefault("created_at", timestamp)
        row.setdefault("updated_at", timestamp)
        return row

    def seed(self, table: str, **values: Any) -> dict[str, Any]:
        row = self.new_row(table, values)
        self.table(table).append(row)
        return row

    def fail(
        self,
        table: str,
        error: APIError,
        *,
        operation: str | None = None,
        when: Callable[[FakeQuery], bool] | None = None,
        times: int | None = None,
    ) -> None:
        self.failures.append(_Failure(table, error, operation, when, times))

    def raise_configured_failure(self, query: FakeQuery) -> None:
        for failure in self.failures:
            if failure.table != query.table:
                continue
            if failure.operation is not None and failure.operation != query.operation:
                continue
            if failure.when is not None and not failure.when(query):
                continue
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    continue
                failure.remaining -= 1
            raise failure.error

    def calls_to(self, table: str, operation: str | None = None) -> list[FakeCall]:
        return [
            call
            for call in self.calls
            if call.table == table and (operation is None or call.operation == operation)
        ]


def seed_statuses(client: FakePostgrestClient) -> dict[str, dict[str, Any]]:
    return {
        "pending": client.seed(
            "certificate_status",
            name="pending",
            display_name="Pendente",
            color="#6b7280",
            can_edit_certificate=True,
            is_final=False,
        ),
        "in_progress": client.seed(
            "certificate_status",
            name="in_progress",
            display_name="Em andamento",
            color="#2563eb",
            can_edit_certificate=False,
            is_final=False,
        ),
        "completed": client.seed(
            "certificate_status",
            name="completed",
            display_name="Concluída",
            color="#16a34a",
            can_edit_certificate=False,
            is_final=True,
        ),
    }


@pytest.fixture
def fake_client() -> FakePostgrestClient:
    return FakePostgrestClient()


@pytest.fixture
def statuses(fake_client: FakePostgrestClient) -> dict[str, dict[str, Any]]:
    return seed_statuses(fake_client)
