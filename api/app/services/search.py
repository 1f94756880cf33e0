"""Helpers that make free text safe to embed in PostgREST filter strings."""

from __future__ import annotations

import re

# Characters with meaning inside or=(...) lists and {array} literals.
_FILTER_SYNTAX_RE = re.compile(r"[{}(),]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_search_value(value: str) -> str:
    """Replace filter-grammar characters with spaces and collapse whitespace.

    >>> normalize_search_value("a,b{c}(d)")
    'a b c d'
    """
    cleaned = _FILTER_SYNTAX_RE.sub(" ", value)
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def format_array_search_value(value: str) -> str:
    """Quote a value for use inside an array containment literal (``cs.{...}``)."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def is_array_literal_error(message: str | None) -> bool:
    if not message:
        return False
    return "array literal" in message.lower()
