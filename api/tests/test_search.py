from app.services.search import format_array_search_value, is_array_literal_error, normalize_search_value


def test_normalize_search_value_strips_filter_syntax() -> None:
    assert normalize_search_value("a,b{c}(d)") == "a b c d"
    assert normalize_search_value("  João   (Silva), Maria  ") == "João Silva Maria"


def test_normalize_search_value_keeps_plain_text() -> None:
    assert normalize_search_value("12345") == "12345"
    assert normalize_search_value("") == ""
    assert normalize_search_value(" ,(){} ") == ""


def test_format_array_search_value_escapes_quotes_and_backslashes() -> None:
    assert format_array_search_value("Maria") == '"Maria"'
    assert format_array_search_value('say "hi"') == '"say \\"hi\\""'
    assert format_array_search_value("a\\b") == '"a\\\\b"'


def test_is_array_literal_error_detects_message() -> None:
    assert is_array_literal_error('malformed array literal: "Maria"')
    assert is_array_literal_error("Malformed ARRAY LITERAL")
    assert not is_array_literal_error("permission denied")
    assert not is_array_literal_error(None)
