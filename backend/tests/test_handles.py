from __future__ import annotations

from athlete_social.services.handles import (
    DEFAULT_RESERVED_HANDLES_PATH,
    format_handle,
    generate_handle_suggestions,
    handle_variants,
    load_reserved_handles,
    validate_handle_format,
)

RESERVED = frozenset({"admin", "support"})


def test_validate_handle_accepts_plain_handle() -> None:
    result = validate_handle_format("testhandle123", reserved=RESERVED)

    assert result.is_valid is True
    assert result.handle == "testhandle123"
    assert result.error is None


def test_validate_handle_normalizes_case_and_leading_at() -> None:
    result = validate_handle_format("  @Alice.Runs ", reserved=RESERVED)

    assert result.is_valid is True
    assert result.handle == "alice.runs"


def test_validate_handle_rejects_single_character() -> None:
    result = validate_handle_format("a", reserved=RESERVED)

    assert result.is_valid is False
    assert "at least 2" in (result.error or "")


def test_validate_handle_rejects_embedded_whitespace() -> None:
    result = validate_handle_format("has spaces", reserved=RESERVED)

    assert result.is_valid is False
    assert result.error == "Handle cannot contain spaces"


def test_validate_handle_rejects_overlong_handle() -> None:
    assert validate_handle_format("a" * 21).is_valid is False
    assert validate_handle_format("a" * 20).is_valid is True
    assert validate_handle_format("a" * 25, max_length=30).is_valid is True


def test_validate_handle_rejects_bad_separators() -> None:
    for value in ("_leading", "trailing.", "double..dot", "mixed._sep", "dash-handle"):
        result = validate_handle_format(value, reserved=RESERVED)
        assert result.is_valid is False, value


def test_validate_handle_rejects_reserved_words_with_suggestions() -> None:
    result = validate_handle_format("Admin", reserved=RESERVED)

    assert result.is_valid is False
    assert result.error == "This handle is reserved by the system"
    assert result.suggestions == ["admin1", "admin2", "admin_1"]
    for suggestion in result.suggestions:
        assert validate_handle_format(suggestion, reserved=RESERVED).is_valid is True


def test_validate_handle_is_total_over_non_strings() -> None:
    for value in (None, 42, ["alice"], b"alice"):
        result = validate_handle_format(value)
        assert result.is_valid is False
        assert result.error == "Handle must be a string"


def test_validate_handle_accepts_plain_iterable_of_reserved_words() -> None:
    result = validate_handle_format("coach", reserved=["Coach"])

    assert result.is_valid is False


def test_handle_variants_fit_max_length() -> None:
    variants = handle_variants("abcdefghijklmnopqrst", max_length=20)

    assert variants
    assert all(len(variant) <= 20 for variant in variants)
    assert all(validate_handle_format(variant).is_valid for variant in variants)


def test_generate_handle_suggestions_from_names_and_email() -> None:
    suggestions = generate_handle_suggestions("Jane", "O'Doe", "jd@example.com")

    assert suggestions == ["janeodoe", "jodoe", "odoejane", "jane.odoe", "jd"]


def test_generate_handle_suggestions_without_inputs() -> None:
    assert generate_handle_suggestions() == ["athlete1", "athlete2"]


def test_format_handle() -> None:
    assert format_handle("alice") == "@alice"
    assert format_handle("@alice") == "@alice"
    assert format_handle(None) == ""


def test_load_reserved_handles_from_packaged_file() -> None:
    reserved = load_reserved_handles()

    assert DEFAULT_RESERVED_HANDLES_PATH.exists()
    assert {"admin", "support", "api"} <= reserved
    assert not any(entry.startswith("#") for entry in reserved)


def test_load_reserved_handles_from_configured_file(tmp_path) -> None:
    path = tmp_path / "reserved.txt"
    path.write_text("# custom list\nCoach\n\n@Referee\n", encoding="utf-8")

    assert load_reserved_handles(str(path)) == frozenset({"coach", "referee"})
