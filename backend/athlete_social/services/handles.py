"""@handle validation.

Validation is pure: the same input always yields the same result and nothing
is read or written besides the reserved-word set passed in by the caller.
Uniqueness is enforced separately by the repository (``lower(handle)`` index).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

HANDLE_MIN_LENGTH = 2
HANDLE_MAX_LENGTH = 20
HANDLE_FORMAT_RE = re.compile(r"^[a-z0-9](?:[a-z0-9._]*[a-z0-9])?$")
HANDLE_REPEATED_SEPARATOR_RE = re.compile(r"[._]{2,}")
WHITESPACE_RE = re.compile(r"\s")
NON_HANDLE_CHARS_RE = re.compile(r"[^a-z0-9]")

DEFAULT_RESERVED_HANDLES_PATH = Path(__file__).resolve().parents[1] / "data" / "reserved_handles.txt"


@dataclass(frozen=True, slots=True)
class HandleValidationResult:
    is_valid: bool
    handle: str | None = None
    error: str | None = None
    suggestions: list[str] = field(default_factory=list)


def clean_handle_input(value: str) -> str:
    cleaned = value.strip().lower()
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]
    return cleaned


def validate_handle_format(
    value: Any,
    *,
    reserved: Iterable[str] = (),
    max_length: int = HANDLE_MAX_LENGTH,
) -> HandleValidationResult:
    if not isinstance(value, str):
        return HandleValidationResult(is_valid=False, error="Handle must be a string")

    handle = clean_handle_input(value)

    if WHITESPACE_RE.search(handle):
        return HandleValidationResult(is_valid=False, handle=handle, error="Handle cannot contain spaces")

    if len(handle) < HANDLE_MIN_LENGTH:
        return HandleValidationResult(
            is_valid=False,
            handle=handle,
            error=f"Handle must be at least {HANDLE_MIN_LENGTH} characters long",
        )

    if len(handle) > max_length:
        return HandleValidationResult(
            is_valid=False,
            handle=handle,
            error=f"Handle must be {max_length} characters or less",
        )

    if not HANDLE_FORMAT_RE.match(handle):
        return HandleValidationResult(
            is_valid=False,
            handle=handle,
            error=(
                "Handle can only contain letters, numbers, dots, and underscores. "
                "Must start and end with a letter or number."
            ),
        )

    if HANDLE_REPEATED_SEPARATOR_RE.search(handle):
        return HandleValidationResult(
            is_valid=False,
            handle=handle,
            error="Handle cannot have consecutive dots or underscores",
        )

    reserved_set = reserved if isinstance(reserved, (set, frozenset)) else {item.lower() for item in reserved}
    if handle in reserved_set:
        return HandleValidationResult(
            is_valid=False,
            handle=handle,
            error="This handle is reserved by the system",
            suggestions=handle_variants(handle, max_length=max_length)[:3],
        )

    return HandleValidationResult(is_valid=True, handle=handle)


def generate_handle_suggestions(
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
    *,
    max_length: int = HANDLE_MAX_LENGTH,
    limit: int = 5,
) -> list[str]:
    """Candidate handles derived from a profile's name and email."""
    first = _slug(first_name)
    last = _slug(last_name)
    candidates: list[str] = []

    if first and last:
        candidates.extend([f"{first}{last}", f"{first[0]}{last}", f"{last}{first}", f"{first}.{last}"])
    elif first:
        candidates.extend([first, f"{first}1"])
    elif last:
        candidates.extend([last, f"{last}1"])

    if email and "@" in email:
        local_part = _slug(email.split("@", maxsplit=1)[0])
        if local_part:
            candidates.append(local_part)

    base = candidates[0] if candidates else "athlete"
    candidates.extend([f"{base}1", f"{base}2"])

    suggestions: list[str] = []
    for candidate in candidates:
        trimmed = candidate[:max_length]
        if len(trimmed) < HANDLE_MIN_LENGTH or trimmed in suggestions:
            continue
        suggestions.append(trimmed)
        if len(suggestions) >= limit:
            break
    return suggestions


def handle_variants(handle: str, *, max_length: int = HANDLE_MAX_LENGTH) -> list[str]:
    """Numbered alternatives for a reserved or taken handle, all well-formed."""
    variants: list[str] = []
    for suffix in ("1", "2", "_1", "3", "_official"):
        candidate = f"{handle}{suffix}"
        if len(candidate) > max_length:
            candidate = f"{handle[: max_length - len(suffix)]}{suffix}"
        candidate = candidate.strip("._")
        if candidate in variants or HANDLE_REPEATED_SEPARATOR_RE.search(candidate):
            continue
        if HANDLE_FORMAT_RE.match(candidate):
            variants.append(candidate)
    return variants


def format_handle(handle: str | None) -> str:
    if not handle:
        return ""
    return f"@{handle.strip().lstrip('@')}"


@lru_cache
def load_reserved_handles(path: str | None = None) -> frozenset[str]:
    source = Path(path) if path else DEFAULT_RESERVED_HANDLES_PATH
    entries: set[str] = set()
    for line in source.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        entries.add(clean_handle_input(stripped))
    return frozenset(entries)


def _slug(value: str | None) -> str:
    if not value:
        return ""
    return NON_HANDLE_CHARS_RE.sub("", value.lower())
