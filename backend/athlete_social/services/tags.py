"""Post tag handling.

``posts.tags`` holds profile references only. Free-text labels live in
``posts.category_tags``. Older rows may still carry labels in ``tags``, so
readers filter entries before resolving them to profiles.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from athlete_social.services.errors import RepositoryValidationError

logger = logging.getLogger(__name__)

PROFILE_REF_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
MAX_TAGS_PER_POST = 50
MAX_CATEGORY_TAG_LENGTH = 40


def is_profile_ref(value: Any) -> bool:
    return isinstance(value, str) and PROFILE_REF_RE.match(value.strip()) is not None


def require_profile_refs(values: Iterable[Any] | None) -> list[str]:
    if values is None:
        return []
    refs: list[str] = []
    for value in values:
        if not is_profile_ref(value):
            raise RepositoryValidationError(f"tags may only contain profile ids, got {value!r}")
        normalized = value.strip().lower()
        if normalized not in refs:
            refs.append(normalized)
    if len(refs) > MAX_TAGS_PER_POST:
        raise RepositoryValidationError(f"a post may tag at most {MAX_TAGS_PER_POST} profiles")
    return refs


def resolvable_profile_refs(values: Iterable[Any] | None, *, post_id: str | None = None) -> list[str]:
    if not values:
        return []
    refs: list[str] = []
    for value in values:
        if not is_profile_ref(value):
            logger.info("skipping non-profile tag entry post_id=%s entry=%r", post_id, value)
            continue
        normalized = value.strip().lower()
        if normalized not in refs:
            refs.append(normalized)
    return refs


def split_legacy_tags(values: Iterable[Any] | None) -> tuple[list[str], list[str]]:
    kept: list[str] = []
    removed: list[str] = []
    for value in values or []:
        if is_profile_ref(value):
            kept.append(value.strip().lower())
        else:
            removed.append(str(value))
    return kept, removed


def normalize_category_tags(values: Iterable[Any] | None) -> list[str]:
    if values is None:
        return []
    labels: list[str] = []
    for value in values:
        if not isinstance(value, str):
            raise RepositoryValidationError("category tags must be strings")
        label = value.strip().lower().lstrip("#")
        if not label:
            continue
        if len(label) > MAX_CATEGORY_TAG_LENGTH:
            raise RepositoryValidationError(
                f"category tags must be {MAX_CATEGORY_TAG_LENGTH} characters or less",
            )
        if is_profile_ref(label):
            raise RepositoryValidationError("profile ids belong in tags, not category_tags")
        if label not in labels:
            labels.append(label)
    return labels
