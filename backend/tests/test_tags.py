from __future__ import annotations

import logging

import pytest

from athlete_social.services.errors import RepositoryValidationError
from athlete_social.services.tags import (
    MAX_TAGS_PER_POST,
    is_profile_ref,
    normalize_category_tags,
    require_profile_refs,
    resolvable_profile_refs,
    split_legacy_tags,
)

PROFILE_A = "11111111-1111-4111-8111-111111111111"
PROFILE_B = "22222222-2222-4222-8222-222222222222"


def test_is_profile_ref() -> None:
    assert is_profile_ref(PROFILE_A) is True
    assert is_profile_ref(PROFILE_A.upper()) is True
    assert is_profile_ref("lifestyle") is False
    assert is_profile_ref(PROFILE_A[:-1]) is False
    assert is_profile_ref(None) is False


def test_require_profile_refs_normalizes_and_deduplicates() -> None:
    assert require_profile_refs([PROFILE_B, PROFILE_A.upper(), PROFILE_B]) == [PROFILE_B, PROFILE_A]
    assert require_profile_refs(None) == []


def test_require_profile_refs_rejects_category_labels() -> None:
    with pytest.raises(RepositoryValidationError, match="lifestyle"):
        require_profile_refs([PROFILE_A, "lifestyle"])


def test_require_profile_refs_caps_list_length() -> None:
    refs = [f"{index:08x}-0000-4000-8000-000000000000" for index in range(MAX_TAGS_PER_POST + 1)]

    with pytest.raises(RepositoryValidationError, match="at most"):
        require_profile_refs(refs)


def test_resolvable_profile_refs_skips_and_logs_labels(caplog) -> None:
    caplog.set_level(logging.INFO, logger="athlete_social.services.tags")

    refs = resolvable_profile_refs(["lifestyle", PROFILE_A, 7], post_id="post-1")

    assert refs == [PROFILE_A]
    skipped = [record for record in caplog.records if "skipping non-profile tag entry" in record.getMessage()]
    assert len(skipped) == 2
    assert all(record.levelno == logging.INFO for record in skipped)
    assert "'lifestyle'" in skipped[0].getMessage()


def test_split_legacy_tags() -> None:
    kept, removed = split_legacy_tags(["lifestyle", PROFILE_A, "training"])

    assert kept == [PROFILE_A]
    assert removed == ["lifestyle", "training"]
    assert split_legacy_tags(None) == ([], [])


def test_normalize_category_tags() -> None:
    assert normalize_category_tags([" #Lifestyle", "lifestyle", "Golf", "  "]) == ["lifestyle", "golf"]
    assert normalize_category_tags(None) == []


def test_normalize_category_tags_rejects_profile_ids() -> None:
    with pytest.raises(RepositoryValidationError, match="belong in tags"):
        normalize_category_tags([PROFILE_A])


def test_normalize_category_tags_rejects_non_strings() -> None:
    with pytest.raises(RepositoryValidationError):
        normalize_category_tags(["golf", 3])
