"""Row-level access predicates.

These mirror the RLS policies in ``migrations/0001_core_schema.sql``. Every
predicate is false for an unauthenticated requester (``None``).
"""

from __future__ import annotations

import re
from typing import Any, Mapping

PROFILE_VISIBILITIES = ("public", "private")
OBJECT_SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")
POST_VISIBILITIES = ("public", "followers", "private")
FOLLOW_STATUSES = ("pending", "accepted", "rejected")


def is_owner(requester_id: str | None, owner_id: str | None) -> bool:
    return bool(requester_id) and bool(owner_id) and requester_id == owner_id


def can_write_as(requester_id: str | None, owner_id: str | None) -> bool:
    """Create, update and delete are only allowed in the requester's own name."""
    return is_owner(requester_id, owner_id)


def can_read_profile(
    requester_id: str | None,
    profile: Mapping[str, Any],
    *,
    follow_status: str | None = None,
) -> bool:
    if not requester_id:
        return False
    if is_owner(requester_id, profile.get("id")):
        return True
    if profile.get("visibility") == "public":
        return True
    return follow_status == "accepted"


def can_read_post(
    requester_id: str | None,
    post: Mapping[str, Any],
    *,
    follow_status: str | None = None,
) -> bool:
    if not requester_id:
        return False
    if is_owner(requester_id, post.get("profile_id")):
        return True
    visibility = post.get("visibility")
    if visibility == "public":
        return True
    if visibility == "followers":
        return follow_status == "accepted"
    return False


def can_read_follow(requester_id: str | None, follow: Mapping[str, Any]) -> bool:
    """Only the two parties to a relationship see it, whatever its status."""
    if not requester_id:
        return False
    return requester_id in (follow.get("follower_id"), follow.get("following_id"))


def can_read_sport_settings(requester_id: str | None, row: Mapping[str, Any]) -> bool:
    return is_owner(requester_id, row.get("profile_id"))


def can_delete_comment(requester_id: str | None, comment: Mapping[str, Any], post: Mapping[str, Any]) -> bool:
    return is_owner(requester_id, comment.get("profile_id")) or is_owner(requester_id, post.get("profile_id"))


def can_write_media_object(requester_id: str | None, object_path: str) -> bool:
    # Storage URLs collapse dot segments, so every segment must be a plain name.
    if not requester_id:
        return False
    segments = object_path.split("/")
    if len(segments) < 2 or segments[0] != requester_id:
        return False
    return all(OBJECT_SEGMENT_RE.match(segment) and segment not in (".", "..") for segment in segments)
