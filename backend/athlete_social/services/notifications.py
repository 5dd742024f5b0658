"""Notification rows written alongside likes, comments and follow changes."""

from __future__ import annotations

from typing import Any, Mapping

NOTIFICATION_TYPES = ("follow_request", "new_follower", "follow_accepted", "like", "comment", "comment_like")
PREVIEW_LENGTH = 100

_MESSAGES = {
    "follow_request": "{actor} requested to follow you",
    "new_follower": "{actor} started following you",
    "follow_accepted": "{actor} accepted your follow request",
    "like": "{actor} liked your post",
    "comment": "{actor} commented on your post",
    "comment_like": "{actor} liked your comment",
}


def should_notify(recipient_id: str | None, actor_id: str | None) -> bool:
    # Nobody is notified about their own activity.
    return bool(recipient_id) and bool(actor_id) and recipient_id != actor_id


def actor_display_name(profile: Mapping[str, Any] | None) -> str:
    if not profile:
        return "Someone"
    full_name = (profile.get("full_name") or "").strip()
    if full_name:
        return full_name
    handle = profile.get("handle")
    if handle:
        return f"@{handle}"
    return "Someone"


def comment_preview(content: str | None) -> str | None:
    if not content:
        return None
    if len(content) <= PREVIEW_LENGTH:
        return content
    return content[:PREVIEW_LENGTH] + "..."


def render_message(kind: str, actor_name: str) -> str:
    try:
        template = _MESSAGES[kind]
    except KeyError as exc:
        raise ValueError(f"unknown notification type: {kind}") from exc
    return template.format(actor=actor_name)
