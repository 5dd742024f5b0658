from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from athlete_social.core.auth import Principal
from athlete_social.core.telemetry import storage_span
from athlete_social.schemas.follows import FollowOut
from athlete_social.schemas.maintenance import CounterReportOut, TagCleanupOut
from athlete_social.schemas.notifications import NotificationOut
from athlete_social.schemas.posts import CommentEngagementOut, CommentOut, EngagementOut, PostOut
from athlete_social.schemas.profiles import (
    HandleAvailabilityOut,
    HandleHistoryOut,
    ProfileOut,
    ProfileSummaryOut,
)
from athlete_social.schemas.sport_settings import SportSettingsOut
from athlete_social.services import inputs, notifications, policies
from athlete_social.services.counters import (
    CommentCounterDrift,
    CounterDrift,
    CounterField,
    decrement,
    increment,
)
from athlete_social.services.errors import (
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from athlete_social.services.handles import HANDLE_MAX_LENGTH, handle_variants, validate_handle_format
from athlete_social.services.tags import (
    normalize_category_tags,
    require_profile_refs,
    resolvable_profile_refs,
    split_legacy_tags,
)

logger = logging.getLogger(__name__)

TAG_CLEANUP_RUN = "category_tag_cleanup"

_COUNTER_TABLES: dict[CounterField, str] = {
    CounterField.LIKES: "likes",
    CounterField.COMMENTS: "comments",
    CounterField.SAVES: "saves",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository for development and tests.

    Mirrors ``PostgresRepository``: the same policy checks, the same error
    types and the same counter bookkeeping. Each method mutates state without
    awaiting, so every operation is atomic under the event loop.
    """

    def __init__(self, *, reserved_handles: frozenset[str] = frozenset(), handle_max_length: int = HANDLE_MAX_LENGTH) -> None:
        self.reserved_handles = reserved_handles
        self.handle_max_length = handle_max_length
        self.profiles: dict[str, dict[str, Any]] = {}
        self.posts: dict[str, dict[str, Any]] = {}
        self.likes: dict[str, dict[str, Any]] = {}
        self.comments: dict[str, dict[str, Any]] = {}
        self.comment_likes: dict[str, dict[str, Any]] = {}
        self.saves: dict[str, dict[str, Any]] = {}
        self.follows: dict[str, dict[str, Any]] = {}
        self.notifications: dict[str, dict[str, Any]] = {}
        self.sport_settings: dict[tuple[str, str], dict[str, Any]] = {}
        self.handle_history: list[dict[str, Any]] = []
        self.post_tags_backup: dict[str, dict[str, Any]] = {}
        self.maintenance_runs: dict[str, dict[str, Any]] = {}
        self._sequence = 0

    async def close(self) -> None:
        return None

    # -- profiles ---------------------------------------------------------

    async def create_profile(
        self,
        *,
        requester_id: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
        visibility: str = "public",
    ) -> ProfileOut:
        profile_id = inputs.require_profile_id(inputs.require_requester(requester_id), field="requester_id")
        normalized_first = inputs.normalize_name(first_name, field="first_name")
        normalized_last = inputs.normalize_name(last_name, field="last_name")
        normalized_visibility = inputs.require_profile_visibility(visibility)
        if profile_id in self.profiles:
            raise RepositoryConflictError("profile already exists")

        now = _now()
        row = {
            "id": profile_id,
            "handle": None,
            "first_name": normalized_first,
            "last_name": normalized_last,
            "full_name": inputs.compose_full_name(normalized_first, normalized_last),
            "email": inputs.coerce_text(email),
            "avatar_url": None,
            "visibility": normalized_visibility,
            "handle_updated_at": None,
            "handle_change_count": 0,
            "created_at": now,
            "updated_at": now,
        }
        self.profiles[profile_id] = row
        return ProfileOut(**row)

    async def get_profile(self, *, requester_id: str | None, profile_id: str) -> ProfileOut:
        requester_id = inputs.require_requester(requester_id)
        return ProfileOut(**self._readable_profile(requester_id, inputs.normalize_id(profile_id)))

    async def update_profile(
        self,
        *,
        requester_id: str | None,
        first_name: str | None = None,
        last_name: str | None = None,
        full_name: str | None = None,
        avatar_url: str | None = None,
        visibility: str | None = None,
    ) -> ProfileOut:
        row = self._own_profile(inputs.require_requester(requester_id))
        changes: dict[str, Any] = {}
        if first_name is not None:
            changes["first_name"] = inputs.normalize_name(first_name, field="first_name")
        if last_name is not None:
            changes["last_name"] = inputs.normalize_name(last_name, field="last_name")
        if avatar_url is not None:
            changes["avatar_url"] = inputs.normalize_avatar_url(avatar_url)
        if visibility is not None:
            changes["visibility"] = inputs.require_profile_visibility(visibility)

        explicit_full_name = inputs.normalize_name(full_name, field="full_name")
        row.update(changes)
        if explicit_full_name is not None:
            row["full_name"] = explicit_full_name
        elif "first_name" in changes or "last_name" in changes:
            row["full_name"] = inputs.compose_full_name(row["first_name"], row["last_name"])
        row["updated_at"] = _now()
        return ProfileOut(**row)

    async def delete_profile(self, *, requester_id: str | None) -> None:
        profile = self._own_profile(inputs.require_requester(requester_id))
        profile_id = profile["id"]

        for post_id in [post_id for post_id, post in self.posts.items() if post["profile_id"] == profile_id]:
            self._delete_post_rows(post_id)

        for like_id in [like_id for like_id, like in self.comment_likes.items() if like["profile_id"] == profile_id]:
            like = self.comment_likes.pop(like_id)
            self._apply_comment_likes_delta(like["comment_id"], -1)

        for field, table_name in _COUNTER_TABLES.items():
            table: dict[str, dict[str, Any]] = getattr(self, table_name)
            for row_id in [row_id for row_id, row in table.items() if row["profile_id"] == profile_id]:
                if field is CounterField.COMMENTS:
                    row = self._delete_comment_rows(row_id)
                else:
                    row = table.pop(row_id)
                self._apply_counter_delta(row["post_id"], field, -1)

        self.follows = {
            follow_id: follow
            for follow_id, follow in self.follows.items()
            if profile_id not in (follow["follower_id"], follow["following_id"])
        }
        self._drop_notifications(
            lambda row: profile_id in (row["recipient_id"], row["actor_id"]) or row["follow_id"] not in (None, *self.follows)
        )
        self.sport_settings = {key: row for key, row in self.sport_settings.items() if key[0] != profile_id}
        self.handle_history = [row for row in self.handle_history if row["profile_id"] != profile_id]
        del self.profiles[profile_id]

    async def check_handle_availability(self, *, requester_id: str | None, handle: str) -> HandleAvailabilityOut:
        requester_id = inputs.require_requester(requester_id)
        result = validate_handle_format(handle, reserved=self.reserved_handles, max_length=self.handle_max_length)
        if not result.is_valid:
            return HandleAvailabilityOut(
                available=False,
                handle=result.handle,
                reason=result.error,
                suggestions=result.suggestions,
            )

        owner_id = self._handle_owner(result.handle)
        if owner_id is not None and owner_id != requester_id:
            return HandleAvailabilityOut(
                available=False,
                handle=result.handle,
                reason="This handle is already taken",
                suggestions=self._free_handle_variants(result.handle),
            )
        return HandleAvailabilityOut(available=True, handle=result.handle)

    async def update_handle(self, *, requester_id: str | None, handle: str) -> ProfileOut:
        row = self._own_profile(inputs.require_requester(requester_id))
        result = validate_handle_format(handle, reserved=self.reserved_handles, max_length=self.handle_max_length)
        if not result.is_valid:
            raise RepositoryValidationError(result.error or "invalid handle")

        new_handle = result.handle
        if row["handle"] == new_handle:
            return ProfileOut(**row)

        owner_id = self._handle_owner(new_handle)
        if owner_id is not None and owner_id != row["id"]:
            raise RepositoryConflictError("handle is already taken")

        now = _now()
        if row["handle"]:
            self.handle_history.append(
                {
                    "profile_id": row["id"],
                    "old_handle": row["handle"],
                    "new_handle": new_handle,
                    "changed_at": now,
                }
            )
        row["handle"] = new_handle
        row["handle_updated_at"] = now
        row["handle_change_count"] += 1
        row["updated_at"] = now
        return ProfileOut(**row)

    async def list_handle_history(self, *, requester_id: str | None) -> list[HandleHistoryOut]:
        row = self._own_profile(inputs.require_requester(requester_id))
        history = [entry for entry in self.handle_history if entry["profile_id"] == row["id"]]
        return [HandleHistoryOut(**entry) for entry in reversed(history)]

    async def search_profiles_by_handle(
        self,
        *,
        requester_id: str | None,
        query: str,
        limit: int = 10,
    ) -> list[ProfileSummaryOut]:
        requester_id = inputs.require_requester(requester_id)
        prefix = (query or "").strip().lower().lstrip("@")
        if not prefix:
            return []
        matches = [
            row
            for row in self.profiles.values()
            if row["handle"]
            and row["handle"].startswith(prefix)
            and self._can_read_profile_row(requester_id, row)
        ]
        matches.sort(key=lambda row: row["handle"])
        return [self._profile_summary(row) for row in matches[: inputs.bound_limit(limit, maximum=50)]]

    # -- posts ------------------------------------------------------------

    async def create_post(
        self,
        *,
        requester_id: str | None,
        caption: str | None = None,
        visibility: str = "public",
        tags: list[str] | None = None,
        category_tags: list[str] | None = None,
    ) -> PostOut:
        author = self._own_profile(inputs.require_requester(requester_id))
        normalized_caption = inputs.normalize_caption(caption)
        normalized_visibility = inputs.require_post_visibility(visibility)
        refs = require_profile_refs(tags)
        labels = normalize_category_tags(category_tags)
        self._require_existing_profiles(refs)

        now = _now()
        post_id = str(uuid4())
        row = {
            "id": post_id,
            "profile_id": author["id"],
            "caption": normalized_caption,
            "visibility": normalized_visibility,
            "tags": refs,
            "category_tags": labels,
            "likes_count": 0,
            "comments_count": 0,
            "saves_count": 0,
            "created_at": now,
            "updated_at": now,
            "_seq": self._next_sequence(),
        }
        self.posts[post_id] = row
        return self._post_out(row)

    async def get_post(self, *, requester_id: str | None, post_id: str) -> PostOut:
        return self._post_out(self._readable_post(inputs.require_requester(requester_id), post_id))

    async def list_profile_posts(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PostOut]:
        requester_id = inputs.require_requester(requester_id)
        profile_id = inputs.normalize_id(profile_id)
        rows = [
            row
            for row in self.posts.values()
            if row["profile_id"] == profile_id and self._can_read_post_row(requester_id, row)
        ]
        rows.sort(key=lambda row: (row["created_at"], row["_seq"]), reverse=True)
        start = inputs.bound_offset(offset)
        return [self._post_out(row) for row in rows[start : start + inputs.bound_limit(limit)]]

    async def update_post(
        self,
        *,
        requester_id: str | None,
        post_id: str,
        caption: str | None = None,
        visibility: str | None = None,
        tags: list[str] | None = None,
        category_tags: list[str] | None = None,
    ) -> PostOut:
        row = self._owned_post(inputs.require_requester(requester_id), post_id)
        changes: dict[str, Any] = {}
        if caption is not None:
            changes["caption"] = inputs.normalize_caption(caption)
        if visibility is not None:
            changes["visibility"] = inputs.require_post_visibility(visibility)
        if tags is not None:
            refs = require_profile_refs(tags)
            self._require_existing_profiles(refs)
            changes["tags"] = refs
        if category_tags is not None:
            changes["category_tags"] = normalize_category_tags(category_tags)
        row.update(changes)
        row["updated_at"] = _now()
        return self._post_out(row)

    async def delete_post(self, *, requester_id: str | None, post_id: str) -> None:
        row = self._owned_post(inputs.require_requester(requester_id), post_id)
        self._delete_post_rows(row["id"])

    async def resolve_tagged_profiles(self, *, requester_id: str | None, post_id: str) -> list[ProfileSummaryOut]:
        requester_id = inputs.require_requester(requester_id)
        post = self._readable_post(requester_id, post_id)
        resolved: list[ProfileSummaryOut] = []
        for ref in resolvable_profile_refs(post["tags"], post_id=post["id"]):
            profile = self.profiles.get(ref)
            if profile is None or not self._can_read_profile_row(requester_id, profile):
                logger.debug("tagged profile not resolvable post_id=%s profile_id=%s", post["id"], ref)
                continue
            resolved.append(self._profile_summary(profile))
        return resolved

    # -- engagement -------------------------------------------------------

    async def like_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = self._insert_engagement(requester_id, post_id, CounterField.LIKES)
        self._notify(post["profile_id"], requester_id, "like", post_id=post["id"])
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="liked", count=count)

    async def unlike_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = self._delete_engagement(requester_id, post_id, CounterField.LIKES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="unliked", count=count)

    async def save_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = self._insert_engagement(requester_id, post_id, CounterField.SAVES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="saved", count=count)

    async def unsave_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = self._delete_engagement(requester_id, post_id, CounterField.SAVES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="unsaved", count=count)

    async def list_saved_posts(self, *, requester_id: str | None, limit: int = 20, offset: int = 0) -> list[PostOut]:
        requester_id = inputs.require_requester(requester_id)
        profile = self._own_profile(requester_id)
        saved = [row for row in self.saves.values() if row["profile_id"] == profile["id"]]
        saved.sort(key=lambda row: (row["created_at"], row["_seq"]), reverse=True)
        posts = [
            self.posts[row["post_id"]]
            for row in saved
            if self._can_read_post_row(requester_id, self.posts[row["post_id"]])
        ]
        start = inputs.bound_offset(offset)
        return [self._post_out(row) for row in posts[start : start + inputs.bound_limit(limit)]]

    async def add_comment(self, *, requester_id: str | None, post_id: str, content: str) -> CommentOut:
        requester_id = inputs.require_requester(requester_id)
        author = self._own_profile(requester_id)
        normalized_content = inputs.require_comment_content(content)
        post = self._readable_post(requester_id, post_id)

        comment_id = str(uuid4())
        row = {
            "id": comment_id,
            "post_id": post["id"],
            "profile_id": author["id"],
            "content": normalized_content,
            "likes_count": 0,
            "created_at": _now(),
            "_seq": self._next_sequence(),
        }
        self.comments[comment_id] = row
        self._apply_counter_delta(post["id"], CounterField.COMMENTS, 1)
        self._notify(
            post["profile_id"],
            author["id"],
            "comment",
            post_id=post["id"],
            comment_id=comment_id,
            preview=notifications.comment_preview(normalized_content),
        )
        return self._comment_out(row)

    async def delete_comment(self, *, requester_id: str | None, comment_id: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        comment, post = self._readable_comment(requester_id, comment_id)
        if not policies.can_delete_comment(requester_id, comment, post):
            raise RepositoryForbiddenError("only the author or the post owner may delete a comment")
        self._delete_comment_rows(comment["id"])
        self._apply_counter_delta(post["id"], CounterField.COMMENTS, -1)

    async def list_comments(
        self,
        *,
        requester_id: str | None,
        post_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CommentOut]:
        post = self._readable_post(inputs.require_requester(requester_id), post_id)
        rows = [row for row in self.comments.values() if row["post_id"] == post["id"]]
        rows.sort(key=lambda row: (row["created_at"], row["_seq"]))
        start = inputs.bound_offset(offset)
        return [self._comment_out(row) for row in rows[start : start + inputs.bound_limit(limit)]]

    async def like_comment(self, *, requester_id: str | None, comment_id: str) -> CommentEngagementOut:
        requester_id = inputs.require_requester(requester_id)
        profile = self._own_profile(requester_id)
        comment, post = self._readable_comment(requester_id, comment_id)
        if self._find_comment_like(comment["id"], profile["id"]) is not None:
            raise RepositoryConflictError("duplicate like for comment")

        like_id = str(uuid4())
        self.comment_likes[like_id] = {
            "id": like_id,
            "comment_id": comment["id"],
            "profile_id": profile["id"],
            "created_at": _now(),
            "_seq": self._next_sequence(),
        }
        count = self._apply_comment_likes_delta(comment["id"], 1)
        self._notify(comment["profile_id"], profile["id"], "comment_like", post_id=post["id"], comment_id=comment["id"])
        return CommentEngagementOut(
            comment_id=comment["id"],
            post_id=post["id"],
            profile_id=profile["id"],
            action="liked",
            count=count,
        )

    async def unlike_comment(self, *, requester_id: str | None, comment_id: str) -> CommentEngagementOut:
        requester_id = inputs.require_requester(requester_id)
        comment, post = self._readable_comment(requester_id, comment_id)
        like = self._find_comment_like(comment["id"], requester_id)
        if like is None:
            raise RepositoryNotFoundError("comment like not found")
        del self.comment_likes[like["id"]]
        count = self._apply_comment_likes_delta(comment["id"], -1)
        return CommentEngagementOut(
            comment_id=comment["id"],
            post_id=post["id"],
            profile_id=requester_id,
            action="unliked",
            count=count,
        )

    # -- notifications ----------------------------------------------------

    async def list_notifications(
        self,
        *,
        requester_id: str | None,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[NotificationOut]:
        requester_id = inputs.require_requester(requester_id)
        rows = [
            row
            for row in self.notifications.values()
            if row["recipient_id"] == requester_id and not (unread_only and row["is_read"])
        ]
        rows.sort(key=lambda row: (row["created_at"], row["_seq"]), reverse=True)
        start = inputs.bound_offset(offset)
        return [self._notification_out(row) for row in rows[start : start + inputs.bound_limit(limit)]]

    async def mark_notifications_read(
        self,
        *,
        requester_id: str | None,
        notification_ids: list[str] | None = None,
    ) -> int:
        requester_id = inputs.require_requester(requester_id)
        wanted = None
        if notification_ids is not None:
            wanted = {inputs.require_uuid(value, field="notification_ids") for value in notification_ids}

        now = _now()
        marked = 0
        for row in self.notifications.values():
            if row["recipient_id"] != requester_id or row["is_read"]:
                continue
            if wanted is not None and row["id"] not in wanted:
                continue
            row["is_read"] = True
            row["read_at"] = now
            marked += 1
        return marked

    # -- counter maintenance ----------------------------------------------

    async def get_post_counter_report(self, *, principal: Principal | None, post_id: str) -> CounterReportOut:
        inputs.require_maintainer(principal)
        post = self.posts.get(inputs.normalize_id(post_id))
        if post is None:
            raise RepositoryNotFoundError("post not found")
        return CounterReportOut(
            post_id=post["id"],
            likes_count=post["likes_count"],
            live_likes_count=self._live_count(post["id"], CounterField.LIKES),
            comments_count=post["comments_count"],
            live_comments_count=self._live_count(post["id"], CounterField.COMMENTS),
            saves_count=post["saves_count"],
            live_saves_count=self._live_count(post["id"], CounterField.SAVES),
        )

    async def reconcile_post_counters(
        self,
        *,
        principal: Principal | None,
        post_id: str | None = None,
        fields: list[CounterField] | None = None,
    ) -> list[CounterDrift]:
        inputs.require_maintainer(principal)
        selected = list(CounterField) if fields is None else [CounterField(field) for field in fields]
        post_id = inputs.normalize_id(post_id)
        if post_id is not None and post_id not in self.posts:
            raise RepositoryNotFoundError("post not found")
        targets = [post_id] if post_id is not None else sorted(self.posts)

        with storage_span("counters.reconcile", post_id=post_id):
            drifts: list[CounterDrift] = []
            for target_id in targets:
                post = self.posts[target_id]
                for field in selected:
                    actual = self._live_count(target_id, field)
                    stored = post[field.value]
                    if stored == actual:
                        continue
                    post[field.value] = actual
                    drift = CounterDrift(post_id=target_id, field=field, stored=stored, actual=actual)
                    drifts.append(drift)
                    logger.warning(
                        "repaired counter drift post_id=%s field=%s stored=%s actual=%s",
                        target_id,
                        field.value,
                        stored,
                        actual,
                    )
            return drifts

    async def reconcile_comment_counters(
        self,
        *,
        principal: Principal | None,
        post_id: str | None = None,
    ) -> list[CommentCounterDrift]:
        inputs.require_maintainer(principal)
        post_id = inputs.normalize_id(post_id)
        if post_id is not None and post_id not in self.posts:
            raise RepositoryNotFoundError("post not found")
        targets = sorted(
            comment_id
            for comment_id, comment in self.comments.items()
            if post_id is None or comment["post_id"] == post_id
        )

        with storage_span("counters.reconcile_comments", post_id=post_id):
            drifts: list[CommentCounterDrift] = []
            for comment_id in targets:
                comment = self.comments[comment_id]
                actual = sum(1 for like in self.comment_likes.values() if like["comment_id"] == comment_id)
                stored = comment["likes_count"]
                if stored == actual:
                    continue
                comment["likes_count"] = actual
                drifts.append(
                    CommentCounterDrift(comment_id=comment_id, post_id=comment["post_id"], stored=stored, actual=actual)
                )
                logger.warning(
                    "repaired comment counter drift comment_id=%s stored=%s actual=%s",
                    comment_id,
                    stored,
                    actual,
                )
            return drifts

    # -- follows ----------------------------------------------------------

    async def follow_profile(self, *, requester_id: str | None, following_id: str) -> FollowOut:
        follower = self._own_profile(inputs.require_requester(requester_id))
        following_id = inputs.normalize_id(following_id)
        if following_id == follower["id"]:
            raise RepositoryValidationError("cannot follow yourself")
        target = self.profiles.get(following_id)
        if target is None:
            raise RepositoryNotFoundError("profile not found")
        if self._find_follow(follower["id"], following_id) is not None:
            raise RepositoryConflictError("already following or requested")

        now = _now()
        follow_id = str(uuid4())
        status = "pending" if target["visibility"] == "private" else "accepted"
        row = {
            "id": follow_id,
            "follower_id": follower["id"],
            "following_id": following_id,
            "status": status,
            "created_at": now,
            "updated_at": now,
        }
        self.follows[follow_id] = row
        kind = "follow_request" if status == "pending" else "new_follower"
        self._notify(following_id, follower["id"], kind, follow_id=follow_id)
        return FollowOut(**row)

    async def unfollow_profile(self, *, requester_id: str | None, following_id: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        follow = self._find_follow(requester_id, inputs.normalize_id(following_id))
        if follow is None:
            raise RepositoryNotFoundError("follow not found")
        del self.follows[follow["id"]]
        self._drop_notifications(lambda row: row["follow_id"] == follow["id"])

    async def respond_to_follow(
        self,
        *,
        requester_id: str | None,
        follower_id: str,
        accept: bool,
    ) -> FollowOut:
        requester_id = inputs.require_requester(requester_id)
        follow = self._find_follow(inputs.normalize_id(follower_id), requester_id)
        if follow is None:
            raise RepositoryNotFoundError("follow request not found")
        if follow["status"] != "pending":
            raise RepositoryConflictError(f"follow request already {follow['status']}")
        follow["status"] = "accepted" if accept else "rejected"
        follow["updated_at"] = _now()
        if accept:
            self._notify(follow["follower_id"], requester_id, "follow_accepted", follow_id=follow["id"])
        return FollowOut(**follow)

    async def list_followers(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        status: str | None = None,
    ) -> list[FollowOut]:
        return self._list_follows(inputs.require_requester(requester_id), "following_id", profile_id, status)

    async def list_following(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        status: str | None = None,
    ) -> list[FollowOut]:
        return self._list_follows(inputs.require_requester(requester_id), "follower_id", profile_id, status)

    # -- sport settings ---------------------------------------------------

    async def get_sport_settings(self, *, requester_id: str | None, sport_key: str) -> SportSettingsOut:
        requester_id = inputs.require_requester(requester_id)
        key = inputs.normalize_sport_key(sport_key)
        row = self.sport_settings.get((requester_id, key))
        if row is None or not policies.can_read_sport_settings(requester_id, row):
            raise RepositoryNotFoundError("sport settings not found")
        return SportSettingsOut(**row)

    async def list_sport_settings(self, *, requester_id: str | None) -> list[SportSettingsOut]:
        requester_id = inputs.require_requester(requester_id)
        rows = [row for row in self.sport_settings.values() if policies.can_read_sport_settings(requester_id, row)]
        rows.sort(key=lambda row: row["sport_key"])
        return [SportSettingsOut(**row) for row in rows]

    async def upsert_sport_settings(
        self,
        *,
        requester_id: str | None,
        sport_key: str,
        settings: dict[str, Any],
    ) -> SportSettingsOut:
        profile = self._own_profile(inputs.require_requester(requester_id))
        key = inputs.normalize_sport_key(sport_key)
        payload = dict(inputs.require_settings_object(settings))
        now = _now()
        existing = self.sport_settings.get((profile["id"], key))
        if existing is None:
            existing = {"profile_id": profile["id"], "sport_key": key, "created_at": now}
            self.sport_settings[(profile["id"], key)] = existing
        existing["settings"] = payload
        existing["updated_at"] = now
        return SportSettingsOut(**existing)

    async def delete_sport_settings(self, *, requester_id: str | None, sport_key: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        key = inputs.normalize_sport_key(sport_key)
        if self.sport_settings.pop((requester_id, key), None) is None:
            raise RepositoryNotFoundError("sport settings not found")

    # -- one-shot migrations ----------------------------------------------

    async def run_category_tag_cleanup(self, *, principal: Principal | None) -> TagCleanupOut:
        inputs.require_maintainer(principal)
        if TAG_CLEANUP_RUN in self.maintenance_runs:
            raise RepositoryConflictError("category tag cleanup has already run")

        with storage_span("migrations.category_tag_cleanup"):
            now = _now()
            summary = TagCleanupOut()
            for post_id, post in self.posts.items():
                if not post["tags"]:
                    continue
                self.post_tags_backup[post_id] = {"post_id": post_id, "tags": list(post["tags"]), "backed_up_at": now}
                summary.posts_backed_up += 1

                kept, removed = split_legacy_tags(post["tags"])
                if not removed:
                    continue
                post["tags"] = kept
                summary.posts_cleaned += 1
                summary.labels_removed += len(removed)
                for label in removed:
                    if label not in summary.removed_labels:
                        summary.removed_labels.append(label)

            self.maintenance_runs[TAG_CLEANUP_RUN] = {"ran_at": now, "summary": summary.model_dump()}
            logger.info(
                "category tag cleanup done posts_backed_up=%s posts_cleaned=%s labels_removed=%s",
                summary.posts_backed_up,
                summary.posts_cleaned,
                summary.labels_removed,
            )
            return summary

    # -- helpers ----------------------------------------------------------
    # Helpers take a requester id already passed through inputs.require_requester.

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _follow_status(self, follower_id: str | None, following_id: str | None) -> str | None:
        if not follower_id or not following_id:
            return None
        follow = self._find_follow(follower_id, following_id)
        return follow["status"] if follow else None

    def _find_follow(self, follower_id: str, following_id: str) -> dict[str, Any] | None:
        for follow in self.follows.values():
            if follow["follower_id"] == follower_id and follow["following_id"] == following_id:
                return follow
        return None

    def _can_read_profile_row(self, requester_id: str, row: dict[str, Any]) -> bool:
        return policies.can_read_profile(requester_id, row, follow_status=self._follow_status(requester_id, row["id"]))

    def _can_read_post_row(self, requester_id: str, row: dict[str, Any]) -> bool:
        return policies.can_read_post(
            requester_id,
            row,
            follow_status=self._follow_status(requester_id, row["profile_id"]),
        )

    def _readable_profile(self, requester_id: str, profile_id: str) -> dict[str, Any]:
        row = self.profiles.get(profile_id)
        if row is None or not self._can_read_profile_row(requester_id, row):
            raise RepositoryNotFoundError("profile not found")
        return row

    def _own_profile(self, requester_id: str) -> dict[str, Any]:
        row = self.profiles.get(requester_id)
        if row is None:
            raise RepositoryConflictError("requester has no profile")
        return row

    def _readable_post(self, requester_id: str, post_id: str) -> dict[str, Any]:
        row = self.posts.get(inputs.normalize_id(post_id))
        if row is None or not self._can_read_post_row(requester_id, row):
            raise RepositoryNotFoundError("post not found")
        return row

    def _owned_post(self, requester_id: str, post_id: str) -> dict[str, Any]:
        row = self._readable_post(requester_id, post_id)
        if not policies.can_write_as(requester_id, row["profile_id"]):
            logger.debug("policy denied post write requester_id=%s post_id=%s", requester_id, row["id"])
            raise RepositoryForbiddenError("only the author may modify a post")
        return row

    def _readable_comment(self, requester_id: str, comment_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        comment = self.comments.get(inputs.normalize_id(comment_id))
        if comment is None:
            raise RepositoryNotFoundError("comment not found")
        post = self.posts[comment["post_id"]]
        if not self._can_read_post_row(requester_id, post):
            raise RepositoryNotFoundError("comment not found")
        return comment, post

    def _handle_owner(self, handle: str | None) -> str | None:
        if not handle:
            return None
        for row in self.profiles.values():
            if row["handle"] and row["handle"].lower() == handle.lower():
                return row["id"]
        return None

    def _free_handle_variants(self, handle: str) -> list[str]:
        candidates = handle_variants(handle, max_length=self.handle_max_length)
        free = [
            candidate
            for candidate in candidates
            if candidate not in self.reserved_handles and self._handle_owner(candidate) is None
        ]
        return free[:3]

    def _require_existing_profiles(self, refs: list[str]) -> None:
        missing = [ref for ref in refs if ref not in self.profiles]
        if missing:
            raise RepositoryConflictError(f"tagged profile does not exist: {missing[0]}")

    def _engagement_table(self, field: CounterField) -> dict[str, dict[str, Any]]:
        return getattr(self, _COUNTER_TABLES[field])

    def _find_engagement(self, field: CounterField, post_id: str, profile_id: str) -> dict[str, Any] | None:
        for row in self._engagement_table(field).values():
            if row["post_id"] == post_id and row["profile_id"] == profile_id:
                return row
        return None

    def _find_comment_like(self, comment_id: str, profile_id: str) -> dict[str, Any] | None:
        for row in self.comment_likes.values():
            if row["comment_id"] == comment_id and row["profile_id"] == profile_id:
                return row
        return None

    def _insert_engagement(
        self,
        requester_id: str,
        post_id: str,
        field: CounterField,
    ) -> tuple[dict[str, Any], int]:
        profile = self._own_profile(requester_id)
        post = self._readable_post(requester_id, post_id)
        if self._find_engagement(field, post["id"], profile["id"]) is not None:
            raise RepositoryConflictError(f"duplicate {_COUNTER_TABLES[field][:-1]} for post")

        row_id = str(uuid4())
        self._engagement_table(field)[row_id] = {
            "id": row_id,
            "post_id": post["id"],
            "profile_id": profile["id"],
            "created_at": _now(),
            "_seq": self._next_sequence(),
        }
        return post, self._apply_counter_delta(post["id"], field, 1)

    def _delete_engagement(
        self,
        requester_id: str,
        post_id: str,
        field: CounterField,
    ) -> tuple[dict[str, Any], int]:
        post = self._readable_post(requester_id, post_id)
        row = self._find_engagement(field, post["id"], requester_id)
        if row is None:
            raise RepositoryNotFoundError(f"{_COUNTER_TABLES[field][:-1]} not found")
        del self._engagement_table(field)[row["id"]]
        return post, self._apply_counter_delta(post["id"], field, -1)

    def _apply_counter_delta(self, post_id: str, field: CounterField, delta: int) -> int:
        post = self.posts.get(post_id)
        if post is None:
            return 0
        post[field.value] = increment(post[field.value]) if delta > 0 else decrement(post[field.value])
        return post[field.value]

    def _apply_comment_likes_delta(self, comment_id: str, delta: int) -> int:
        comment = self.comments.get(comment_id)
        if comment is None:
            return 0
        comment["likes_count"] = increment(comment["likes_count"]) if delta > 0 else decrement(comment["likes_count"])
        return comment["likes_count"]

    def _live_count(self, post_id: str, field: CounterField) -> int:
        return sum(1 for row in self._engagement_table(field).values() if row["post_id"] == post_id)

    def _delete_comment_rows(self, comment_id: str) -> dict[str, Any]:
        self.comment_likes = {
            like_id: like for like_id, like in self.comment_likes.items() if like["comment_id"] != comment_id
        }
        self._drop_notifications(lambda row: row["comment_id"] == comment_id)
        return self.comments.pop(comment_id)

    def _delete_post_rows(self, post_id: str) -> None:
        for comment_id in [comment_id for comment_id, row in self.comments.items() if row["post_id"] == post_id]:
            self._delete_comment_rows(comment_id)
        for field in (CounterField.LIKES, CounterField.SAVES):
            table = self._engagement_table(field)
            for row_id in [row_id for row_id, row in table.items() if row["post_id"] == post_id]:
                del table[row_id]
        self._drop_notifications(lambda row: row["post_id"] == post_id)
        del self.posts[post_id]

    def _notify(
        self,
        recipient_id: str,
        actor_id: str,
        kind: str,
        *,
        post_id: str | None = None,
        comment_id: str | None = None,
        follow_id: str | None = None,
        preview: str | None = None,
    ) -> None:
        if not notifications.should_notify(recipient_id, actor_id):
            return
        notification_id = str(uuid4())
        self.notifications[notification_id] = {
            "id": notification_id,
            "recipient_id": recipient_id,
            "actor_id": actor_id,
            "type": kind,
            "post_id": post_id,
            "comment_id": comment_id,
            "follow_id": follow_id,
            "message": notifications.render_message(kind, notifications.actor_display_name(self.profiles.get(actor_id))),
            "preview": preview,
            "is_read": False,
            "read_at": None,
            "created_at": _now(),
            "_seq": self._next_sequence(),
        }

    def _drop_notifications(self, predicate) -> None:
        self.notifications = {
            notification_id: row for notification_id, row in self.notifications.items() if not predicate(row)
        }

    def _list_follows(
        self,
        requester_id: str,
        column: str,
        profile_id: str,
        status: str | None,
    ) -> list[FollowOut]:
        if status is not None and status not in policies.FOLLOW_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, accepted, rejected")
        profile_id = inputs.normalize_id(profile_id)
        rows = [
            follow
            for follow in self.follows.values()
            if follow[column] == profile_id
            and (status is None or follow["status"] == status)
            and policies.can_read_follow(requester_id, follow)
        ]
        rows.sort(key=lambda follow: follow["created_at"], reverse=True)
        return [FollowOut(**follow) for follow in rows]

    @staticmethod
    def _profile_summary(row: dict[str, Any]) -> ProfileSummaryOut:
        return ProfileSummaryOut(
            id=row["id"],
            handle=row["handle"],
            full_name=row["full_name"],
            avatar_url=row["avatar_url"],
        )

    @staticmethod
    def _post_out(row: dict[str, Any]) -> PostOut:
        return PostOut(**{key: value for key, value in row.items() if not key.startswith("_")})

    @staticmethod
    def _comment_out(row: dict[str, Any]) -> CommentOut:
        return CommentOut(**{key: value for key, value in row.items() if not key.startswith("_")})

    @staticmethod
    def _notification_out(row: dict[str, Any]) -> NotificationOut:
        return NotificationOut(**{key: value for key, value in row.items() if not key.startswith("_")})
