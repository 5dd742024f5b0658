from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from athlete_social.core.auth import Principal
from athlete_social.core.config import get_settings
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
    comment_drift_from_row,
    drifts_from_row,
    render_comment_likes_delta_sql,
    render_comment_reconcile_sql,
    render_counter_delta_sql,
    render_reconcile_sql,
)
from athlete_social.services.errors import (
    RepositoryConflictError,
    RepositoryError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from athlete_social.services.handles import (
    HANDLE_MAX_LENGTH,
    handle_variants,
    load_reserved_handles,
    validate_handle_format,
)
from athlete_social.services.store import TAG_CLEANUP_RUN, InMemoryRepository
from athlete_social.services.tags import (
    normalize_category_tags,
    require_profile_refs,
    resolvable_profile_refs,
    split_legacy_tags,
)

__all__ = [
    "PostgresRepository",
    "RepositoryConflictError",
    "RepositoryError",
    "RepositoryForbiddenError",
    "RepositoryNotFoundError",
    "RepositoryUnavailableError",
    "RepositoryValidationError",
    "get_repository",
]

logger = logging.getLogger(__name__)

PROFILE_COLUMNS = """
  p.id::text as id,
  p.handle,
  p.first_name,
  p.last_name,
  p.full_name,
  p.email,
  p.avatar_url,
  p.visibility,
  p.handle_updated_at,
  p.handle_change_count,
  p.created_at,
  p.updated_at
"""

POST_COLUMNS = """
  p.id::text as id,
  p.profile_id::text as profile_id,
  p.caption,
  p.visibility,
  p.tags,
  p.category_tags,
  p.likes_count,
  p.comments_count,
  p.saves_count,
  p.created_at,
  p.updated_at
"""

COMMENT_COLUMNS = """
  c.id::text as id,
  c.post_id::text as post_id,
  c.profile_id::text as profile_id,
  c.content,
  c.likes_count,
  c.created_at
"""

FOLLOW_COLUMNS = """
  f.id::text as id,
  f.follower_id::text as follower_id,
  f.following_id::text as following_id,
  f.status,
  f.created_at,
  f.updated_at
"""

NOTIFICATION_COLUMNS = """
  n.id::text as id,
  n.recipient_id::text as recipient_id,
  n.actor_id::text as actor_id,
  n.type,
  n.post_id::text as post_id,
  n.comment_id::text as comment_id,
  n.follow_id::text as follow_id,
  n.message,
  n.preview,
  n.is_read,
  n.read_at,
  n.created_at
"""

SPORT_SETTINGS_COLUMNS = """
  s.profile_id::text as profile_id,
  s.sport_key,
  s.settings,
  s.created_at,
  s.updated_at
"""

# SQL renditions of services.policies; $1 is always the requester.
PROFILE_VISIBLE_SQL = """
  (
    p.id = $1::uuid
    or p.visibility = 'public'
    or exists (
      select 1 from follows vf
      where vf.follower_id = $1::uuid and vf.following_id = p.id and vf.status = 'accepted'
    )
  )
"""

POST_VISIBLE_SQL = """
  (
    p.profile_id = $1::uuid
    or p.visibility = 'public'
    or (
      p.visibility = 'followers'
      and exists (
        select 1 from follows vf
        where vf.follower_id = $1::uuid and vf.following_id = p.profile_id and vf.status = 'accepted'
      )
    )
  )
"""

FOLLOW_VISIBLE_SQL = """
  (f.follower_id = $1::uuid or f.following_id = $1::uuid)
"""

_ENGAGEMENT_LABELS: dict[CounterField, str] = {
    CounterField.LIKES: "like",
    CounterField.COMMENTS: "comment",
    CounterField.SAVES: "save",
}

_BAD_ID_ERRORS = (pg_exc.InvalidTextRepresentationError, asyncpg.DataError)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout: float = 15.0,
        reserved_handles: frozenset[str] = frozenset(),
        handle_max_length: int = HANDLE_MAX_LENGTH,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
        self.reserved_handles = reserved_handles
        self.handle_max_length = handle_max_length
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

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

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into profiles as p (id, first_name, last_name, full_name, email, visibility)
                values ($1::uuid, $2, $3, $4, $5, $6)
                returning {PROFILE_COLUMNS}
                """,
                profile_id,
                normalized_first,
                normalized_last,
                inputs.compose_full_name(normalized_first, normalized_last),
                inputs.coerce_text(email),
                normalized_visibility,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("profile already exists") from exc
        return ProfileOut(**dict(row))

    async def get_profile(self, *, requester_id: str | None, profile_id: str) -> ProfileOut:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await self._fetch_readable_profile(conn, requester_id, profile_id)
        return ProfileOut(**row)

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
        requester_id = inputs.require_requester(requester_id)
        explicit_full_name = inputs.normalize_name(full_name, field="full_name")
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._fetch_own_profile(conn, requester_id, for_update=True)
                updated = dict(current)
                if first_name is not None:
                    updated["first_name"] = inputs.normalize_name(first_name, field="first_name")
                if last_name is not None:
                    updated["last_name"] = inputs.normalize_name(last_name, field="last_name")
                if avatar_url is not None:
                    updated["avatar_url"] = inputs.normalize_avatar_url(avatar_url)
                if visibility is not None:
                    updated["visibility"] = inputs.require_profile_visibility(visibility)
                if explicit_full_name is not None:
                    updated["full_name"] = explicit_full_name
                elif first_name is not None or last_name is not None:
                    updated["full_name"] = inputs.compose_full_name(updated["first_name"], updated["last_name"])

                row = await conn.fetchrow(
                    f"""
                    update profiles as p
                    set
                      first_name = $2,
                      last_name = $3,
                      full_name = $4,
                      avatar_url = $5,
                      visibility = $6,
                      updated_at = now()
                    where p.id = $1::uuid
                    returning {PROFILE_COLUMNS}
                    """,
                    requester_id,
                    updated["first_name"],
                    updated["last_name"],
                    updated["full_name"],
                    updated["avatar_url"],
                    updated["visibility"],
                )
        return ProfileOut(**dict(row))

    async def delete_profile(self, *, requester_id: str | None) -> None:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        with storage_span("profiles.delete", profile_id=requester_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._fetch_own_profile(conn, requester_id, for_update=True)
                    # Cascades remove the child rows; counters on other authors' posts and comments move here.
                    for field in CounterField:
                        await conn.execute(
                            f"""
                            update posts p
                            set {field.value} = greatest(p.{field.value} - c.n, 0)
                            from (
                              select post_id, count(*)::int as n
                              from {field.source_table}
                              where profile_id = $1::uuid
                              group by post_id
                            ) c
                            where p.id = c.post_id
                              and p.profile_id <> $1::uuid
                            """,
                            requester_id,
                        )
                    await conn.execute(
                        """
                        update post_comments c
                        set likes_count = greatest(c.likes_count - l.n, 0)
                        from (
                          select comment_id, count(*)::int as n
                          from comment_likes
                          where profile_id = $1::uuid
                          group by comment_id
                        ) l
                        where c.id = l.comment_id
                          and c.profile_id <> $1::uuid
                        """,
                        requester_id,
                    )
                    await conn.execute("delete from profiles where id = $1::uuid", requester_id)
        logger.info("profile deleted profile_id=%s", requester_id)

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

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            owner_id = await self._fetch_handle_owner(conn, result.handle)
            if owner_id is None or owner_id == requester_id:
                return HandleAvailabilityOut(available=True, handle=result.handle)
            suggestions = await self._free_handle_variants(conn, result.handle)
        return HandleAvailabilityOut(
            available=False,
            handle=result.handle,
            reason="This handle is already taken",
            suggestions=suggestions,
        )

    async def update_handle(self, *, requester_id: str | None, handle: str) -> ProfileOut:
        requester_id = inputs.require_requester(requester_id)
        result = validate_handle_format(handle, reserved=self.reserved_handles, max_length=self.handle_max_length)
        if not result.is_valid:
            raise RepositoryValidationError(result.error or "invalid handle")
        new_handle = result.handle

        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._fetch_own_profile(conn, requester_id, for_update=True)
                    if current["handle"] == new_handle:
                        return ProfileOut(**current)

                    owner_id = await self._fetch_handle_owner(conn, new_handle)
                    if owner_id is not None and owner_id != requester_id:
                        raise RepositoryConflictError("handle is already taken")

                    if current["handle"]:
                        await conn.execute(
                            """
                            insert into handle_history (profile_id, old_handle, new_handle)
                            values ($1::uuid, $2, $3)
                            """,
                            requester_id,
                            current["handle"],
                            new_handle,
                        )
                    row = await conn.fetchrow(
                        f"""
                        update profiles as p
                        set
                          handle = $2,
                          handle_updated_at = now(),
                          handle_change_count = p.handle_change_count + 1,
                          updated_at = now()
                        where p.id = $1::uuid
                        returning {PROFILE_COLUMNS}
                        """,
                        requester_id,
                        new_handle,
                    )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("handle is already taken") from exc
        return ProfileOut(**dict(row))

    async def list_handle_history(self, *, requester_id: str | None) -> list[HandleHistoryOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._fetch_own_profile(conn, requester_id)
            rows = await conn.fetch(
                """
                select profile_id::text as profile_id, old_handle, new_handle, changed_at
                from handle_history
                where profile_id = $1::uuid
                order by changed_at desc, id desc
                """,
                requester_id,
            )
        return [HandleHistoryOut(**dict(row)) for row in rows]

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select p.id::text as id, p.handle, p.full_name, p.avatar_url
            from profiles p
            where p.handle is not null
              and starts_with(p.handle, $2)
              and {PROFILE_VISIBLE_SQL}
            order by p.handle
            limit $3
            """,
            requester_id,
            prefix,
            inputs.bound_limit(limit, maximum=50),
        )
        return [ProfileSummaryOut(**dict(row)) for row in rows]

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
        requester_id = inputs.require_requester(requester_id)
        normalized_caption = inputs.normalize_caption(caption)
        normalized_visibility = inputs.require_post_visibility(visibility)
        refs = require_profile_refs(tags)
        labels = normalize_category_tags(category_tags)

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._fetch_own_profile(conn, requester_id)
                await self._require_existing_profiles(conn, refs)
                row = await conn.fetchrow(
                    f"""
                    insert into posts as p (profile_id, caption, visibility, tags, category_tags)
                    values ($1::uuid, $2, $3, $4::text[], $5::text[])
                    returning {POST_COLUMNS}
                    """,
                    requester_id,
                    normalized_caption,
                    normalized_visibility,
                    refs,
                    labels,
                )
        return self._post_out(row)

    async def get_post(self, *, requester_id: str | None, post_id: str) -> PostOut:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await self._fetch_readable_post(conn, requester_id, post_id)
        return self._post_out(row)

    async def list_profile_posts(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        limit: int = 20,
        offset: int = 0,
    ) -> list[PostOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {POST_COLUMNS}
                from posts p
                where p.profile_id = $2::uuid
                  and {POST_VISIBLE_SQL}
                order by p.created_at desc, p.id desc
                limit $3 offset $4
                """,
                requester_id,
                profile_id,
                inputs.bound_limit(limit),
                inputs.bound_offset(offset),
            )
        except _BAD_ID_ERRORS:
            return []
        return [self._post_out(row) for row in rows]

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
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await self._fetch_owned_post(conn, requester_id, post_id)
                updated = dict(current)
                if caption is not None:
                    updated["caption"] = inputs.normalize_caption(caption)
                if visibility is not None:
                    updated["visibility"] = inputs.require_post_visibility(visibility)
                if tags is not None:
                    updated["tags"] = require_profile_refs(tags)
                    await self._require_existing_profiles(conn, updated["tags"])
                if category_tags is not None:
                    updated["category_tags"] = normalize_category_tags(category_tags)

                row = await conn.fetchrow(
                    f"""
                    update posts as p
                    set
                      caption = $2,
                      visibility = $3,
                      tags = $4::text[],
                      category_tags = $5::text[],
                      updated_at = now()
                    where p.id = $1::uuid
                    returning {POST_COLUMNS}
                    """,
                    current["id"],
                    updated["caption"],
                    updated["visibility"],
                    list(updated["tags"] or []),
                    list(updated["category_tags"] or []),
                )
        return self._post_out(row)

    async def delete_post(self, *, requester_id: str | None, post_id: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                post = await self._fetch_owned_post(conn, requester_id, post_id)
                await conn.execute("delete from posts where id = $1::uuid", post["id"])

    async def resolve_tagged_profiles(self, *, requester_id: str | None, post_id: str) -> list[ProfileSummaryOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            post = await self._fetch_readable_post(conn, requester_id, post_id)
            refs = resolvable_profile_refs(post["tags"], post_id=post["id"])
            if not refs:
                return []
            rows = await conn.fetch(
                f"""
                select p.id::text as id, p.handle, p.full_name, p.avatar_url
                from profiles p
                where p.id = any($2::uuid[])
                  and {PROFILE_VISIBLE_SQL}
                """,
                requester_id,
                refs,
            )
        by_id = {row["id"]: row for row in rows}
        resolved: list[ProfileSummaryOut] = []
        for ref in refs:
            row = by_id.get(ref)
            if row is None:
                logger.debug("tagged profile not resolvable post_id=%s profile_id=%s", post["id"], ref)
                continue
            resolved.append(ProfileSummaryOut(**dict(row)))
        return resolved

    # -- engagement -------------------------------------------------------

    async def like_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = await self._insert_engagement(requester_id, post_id, CounterField.LIKES, notify="like")
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="liked", count=count)

    async def unlike_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = await self._delete_engagement(requester_id, post_id, CounterField.LIKES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="unliked", count=count)

    async def save_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = await self._insert_engagement(requester_id, post_id, CounterField.SAVES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="saved", count=count)

    async def unsave_post(self, *, requester_id: str | None, post_id: str) -> EngagementOut:
        requester_id = inputs.require_requester(requester_id)
        post, count = await self._delete_engagement(requester_id, post_id, CounterField.SAVES)
        return EngagementOut(post_id=post["id"], profile_id=requester_id, action="unsaved", count=count)

    async def list_saved_posts(self, *, requester_id: str | None, limit: int = 20, offset: int = 0) -> list[PostOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await self._fetch_own_profile(conn, requester_id)
            rows = await conn.fetch(
                f"""
                select {POST_COLUMNS}
                from saved_posts sp
                join posts p on p.id = sp.post_id
                where sp.profile_id = $1::uuid
                  and {POST_VISIBLE_SQL}
                order by sp.created_at desc, sp.id desc
                limit $2 offset $3
                """,
                requester_id,
                inputs.bound_limit(limit),
                inputs.bound_offset(offset),
            )
        return [self._post_out(row) for row in rows]

    async def add_comment(self, *, requester_id: str | None, post_id: str, content: str) -> CommentOut:
        requester_id = inputs.require_requester(requester_id)
        normalized_content = inputs.require_comment_content(content)
        pool = await self._get_pool()
        with storage_span("counters.comment_insert", post_id=post_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    author = await self._fetch_own_profile(conn, requester_id)
                    post = await self._fetch_readable_post(conn, requester_id, post_id)
                    try:
                        row = await conn.fetchrow(
                            f"""
                            insert into post_comments as c (post_id, profile_id, content)
                            values ($1::uuid, $2::uuid, $3)
                            returning {COMMENT_COLUMNS}
                            """,
                            post["id"],
                            requester_id,
                            normalized_content,
                        )
                    except pg_exc.ForeignKeyViolationError as exc:
                        raise RepositoryNotFoundError("post not found") from exc
                    await conn.fetchval(render_counter_delta_sql(CounterField.COMMENTS, 1), post["id"])
                    await self._notify(
                        conn,
                        post["profile_id"],
                        author,
                        "comment",
                        post_id=post["id"],
                        comment_id=row["id"],
                        preview=notifications.comment_preview(normalized_content),
                    )
        return CommentOut(**dict(row))

    async def delete_comment(self, *, requester_id: str | None, comment_id: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        with storage_span("counters.comment_delete", comment_id=comment_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    comment, post = await self._fetch_readable_comment(conn, requester_id, comment_id, for_update=True)
                    if not policies.can_delete_comment(requester_id, comment, post):
                        raise RepositoryForbiddenError("only the author or the post owner may delete a comment")
                    await conn.execute("delete from post_comments where id = $1::uuid", comment["id"])
                    await conn.fetchval(render_counter_delta_sql(CounterField.COMMENTS, -1), post["id"])

    async def list_comments(
        self,
        *,
        requester_id: str | None,
        post_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CommentOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            post = await self._fetch_readable_post(conn, requester_id, post_id)
            rows = await conn.fetch(
                f"""
                select {COMMENT_COLUMNS}
                from post_comments c
                where c.post_id = $1::uuid
                order by c.created_at asc, c.id asc
                limit $2 offset $3
                """,
                post["id"],
                inputs.bound_limit(limit),
                inputs.bound_offset(offset),
            )
        return [CommentOut(**dict(row)) for row in rows]

    async def like_comment(self, *, requester_id: str | None, comment_id: str) -> CommentEngagementOut:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        with storage_span("counters.comment_like_insert", comment_id=comment_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    liker = await self._fetch_own_profile(conn, requester_id)
                    comment, post = await self._fetch_readable_comment(conn, requester_id, comment_id)
                    try:
                        await conn.execute(
                            "insert into comment_likes (comment_id, profile_id) values ($1::uuid, $2::uuid)",
                            comment["id"],
                            requester_id,
                        )
                    except pg_exc.UniqueViolationError as exc:
                        raise RepositoryConflictError("duplicate like for comment") from exc
                    except pg_exc.ForeignKeyViolationError as exc:
                        raise RepositoryNotFoundError("comment not found") from exc
                    count = await conn.fetchval(render_comment_likes_delta_sql(1), comment["id"])
                    await self._notify(
                        conn,
                        comment["profile_id"],
                        liker,
                        "comment_like",
                        post_id=post["id"],
                        comment_id=comment["id"],
                    )
        return CommentEngagementOut(
            comment_id=comment["id"],
            post_id=post["id"],
            profile_id=requester_id,
            action="liked",
            count=count,
        )

    async def unlike_comment(self, *, requester_id: str | None, comment_id: str) -> CommentEngagementOut:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        with storage_span("counters.comment_like_delete", comment_id=comment_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    comment, post = await self._fetch_readable_comment(conn, requester_id, comment_id)
                    deleted = await conn.fetchval(
                        """
                        delete from comment_likes
                        where comment_id = $1::uuid and profile_id = $2::uuid
                        returning id
                        """,
                        comment["id"],
                        requester_id,
                    )
                    if deleted is None:
                        raise RepositoryNotFoundError("comment like not found")
                    count = await conn.fetchval(render_comment_likes_delta_sql(-1), comment["id"])
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
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {NOTIFICATION_COLUMNS}
                from notifications n
                where n.recipient_id = $1::uuid
                  and (not $2::boolean or not n.is_read)
                order by n.created_at desc, n.id desc
                limit $3 offset $4
                """,
                requester_id,
                bool(unread_only),
                inputs.bound_limit(limit),
                inputs.bound_offset(offset),
            )
        except _BAD_ID_ERRORS:
            return []
        return [NotificationOut(**dict(row)) for row in rows]

    async def mark_notifications_read(
        self,
        *,
        requester_id: str | None,
        notification_ids: list[str] | None = None,
    ) -> int:
        requester_id = inputs.require_requester(requester_id)
        wanted = None
        if notification_ids is not None:
            wanted = sorted({inputs.require_uuid(value, field="notification_ids") for value in notification_ids})
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                update notifications
                set is_read = true, read_at = now()
                where recipient_id = $1::uuid
                  and not is_read
                  and ($2::uuid[] is null or id = any($2::uuid[]))
                returning id
                """,
                requester_id,
                wanted,
            )
        except _BAD_ID_ERRORS:
            return 0
        return len(rows)

    # -- counter maintenance ----------------------------------------------

    async def get_post_counter_report(self, *, principal: Principal | None, post_id: str) -> CounterReportOut:
        inputs.require_maintainer(principal)
        live_columns = ",\n".join(
            f"(select count(*) from {field.source_table} c where c.post_id = p.id)::int as live_{field.value}"
            for field in CounterField
        )
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select
                  p.id::text as post_id,
                  p.likes_count,
                  p.comments_count,
                  p.saves_count,
                  {live_columns}
                from posts p
                where p.id = $1::uuid
                """,
                post_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("post not found") from exc
        if row is None:
            raise RepositoryNotFoundError("post not found")
        return CounterReportOut(**dict(row))

    async def reconcile_post_counters(
        self,
        *,
        principal: Principal | None,
        post_id: str | None = None,
        fields: list[CounterField] | None = None,
    ) -> list[CounterDrift]:
        inputs.require_maintainer(principal)
        pool = await self._get_pool()
        with storage_span("counters.reconcile", post_id=post_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._require_post_exists(conn, post_id)
                    rows = await conn.fetch(render_reconcile_sql(fields), post_id)

            drifts: list[CounterDrift] = []
            for row in rows:
                drifts.extend(drifts_from_row(row, fields))
            for drift in drifts:
                logger.warning(
                    "repaired counter drift post_id=%s field=%s stored=%s actual=%s",
                    drift.post_id,
                    drift.field.value,
                    drift.stored,
                    drift.actual,
                )
            return drifts

    async def reconcile_comment_counters(
        self,
        *,
        principal: Principal | None,
        post_id: str | None = None,
    ) -> list[CommentCounterDrift]:
        inputs.require_maintainer(principal)
        pool = await self._get_pool()
        with storage_span("counters.reconcile_comments", post_id=post_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._require_post_exists(conn, post_id)
                    rows = await conn.fetch(render_comment_reconcile_sql(), post_id)

            drifts = [comment_drift_from_row(row) for row in rows]
            for drift in drifts:
                logger.warning(
                    "repaired comment counter drift comment_id=%s stored=%s actual=%s",
                    drift.comment_id,
                    drift.stored,
                    drift.actual,
                )
            return drifts

    # -- follows ----------------------------------------------------------

    async def follow_profile(self, *, requester_id: str | None, following_id: str) -> FollowOut:
        requester_id = inputs.require_requester(requester_id)
        following_id = inputs.normalize_id(following_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                follower = await self._fetch_own_profile(conn, requester_id)
                if following_id == requester_id:
                    raise RepositoryValidationError("cannot follow yourself")
                try:
                    target_visibility = await conn.fetchval(
                        "select visibility from profiles where id = $1::uuid",
                        following_id,
                    )
                except _BAD_ID_ERRORS as exc:
                    raise RepositoryNotFoundError("profile not found") from exc
                if target_visibility is None:
                    raise RepositoryNotFoundError("profile not found")

                status = "pending" if target_visibility == "private" else "accepted"
                try:
                    row = await conn.fetchrow(
                        f"""
                        insert into follows as f (follower_id, following_id, status)
                        values ($1::uuid, $2::uuid, $3)
                        returning {FOLLOW_COLUMNS}
                        """,
                        requester_id,
                        following_id,
                        status,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError("already following or requested") from exc
                except pg_exc.CheckViolationError as exc:
                    raise RepositoryValidationError("cannot follow yourself") from exc
                await self._notify(
                    conn,
                    row["following_id"],
                    follower,
                    "follow_request" if status == "pending" else "new_follower",
                    follow_id=row["id"],
                )
        return FollowOut(**dict(row))

    async def unfollow_profile(self, *, requester_id: str | None, following_id: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval(
                """
                delete from follows
                where follower_id = $1::uuid and following_id = $2::uuid
                returning id
                """,
                requester_id,
                following_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("follow not found") from exc
        if deleted is None:
            raise RepositoryNotFoundError("follow not found")

    async def respond_to_follow(
        self,
        *,
        requester_id: str | None,
        follower_id: str,
        accept: bool,
    ) -> FollowOut:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                try:
                    current = await conn.fetchrow(
                        f"""
                        select {FOLLOW_COLUMNS}
                        from follows f
                        where f.follower_id = $1::uuid and f.following_id = $2::uuid
                        for update
                        """,
                        follower_id,
                        requester_id,
                    )
                except _BAD_ID_ERRORS as exc:
                    raise RepositoryNotFoundError("follow request not found") from exc
                if current is None:
                    raise RepositoryNotFoundError("follow request not found")
                if current["status"] != "pending":
                    raise RepositoryConflictError(f"follow request already {current['status']}")

                row = await conn.fetchrow(
                    f"""
                    update follows as f
                    set status = $2, updated_at = now()
                    where f.id = $1::uuid
                    returning {FOLLOW_COLUMNS}
                    """,
                    current["id"],
                    "accepted" if accept else "rejected",
                )
                if accept:
                    responder = await self._fetch_own_profile(conn, requester_id)
                    await self._notify(conn, row["follower_id"], responder, "follow_accepted", follow_id=row["id"])
        return FollowOut(**dict(row))

    async def list_followers(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        status: str | None = None,
    ) -> list[FollowOut]:
        return await self._list_follows(requester_id, "following_id", profile_id, status)

    async def list_following(
        self,
        *,
        requester_id: str | None,
        profile_id: str,
        status: str | None = None,
    ) -> list[FollowOut]:
        return await self._list_follows(requester_id, "follower_id", profile_id, status)

    # -- sport settings ---------------------------------------------------

    async def get_sport_settings(self, *, requester_id: str | None, sport_key: str) -> SportSettingsOut:
        requester_id = inputs.require_requester(requester_id)
        key = inputs.normalize_sport_key(sport_key)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {SPORT_SETTINGS_COLUMNS}
            from sport_settings s
            where s.profile_id = $1::uuid and s.sport_key = $2
            """,
            requester_id,
            key,
        )
        if row is None:
            raise RepositoryNotFoundError("sport settings not found")
        return self._sport_settings_out(row)

    async def list_sport_settings(self, *, requester_id: str | None) -> list[SportSettingsOut]:
        requester_id = inputs.require_requester(requester_id)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {SPORT_SETTINGS_COLUMNS}
            from sport_settings s
            where s.profile_id = $1::uuid
            order by s.sport_key
            """,
            requester_id,
        )
        return [self._sport_settings_out(row) for row in rows]

    async def upsert_sport_settings(
        self,
        *,
        requester_id: str | None,
        sport_key: str,
        settings: dict[str, Any],
    ) -> SportSettingsOut:
        requester_id = inputs.require_requester(requester_id)
        key = inputs.normalize_sport_key(sport_key)
        payload = inputs.require_settings_object(settings)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._fetch_own_profile(conn, requester_id)
                row = await conn.fetchrow(
                    f"""
                    insert into sport_settings as s (profile_id, sport_key, settings)
                    values ($1::uuid, $2, $3::jsonb)
                    on conflict (profile_id, sport_key) do update
                    set settings = excluded.settings, updated_at = now()
                    returning {SPORT_SETTINGS_COLUMNS}
                    """,
                    requester_id,
                    key,
                    json.dumps(payload),
                )
        return self._sport_settings_out(row)

    async def delete_sport_settings(self, *, requester_id: str | None, sport_key: str) -> None:
        requester_id = inputs.require_requester(requester_id)
        key = inputs.normalize_sport_key(sport_key)
        pool = await self._get_pool()
        deleted = await pool.fetchval(
            """
            delete from sport_settings
            where profile_id = $1::uuid and sport_key = $2
            returning sport_key
            """,
            requester_id,
            key,
        )
        if deleted is None:
            raise RepositoryNotFoundError("sport settings not found")

    # -- one-shot migrations ----------------------------------------------

    async def run_category_tag_cleanup(self, *, principal: Principal | None) -> TagCleanupOut:
        inputs.require_maintainer(principal)
        pool = await self._get_pool()
        with storage_span("migrations.category_tag_cleanup"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    try:
                        await conn.execute("insert into maintenance_runs (name) values ($1)", TAG_CLEANUP_RUN)
                    except pg_exc.UniqueViolationError as exc:
                        raise RepositoryConflictError("category tag cleanup has already run") from exc

                    rows = await conn.fetch(
                        """
                        select id::text as id, tags
                        from posts
                        where cardinality(tags) > 0
                        order by id
                        for update
                        """
                    )
                    await conn.executemany(
                        "insert into post_tags_backup (post_id, tags) values ($1::uuid, $2::text[])",
                        [(row["id"], list(row["tags"])) for row in rows],
                    )

                    summary = TagCleanupOut(posts_backed_up=len(rows))
                    updates: list[tuple[str, list[str]]] = []
                    for row in rows:
                        kept, removed = split_legacy_tags(row["tags"])
                        if not removed:
                            continue
                        updates.append((row["id"], kept))
                        summary.posts_cleaned += 1
                        summary.labels_removed += len(removed)
                        for label in removed:
                            if label not in summary.removed_labels:
                                summary.removed_labels.append(label)
                    if updates:
                        await conn.executemany(
                            "update posts set tags = $2::text[], updated_at = now() where id = $1::uuid",
                            updates,
                        )

                    await conn.execute(
                        "update maintenance_runs set summary = $2::jsonb where name = $1",
                        TAG_CLEANUP_RUN,
                        json.dumps(summary.model_dump()),
                    )

            logger.info(
                "category tag cleanup done posts_backed_up=%s posts_cleaned=%s labels_removed=%s",
                summary.posts_backed_up,
                summary.posts_cleaned,
                summary.labels_removed,
            )
            return summary

    # -- helpers ----------------------------------------------------------
    # Helpers take a requester id already passed through inputs.require_requester.

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("AS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    async def _fetch_own_profile(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        try:
            row = await conn.fetchrow(
                f"""
                select {PROFILE_COLUMNS}
                from profiles p
                where p.id = $1::uuid
                {"for update" if for_update else ""}
                """,
                requester_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryConflictError("requester has no profile") from exc
        if row is None:
            raise RepositoryConflictError("requester has no profile")
        return dict(row)

    async def _fetch_readable_profile(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        profile_id: str,
    ) -> dict[str, Any]:
        try:
            row = await conn.fetchrow(
                f"""
                select
                  {PROFILE_COLUMNS},
                  (
                    select f.status from follows f
                    where f.follower_id = $1::uuid and f.following_id = p.id
                  ) as requester_follow_status
                from profiles p
                where p.id = $2::uuid
                """,
                requester_id,
                profile_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("profile not found") from exc
        if row is None:
            raise RepositoryNotFoundError("profile not found")
        profile = dict(row)
        follow_status = profile.pop("requester_follow_status")
        if not policies.can_read_profile(requester_id, profile, follow_status=follow_status):
            logger.debug("policy denied profile read requester_id=%s profile_id=%s", requester_id, profile_id)
            raise RepositoryNotFoundError("profile not found")
        return profile

    async def _fetch_readable_post(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        post_id: str,
        *,
        for_update: bool = False,
    ) -> dict[str, Any]:
        try:
            row = await conn.fetchrow(
                f"""
                select
                  {POST_COLUMNS},
                  (
                    select f.status from follows f
                    where f.follower_id = $1::uuid and f.following_id = p.profile_id
                  ) as requester_follow_status
                from posts p
                where p.id = $2::uuid
                {"for update of p" if for_update else ""}
                """,
                requester_id,
                post_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("post not found") from exc
        if row is None:
            raise RepositoryNotFoundError("post not found")
        post = dict(row)
        follow_status = post.pop("requester_follow_status")
        if not policies.can_read_post(requester_id, post, follow_status=follow_status):
            logger.debug("policy denied post read requester_id=%s post_id=%s", requester_id, post_id)
            raise RepositoryNotFoundError("post not found")
        return post

    async def _fetch_owned_post(self, conn: asyncpg.Connection, requester_id: str, post_id: str) -> dict[str, Any]:
        post = await self._fetch_readable_post(conn, requester_id, post_id, for_update=True)
        if not policies.can_write_as(requester_id, post["profile_id"]):
            logger.debug("policy denied post write requester_id=%s post_id=%s", requester_id, post_id)
            raise RepositoryForbiddenError("only the author may modify a post")
        return post

    async def _fetch_handle_owner(self, conn: asyncpg.Connection, handle: str) -> str | None:
        return await conn.fetchval(
            "select id::text from profiles where lower(handle) = lower($1)",
            handle,
        )

    async def _free_handle_variants(self, conn: asyncpg.Connection, handle: str) -> list[str]:
        candidates = [
            candidate
            for candidate in handle_variants(handle, max_length=self.handle_max_length)
            if candidate not in self.reserved_handles
        ]
        if not candidates:
            return []
        taken = await conn.fetch(
            "select lower(handle) as handle from profiles where lower(handle) = any($1::text[])",
            candidates,
        )
        taken_handles = {row["handle"] for row in taken}
        return [candidate for candidate in candidates if candidate not in taken_handles][:3]

    async def _require_existing_profiles(self, conn: asyncpg.Connection, refs: list[str]) -> None:
        if not refs:
            return
        rows = await conn.fetch("select id::text as id from profiles where id = any($1::uuid[])", refs)
        existing = {row["id"] for row in rows}
        missing = [ref for ref in refs if ref not in existing]
        if missing:
            raise RepositoryConflictError(f"tagged profile does not exist: {missing[0]}")

    async def _require_post_exists(self, conn: asyncpg.Connection, post_id: str | None) -> None:
        if post_id is None:
            return
        try:
            exists = await conn.fetchval("select 1 from posts where id = $1::uuid", post_id)
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("post not found") from exc
        if exists is None:
            raise RepositoryNotFoundError("post not found")

    async def _fetch_readable_comment(
        self,
        conn: asyncpg.Connection,
        requester_id: str,
        comment_id: str,
        *,
        for_update: bool = False,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        try:
            comment = await conn.fetchrow(
                f"""
                select {COMMENT_COLUMNS}
                from post_comments c
                where c.id = $1::uuid
                {"for update" if for_update else ""}
                """,
                comment_id,
            )
        except _BAD_ID_ERRORS as exc:
            raise RepositoryNotFoundError("comment not found") from exc
        if comment is None:
            raise RepositoryNotFoundError("comment not found")
        try:
            post = await self._fetch_readable_post(conn, requester_id, comment["post_id"])
        except RepositoryNotFoundError as exc:
            raise RepositoryNotFoundError("comment not found") from exc
        return dict(comment), post

    async def _insert_engagement(
        self,
        requester_id: str,
        post_id: str,
        field: CounterField,
        *,
        notify: str | None = None,
    ) -> tuple[dict[str, Any], int]:
        label = _ENGAGEMENT_LABELS[field]
        pool = await self._get_pool()
        with storage_span(f"counters.{label}_insert", post_id=post_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    actor = await self._fetch_own_profile(conn, requester_id)
                    post = await self._fetch_readable_post(conn, requester_id, post_id)
                    try:
                        await conn.execute(
                            f"insert into {field.source_table} (post_id, profile_id) values ($1::uuid, $2::uuid)",
                            post["id"],
                            requester_id,
                        )
                    except pg_exc.UniqueViolationError as exc:
                        raise RepositoryConflictError(f"duplicate {label} for post") from exc
                    except pg_exc.ForeignKeyViolationError as exc:
                        raise RepositoryNotFoundError("post not found") from exc
                    count = await conn.fetchval(render_counter_delta_sql(field, 1), post["id"])
                    if notify is not None:
                        await self._notify(conn, post["profile_id"], actor, notify, post_id=post["id"])
                    return post, count

    async def _delete_engagement(
        self,
        requester_id: str,
        post_id: str,
        field: CounterField,
    ) -> tuple[dict[str, Any], int]:
        label = _ENGAGEMENT_LABELS[field]
        pool = await self._get_pool()
        with storage_span(f"counters.{label}_delete", post_id=post_id):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    post = await self._fetch_readable_post(conn, requester_id, post_id)
                    deleted = await conn.fetchval(
                        f"""
                        delete from {field.source_table}
                        where post_id = $1::uuid and profile_id = $2::uuid
                        returning id
                        """,
                        post["id"],
                        requester_id,
                    )
                    if deleted is None:
                        raise RepositoryNotFoundError(f"{label} not found")
                    return post, await conn.fetchval(render_counter_delta_sql(field, -1), post["id"])

    async def _notify(
        self,
        conn: asyncpg.Connection,
        recipient_id: str,
        actor: dict[str, Any],
        kind: str,
        *,
        post_id: str | None = None,
        comment_id: str | None = None,
        follow_id: str | None = None,
        preview: str | None = None,
    ) -> None:
        if not notifications.should_notify(recipient_id, actor["id"]):
            return
        await conn.execute(
            """
            insert into notifications
              (recipient_id, actor_id, type, post_id, comment_id, follow_id, message, preview)
            values ($1::uuid, $2::uuid, $3, $4::uuid, $5::uuid, $6::uuid, $7, $8)
            """,
            recipient_id,
            actor["id"],
            kind,
            post_id,
            comment_id,
            follow_id,
            notifications.render_message(kind, notifications.actor_display_name(actor)),
            preview,
        )

    async def _list_follows(
        self,
        requester_id: str | None,
        column: str,
        profile_id: str,
        status: str | None,
    ) -> list[FollowOut]:
        requester_id = inputs.require_requester(requester_id)
        if status is not None and status not in policies.FOLLOW_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, accepted, rejected")
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {FOLLOW_COLUMNS}
                from follows f
                where f.{column} = $2::uuid
                  and ($3::text is null or f.status = $3)
                  and {FOLLOW_VISIBLE_SQL}
                order by f.created_at desc, f.id desc
                """,
                requester_id,
                profile_id,
                status,
            )
        except _BAD_ID_ERRORS:
            return []
        return [FollowOut(**dict(row)) for row in rows]

    @staticmethod
    def _post_out(row: asyncpg.Record | dict[str, Any]) -> PostOut:
        data = dict(row)
        data["tags"] = list(data.get("tags") or [])
        data["category_tags"] = list(data.get("category_tags") or [])
        return PostOut(**data)

    @staticmethod
    def _sport_settings_out(row: asyncpg.Record) -> SportSettingsOut:
        data = dict(row)
        settings_json = data["settings"]
        if isinstance(settings_json, str):
            try:
                settings_json = json.loads(settings_json)
            except json.JSONDecodeError:
                settings_json = {}
        data["settings"] = settings_json if isinstance(settings_json, dict) else {}
        return SportSettingsOut(**data)


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    reserved_handles = load_reserved_handles(settings.reserved_handles_path)
    if settings.storage_backend == "memory":
        return InMemoryRepository(
            reserved_handles=reserved_handles,
            handle_max_length=settings.handle_max_length,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout=settings.database_command_timeout_seconds,
        reserved_handles=reserved_handles,
        handle_max_length=settings.handle_max_length,
    )
