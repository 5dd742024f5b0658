"""Denormalized post counters and their source tables.

Counters are derived state: they only move by relative +1/-1 updates issued
in the same transaction as the child-row insert or delete, and they can be
recomputed from the child tables at any time.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping


class CounterField(str, Enum):
    LIKES = "likes_count"
    COMMENTS = "comments_count"
    SAVES = "saves_count"

    @property
    def source_table(self) -> str:
        return COUNTER_SOURCE_TABLES[self]


COUNTER_SOURCE_TABLES: dict[CounterField, str] = {
    CounterField.LIKES: "post_likes",
    CounterField.COMMENTS: "post_comments",
    CounterField.SAVES: "saved_posts",
}


COMMENT_LIKES_COLUMN = "likes_count"
COMMENT_LIKES_SOURCE_TABLE = "comment_likes"


@dataclass(frozen=True, slots=True)
class CounterDrift:
    post_id: str
    field: CounterField
    stored: int
    actual: int


@dataclass(frozen=True, slots=True)
class CommentCounterDrift:
    comment_id: str
    post_id: str
    stored: int
    actual: int


def increment(value: int) -> int:
    return max(0, value) + 1


def decrement(value: int) -> int:
    return max(0, value - 1)


def render_counter_delta_sql(field: CounterField, delta: int) -> str:
    """Single-statement relative update; decrements are floored at zero."""
    return _relative_update_sql("posts", CounterField(field).value, delta)


def render_comment_likes_delta_sql(delta: int) -> str:
    return _relative_update_sql("post_comments", COMMENT_LIKES_COLUMN, delta)


def _relative_update_sql(table: str, column: str, delta: int) -> str:
    if delta == 1:
        expression = f"{column} + 1"
    elif delta == -1:
        expression = f"greatest({column} - 1, 0)"
    else:
        raise ValueError("counter deltas are +1 or -1")
    return f"""
        update {table}
        set {column} = {expression}
        where id = $1::uuid
        returning {column}
        """


def render_reconcile_sql(fields: Iterable[CounterField] | None = None) -> str:
    """Overwrite drifted counters with live ``count(*)`` values.

    ``$1`` optionally scopes the repair to one post. The statement returns one
    row per repaired post with ``<field>`` (stored) and ``live_<field>`` columns,
    so running it a second time returns nothing.
    """
    selected = _normalize_fields(fields)
    live_columns = ",\n              ".join(
        f"(select count(*) from {field.source_table} c where c.post_id = p.id)::int as live_{field.value}"
        for field in selected
    )
    stored_columns = ", ".join(f"p.{field.value}" for field in selected)
    drift_predicate = " or ".join(f"{field.value} <> live_{field.value}" for field in selected)
    assignments = ",\n              ".join(f"{field.value} = d.live_{field.value}" for field in selected)
    returned = ", ".join(f"d.{field.value}, d.live_{field.value}" for field in selected)

    return f"""
        with live as (
          select
              p.id,
              {stored_columns},
              {live_columns}
          from posts p
          where ($1::uuid is null or p.id = $1::uuid)
          for update of p
        ),
        drifted as (
          select * from live where {drift_predicate}
        ),
        repaired as (
          update posts p
          set
              {assignments}
          from drifted d
          where p.id = d.id
          returning p.id
        )
        select d.id::text as post_id, {returned}
        from drifted d
        join repaired r on r.id = d.id
        order by d.id
        """


def drifts_from_row(row: Mapping[str, Any], fields: Iterable[CounterField] | None = None) -> list[CounterDrift]:
    drifts: list[CounterDrift] = []
    for field in _normalize_fields(fields):
        stored = int(row[field.value])
        actual = int(row[f"live_{field.value}"])
        if stored != actual:
            drifts.append(CounterDrift(post_id=str(row["post_id"]), field=field, stored=stored, actual=actual))
    return drifts


def render_comment_reconcile_sql() -> str:
    """Comment ``likes_count`` repair; ``$1`` optionally scopes it to one post's comments."""
    return f"""
        with live as (
          select
              c.id,
              c.post_id,
              c.{COMMENT_LIKES_COLUMN},
              (select count(*) from {COMMENT_LIKES_SOURCE_TABLE} l where l.comment_id = c.id)::int
                  as live_{COMMENT_LIKES_COLUMN}
          from post_comments c
          where ($1::uuid is null or c.post_id = $1::uuid)
          for update of c
        ),
        drifted as (
          select * from live where {COMMENT_LIKES_COLUMN} <> live_{COMMENT_LIKES_COLUMN}
        ),
        repaired as (
          update post_comments c
          set {COMMENT_LIKES_COLUMN} = d.live_{COMMENT_LIKES_COLUMN}
          from drifted d
          where c.id = d.id
          returning c.id
        )
        select
            d.id::text as comment_id,
            d.post_id::text as post_id,
            d.{COMMENT_LIKES_COLUMN},
            d.live_{COMMENT_LIKES_COLUMN}
        from drifted d
        join repaired r on r.id = d.id
        order by d.id
        """


def comment_drift_from_row(row: Mapping[str, Any]) -> CommentCounterDrift:
    return CommentCounterDrift(
        comment_id=str(row["comment_id"]),
        post_id=str(row["post_id"]),
        stored=int(row[COMMENT_LIKES_COLUMN]),
        actual=int(row[f"live_{COMMENT_LIKES_COLUMN}"]),
    )


def _normalize_fields(fields: Iterable[CounterField] | None) -> list[CounterField]:
    if fields is None:
        return list(CounterField)
    selected = [CounterField(field) for field in fields]
    if not selected:
        raise ValueError("at least one counter field is required")
    return selected
