from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PostVisibility = Literal["public", "followers", "private"]


class PostOut(BaseModel):
    id: str
    profile_id: str
    caption: str | None = None
    visibility: PostVisibility = "public"
    tags: list[str] = Field(default_factory=list)
    category_tags: list[str] = Field(default_factory=list)
    likes_count: int = Field(default=0, ge=0)
    comments_count: int = Field(default=0, ge=0)
    saves_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class CommentOut(BaseModel):
    id: str
    post_id: str
    profile_id: str
    content: str
    likes_count: int = Field(default=0, ge=0)
    created_at: datetime


class EngagementOut(BaseModel):
    """Result of a like/save toggle: the post's counter after the change."""

    post_id: str
    profile_id: str
    action: Literal["liked", "unliked", "saved", "unsaved"]
    count: int = Field(ge=0)


class CommentEngagementOut(BaseModel):
    comment_id: str
    post_id: str
    profile_id: str
    action: Literal["liked", "unliked"]
    count: int = Field(ge=0)
