from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ProfileVisibility = Literal["public", "private"]


class ProfileOut(BaseModel):
    id: str
    handle: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    full_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    visibility: ProfileVisibility = "public"
    handle_updated_at: datetime | None = None
    handle_change_count: int = 0
    created_at: datetime
    updated_at: datetime


class ProfileSummaryOut(BaseModel):
    id: str
    handle: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None


class HandleAvailabilityOut(BaseModel):
    available: bool
    handle: str | None = None
    reason: str | None = None
    suggestions: list[str] = Field(default_factory=list)


class HandleHistoryOut(BaseModel):
    profile_id: str
    old_handle: str
    new_handle: str
    changed_at: datetime
