from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class SportSettingsOut(BaseModel):
    profile_id: str
    sport_key: str
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
