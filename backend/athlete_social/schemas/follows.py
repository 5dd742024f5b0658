from datetime import datetime
from typing import Literal

from pydantic import BaseModel

FollowStatus = Literal["pending", "accepted", "rejected"]


class FollowOut(BaseModel):
    id: str
    follower_id: str
    following_id: str
    status: FollowStatus
    created_at: datetime
    updated_at: datetime
