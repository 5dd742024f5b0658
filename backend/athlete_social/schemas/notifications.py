from datetime import datetime
from typing import Literal

from pydantic import BaseModel

NotificationType = Literal["follow_request", "new_follower", "follow_accepted", "like", "comment", "comment_like"]


class NotificationOut(BaseModel):
    id: str
    recipient_id: str
    actor_id: str
    type: NotificationType
    post_id: str | None = None
    comment_id: str | None = None
    follow_id: str | None = None
    message: str
    preview: str | None = None
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime
