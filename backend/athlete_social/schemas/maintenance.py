from pydantic import BaseModel, Field


class CounterReportOut(BaseModel):
    post_id: str
    likes_count: int
    live_likes_count: int
    comments_count: int
    live_comments_count: int
    saves_count: int
    live_saves_count: int

    @property
    def consistent(self) -> bool:
        return (
            self.likes_count == self.live_likes_count
            and self.comments_count == self.live_comments_count
            and self.saves_count == self.live_saves_count
        )


class TagCleanupOut(BaseModel):
    posts_backed_up: int = 0
    posts_cleaned: int = 0
    labels_removed: int = 0
    removed_labels: list[str] = Field(default_factory=list)
