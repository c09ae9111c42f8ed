from datetime import datetime
from enum import Enum

from pointsledger.models.base import Entity


class PostStatus(str, Enum):
    ACTIVE = "active"
    SUBSCRIBED = "subscribed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Post(Entity):
    """Availability record of a paid post. Post content lives elsewhere."""

    author_id: str
    price_minor: int
    status: PostStatus = PostStatus.ACTIVE
    subscriber_id: str | None = None
    subscribed_at: datetime | None = None
    departure_at: datetime
    return_at: datetime | None = None
    expires_at: datetime  # return_at for round trips, else departure_at
    expired_at: datetime | None = None
    auto_expired: bool = False
    expired_reason: str | None = None

    @property
    def is_available(self) -> bool:
        return self.status == PostStatus.ACTIVE
