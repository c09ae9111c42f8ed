from datetime import datetime
from enum import Enum

from pydantic import Field

from pointsledger.models.base import Entity, utcnow


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class PostSubscription(Entity):
    post_id: str
    buyer_id: str
    author_id: str
    price_minor: int
    buyer_transaction_id: str
    author_transaction_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscribed_at: datetime = Field(default_factory=utcnow)
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
