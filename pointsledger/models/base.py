from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from pointsledger.core.security import new_id


def utcnow() -> datetime:
    """Naive UTC, matching what the Mongo driver hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Entity(BaseModel):
    """Stored record. `version` is the optimistic concurrency token, 0 until first commit."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_id)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()
