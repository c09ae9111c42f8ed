from typing import Any

from pydantic import Field

from pointsledger.models.base import Entity


class AuditLog(Entity):
    user_id: str | None = None  # optional for system events
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
