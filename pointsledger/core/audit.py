"""Audit log for critical actions."""

from typing import Any

from pointsledger.models import AuditLog
from pointsledger.store.base import get_store


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to the audit log."""
    await get_store().add_audit_log(
        AuditLog(
            user_id=user_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata or {},
        )
    )
