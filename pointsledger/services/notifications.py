"""
Post-commit side effects. Always called after the financial change is
committed; a failure here is logged and never undoes that change.
"""

from typing import Any

from pointsledger.core.audit import log_event
from pointsledger.core.logging import get_logger

log = get_logger(__name__)


async def notify(
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """Record the event for downstream consumers. Returns False if delivery failed."""
    try:
        await log_event(user_id, event_type, entity_type, entity_id, metadata)
    except Exception:
        log.exception("notification_failed", event_type=event_type, entity_type=entity_type, entity_id=entity_id)
        return False
    log.info("notification", event_type=event_type, entity_type=entity_type, entity_id=entity_id, user_id=user_id)
    return True
