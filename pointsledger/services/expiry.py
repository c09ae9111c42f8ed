"""
Expiry sweep: cancel posts whose travel time has passed.

Stateless and repeatable: each run only looks at active or subscribed posts
that are already past `expires_at`, so re-running is a no-op for posts an
earlier run handled. Subscriptions are cancelled without refund.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from pointsledger.core.audit import log_event
from pointsledger.core.config import get_settings
from pointsledger.core.exceptions import AppError
from pointsledger.core.logging import get_logger
from pointsledger.models import PostStatus
from pointsledger.models.base import as_naive_utc, utcnow
from pointsledger.services.atomic import run_atomic
from pointsledger.services.settlement import apply_cancel_subscription
from pointsledger.store.base import UnitOfWork, get_store

log = get_logger(__name__)

EXPIRED_REASON = "Travel time completed"
CANCELLATION_REASON = "Post auto-expired due to travel time completion"


class SweepResult(BaseModel):
    processed_count: int = 0
    expired_count: int = 0
    expired_post_ids: list[str] = Field(default_factory=list)
    cancelled_subscription_ids: list[str] = Field(default_factory=list)
    failed_post_ids: list[str] = Field(default_factory=list)


async def _expire_one(uow: UnitOfWork, post_id: str, now: datetime) -> tuple[bool, str | None]:
    """Returns (expired, cancelled_subscription_id)."""
    post = await uow.get_post(post_id)
    if post is None or post.status not in (PostStatus.ACTIVE, PostStatus.SUBSCRIBED) or post.expires_at > now:
        return False, None
    cancelled_id = None
    subscription = await uow.get_active_subscription(post_id)
    if subscription is not None:
        await apply_cancel_subscription(uow, subscription, CANCELLATION_REASON, post=post)
        cancelled_id = subscription.id
    post.status = PostStatus.CANCELLED
    post.subscriber_id = None
    post.subscribed_at = None
    post.expired_at = now
    post.auto_expired = True
    post.expired_reason = EXPIRED_REASON
    post.touch()
    uow.put(post)
    return True, cancelled_id


async def expire_posts(now: datetime | None = None, batch_size: int | None = None) -> SweepResult:
    """Cancel every expired active/subscribed post; one unit of work per post."""
    now = as_naive_utc(now) if now else utcnow()
    batch_size = batch_size or get_settings().expiry_sweep_batch_size
    store = get_store()
    result = SweepResult()
    cursor: tuple[datetime, str] | None = None
    while True:
        batch = await store.list_expired_posts(now, batch_size, after=cursor)
        if not batch:
            break
        # failed posts stay active; the cursor moves past them
        cursor = (batch[-1].expires_at, batch[-1].id)
        for post in batch:
            result.processed_count += 1
            try:
                expired, cancelled_id = await run_atomic(
                    lambda uow, pid=post.id: _expire_one(uow, pid, now), operation="expire_post"
                )
            except AppError as e:
                log.warning("post_expire_failed", post_id=post.id, code=e.code, reason=e.message)
                result.failed_post_ids.append(post.id)
                continue
            if expired:
                result.expired_count += 1
                result.expired_post_ids.append(post.id)
            if cancelled_id:
                result.cancelled_subscription_ids.append(cancelled_id)

    if result.expired_count:
        log.info(
            "expired_posts",
            expired_count=result.expired_count,
            processed_count=result.processed_count,
            cancelled_subscriptions=len(result.cancelled_subscription_ids),
        )
        await log_event(
            None,
            "auto_expire_posts",
            "post",
            metadata={
                "expired_post_ids": result.expired_post_ids,
                "expired_count": result.expired_count,
                "processed_count": result.processed_count,
                "source": "expiry_sweep",
            },
        )
    else:
        log.info("expired_posts_none", processed_count=result.processed_count)
    return result


async def recent_sweeps(limit: int = 10) -> list:
    return await get_store().list_audit_logs(["auto_expire_posts", "auto_expire_posts_error"], limit=limit)
