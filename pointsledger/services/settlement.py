"""
Paid post settlement: buyer debit, author credit, subscription record and the
post's availability flip, committed as one unit.

Cancelling a subscription never returns funds to the buyer. This differs from
cashout cancellation on purpose; do not add a refund here.
"""

from datetime import datetime, time

from pointsledger.core.exceptions import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PostUnavailableError,
    ValidationError,
)
from pointsledger.core.logging import get_logger
from pointsledger.models import (
    Post,
    PostStatus,
    PostSubscription,
    SubscriptionStatus,
    TransactionStatus,
    TransactionType,
)
from pointsledger.models.base import as_naive_utc, utcnow
from pointsledger.services import notifications
from pointsledger.services.atomic import run_atomic
from pointsledger.services.ledger import apply_record
from pointsledger.services.wallets import require_id, wallet_for_update
from pointsledger.store.base import SubscriptionFilters, UnitOfWork, get_store

log = get_logger(__name__)


async def register_post(
    post_id: str,
    author_id: str,
    price_minor: int,
    departure_at: datetime,
    return_at: datetime | None = None,
) -> Post:
    """Create or refresh the availability record of a post. Only active posts can be re-priced."""
    post_id = require_id(post_id, "post_id")
    author_id = require_id(author_id, "author_id")
    if price_minor <= 0:
        raise ValidationError("Post price must be positive", details={"price_minor": price_minor})
    departure_at = as_naive_utc(departure_at)
    return_at = as_naive_utc(return_at) if return_at else None
    if return_at is not None and return_at < departure_at:
        raise ValidationError("Return must be after departure")

    async def _work(uow: UnitOfWork) -> Post:
        post = await uow.get_post(post_id)
        if post is None:
            post = Post(
                id=post_id,
                author_id=author_id,
                price_minor=price_minor,
                departure_at=departure_at,
                return_at=return_at,
                expires_at=return_at or departure_at,
            )
        else:
            if post.author_id != author_id:
                raise ValidationError("Post belongs to another author", details={"post_id": post_id})
            if post.status != PostStatus.ACTIVE:
                raise PostUnavailableError(post_id, details={"status": post.status.value})
            post.price_minor = price_minor
            post.departure_at = departure_at
            post.return_at = return_at
            post.expires_at = return_at or departure_at
            post.touch()
        uow.put(post)
        return post

    post = await run_atomic(_work, operation="register_post")
    log.info("post_registered", post_id=post.id, author_id=author_id, price_minor=price_minor)
    return post


async def get_post(post_id: str) -> Post:
    post = await get_store().get_post(post_id)
    if post is None:
        raise NotFoundError("Post not found", details={"post_id": post_id})
    return post


async def purchase_post(buyer_id: str, author_id: str, post_id: str, price_minor: int) -> PostSubscription:
    """
    Buy a post. Either all four writes commit (buyer entry, author entry,
    subscription, post flip to subscribed) or none do. A concurrent buyer
    that loses the race gets PostUnavailable.
    """
    buyer_id = require_id(buyer_id, "buyer_id")
    author_id = require_id(author_id, "author_id")
    post_id = require_id(post_id, "post_id")
    if buyer_id == author_id:
        raise ValidationError("Authors cannot buy their own post", details={"post_id": post_id})
    if isinstance(price_minor, bool) or not isinstance(price_minor, int) or price_minor <= 0:
        raise ValidationError("Price must be a positive integer of minor units", details={"price_minor": price_minor})

    async def _work(uow: UnitOfWork) -> PostSubscription:
        post = await uow.get_post(post_id)
        if post is None:
            raise NotFoundError("Post not found", details={"post_id": post_id})
        if post.author_id != author_id:
            raise ValidationError("Author does not match the post", details={"post_id": post_id})
        if post.price_minor != price_minor:
            raise ValidationError(
                "Price does not match the post",
                details={"post_id": post_id, "price_minor": post.price_minor},
            )
        if not post.is_available or await uow.get_active_subscription(post_id) is not None:
            raise PostUnavailableError(post_id, details={"status": post.status.value})

        wallet = await wallet_for_update(uow, buyer_id)
        if wallet.balance_minor < price_minor:
            raise InsufficientBalanceError(
                details={"balance_minor": wallet.balance_minor, "price_minor": price_minor}
            )
        buyer_tx = await apply_record(
            uow,
            buyer_id,
            TransactionType.PURCHASE,
            -price_minor,
            TransactionStatus.COMPLETED,
            metadata={"post_id": post_id, "author_id": author_id},
            description="Purchased post content",
        )
        author_tx = await apply_record(
            uow,
            author_id,
            TransactionType.EARNING,
            price_minor,
            TransactionStatus.COMPLETED,
            metadata={"post_id": post_id, "buyer_id": buyer_id},
            description="Earnings from post sale",
        )
        now = utcnow()
        subscription = PostSubscription(
            post_id=post_id,
            buyer_id=buyer_id,
            author_id=author_id,
            price_minor=price_minor,
            buyer_transaction_id=buyer_tx.id,
            author_transaction_id=author_tx.id,
            subscribed_at=now,
        )
        post.status = PostStatus.SUBSCRIBED
        post.subscriber_id = buyer_id
        post.subscribed_at = now
        post.touch()
        uow.put(subscription)
        uow.put(post)
        return subscription

    subscription = await run_atomic(_work, operation="purchase_post")
    log.info(
        "post_purchased",
        subscription_id=subscription.id,
        post_id=post_id,
        buyer_id=buyer_id,
        author_id=author_id,
        price_minor=price_minor,
    )
    await notifications.notify(
        "post_purchased", "subscription", subscription.id, user_id=buyer_id, metadata={"price_minor": price_minor}
    )
    await notifications.notify(
        "post_sold", "subscription", subscription.id, user_id=author_id, metadata={"price_minor": price_minor}
    )
    return subscription


async def apply_cancel_subscription(
    uow: UnitOfWork, subscription: PostSubscription, reason: str, post: Post | None = None
) -> PostSubscription:
    """Mark the subscription cancelled and free the post. Touches no wallet."""
    if subscription.status != SubscriptionStatus.ACTIVE:
        raise InvalidTransitionError(
            subscription.status.value,
            SubscriptionStatus.CANCELLED.value,
            details={"subscription_id": subscription.id},
        )
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancelled_at = utcnow()
    subscription.cancellation_reason = reason
    subscription.touch()
    uow.put(subscription)

    post = post or await uow.get_post(subscription.post_id)
    if post is not None and post.status == PostStatus.SUBSCRIBED and post.subscriber_id == subscription.buyer_id:
        post.status = PostStatus.ACTIVE
        post.subscriber_id = None
        post.subscribed_at = None
        post.touch()
        uow.put(post)
    return subscription


async def cancel_subscription(subscription_id: str, reason: str = "Admin cancellation") -> PostSubscription:
    async def _work(uow: UnitOfWork) -> PostSubscription:
        subscription = await uow.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", details={"subscription_id": subscription_id})
        return await apply_cancel_subscription(uow, subscription, reason)

    subscription = await run_atomic(_work, operation="cancel_subscription")
    log.info("subscription_cancelled", subscription_id=subscription.id, post_id=subscription.post_id, reason=reason)
    await notifications.notify(
        "subscription_cancelled",
        "subscription",
        subscription.id,
        user_id=subscription.buyer_id,
        metadata={"post_id": subscription.post_id, "reason": reason},
    )
    return subscription


async def get_subscription(subscription_id: str) -> PostSubscription:
    subscription = await get_store().get_subscription(subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found", details={"subscription_id": subscription_id})
    return subscription


async def list_subscriptions(filters: SubscriptionFilters, limit: int = 50, offset: int = 0) -> list[PostSubscription]:
    return await get_store().list_subscriptions(filters, limit=limit, offset=offset)


async def subscription_stats(now: datetime | None = None, batch_size: int = 500) -> dict[str, int]:
    store = get_store()
    today = datetime.combine((now or utcnow()).date(), time.min)
    stats = {
        "total_subscriptions": 0,
        "active_subscriptions": 0,
        "cancelled_subscriptions": 0,
        "total_revenue_minor": 0,
        "today_subscriptions": 0,
    }
    offset = 0
    while True:
        page = await store.list_subscriptions(SubscriptionFilters(), limit=batch_size, offset=offset)
        for s in page:
            stats["total_subscriptions"] += 1
            stats["total_revenue_minor"] += s.price_minor
            if s.status == SubscriptionStatus.ACTIVE:
                stats["active_subscriptions"] += 1
            else:
                stats["cancelled_subscriptions"] += 1
            if s.subscribed_at >= today:
                stats["today_subscriptions"] += 1
        if len(page) < batch_size:
            return stats
        offset += batch_size
