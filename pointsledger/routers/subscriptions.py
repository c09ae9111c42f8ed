from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pointsledger.core.money import minor_to_points
from pointsledger.core.pagination import page_of, paginate
from pointsledger.deps import require_admin
from pointsledger.models import PostSubscription, SubscriptionStatus
from pointsledger.services import settlement as settlement_service
from pointsledger.store.base import SubscriptionFilters

router = APIRouter()


class CancelSubscriptionRequest(BaseModel):
    reason: str = "Admin cancellation"


def subscription_out(s: PostSubscription) -> dict:
    return {
        "id": s.id,
        "post_id": s.post_id,
        "buyer_id": s.buyer_id,
        "author_id": s.author_id,
        "status": s.status.value,
        "price_minor": s.price_minor,
        "price_points": str(minor_to_points(s.price_minor)),
        "buyer_transaction_id": s.buyer_transaction_id,
        "author_transaction_id": s.author_transaction_id,
        "subscribed_at": s.subscribed_at.isoformat(),
        "cancelled_at": s.cancelled_at.isoformat() if s.cancelled_at else None,
        "cancellation_reason": s.cancellation_reason,
    }


@router.get("")
async def subscriptions_list(
    admin_id: str = Depends(require_admin),
    buyer_id: str | None = None,
    author_id: str | None = None,
    post_id: str | None = None,
    status: SubscriptionStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    filters = SubscriptionFilters(buyer_id=buyer_id, author_id=author_id, post_id=post_id, status=status)
    subs = await settlement_service.list_subscriptions(filters, limit=limit, offset=offset)
    return page_of([subscription_out(s) for s in subs], limit, offset)


@router.get("/stats")
async def subscriptions_stats(admin_id: str = Depends(require_admin)):
    stats = await settlement_service.subscription_stats()
    stats["total_revenue_points"] = str(minor_to_points(stats["total_revenue_minor"]))
    return stats


@router.get("/{subscription_id}")
async def subscriptions_get(subscription_id: str, admin_id: str = Depends(require_admin)):
    return subscription_out(await settlement_service.get_subscription(subscription_id))


@router.post("/{subscription_id}/cancel")
async def subscriptions_cancel(
    subscription_id: str, body: CancelSubscriptionRequest, admin_id: str = Depends(require_admin)
):
    """Cancel without refund; the post becomes available again."""
    subscription = await settlement_service.cancel_subscription(subscription_id, body.reason)
    return subscription_out(subscription)
