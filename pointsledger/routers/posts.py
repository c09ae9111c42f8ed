from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pointsledger.core.money import minor_to_points, points_to_minor
from pointsledger.deps import require_admin
from pointsledger.models import Post
from pointsledger.routers.subscriptions import subscription_out
from pointsledger.services import settlement as settlement_service

router = APIRouter()


class RegisterPostRequest(BaseModel):
    post_id: str
    author_id: str
    price_points: Decimal
    departure_at: datetime
    return_at: datetime | None = None


class PurchaseRequest(BaseModel):
    buyer_id: str
    author_id: str
    price_points: Decimal


def post_out(post: Post) -> dict:
    return {
        "id": post.id,
        "author_id": post.author_id,
        "status": post.status.value,
        "price_minor": post.price_minor,
        "price_points": str(minor_to_points(post.price_minor)),
        "subscriber_id": post.subscriber_id,
        "departure_at": post.departure_at.isoformat(),
        "return_at": post.return_at.isoformat() if post.return_at else None,
        "expires_at": post.expires_at.isoformat(),
        "auto_expired": post.auto_expired,
        "expired_reason": post.expired_reason,
    }


@router.post("")
async def posts_register(body: RegisterPostRequest, admin_id: str = Depends(require_admin)):
    """Create or refresh a post's availability record."""
    post = await settlement_service.register_post(
        body.post_id,
        body.author_id,
        points_to_minor(body.price_points),
        body.departure_at,
        body.return_at,
    )
    return post_out(post)


@router.get("/{post_id}")
async def posts_get(post_id: str, admin_id: str = Depends(require_admin)):
    return post_out(await settlement_service.get_post(post_id))


@router.post("/{post_id}/purchase")
async def posts_purchase(post_id: str, body: PurchaseRequest, admin_id: str = Depends(require_admin)):
    """Buy a post: buyer debit, author credit and subscription in one commit."""
    subscription = await settlement_service.purchase_post(
        body.buyer_id, body.author_id, post_id, points_to_minor(body.price_points)
    )
    return subscription_out(subscription)
