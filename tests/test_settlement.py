"""Post purchase atomicity and subscription cancellation."""

import asyncio
from datetime import timedelta

import pytest

from pointsledger.core.exceptions import (
    InsufficientBalanceError,
    InvalidTransitionError,
    NotFoundError,
    PostUnavailableError,
    ValidationError,
)
from pointsledger.models import PostStatus, SubscriptionStatus, TransactionType
from pointsledger.models.base import utcnow
from pointsledger.services import ledger, settlement, wallets
from pointsledger.store.base import SubscriptionFilters, TransactionFilters

pytestmark = pytest.mark.asyncio


async def _post(post_id: str = "p1", author_id: str = "author", price_minor: int = 1500):
    departure = utcnow() + timedelta(days=2)
    return await settlement.register_post(post_id, author_id, price_minor, departure)


async def test_purchase_moves_funds_and_flips_post(fund):
    await fund("buyer", 20)
    await _post()

    sub = await settlement.purchase_post("buyer", "author", "p1", 1500)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert await wallets.get_balance("buyer") == 500
    author = await wallets.get_wallet("author")
    assert author.balance_minor == 1500
    assert author.total_earnings_minor == 1500
    assert (await wallets.get_wallet("buyer")).total_spent_minor == 1500
    post = await settlement.get_post("p1")
    assert post.status == PostStatus.SUBSCRIBED
    assert post.subscriber_id == "buyer"
    buyer_tx = await ledger.get_transaction(sub.buyer_transaction_id)
    author_tx = await ledger.get_transaction(sub.author_transaction_id)
    assert (buyer_tx.type, buyer_tx.amount_minor) == (TransactionType.PURCHASE, -1500)
    assert (author_tx.type, author_tx.amount_minor) == (TransactionType.EARNING, 1500)


async def test_insufficient_balance_writes_nothing(fund):
    await fund("buyer", 10)
    await _post()

    with pytest.raises(InsufficientBalanceError):
        await settlement.purchase_post("buyer", "author", "p1", 1500)

    assert await wallets.get_balance("buyer") == 1000
    assert await ledger.list_transactions(TransactionFilters(type=TransactionType.PURCHASE)) == []
    assert await ledger.list_transactions(TransactionFilters(user_id="author")) == []
    assert await settlement.list_subscriptions(SubscriptionFilters()) == []
    assert (await settlement.get_post("p1")).status == PostStatus.ACTIVE


async def test_purchase_validation(fund):
    await fund("buyer", 100)
    await _post()
    with pytest.raises(ValidationError):
        await settlement.purchase_post("author", "author", "p1", 1500)
    with pytest.raises(ValidationError):
        await settlement.purchase_post("buyer", "author", "p1", 0)
    with pytest.raises(ValidationError):
        await settlement.purchase_post("buyer", "author", "p1", 999)
    with pytest.raises(ValidationError):
        await settlement.purchase_post("buyer", "someone", "p1", 1500)
    with pytest.raises(NotFoundError):
        await settlement.purchase_post("buyer", "author", "nope", 1500)


async def test_second_purchase_is_unavailable(fund):
    await fund("b1", 100)
    await fund("b2", 100)
    await _post()
    await settlement.purchase_post("b1", "author", "p1", 1500)
    with pytest.raises(PostUnavailableError):
        await settlement.purchase_post("b2", "author", "p1", 1500)
    assert await wallets.get_balance("b2") == 10000


async def test_concurrent_purchases_one_wins(fund):
    await fund("b1", 100)
    await fund("b2", 100)
    await _post()

    results = await asyncio.gather(
        settlement.purchase_post("b1", "author", "p1", 1500),
        settlement.purchase_post("b2", "author", "p1", 1500),
        return_exceptions=True,
    )
    wins = [r for r in results if not isinstance(r, Exception)]
    losses = [r for r in results if isinstance(r, Exception)]
    assert len(wins) == 1
    assert len(losses) == 1
    assert isinstance(losses[0], PostUnavailableError)
    assert await wallets.get_balance("author") == 1500
    total = await wallets.get_balance("b1") + await wallets.get_balance("b2")
    assert total == 20000 - 1500
    active = await settlement.list_subscriptions(SubscriptionFilters(post_id="p1", status=SubscriptionStatus.ACTIVE))
    assert len(active) == 1


async def test_cancel_subscription_has_no_refund(fund):
    await fund("buyer", 20)
    await _post()
    sub = await settlement.purchase_post("buyer", "author", "p1", 1500)

    cancelled = await settlement.cancel_subscription(sub.id, "Admin cancellation")

    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancellation_reason == "Admin cancellation"
    assert await wallets.get_balance("buyer") == 500
    assert await wallets.get_balance("author") == 1500
    assert (await settlement.get_post("p1")).status == PostStatus.ACTIVE
    with pytest.raises(InvalidTransitionError):
        await settlement.cancel_subscription(sub.id)


async def test_register_post_rules():
    await _post()
    repriced = await _post(price_minor=2000)
    assert repriced.price_minor == 2000
    with pytest.raises(ValidationError):
        await _post(author_id="intruder")
    with pytest.raises(ValidationError):
        await settlement.register_post("p2", "author", 100, utcnow(), utcnow() - timedelta(days=1))


async def test_subscription_stats(fund):
    await fund("b1", 100)
    await _post("p1")
    await _post("p2", price_minor=500)
    s1 = await settlement.purchase_post("b1", "author", "p1", 1500)
    await settlement.purchase_post("b1", "author", "p2", 500)
    await settlement.cancel_subscription(s1.id)

    stats = await settlement.subscription_stats()
    assert stats == {
        "total_subscriptions": 2,
        "active_subscriptions": 1,
        "cancelled_subscriptions": 1,
        "total_revenue_minor": 2000,
        "today_subscriptions": 2,
    }
