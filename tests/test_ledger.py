"""Ledger invariants: balances follow completed entries, refs are unique, corrections append."""

import asyncio

import pytest

from pointsledger.core.exceptions import (
    DuplicateExternalRefError,
    InsufficientBalanceError,
    InvalidStateError,
    MissingExternalRefError,
    NotFoundError,
    ValidationError,
)
from pointsledger.models import TransactionStatus, TransactionType
from pointsledger.services import ledger, wallets
from pointsledger.store.base import TransactionFilters

pytestmark = pytest.mark.asyncio


async def _completed_sum(user_id: str) -> int:
    txs = await ledger.list_transactions(
        TransactionFilters(user_id=user_id, status=TransactionStatus.COMPLETED), limit=1000
    )
    return sum(t.amount_minor for t in txs)


async def test_unknown_user_has_zero_balance():
    assert await wallets.get_balance("nobody") == 0


async def test_completed_entries_move_balance():
    await ledger.record_transaction("u1", TransactionType.RECHARGE, 5000, TransactionStatus.COMPLETED, "r-1")
    await ledger.record_transaction("u1", TransactionType.PURCHASE, -1200, TransactionStatus.COMPLETED)
    pending = await ledger.record_transaction("u1", TransactionType.RECHARGE, 700, TransactionStatus.PENDING, "r-2")

    wallet = await wallets.get_wallet("u1")
    assert wallet.balance_minor == 3800
    assert wallet.total_spent_minor == 1200
    assert pending.balance_after is None
    assert await _completed_sum("u1") == wallet.balance_minor


async def test_debit_below_zero_is_rejected_without_writes():
    with pytest.raises(InsufficientBalanceError):
        await ledger.record_transaction("u2", TransactionType.PURCHASE, -1, TransactionStatus.COMPLETED)
    assert await ledger.list_transactions(TransactionFilters(user_id="u2")) == []


async def test_invalid_inputs():
    with pytest.raises(ValidationError):
        await ledger.record_transaction("u1", TransactionType.RECHARGE, 0, TransactionStatus.COMPLETED)
    with pytest.raises(ValidationError):
        await ledger.record_transaction("u1", "bonus", 10, TransactionStatus.COMPLETED)
    with pytest.raises(ValidationError):
        await ledger.record_transaction(" ", TransactionType.RECHARGE, 10, TransactionStatus.COMPLETED)
    with pytest.raises(ValidationError):
        await ledger.record_transaction("u1", TransactionType.RECHARGE, 10, TransactionStatus.CANCELLED)


async def test_external_ref_is_unique():
    await ledger.record_transaction("u1", TransactionType.RECHARGE, 100, TransactionStatus.PENDING, "dup")
    with pytest.raises(DuplicateExternalRefError) as exc:
        await ledger.record_transaction("u2", TransactionType.RECHARGE, 100, TransactionStatus.PENDING, "dup")
    assert exc.value.external_ref == "dup"
    assert await ledger.is_external_ref_in_use("dup")
    assert not await ledger.is_external_ref_in_use("other")


async def test_concurrent_same_ref_records_once():
    results = await asyncio.gather(
        ledger.record_transaction("u1", TransactionType.RECHARGE, 100, TransactionStatus.COMPLETED, "race"),
        ledger.record_transaction("u2", TransactionType.RECHARGE, 100, TransactionStatus.COMPLETED, "race"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], DuplicateExternalRefError)
    total = await wallets.get_balance("u1") + await wallets.get_balance("u2")
    assert total == 100


async def test_settle_pending():
    tx = await ledger.record_transaction("u1", TransactionType.RECHARGE, 900, TransactionStatus.PENDING)
    assert await wallets.get_balance("u1") == 0
    settled = await ledger.settle_transaction(tx.id, "bank-7")
    assert settled.status == TransactionStatus.COMPLETED
    assert settled.external_ref == "bank-7"
    assert settled.balance_after == 900
    assert await wallets.get_balance("u1") == 900
    with pytest.raises(InvalidStateError):
        await ledger.settle_transaction(tx.id)


async def test_settle_unknown_transaction():
    with pytest.raises(NotFoundError):
        await ledger.settle_transaction("missing")


async def test_cancel_pending_only():
    tx = await ledger.record_transaction("u1", TransactionType.RECHARGE, 900, TransactionStatus.PENDING)
    cancelled = await ledger.cancel_transaction(tx.id, "payment bounced")
    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.metadata["cancellation_reason"] == "payment bounced"
    assert await wallets.get_balance("u1") == 0
    with pytest.raises(InvalidStateError):
        await ledger.cancel_transaction(tx.id)


async def test_reverse_appends_compensating_entry():
    original = await ledger.record_transaction(
        "u1", TransactionType.RECHARGE, 2500, TransactionStatus.COMPLETED, "r-9"
    )
    compensating = await ledger.reverse_transaction(original.id, "chargeback")

    assert compensating.type == TransactionType.ADMIN_ADJUSTMENT
    assert compensating.amount_minor == -2500
    assert compensating.reversal_of == original.id
    stored = await ledger.get_transaction(original.id)
    assert stored.amount_minor == 2500
    assert stored.status == TransactionStatus.COMPLETED
    assert stored.metadata["reversed_by"] == compensating.id
    assert await wallets.get_balance("u1") == 0
    assert await _completed_sum("u1") == 0

    with pytest.raises(InvalidStateError):
        await ledger.reverse_transaction(original.id, "again")
    with pytest.raises(InvalidStateError):
        await ledger.reverse_transaction(compensating.id, "undo the undo")


async def test_reverse_needs_funds():
    original = await ledger.record_transaction("u1", TransactionType.RECHARGE, 2500, TransactionStatus.COMPLETED)
    await ledger.record_transaction("u1", TransactionType.PURCHASE, -2000, TransactionStatus.COMPLETED)
    with pytest.raises(InsufficientBalanceError):
        await ledger.reverse_transaction(original.id, "chargeback")
    assert await wallets.get_balance("u1") == 500


async def test_recharge_requires_ref_and_replays():
    with pytest.raises(MissingExternalRefError):
        await ledger.recharge_wallet("u1", 10, "  ")

    first = await ledger.recharge_wallet("u1", "12.50", "upi-1", status="completed")
    again = await ledger.recharge_wallet("u1", "12.50", "upi-1", status="completed")
    assert first.id == again.id
    assert await wallets.get_balance("u1") == 1250

    with pytest.raises(DuplicateExternalRefError):
        await ledger.recharge_wallet("u1", 20, "upi-1", status="completed")


async def test_adjust_balance_requires_reason():
    with pytest.raises(ValidationError):
        await ledger.adjust_balance("u1", 100, "")
    tx = await ledger.adjust_balance("u1", 100, "goodwill", admin_id="admin-1")
    assert tx.type == TransactionType.ADMIN_ADJUSTMENT
    assert tx.metadata["admin_id"] == "admin-1"
    assert await wallets.get_balance("u1") == 100


async def test_wallet_stats():
    await ledger.recharge_wallet("u1", 10, "s-1", status="completed")
    await ledger.recharge_wallet("u2", 5, "s-2", status="completed")
    await ledger.recharge_wallet("u2", 3, "s-3")

    stats = await ledger.wallet_stats()

    assert stats == {
        "total_users": 2,
        "total_balance_minor": 1500,
        "total_transactions": 3,
        "today_transactions": 3,
        "pending_transactions": 1,
    }


async def test_notifications_are_audited(fresh_store):
    tx = await ledger.recharge_wallet("u1", 5, "r-n", status="completed")
    events = [(a.event_type, a.entity_id) for a in fresh_store.audit_logs]
    assert ("points_added", tx.id) in events
