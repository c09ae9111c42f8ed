"""Cashout state machine, fee handling and idempotent completion."""

import asyncio

import pytest

from pointsledger.core.exceptions import (
    DuplicateExternalRefError,
    InsufficientBalanceError,
    InvalidStateError,
    InvalidTransitionError,
    MissingExternalRefError,
    NotFoundError,
    ValidationError,
)
from pointsledger.models import CashoutStatus, TransactionStatus, TransactionType
from pointsledger.services import cashouts, ledger, wallets
from pointsledger.services.atomic import run_atomic
from pointsledger.store.base import CashoutFilters, TransactionFilters

pytestmark = pytest.mark.asyncio


async def test_transition_table_is_exhaustive():
    assert set(cashouts.TRANSITIONS) == set(CashoutStatus)
    for current, targets in cashouts.TRANSITIONS.items():
        for target in CashoutStatus:
            assert cashouts.can_transition(current, target) == (target in targets)
    assert cashouts.TRANSITIONS[CashoutStatus.CANCELLED] == frozenset()
    assert cashouts.TRANSITIONS[CashoutStatus.FAILED] == frozenset()
    assert not cashouts.can_transition(CashoutStatus.COMPLETED, CashoutStatus.PENDING)


async def test_pending_request_moves_no_funds(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 80, 10, "pm-1")

    assert cashout.status == CashoutStatus.PENDING
    assert (cashout.requested_minor, cashout.fee_minor, cashout.final_minor) == (8000, 800, 7200)
    assert await wallets.get_balance("u1") == 10000
    tx = await ledger.get_transaction(cashout.transaction_id)
    assert tx.status == TransactionStatus.PENDING
    assert tx.amount_minor == -8000


async def test_end_to_end_complete_then_cancel(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 80, 10, "pm-1")

    completed = await cashouts.complete_cashout(cashout.id, "TX1", admin_notes="paid", admin_id="admin-1")
    assert completed.status == CashoutStatus.COMPLETED
    assert completed.external_ref == "TX1"
    assert completed.processed_at is not None
    assert await wallets.get_balance("u1") == 2000

    # same reference again is a no-op
    again = await cashouts.complete_cashout(cashout.id, "TX1")
    assert again.status == CashoutStatus.COMPLETED
    assert await wallets.get_balance("u1") == 2000

    cancelled = await cashouts.cancel_cashout(cashout.id, admin_notes="reversed by bank")
    assert cancelled.status == CashoutStatus.CANCELLED
    wallet = await wallets.get_wallet("u1")
    assert wallet.balance_minor == 10000
    assert wallet.total_cashouts_minor == 0

    refunds = await ledger.list_transactions(TransactionFilters(user_id="u1", type=TransactionType.ADMIN_ADJUSTMENT))
    assert len(refunds) == 1
    assert refunds[0].amount_minor == 8000
    assert refunds[0].reversal_of == cashout.transaction_id
    assert refunds[0].metadata["forfeited_fee_minor"] == 800

    with pytest.raises(InvalidTransitionError):
        await cashouts.cancel_cashout(cashout.id)
    with pytest.raises(InvalidTransitionError):
        await cashouts.complete_cashout(cashout.id, "TX2")


async def test_processing_then_complete(fund):
    await fund("u1", 50)
    cashout = await cashouts.create_cashout_request("u1", 20, 5, "pm-1")
    processing = await cashouts.start_processing(cashout.id, admin_notes="queued")
    assert processing.status == CashoutStatus.PROCESSING
    with pytest.raises(InvalidTransitionError):
        await cashouts.start_processing(cashout.id)
    done = await cashouts.complete_cashout(cashout.id, "TX-P")
    assert done.status == CashoutStatus.COMPLETED
    assert done.admin_notes == "queued"
    assert await wallets.get_balance("u1") == 3000


async def test_cancel_pending_keeps_balance(fund):
    await fund("u1", 50)
    cashout = await cashouts.create_cashout_request("u1", 20, 5, "pm-1")
    cancelled = await cashouts.cancel_cashout(cashout.id)
    assert cancelled.status == CashoutStatus.CANCELLED
    assert await wallets.get_balance("u1") == 5000
    tx = await ledger.get_transaction(cashout.transaction_id)
    assert tx.status == TransactionStatus.CANCELLED


async def test_create_completed_requires_ref_and_debits(fund):
    await fund("u1", 100)
    with pytest.raises(MissingExternalRefError):
        await cashouts.create_cashout_request("u1", 10, 5, "pm-1", initial_status="completed")

    cashout = await cashouts.create_cashout_request(
        "u1", 10, 5, "pm-1", external_ref="PAY-1", initial_status="completed"
    )
    assert cashout.status == CashoutStatus.COMPLETED
    assert await wallets.get_balance("u1") == 9000

    replay = await cashouts.create_cashout_request(
        "u1", 10, 5, "pm-1", external_ref="PAY-1", initial_status="completed"
    )
    assert replay.id == cashout.id
    assert await wallets.get_balance("u1") == 9000

    with pytest.raises(DuplicateExternalRefError):
        await cashouts.create_cashout_request("u1", 11, 5, "pm-1", external_ref="PAY-1", initial_status="completed")


async def test_create_validation(fund):
    await fund("u1", 10)
    with pytest.raises(InsufficientBalanceError):
        await cashouts.create_cashout_request("u1", 11, 5, "pm-1")
    with pytest.raises(ValidationError):
        await cashouts.create_cashout_request("u1", 5, 101, "pm-1")
    with pytest.raises(ValidationError):
        await cashouts.create_cashout_request("u1", 5, 5, "")
    with pytest.raises(ValidationError):
        await cashouts.create_cashout_request("u1", 5, 5, "pm-1", initial_status="processing")
    assert await cashouts.list_cashouts(CashoutFilters(user_id="u1")) == []


async def test_complete_requires_ref_and_funds(fund):
    await fund("u1", 10)
    cashout = await cashouts.create_cashout_request("u1", 10, 5, "pm-1")
    with pytest.raises(MissingExternalRefError):
        await cashouts.complete_cashout(cashout.id, None)
    await ledger.record_transaction("u1", TransactionType.PURCHASE, -500, TransactionStatus.COMPLETED)
    with pytest.raises(InsufficientBalanceError):
        await cashouts.complete_cashout(cashout.id, "TX-3")
    stored = await cashouts.get_cashout(cashout.id)
    assert stored.status == CashoutStatus.PENDING


async def test_complete_with_foreign_ref(fund):
    await fund("u1", 10, ref="BANK-9")
    cashout = await cashouts.create_cashout_request("u1", 5, 5, "pm-1")
    with pytest.raises(DuplicateExternalRefError):
        await cashouts.complete_cashout(cashout.id, "BANK-9")


async def test_unknown_cashout():
    with pytest.raises(NotFoundError):
        await cashouts.complete_cashout("missing", "TX")


async def test_concurrent_same_ref_completion_deducts_once(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 80, 10, "pm-1")

    results = await asyncio.gather(
        cashouts.complete_cashout(cashout.id, "TX1"),
        cashouts.complete_cashout(cashout.id, "TX1"),
    )
    assert all(r.status == CashoutStatus.COMPLETED for r in results)
    assert await wallets.get_balance("u1") == 2000
    completed = await ledger.list_transactions(
        TransactionFilters(user_id="u1", type=TransactionType.CASHOUT, status=TransactionStatus.COMPLETED)
    )
    assert len(completed) == 1


async def test_stats(fund):
    await fund("u1", 100)
    a = await cashouts.create_cashout_request("u1", 40, 10, "pm-1")
    await cashouts.create_cashout_request("u1", 20, 10, "pm-1")
    await cashouts.complete_cashout(a.id, "TX-S")

    stats = await cashouts.cashout_stats()
    assert stats["total_requests"] == 2
    assert stats["pending_requests"] == 1
    assert stats["completed_requests"] == 1
    assert stats["total_cashed_out_minor"] == 3600
    assert stats["admin_earnings_minor"] == 400
    assert stats["today_requests"] == 2


async def test_generic_settle_cannot_touch_cashout_entry(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 30, 10, "pm-1")

    with pytest.raises(InvalidStateError):
        await ledger.settle_transaction(cashout.transaction_id)
    with pytest.raises(InvalidStateError):
        await ledger.cancel_transaction(cashout.transaction_id)
    assert await wallets.get_balance("u1") == 10000

    await cashouts.complete_cashout(cashout.id, "TX1")
    assert await wallets.get_balance("u1") == 7000


async def test_generic_reverse_cannot_touch_cashout_entry(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 30, 10, "pm-1")
    await cashouts.complete_cashout(cashout.id, "TX1")

    with pytest.raises(InvalidStateError):
        await ledger.reverse_transaction(cashout.transaction_id, "chargeback")
    assert await wallets.get_balance("u1") == 7000

    cancelled = await cashouts.cancel_cashout(cashout.id)
    assert cancelled.status == CashoutStatus.CANCELLED
    assert await wallets.get_balance("u1") == 10000


async def test_complete_after_entry_already_settled_deducts_once(fund):
    await fund("u1", 100)
    cashout = await cashouts.create_cashout_request("u1", 30, 10, "pm-1")
    # entry settled outside the cashout flow
    await run_atomic(lambda uow: ledger.apply_settle(uow, cashout.transaction_id))
    assert await wallets.get_balance("u1") == 7000

    completed = await cashouts.complete_cashout(cashout.id, "TX1")

    assert completed.status == CashoutStatus.COMPLETED
    assert completed.transaction_id == cashout.transaction_id
    assert await wallets.get_balance("u1") == 7000
    debits = await ledger.list_transactions(TransactionFilters(user_id="u1", type=TransactionType.CASHOUT))
    assert len(debits) == 1
