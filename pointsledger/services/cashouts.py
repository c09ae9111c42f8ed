"""
Cashout requests: admin converts points to an off-platform payment.

A CashoutRequest is a projection over exactly one `cashout` ledger
transaction; the ledger holds all financial truth. The fee is kept by the
platform: cancelling a completed cashout refunds the full requested amount
through a compensating entry, the fee is never part of the ledger.
"""

from datetime import datetime, time
from decimal import Decimal

from pointsledger.core.exceptions import (
    DuplicateExternalRefError,
    InsufficientBalanceError,
    InvalidTransitionError,
    MissingExternalRefError,
    NotFoundError,
    ValidationError,
)
from pointsledger.core.logging import get_logger
from pointsledger.core.money import CashoutAmounts, Number, calculate_amounts, validate_fee_percentage
from pointsledger.core.security import new_id
from pointsledger.models import CashoutRequest, CashoutStatus, TransactionStatus, TransactionType
from pointsledger.models.base import utcnow
from pointsledger.services import notifications
from pointsledger.services.atomic import run_atomic
from pointsledger.services.ledger import apply_cancel, apply_record, apply_reverse, apply_settle, normalize_ref
from pointsledger.services.wallets import require_id, wallet_for_update
from pointsledger.store.base import CashoutFilters, UnitOfWork, get_store

log = get_logger(__name__)

TRANSITIONS: dict[CashoutStatus, frozenset[CashoutStatus]] = {
    CashoutStatus.PENDING: frozenset({CashoutStatus.PROCESSING, CashoutStatus.COMPLETED, CashoutStatus.CANCELLED}),
    CashoutStatus.PROCESSING: frozenset({CashoutStatus.COMPLETED, CashoutStatus.CANCELLED}),
    CashoutStatus.COMPLETED: frozenset({CashoutStatus.CANCELLED}),
    CashoutStatus.CANCELLED: frozenset(),
    CashoutStatus.FAILED: frozenset(),
}

INITIAL_STATUSES = (CashoutStatus.PENDING, CashoutStatus.COMPLETED)


def can_transition(current: CashoutStatus, target: CashoutStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(cashout: CashoutRequest, target: CashoutStatus) -> None:
    if not can_transition(cashout.status, target):
        raise InvalidTransitionError(cashout.status.value, target.value, details={"cashout_id": cashout.id})


async def _load(uow: UnitOfWork, cashout_id: str) -> CashoutRequest:
    cashout = await uow.get_cashout(cashout_id)
    if cashout is None:
        raise NotFoundError("Cashout request not found", details={"cashout_id": cashout_id})
    return cashout


def _ledger_metadata(cashout_id: str, amounts: CashoutAmounts, fee_percentage: Decimal, **extra) -> dict:
    return {
        "cashout_id": cashout_id,
        "fee_percentage": str(fee_percentage),
        "fee_minor": amounts.fee_minor,
        "final_minor": amounts.final_minor,
        **{k: v for k, v in extra.items() if v is not None},
    }


def _is_same_request(
    cashout: CashoutRequest, user_id: str, amounts: CashoutAmounts, fee_percentage: Decimal, payment_method_id: str
) -> bool:
    return (
        cashout.user_id == user_id
        and cashout.requested_minor == amounts.requested_minor
        and cashout.fee_percentage == fee_percentage
        and cashout.payment_method_id == payment_method_id
    )


async def create_cashout_request(
    user_id: str,
    requested_points: Number,
    fee_percentage: Number,
    payment_method_id: str,
    external_ref: str | None = None,
    initial_status: CashoutStatus | str = CashoutStatus.PENDING,
    admin_id: str | None = None,
    notes: str | None = None,
) -> CashoutRequest:
    """
    Create a cashout for `requested_points` at `fee_percentage` percent.

    `pending`: the fee breakdown is stored and a pending ledger entry is
    recorded; no funds move. `completed`: the payment already happened, so
    `external_ref` is mandatory and the debit is recorded in the same unit.
    Retrying with a reference already bound to an identical request returns
    that request.
    """
    user_id = require_id(user_id)
    payment_method_id = require_id(payment_method_id, "payment_method_id")
    try:
        status = CashoutStatus(initial_status)
    except ValueError:
        raise ValidationError(f"Invalid initial status: {initial_status}") from None
    if status not in INITIAL_STATUSES:
        raise ValidationError("Cashouts start as pending or completed", details={"initial_status": status.value})
    amounts = calculate_amounts(requested_points, fee_percentage)
    pct = validate_fee_percentage(fee_percentage)
    ref = normalize_ref(external_ref)
    if status == CashoutStatus.COMPLETED and not ref:
        raise MissingExternalRefError("External reference is required for completed cashouts")
    cashout_id = new_id()

    async def _work(uow: UnitOfWork) -> tuple[CashoutRequest, bool]:
        if ref:
            owner = await uow.get_transaction_by_ref(ref)
            if owner is not None:
                existing_id = owner.metadata.get("cashout_id")
                existing = await uow.get_cashout(existing_id) if existing_id else None
                if existing is not None and _is_same_request(existing, user_id, amounts, pct, payment_method_id):
                    return existing, False
                raise DuplicateExternalRefError(ref, details={"transaction_id": owner.id})

        wallet = await wallet_for_update(uow, user_id)
        if wallet.balance_minor < amounts.requested_minor:
            raise InsufficientBalanceError(
                "Insufficient balance for cashout",
                details={"balance_minor": wallet.balance_minor, "requested_minor": amounts.requested_minor},
            )
        completed = status == CashoutStatus.COMPLETED
        tx = await apply_record(
            uow,
            user_id,
            TransactionType.CASHOUT,
            -amounts.requested_minor,
            TransactionStatus.COMPLETED if completed else TransactionStatus.PENDING,
            external_ref=ref,
            metadata=_ledger_metadata(
                cashout_id, amounts, pct, admin_id=admin_id, payment_method_id=payment_method_id
            ),
            description=f"Cashout via {payment_method_id} (fee {pct}%)",
        )
        cashout = CashoutRequest(
            id=cashout_id,
            user_id=user_id,
            requested_minor=amounts.requested_minor,
            fee_percentage=pct,
            fee_minor=amounts.fee_minor,
            final_minor=amounts.final_minor,
            payment_method_id=payment_method_id,
            external_ref=ref,
            transaction_id=tx.id,
            status=status,
            notes=notes,
            admin_id=admin_id,
            processed_at=utcnow() if completed else None,
        )
        uow.put(cashout)
        return cashout, True

    cashout, created = await run_atomic(_work, operation="create_cashout_request")
    if not created:
        log.info("cashout_create_replayed", cashout_id=cashout.id, external_ref=ref)
        return cashout
    log.info(
        "cashout_created",
        cashout_id=cashout.id,
        user_id=user_id,
        status=cashout.status.value,
        requested_minor=cashout.requested_minor,
        fee_minor=cashout.fee_minor,
    )
    await notifications.notify(
        "cashout_requested" if cashout.status == CashoutStatus.PENDING else "cashout_processed",
        "cashout",
        cashout.id,
        user_id=user_id,
        metadata={"requested_minor": cashout.requested_minor, "final_minor": cashout.final_minor},
    )
    return cashout


async def start_processing(cashout_id: str, admin_notes: str | None = None, admin_id: str | None = None) -> CashoutRequest:
    async def _work(uow: UnitOfWork) -> CashoutRequest:
        cashout = await _load(uow, cashout_id)
        check_transition(cashout, CashoutStatus.PROCESSING)
        cashout.status = CashoutStatus.PROCESSING
        cashout.admin_notes = admin_notes or cashout.admin_notes
        cashout.admin_id = admin_id or cashout.admin_id
        cashout.touch()
        uow.put(cashout)
        return cashout

    cashout = await run_atomic(_work, operation="start_processing")
    log.info("cashout_processing", cashout_id=cashout.id, user_id=cashout.user_id)
    return cashout


async def complete_cashout(
    cashout_id: str,
    external_ref: str | None,
    admin_notes: str | None = None,
    admin_id: str | None = None,
) -> CashoutRequest:
    """
    pending|processing -> completed, deducting the requested amount.
    Resubmitting the reference that completed this request returns it unchanged.
    """
    ref = normalize_ref(external_ref)
    if not ref:
        raise MissingExternalRefError("External reference is required to complete a cashout")

    async def _work(uow: UnitOfWork) -> tuple[CashoutRequest, bool]:
        cashout = await _load(uow, cashout_id)
        if cashout.status == CashoutStatus.COMPLETED and cashout.external_ref == ref:
            return cashout, False
        check_transition(cashout, CashoutStatus.COMPLETED)
        owner = await uow.get_transaction_by_ref(ref)
        if owner is not None and owner.id != cashout.transaction_id:
            raise DuplicateExternalRefError(ref, details={"transaction_id": owner.id, "cashout_id": cashout.id})

        tx = await uow.get_transaction(cashout.transaction_id) if cashout.transaction_id else None
        if tx is not None and tx.status == TransactionStatus.PENDING:
            if admin_id:
                tx.metadata = {**tx.metadata, "admin_id": admin_id}
            await apply_settle(uow, tx.id, ref)
        elif tx is not None and tx.status == TransactionStatus.COMPLETED:
            # debit already applied; never record a second one
            tx.metadata = {**tx.metadata, "payment_ref": ref}
            tx.touch()
            uow.put(tx)
        else:
            amounts = CashoutAmounts(
                requested_minor=cashout.requested_minor,
                fee_minor=cashout.fee_minor,
                final_minor=cashout.final_minor,
            )
            tx = await apply_record(
                uow,
                cashout.user_id,
                TransactionType.CASHOUT,
                -cashout.requested_minor,
                TransactionStatus.COMPLETED,
                external_ref=ref,
                metadata=_ledger_metadata(
                    cashout.id,
                    amounts,
                    cashout.fee_percentage,
                    admin_id=admin_id,
                    payment_method_id=cashout.payment_method_id,
                ),
                description=f"Cashout via {cashout.payment_method_id} (fee {cashout.fee_percentage}%)",
            )
            cashout.transaction_id = tx.id

        cashout.status = CashoutStatus.COMPLETED
        cashout.external_ref = ref
        cashout.processed_at = utcnow()
        cashout.admin_notes = admin_notes or cashout.admin_notes
        cashout.admin_id = admin_id or cashout.admin_id
        cashout.touch()
        uow.put(cashout)
        return cashout, True

    cashout, changed = await run_atomic(_work, operation="complete_cashout")
    if not changed:
        log.info("cashout_complete_replayed", cashout_id=cashout.id, external_ref=ref)
        return cashout
    log.info("cashout_completed", cashout_id=cashout.id, user_id=cashout.user_id, requested_minor=cashout.requested_minor)
    await notifications.notify(
        "cashout_processed",
        "cashout",
        cashout.id,
        user_id=cashout.user_id,
        metadata={"requested_minor": cashout.requested_minor, "final_minor": cashout.final_minor},
    )
    return cashout


async def cancel_cashout(cashout_id: str, admin_notes: str | None = None, admin_id: str | None = None) -> CashoutRequest:
    """
    pending|processing -> cancelled with no balance change.
    completed -> cancelled with a compensating credit of the full requested amount.
    """

    async def _work(uow: UnitOfWork) -> tuple[CashoutRequest, int]:
        cashout = await _load(uow, cashout_id)
        check_transition(cashout, CashoutStatus.CANCELLED)
        refunded_minor = 0
        if cashout.status == CashoutStatus.COMPLETED:
            compensating = await apply_reverse(
                uow,
                cashout.transaction_id,
                "Cashout cancelled after completion",
                metadata={"cashout_id": cashout.id, "forfeited_fee_minor": cashout.fee_minor, "admin_id": admin_id},
            )
            refunded_minor = compensating.amount_minor
        elif cashout.transaction_id:
            tx = await uow.get_transaction(cashout.transaction_id)
            if tx is not None and tx.status == TransactionStatus.PENDING:
                await apply_cancel(uow, tx.id, "Cashout cancelled")
        cashout.status = CashoutStatus.CANCELLED
        cashout.admin_notes = admin_notes or cashout.admin_notes
        cashout.admin_id = admin_id or cashout.admin_id
        cashout.touch()
        uow.put(cashout)
        return cashout, refunded_minor

    cashout, refunded_minor = await run_atomic(_work, operation="cancel_cashout")
    log.info("cashout_cancelled", cashout_id=cashout.id, user_id=cashout.user_id, refunded_minor=refunded_minor)
    await notifications.notify(
        "cashout_rejected",
        "cashout",
        cashout.id,
        user_id=cashout.user_id,
        metadata={"refunded_minor": refunded_minor},
    )
    return cashout


async def get_cashout(cashout_id: str) -> CashoutRequest:
    cashout = await get_store().get_cashout(cashout_id)
    if cashout is None:
        raise NotFoundError("Cashout request not found", details={"cashout_id": cashout_id})
    return cashout


async def list_cashouts(filters: CashoutFilters, limit: int = 50, offset: int = 0) -> list[CashoutRequest]:
    return await get_store().list_cashouts(filters, limit=limit, offset=offset)


async def cashout_stats(now: datetime | None = None, batch_size: int = 500) -> dict[str, int]:
    store = get_store()
    today = datetime.combine((now or utcnow()).date(), time.min)
    stats = {
        "total_requests": 0,
        "pending_requests": 0,
        "completed_requests": 0,
        "total_cashed_out_minor": 0,
        "admin_earnings_minor": 0,
        "today_requests": 0,
    }
    offset = 0
    while True:
        page = await store.list_cashouts(CashoutFilters(), limit=batch_size, offset=offset)
        for c in page:
            stats["total_requests"] += 1
            if c.status in (CashoutStatus.PENDING, CashoutStatus.PROCESSING):
                stats["pending_requests"] += 1
            elif c.status == CashoutStatus.COMPLETED:
                stats["completed_requests"] += 1
                stats["total_cashed_out_minor"] += c.final_minor
                stats["admin_earnings_minor"] += c.fee_minor
            if c.created_at >= today:
                stats["today_requests"] += 1
        if len(page) < batch_size:
            return stats
        offset += batch_size
