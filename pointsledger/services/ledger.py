"""
Ledger: append-only transactions and atomic balance updates.

`apply_*` functions work inside a caller's unit of work so engines can
compose several ledger steps into one commit. The public functions wrap a
single step in its own unit. A completed entry is never rewritten; financial
corrections are new compensating entries.
"""

from datetime import datetime, time
from typing import Any

from pointsledger.core.exceptions import (
    DuplicateExternalRefError,
    InvalidStateError,
    MissingExternalRefError,
    NotFoundError,
    ValidationError,
)
from pointsledger.core.logging import get_logger
from pointsledger.core.money import Number, points_to_minor
from pointsledger.models import Transaction, TransactionStatus, TransactionType
from pointsledger.models.base import utcnow
from pointsledger.services import notifications
from pointsledger.services.atomic import run_atomic
from pointsledger.services.wallets import apply_to_wallet, require_id, wallet_for_update
from pointsledger.store.base import TransactionFilters, UnitOfWork, get_store

log = get_logger(__name__)


def normalize_ref(external_ref: str | None) -> str | None:
    ref = (external_ref or "").strip()
    return ref or None


def _coerce(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", details={"field": field}) from None


async def _claim_ref(uow: UnitOfWork, ref: str, transaction_id: str | None = None) -> None:
    existing = await uow.get_transaction_by_ref(ref)
    if existing is not None and existing.id != transaction_id:
        raise DuplicateExternalRefError(ref, details={"transaction_id": existing.id})


async def _load(uow: UnitOfWork, transaction_id: str) -> Transaction:
    tx = await uow.get_transaction(transaction_id)
    if tx is None:
        raise NotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return tx


async def _load_unlinked(uow: UnitOfWork, transaction_id: str) -> Transaction:
    """Load an entry the generic endpoints may change; cashout entries move only with their request."""
    tx = await _load(uow, transaction_id)
    cashout_id = tx.metadata.get("cashout_id")
    if cashout_id:
        raise InvalidStateError(
            "Transaction belongs to a cashout request; use the cashout endpoints",
            details={"transaction_id": tx.id, "cashout_id": cashout_id},
        )
    return tx


async def apply_record(
    uow: UnitOfWork,
    user_id: str,
    type: TransactionType | str,
    amount_minor: int,
    status: TransactionStatus | str,
    external_ref: str | None = None,
    metadata: dict[str, Any] | None = None,
    description: str = "",
    reversal_of: str | None = None,
    totals_type: TransactionType | None = None,
) -> Transaction:
    user_id = require_id(user_id)
    tx_type = _coerce(TransactionType, type, "type")
    tx_status = _coerce(TransactionStatus, status, "status")
    if tx_status == TransactionStatus.CANCELLED:
        raise ValidationError("Transactions are recorded as pending or completed", details={"status": tx_status.value})
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor == 0:
        raise ValidationError("Amount must be a non-zero integer of minor units", details={"amount_minor": amount_minor})
    ref = normalize_ref(external_ref)
    if ref:
        await _claim_ref(uow, ref)

    tx = Transaction(
        user_id=user_id,
        type=tx_type,
        amount_minor=amount_minor,
        status=tx_status,
        external_ref=ref,
        description=description,
        reversal_of=reversal_of,
        metadata=metadata or {},
    )
    if tx_status == TransactionStatus.COMPLETED:
        wallet = await wallet_for_update(uow, user_id)
        apply_to_wallet(wallet, tx, totals_type)
        uow.put(wallet)
    uow.put(tx)
    return tx


async def apply_settle(uow: UnitOfWork, transaction_id: str, external_ref: str | None = None) -> Transaction:
    tx = await _load(uow, transaction_id)
    if tx.status != TransactionStatus.PENDING:
        raise InvalidStateError(
            "Only pending transactions can be settled",
            details={"transaction_id": tx.id, "status": tx.status.value},
        )
    ref = normalize_ref(external_ref)
    if ref and ref != tx.external_ref:
        await _claim_ref(uow, ref, tx.id)
        tx.external_ref = ref
    wallet = await wallet_for_update(uow, tx.user_id)
    apply_to_wallet(wallet, tx)
    tx.status = TransactionStatus.COMPLETED
    tx.touch()
    uow.put(wallet)
    uow.put(tx)
    return tx


async def apply_reverse(
    uow: UnitOfWork,
    transaction_id: str,
    reason: str,
    metadata: dict[str, Any] | None = None,
) -> Transaction:
    """Append the compensating entry for a completed transaction; returns the new entry."""
    tx = await _load(uow, transaction_id)
    if tx.status != TransactionStatus.COMPLETED:
        raise InvalidStateError(
            "Only completed transactions can be reversed",
            details={"transaction_id": tx.id, "status": tx.status.value},
        )
    if tx.reversal_of is not None:
        raise InvalidStateError("Compensating entries cannot be reversed", details={"transaction_id": tx.id})
    if tx.metadata.get("reversed_by"):
        raise InvalidStateError(
            "Transaction already reversed",
            details={"transaction_id": tx.id, "reversed_by": tx.metadata["reversed_by"]},
        )
    compensating = await apply_record(
        uow,
        tx.user_id,
        TransactionType.ADMIN_ADJUSTMENT,
        -tx.amount_minor,
        TransactionStatus.COMPLETED,
        metadata={"reason": reason, "original_type": tx.type.value, **(metadata or {})},
        description=f"Reversal: {reason}",
        reversal_of=tx.id,
        totals_type=tx.type,
    )
    # metadata is the only mutable part of a completed entry
    tx.metadata = {**tx.metadata, "reversed_by": compensating.id}
    tx.touch()
    uow.put(tx)
    return compensating


async def apply_cancel(uow: UnitOfWork, transaction_id: str, reason: str | None = None) -> Transaction:
    tx = await _load(uow, transaction_id)
    if tx.status != TransactionStatus.PENDING:
        raise InvalidStateError(
            "Only pending transactions can be cancelled",
            details={"transaction_id": tx.id, "status": tx.status.value},
        )
    tx.status = TransactionStatus.CANCELLED
    if reason:
        tx.metadata = {**tx.metadata, "cancellation_reason": reason}
    tx.touch()
    uow.put(tx)
    return tx


async def record_transaction(
    user_id: str,
    type: TransactionType | str,
    amount_minor: int,
    status: TransactionStatus | str,
    external_ref: str | None = None,
    metadata: dict[str, Any] | None = None,
    description: str = "",
) -> Transaction:
    tx = await run_atomic(
        lambda uow: apply_record(uow, user_id, type, amount_minor, status, external_ref, metadata, description),
        operation="record_transaction",
    )
    log.info(
        "transaction_recorded",
        transaction_id=tx.id,
        user_id=tx.user_id,
        type=tx.type.value,
        amount_minor=tx.amount_minor,
        status=tx.status.value,
    )
    return tx


async def settle_transaction(transaction_id: str, external_ref: str | None = None) -> Transaction:
    async def _work(uow: UnitOfWork) -> Transaction:
        await _load_unlinked(uow, transaction_id)
        return await apply_settle(uow, transaction_id, external_ref)

    tx = await run_atomic(_work, operation="settle_transaction")
    log.info("transaction_settled", transaction_id=tx.id, user_id=tx.user_id, amount_minor=tx.amount_minor)
    await notifications.notify(
        "transaction_completed",
        "transaction",
        tx.id,
        user_id=tx.user_id,
        metadata={"type": tx.type.value, "amount_minor": tx.amount_minor},
    )
    return tx


async def reverse_transaction(transaction_id: str, reason: str) -> Transaction:
    async def _work(uow: UnitOfWork) -> Transaction:
        await _load_unlinked(uow, transaction_id)
        return await apply_reverse(uow, transaction_id, reason)

    compensating = await run_atomic(_work, operation="reverse_transaction")
    log.info(
        "transaction_reversed",
        transaction_id=transaction_id,
        compensating_id=compensating.id,
        amount_minor=compensating.amount_minor,
    )
    return compensating


async def cancel_transaction(transaction_id: str, reason: str | None = None) -> Transaction:
    async def _work(uow: UnitOfWork) -> Transaction:
        await _load_unlinked(uow, transaction_id)
        return await apply_cancel(uow, transaction_id, reason)

    tx = await run_atomic(_work, operation="cancel_transaction")
    log.info("transaction_cancelled", transaction_id=tx.id, user_id=tx.user_id)
    await notifications.notify(
        "transaction_cancelled",
        "transaction",
        tx.id,
        user_id=tx.user_id,
        metadata={"type": tx.type.value, "reason": reason},
    )
    return tx


async def is_external_ref_in_use(external_ref: str, excluding_transaction_id: str | None = None) -> bool:
    """Advisory only: the unique check inside each unit of work is the source of truth."""
    ref = normalize_ref(external_ref)
    if not ref:
        return False
    tx = await get_store().get_transaction_by_ref(ref)
    return tx is not None and tx.id != excluding_transaction_id


async def recharge_wallet(
    user_id: str,
    points: Number,
    external_ref: str | None,
    status: TransactionStatus | str = TransactionStatus.PENDING,
    admin_id: str | None = None,
    payment_method_id: str | None = None,
    description: str = "",
) -> Transaction:
    """
    Record a points purchase made off-platform. Pending recharges are settled
    or cancelled later by an admin. A retry with the same reference, user and
    amount returns the original entry.
    """
    ref = normalize_ref(external_ref)
    if not ref:
        raise MissingExternalRefError("External reference is required for wallet recharge")
    amount_minor = points_to_minor(points)
    if amount_minor <= 0:
        raise ValidationError("Recharge amount must be positive", details={"points": str(points)})
    user_id = require_id(user_id)

    async def _work(uow: UnitOfWork) -> Transaction:
        existing = await uow.get_transaction_by_ref(ref)
        if (
            existing is not None
            and existing.type == TransactionType.RECHARGE
            and existing.user_id == user_id
            and existing.amount_minor == amount_minor
        ):
            return existing
        return await apply_record(
            uow,
            user_id,
            TransactionType.RECHARGE,
            amount_minor,
            status,
            external_ref=ref,
            metadata={"admin_id": admin_id, "payment_method_id": payment_method_id},
            description=description or "Wallet recharge",
        )

    tx = await run_atomic(_work, operation="recharge_wallet")
    log.info("wallet_recharged", transaction_id=tx.id, user_id=user_id, amount_minor=amount_minor, status=tx.status.value)
    if tx.status == TransactionStatus.COMPLETED:
        await notifications.notify(
            "points_added", "transaction", tx.id, user_id=user_id, metadata={"amount_minor": amount_minor}
        )
    return tx


async def adjust_balance(user_id: str, amount_minor: int, reason: str, admin_id: str | None = None) -> Transaction:
    if not (reason or "").strip():
        raise ValidationError("Adjustment reason is required", details={"field": "reason"})
    tx = await record_transaction(
        user_id,
        TransactionType.ADMIN_ADJUSTMENT,
        amount_minor,
        TransactionStatus.COMPLETED,
        metadata={"admin_id": admin_id, "reason": reason},
        description=reason,
    )
    await notifications.notify(
        "balance_adjusted", "transaction", tx.id, user_id=tx.user_id, metadata={"amount_minor": amount_minor}
    )
    return tx


async def get_transaction(transaction_id: str) -> Transaction:
    tx = await get_store().get_transaction(transaction_id)
    if tx is None:
        raise NotFoundError("Transaction not found", details={"transaction_id": transaction_id})
    return tx


async def list_transactions(filters: TransactionFilters, limit: int = 50, offset: int = 0) -> list[Transaction]:
    return await get_store().list_transactions(filters, limit=limit, offset=offset)


async def wallet_stats(now: datetime | None = None, batch_size: int = 500) -> dict[str, int]:
    store = get_store()
    today = datetime.combine((now or utcnow()).date(), time.min)
    stats = {
        "total_users": 0,
        "total_balance_minor": 0,
        "total_transactions": 0,
        "today_transactions": 0,
        "pending_transactions": 0,
    }
    offset = 0
    while True:
        page = await store.list_wallets(limit=batch_size, offset=offset)
        stats["total_users"] += len(page)
        stats["total_balance_minor"] += sum(w.balance_minor for w in page)
        if len(page) < batch_size:
            break
        offset += batch_size

    offset = 0
    while True:
        page = await store.list_transactions(TransactionFilters(), limit=batch_size, offset=offset)
        for t in page:
            stats["total_transactions"] += 1
            if t.status == TransactionStatus.PENDING:
                stats["pending_transactions"] += 1
            if t.created_at >= today:
                stats["today_transactions"] += 1
        if len(page) < batch_size:
            return stats
        offset += batch_size
