from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pointsledger.core.money import minor_to_points
from pointsledger.core.pagination import page_of, paginate
from pointsledger.deps import require_admin
from pointsledger.models import Transaction, TransactionStatus, TransactionType
from pointsledger.services import ledger as ledger_service
from pointsledger.store.base import TransactionFilters

router = APIRouter()


class SettleRequest(BaseModel):
    external_ref: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class ReverseRequest(BaseModel):
    reason: str


def transaction_out(tx: Transaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "user_id": tx.user_id,
        "type": tx.type.value,
        "amount_minor": tx.amount_minor,
        "amount_points": str(minor_to_points(tx.amount_minor)),
        "status": tx.status.value,
        "external_ref": tx.external_ref,
        "description": tx.description,
        "balance_after": tx.balance_after,
        "reversal_of": tx.reversal_of,
        "metadata": tx.metadata,
        "created_at": tx.created_at.isoformat(),
        "updated_at": tx.updated_at.isoformat(),
    }


@router.get("")
async def transactions_list(
    admin_id: str = Depends(require_admin),
    user_id: str | None = None,
    type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    external_ref: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List ledger entries (newest first)."""
    limit, offset = paginate(limit, offset)
    filters = TransactionFilters(user_id=user_id, type=type, status=status, external_ref=external_ref)
    txs = await ledger_service.list_transactions(filters, limit=limit, offset=offset)
    return page_of([transaction_out(t) for t in txs], limit, offset)


@router.get("/ref-check")
async def transactions_ref_check(
    external_ref: str,
    excluding_transaction_id: str | None = None,
    admin_id: str = Depends(require_admin),
):
    """Advisory: is this payment reference already bound to a transaction?"""
    in_use = await ledger_service.is_external_ref_in_use(external_ref, excluding_transaction_id)
    return {"external_ref": external_ref, "in_use": in_use}


@router.get("/{transaction_id}")
async def transactions_get(transaction_id: str, admin_id: str = Depends(require_admin)):
    return transaction_out(await ledger_service.get_transaction(transaction_id))


@router.post("/{transaction_id}/settle")
async def transactions_settle(transaction_id: str, body: SettleRequest, admin_id: str = Depends(require_admin)):
    """Settle a pending entry and apply it to the wallet."""
    tx = await ledger_service.settle_transaction(transaction_id, body.external_ref)
    return transaction_out(tx)


@router.post("/{transaction_id}/cancel")
async def transactions_cancel(transaction_id: str, body: CancelRequest, admin_id: str = Depends(require_admin)):
    tx = await ledger_service.cancel_transaction(transaction_id, body.reason)
    return transaction_out(tx)


@router.post("/{transaction_id}/reverse")
async def transactions_reverse(transaction_id: str, body: ReverseRequest, admin_id: str = Depends(require_admin)):
    """Append the compensating entry for a completed transaction."""
    compensating = await ledger_service.reverse_transaction(transaction_id, body.reason)
    return transaction_out(compensating)
