from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pointsledger.core.money import minor_to_points, points_to_minor
from pointsledger.core.pagination import page_of, paginate
from pointsledger.deps import require_admin
from pointsledger.models import TransactionStatus, Wallet
from pointsledger.routers.transactions import transaction_out
from pointsledger.services import ledger as ledger_service
from pointsledger.services import wallets as wallets_service
from pointsledger.store.base import TransactionFilters

router = APIRouter()


class RechargeRequest(BaseModel):
    points: Decimal
    external_ref: str | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    payment_method_id: str | None = None
    description: str = ""


class AdjustRequest(BaseModel):
    points: Decimal  # signed
    reason: str


def wallet_out(wallet: Wallet) -> dict:
    return {
        "user_id": wallet.user_id,
        "balance_minor": wallet.balance_minor,
        "balance_points": str(minor_to_points(wallet.balance_minor)),
        "total_earnings_minor": wallet.total_earnings_minor,
        "total_spent_minor": wallet.total_spent_minor,
        "total_cashouts_minor": wallet.total_cashouts_minor,
        "updated_at": wallet.updated_at.isoformat(),
    }


@router.get("")
async def wallets_list(
    admin_id: str = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Wallets by balance, highest first."""
    limit, offset = paginate(limit, offset)
    wallets = await wallets_service.list_wallets(limit=limit, offset=offset)
    return page_of([wallet_out(w) for w in wallets], limit, offset)


@router.get("/stats")
async def wallets_stats(admin_id: str = Depends(require_admin)):
    stats = await ledger_service.wallet_stats()
    stats["total_balance_points"] = str(minor_to_points(stats["total_balance_minor"]))
    return stats


@router.get("/{user_id}")
async def wallets_get(user_id: str, admin_id: str = Depends(require_admin)):
    return wallet_out(await wallets_service.get_wallet(user_id))


@router.get("/{user_id}/transactions")
async def wallets_transactions(
    user_id: str,
    admin_id: str = Depends(require_admin),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Ledger entries for one user (newest first)."""
    limit, offset = paginate(limit, offset)
    txs = await ledger_service.list_transactions(TransactionFilters(user_id=user_id), limit=limit, offset=offset)
    return page_of([transaction_out(t) for t in txs], limit, offset)


@router.post("/{user_id}/recharge")
async def wallets_recharge(user_id: str, body: RechargeRequest, admin_id: str = Depends(require_admin)):
    """Record an off-platform points purchase. The payment reference is mandatory."""
    tx = await ledger_service.recharge_wallet(
        user_id,
        body.points,
        body.external_ref,
        status=body.status,
        admin_id=admin_id,
        payment_method_id=body.payment_method_id,
        description=body.description,
    )
    return transaction_out(tx)


@router.post("/{user_id}/adjust")
async def wallets_adjust(user_id: str, body: AdjustRequest, admin_id: str = Depends(require_admin)):
    tx = await ledger_service.adjust_balance(user_id, points_to_minor(body.points), body.reason, admin_id=admin_id)
    return transaction_out(tx)
