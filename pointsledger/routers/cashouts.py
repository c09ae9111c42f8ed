from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pointsledger.core.money import minor_to_points
from pointsledger.core.pagination import page_of, paginate
from pointsledger.deps import require_admin
from pointsledger.models import CashoutRequest, CashoutStatus
from pointsledger.models.base import as_naive_utc
from pointsledger.services import cashouts as cashouts_service
from pointsledger.store.base import CashoutFilters

router = APIRouter()


class CreateCashoutRequest(BaseModel):
    user_id: str
    points: Decimal
    fee_percentage: Decimal
    payment_method_id: str
    external_ref: str | None = None
    initial_status: CashoutStatus = CashoutStatus.PENDING
    notes: str | None = None


class AdminNotesRequest(BaseModel):
    admin_notes: str | None = None


class CompleteCashoutRequest(BaseModel):
    external_ref: str | None = None
    admin_notes: str | None = None


def cashout_out(c: CashoutRequest) -> dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "status": c.status.value,
        "requested_minor": c.requested_minor,
        "requested_points": str(minor_to_points(c.requested_minor)),
        "fee_percentage": str(c.fee_percentage),
        "fee_minor": c.fee_minor,
        "fee_points": str(minor_to_points(c.fee_minor)),
        "final_minor": c.final_minor,
        "final_points": str(minor_to_points(c.final_minor)),
        "payment_method_id": c.payment_method_id,
        "external_ref": c.external_ref,
        "transaction_id": c.transaction_id,
        "notes": c.notes,
        "admin_id": c.admin_id,
        "admin_notes": c.admin_notes,
        "created_at": c.created_at.isoformat(),
        "processed_at": c.processed_at.isoformat() if c.processed_at else None,
    }


@router.post("")
async def cashouts_create(body: CreateCashoutRequest, admin_id: str = Depends(require_admin)):
    """Create a cashout. `completed` records an already-made payment and needs its reference."""
    cashout = await cashouts_service.create_cashout_request(
        body.user_id,
        body.points,
        body.fee_percentage,
        body.payment_method_id,
        external_ref=body.external_ref,
        initial_status=body.initial_status,
        admin_id=admin_id,
        notes=body.notes,
    )
    return cashout_out(cashout)


@router.get("")
async def cashouts_list(
    admin_id: str = Depends(require_admin),
    user_id: str | None = None,
    status: CashoutStatus | None = None,
    payment_method_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    limit, offset = paginate(limit, offset)
    filters = CashoutFilters(
        user_id=user_id,
        status=status,
        payment_method_id=payment_method_id,
        date_from=as_naive_utc(date_from) if date_from else None,
        date_to=as_naive_utc(date_to) if date_to else None,
    )
    cashouts = await cashouts_service.list_cashouts(filters, limit=limit, offset=offset)
    return page_of([cashout_out(c) for c in cashouts], limit, offset)


@router.get("/stats")
async def cashouts_stats(admin_id: str = Depends(require_admin)):
    stats = await cashouts_service.cashout_stats()
    stats["admin_earnings_points"] = str(minor_to_points(stats["admin_earnings_minor"]))
    stats["total_cashed_out_points"] = str(minor_to_points(stats["total_cashed_out_minor"]))
    return stats


@router.get("/{cashout_id}")
async def cashouts_get(cashout_id: str, admin_id: str = Depends(require_admin)):
    return cashout_out(await cashouts_service.get_cashout(cashout_id))


@router.post("/{cashout_id}/process")
async def cashouts_process(cashout_id: str, body: AdminNotesRequest, admin_id: str = Depends(require_admin)):
    cashout = await cashouts_service.start_processing(cashout_id, body.admin_notes, admin_id=admin_id)
    return cashout_out(cashout)


@router.post("/{cashout_id}/complete")
async def cashouts_complete(cashout_id: str, body: CompleteCashoutRequest, admin_id: str = Depends(require_admin)):
    """Mark paid; deducts the requested amount. Idempotent on the payment reference."""
    cashout = await cashouts_service.complete_cashout(
        cashout_id, body.external_ref, admin_notes=body.admin_notes, admin_id=admin_id
    )
    return cashout_out(cashout)


@router.post("/{cashout_id}/cancel")
async def cashouts_cancel(cashout_id: str, body: AdminNotesRequest, admin_id: str = Depends(require_admin)):
    """Cancel; a completed cashout is refunded in full, the fee is forfeited."""
    cashout = await cashouts_service.cancel_cashout(cashout_id, body.admin_notes, admin_id=admin_id)
    return cashout_out(cashout)
