from datetime import datetime
from decimal import Decimal
from enum import Enum

from pointsledger.models.base import Entity


class CashoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class CashoutRequest(Entity):
    """Admin-facing view of one `cashout` ledger transaction plus its fee breakdown."""

    user_id: str
    requested_minor: int
    fee_percentage: Decimal
    fee_minor: int
    final_minor: int
    payment_method_id: str
    external_ref: str | None = None
    transaction_id: str | None = None
    status: CashoutStatus = CashoutStatus.PENDING
    notes: str | None = None
    admin_id: str | None = None
    admin_notes: str | None = None
    processed_at: datetime | None = None
