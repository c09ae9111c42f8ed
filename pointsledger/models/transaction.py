from enum import Enum
from typing import Any

from pydantic import Field

from pointsledger.models.base import Entity


class TransactionType(str, Enum):
    RECHARGE = "recharge"
    CASHOUT = "cashout"
    PURCHASE = "purchase"
    EARNING = "earning"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Transaction(Entity):
    user_id: str
    type: TransactionType
    amount_minor: int  # positive = credit, negative = debit
    status: TransactionStatus
    external_ref: str | None = None  # unique across all transactions when set
    description: str = ""
    balance_after: int | None = None  # set when the entry is applied to the wallet
    reversal_of: str | None = None  # id of the completed entry this one compensates
    metadata: dict[str, Any] = Field(default_factory=dict)
