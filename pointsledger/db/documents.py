"""Beanie documents backing the Mongo store. Ids are the domain ids (hex uuid, user id for wallets)."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel


class WalletDocument(Document):
    id: str
    version: int = 0
    balance_minor: int = 0
    total_earnings_minor: int = 0
    total_spent_minor: int = 0
    total_cashouts_minor: int = 0
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "wallets"
        indexes = [IndexModel([("balance_minor", DESCENDING)])]


class TransactionDocument(Document):
    id: str
    version: int = 0
    user_id: str
    type: str
    amount_minor: int
    status: str
    external_ref: str | None = None
    description: str = ""
    balance_after: int | None = None
    reversal_of: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "transactions"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("status", ASCENDING), ("type", ASCENDING)]),
            # insert-if-absent guard for external references
            IndexModel(
                [("external_ref", ASCENDING)],
                name="external_ref_unique",
                unique=True,
                partialFilterExpression={"external_ref": {"$type": "string"}},
            ),
        ]


class CashoutRequestDocument(Document):
    id: str
    version: int = 0
    user_id: str
    requested_minor: int
    fee_percentage: Decimal
    fee_minor: int
    final_minor: int
    payment_method_id: str
    external_ref: str | None = None
    transaction_id: str | None = None
    status: str
    notes: str | None = None
    admin_id: str | None = None
    admin_notes: str | None = None
    processed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "cashout_requests"
        indexes = [
            IndexModel([("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("status", ASCENDING)]),
            IndexModel([("external_ref", ASCENDING)]),
        ]


class PostSubscriptionDocument(Document):
    id: str
    version: int = 0
    post_id: str
    buyer_id: str
    author_id: str
    price_minor: int
    buyer_transaction_id: str
    author_transaction_id: str
    status: str
    subscribed_at: datetime
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "post_subscriptions"
        indexes = [
            IndexModel([("buyer_id", ASCENDING), ("subscribed_at", DESCENDING)]),
            IndexModel([("author_id", ASCENDING), ("subscribed_at", DESCENDING)]),
            IndexModel(
                [("post_id", ASCENDING)],
                name="one_active_subscription_per_post",
                unique=True,
                partialFilterExpression={"status": "active"},
            ),
        ]


class PostDocument(Document):
    id: str
    version: int = 0
    author_id: str
    price_minor: int
    status: str
    subscriber_id: str | None = None
    subscribed_at: datetime | None = None
    departure_at: datetime
    return_at: datetime | None = None
    expires_at: datetime
    expired_at: datetime | None = None
    auto_expired: bool = False
    expired_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "posts"
        indexes = [IndexModel([("status", ASCENDING), ("expires_at", ASCENDING)])]


class AuditLogDocument(Document):
    id: str
    user_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    class Settings:
        name = "audit_logs"
        indexes = [
            IndexModel([("event_type", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("entity_type", ASCENDING), ("entity_id", ASCENDING)]),
        ]


class FailedJobDocument(Document):
    id: str
    job_name: str
    job_id: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    created_at: datetime

    class Settings:
        name = "failed_jobs"
        indexes = [IndexModel([("job_name", ASCENDING)]), IndexModel([("created_at", DESCENDING)])]


DOCUMENT_MODELS = [
    WalletDocument,
    TransactionDocument,
    CashoutRequestDocument,
    PostSubscriptionDocument,
    PostDocument,
    AuditLogDocument,
    FailedJobDocument,
]
