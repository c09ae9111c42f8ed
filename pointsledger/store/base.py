"""Persistence seam for the ledger.

A `UnitOfWork` reads entities and stages writes; leaving its context commits
every staged write atomically or none of them. Commits are optimistic: an
entity whose stored `version` moved since it was read raises `WriteConflict`
and the caller retries the whole unit.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from pointsledger.core.config import get_settings
from pointsledger.models import (
    AuditLog,
    CashoutRequest,
    CashoutStatus,
    FailedJob,
    Post,
    PostSubscription,
    SubscriptionStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Wallet,
)
from pointsledger.models.base import Entity


class WriteConflict(Exception):
    """Another unit committed a newer version of an entity this unit read."""


@dataclass
class TransactionFilters:
    user_id: str | None = None
    type: TransactionType | None = None
    status: TransactionStatus | None = None
    external_ref: str | None = None


@dataclass
class CashoutFilters:
    user_id: str | None = None
    status: CashoutStatus | None = None
    payment_method_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass
class SubscriptionFilters:
    buyer_id: str | None = None
    author_id: str | None = None
    post_id: str | None = None
    status: SubscriptionStatus | None = None


class UnitOfWork(ABC):
    @abstractmethod
    async def get_wallet(self, user_id: str) -> Wallet | None:
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def get_transaction_by_ref(self, external_ref: str) -> Transaction | None:
        ...

    @abstractmethod
    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        ...

    @abstractmethod
    async def get_active_subscription(self, post_id: str) -> PostSubscription | None:
        ...

    @abstractmethod
    async def get_post(self, post_id: str) -> Post | None:
        ...

    @abstractmethod
    def put(self, entity: Entity) -> None:
        """Stage an insert (version 0) or a version-checked update."""
        ...


class LedgerStore(ABC):
    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[UnitOfWork]:
        ...

    @abstractmethod
    async def get_wallet(self, user_id: str) -> Wallet | None:
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def get_transaction_by_ref(self, external_ref: str) -> Transaction | None:
        ...

    @abstractmethod
    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        ...

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        ...

    @abstractmethod
    async def get_post(self, post_id: str) -> Post | None:
        ...

    @abstractmethod
    async def list_wallets(self, limit: int = 50, offset: int = 0) -> list[Wallet]:
        """Highest balance first."""
        ...

    @abstractmethod
    async def list_transactions(self, filters: TransactionFilters, limit: int = 50, offset: int = 0) -> list[Transaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_cashouts(self, filters: CashoutFilters, limit: int = 50, offset: int = 0) -> list[CashoutRequest]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_subscriptions(
        self, filters: SubscriptionFilters, limit: int = 50, offset: int = 0
    ) -> list[PostSubscription]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_expired_posts(
        self, now: datetime, limit: int, after: tuple[datetime, str] | None = None
    ) -> list[Post]:
        """
        Active or subscribed posts whose `expires_at` is at or before `now`,
        ordered by (expires_at, id) and starting strictly after `after`.
        """
        ...

    @abstractmethod
    async def add_audit_log(self, entry: AuditLog) -> None:
        ...

    @abstractmethod
    async def list_audit_logs(self, event_types: list[str], limit: int = 10) -> list[AuditLog]:
        ...

    @abstractmethod
    async def add_failed_job(self, job: FailedJob) -> None:
        ...

    async def init(self) -> None:
        """Connect and create indexes. No-op by default."""


@lru_cache
def get_store() -> LedgerStore:
    settings = get_settings()
    if settings.ledger_backend == "memory":
        from pointsledger.store.memory import MemoryStore
        return MemoryStore()
    from pointsledger.store.mongo import MongoStore
    return MongoStore()
