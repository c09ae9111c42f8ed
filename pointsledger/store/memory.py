"""In-process store for tests and local runs.

Reads yield to the event loop like a network driver would, so concurrent
units really interleave; the commit itself runs without awaiting and is
therefore atomic on the loop.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, TypeVar

from pointsledger.core.exceptions import DuplicateExternalRefError
from pointsledger.models import (
    AuditLog,
    CashoutRequest,
    FailedJob,
    Post,
    PostStatus,
    PostSubscription,
    SubscriptionStatus,
    Transaction,
    Wallet,
)
from pointsledger.models.base import Entity
from pointsledger.store.base import (
    CashoutFilters,
    LedgerStore,
    SubscriptionFilters,
    TransactionFilters,
    UnitOfWork,
    WriteConflict,
)

E = TypeVar("E", bound=Entity)


class MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._loaded: dict[tuple[type, str], Entity] = {}
        self._staged: dict[tuple[type, str], Entity] = {}

    async def _read(self, cls: type[E], key: str) -> E | None:
        await asyncio.sleep(0)
        if (cls, key) in self._loaded:
            return self._loaded[(cls, key)]  # type: ignore[return-value]
        stored = self._store._tables[cls].get(key)
        if stored is None:
            return None
        entity = stored.model_copy(deep=True)
        self._loaded[(cls, key)] = entity
        return entity

    async def get_wallet(self, user_id: str) -> Wallet | None:
        return await self._read(Wallet, user_id)

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return await self._read(Transaction, transaction_id)

    async def get_transaction_by_ref(self, external_ref: str) -> Transaction | None:
        for (cls, _), entity in self._staged.items():
            if cls is Transaction and entity.external_ref == external_ref:
                return entity
        owner = self._store._refs.get(external_ref)
        if owner is None:
            await asyncio.sleep(0)
            return None
        return await self._read(Transaction, owner)

    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        return await self._read(CashoutRequest, cashout_id)

    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        return await self._read(PostSubscription, subscription_id)

    async def get_active_subscription(self, post_id: str) -> PostSubscription | None:
        for (cls, _), entity in self._staged.items():
            if cls is PostSubscription and entity.post_id == post_id and entity.status == SubscriptionStatus.ACTIVE:
                return entity
        for sub in list(self._store._tables[PostSubscription].values()):
            if sub.post_id == post_id and sub.status == SubscriptionStatus.ACTIVE:
                return await self._read(PostSubscription, sub.id)
        await asyncio.sleep(0)
        return None

    async def get_post(self, post_id: str) -> Post | None:
        return await self._read(Post, post_id)

    def put(self, entity: Entity) -> None:
        key = (type(entity), entity.id)
        self._staged[key] = entity
        self._loaded[key] = entity


class MemoryStore(LedgerStore):
    def __init__(self) -> None:
        self._tables: dict[type, dict[str, Entity]] = {
            Wallet: {},
            Transaction: {},
            CashoutRequest: {},
            PostSubscription: {},
            Post: {},
        }
        self._refs: dict[str, str] = {}  # external_ref -> transaction id
        self.audit_logs: list[AuditLog] = []
        self.failed_jobs: list[FailedJob] = []

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        uow = MemoryUnitOfWork(self)
        yield uow
        self._commit(uow._staged)

    def _commit(self, staged: dict[tuple[type, str], Entity]) -> None:
        for (cls, key), entity in staged.items():
            current = self._tables[cls].get(key)
            current_version = current.version if current else 0
            if entity.version != current_version:
                raise WriteConflict(f"{cls.__name__} {key} changed (read v{entity.version}, now v{current_version})")

        # insert-if-absent on external_ref: a reference claimed by another
        # unit since our read is a conflict, the retry sees the owner
        claimed: dict[str, str] = {}
        for (cls, key), entity in staged.items():
            if cls is not Transaction or not entity.external_ref:
                continue
            owner = self._refs.get(entity.external_ref)
            if owner is not None and owner != entity.id:
                raise WriteConflict(f"external_ref {entity.external_ref} claimed by {owner}")
            if claimed.get(entity.external_ref, entity.id) != entity.id:
                raise DuplicateExternalRefError(entity.external_ref)
            claimed[entity.external_ref] = entity.id

        for (cls, key), entity in staged.items():
            if cls is Transaction:
                previous = self._tables[cls].get(key)
                if previous is not None and previous.external_ref and previous.external_ref != entity.external_ref:
                    self._refs.pop(previous.external_ref, None)
                if entity.external_ref:
                    self._refs[entity.external_ref] = entity.id
            entity.version += 1
            self._tables[cls][key] = entity.model_copy(deep=True)

    def _snapshot(self, cls: type[E], key: str) -> E | None:
        stored = self._tables[cls].get(key)
        return stored.model_copy(deep=True) if stored is not None else None  # type: ignore[return-value]

    async def get_wallet(self, user_id: str) -> Wallet | None:
        return self._snapshot(Wallet, user_id)

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return self._snapshot(Transaction, transaction_id)

    async def get_transaction_by_ref(self, external_ref: str) -> Transaction | None:
        owner = self._refs.get(external_ref)
        return self._snapshot(Transaction, owner) if owner else None

    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        return self._snapshot(CashoutRequest, cashout_id)

    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        return self._snapshot(PostSubscription, subscription_id)

    async def get_post(self, post_id: str) -> Post | None:
        return self._snapshot(Post, post_id)

    def _rows(self, cls: type[E]) -> list[E]:
        return [e.model_copy(deep=True) for e in self._tables[cls].values()]  # type: ignore[misc]

    async def list_wallets(self, limit: int = 50, offset: int = 0) -> list[Wallet]:
        rows = sorted(self._rows(Wallet), key=lambda w: w.balance_minor, reverse=True)
        return rows[offset:offset + limit]

    async def list_transactions(self, filters: TransactionFilters, limit: int = 50, offset: int = 0) -> list[Transaction]:
        rows = [
            t for t in self._rows(Transaction)
            if (filters.user_id is None or t.user_id == filters.user_id)
            and (filters.type is None or t.type == filters.type)
            and (filters.status is None or t.status == filters.status)
            and (filters.external_ref is None or t.external_ref == filters.external_ref)
        ]
        rows.sort(key=lambda t: t.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def list_cashouts(self, filters: CashoutFilters, limit: int = 50, offset: int = 0) -> list[CashoutRequest]:
        rows = [
            c for c in self._rows(CashoutRequest)
            if (filters.user_id is None or c.user_id == filters.user_id)
            and (filters.status is None or c.status == filters.status)
            and (filters.payment_method_id is None or c.payment_method_id == filters.payment_method_id)
            and (filters.date_from is None or c.created_at >= filters.date_from)
            and (filters.date_to is None or c.created_at <= filters.date_to)
        ]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def list_subscriptions(
        self, filters: SubscriptionFilters, limit: int = 50, offset: int = 0
    ) -> list[PostSubscription]:
        rows = [
            s for s in self._rows(PostSubscription)
            if (filters.buyer_id is None or s.buyer_id == filters.buyer_id)
            and (filters.author_id is None or s.author_id == filters.author_id)
            and (filters.post_id is None or s.post_id == filters.post_id)
            and (filters.status is None or s.status == filters.status)
        ]
        rows.sort(key=lambda s: s.subscribed_at, reverse=True)
        return rows[offset:offset + limit]

    async def list_expired_posts(
        self, now: datetime, limit: int, after: tuple[datetime, str] | None = None
    ) -> list[Post]:
        rows = [
            p for p in self._rows(Post)
            if p.status in (PostStatus.ACTIVE, PostStatus.SUBSCRIBED)
            and p.expires_at <= now
            and (after is None or (p.expires_at, p.id) > after)
        ]
        rows.sort(key=lambda p: (p.expires_at, p.id))
        return rows[:limit]

    async def add_audit_log(self, entry: AuditLog) -> None:
        self.audit_logs.append(entry)

    async def list_audit_logs(self, event_types: list[str], limit: int = 10) -> list[AuditLog]:
        rows = [a for a in self.audit_logs if a.event_type in event_types]
        rows.sort(key=lambda a: a.created_at, reverse=True)
        return rows[:limit]

    async def add_failed_job(self, job: FailedJob) -> None:
        self.failed_jobs.append(job)
