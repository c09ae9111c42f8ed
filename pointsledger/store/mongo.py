"""MongoDB store: Beanie documents, Motor session transactions.

Requires a replica set. Updates are conditional on the version read, inserts
rely on unique indexes (`_id`, `external_ref`, one active subscription per
post); both surface as `WriteConflict` so the caller retries the unit.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncIterator, TypeVar

from beanie import Document
from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo import ASCENDING
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure

from pointsledger.core.logging import get_logger
from pointsledger.db.documents import (
    AuditLogDocument,
    CashoutRequestDocument,
    FailedJobDocument,
    PostDocument,
    PostSubscriptionDocument,
    TransactionDocument,
    WalletDocument,
)
from pointsledger.db.init import init_db
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

log = get_logger(__name__)

E = TypeVar("E", bound=Entity)

DOCUMENTS: dict[type, type[Document]] = {
    Wallet: WalletDocument,
    Transaction: TransactionDocument,
    CashoutRequest: CashoutRequestDocument,
    PostSubscription: PostSubscriptionDocument,
    Post: PostDocument,
}


def _bson_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(str(value))
    if isinstance(value, dict):
        return {k: _bson_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_bson_value(v) for v in value]
    return value


def to_bson(entity: Entity) -> dict[str, Any]:
    data = {k: _bson_value(v) for k, v in entity.model_dump().items()}
    data["_id"] = data.pop("id")
    return data


def to_domain(cls: type[E], doc: Document | None) -> E | None:
    if doc is None:
        return None
    return cls.model_validate(doc.model_dump())


def _is_transient(exc: Exception) -> bool:
    return isinstance(exc, (OperationFailure, ConnectionFailure)) and (
        exc.has_error_label("TransientTransactionError") or exc.has_error_label("UnknownTransactionCommitResult")
    )


class MongoUnitOfWork(UnitOfWork):
    def __init__(self, session: AsyncIOMotorClientSession) -> None:
        self._session = session
        self._loaded: dict[tuple[type, str], Entity] = {}
        self._staged: dict[tuple[type, str], Entity] = {}

    async def _read(self, cls: type[E], key: str) -> E | None:
        if (cls, key) in self._loaded:
            return self._loaded[(cls, key)]  # type: ignore[return-value]
        doc = await DOCUMENTS[cls].get(key, session=self._session)
        entity = to_domain(cls, doc)
        if entity is not None:
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
        doc = await TransactionDocument.find_one(
            TransactionDocument.external_ref == external_ref, session=self._session
        )
        if doc is None:
            return None
        return await self._read(Transaction, doc.id)

    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        return await self._read(CashoutRequest, cashout_id)

    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        return await self._read(PostSubscription, subscription_id)

    async def get_active_subscription(self, post_id: str) -> PostSubscription | None:
        for (cls, _), entity in self._staged.items():
            if cls is PostSubscription and entity.post_id == post_id and entity.status == SubscriptionStatus.ACTIVE:
                return entity
        doc = await PostSubscriptionDocument.find_one(
            PostSubscriptionDocument.post_id == post_id,
            PostSubscriptionDocument.status == SubscriptionStatus.ACTIVE.value,
            session=self._session,
        )
        if doc is None:
            return None
        return await self._read(PostSubscription, doc.id)

    async def get_post(self, post_id: str) -> Post | None:
        return await self._read(Post, post_id)

    def put(self, entity: Entity) -> None:
        key = (type(entity), entity.id)
        self._staged[key] = entity
        self._loaded[key] = entity

    async def flush(self) -> None:
        for (cls, key), entity in self._staged.items():
            collection = DOCUMENTS[cls].get_motor_collection()
            data = to_bson(entity)
            data["version"] = entity.version + 1
            try:
                if entity.version == 0:
                    await collection.insert_one(data, session=self._session)
                else:
                    data.pop("_id")
                    result = await collection.update_one(
                        {"_id": key, "version": entity.version},
                        {"$set": data},
                        session=self._session,
                    )
                    if result.matched_count == 0:
                        raise WriteConflict(f"{cls.__name__} {key} changed since read")
            except DuplicateKeyError as e:
                # _id, external_ref or active-subscription index: another unit
                # committed first; the retry re-reads and decides
                raise WriteConflict(f"{cls.__name__} {key}: {e.details or e}") from e

    def bump_versions(self) -> None:
        for entity in self._staged.values():
            entity.version += 1


class MongoStore(LedgerStore):
    def __init__(self) -> None:
        self._client: AsyncIOMotorClient | None = None

    async def init(self) -> None:
        if self._client is None:
            self._client = await init_db()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        await self.init()
        try:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    uow = MongoUnitOfWork(session)
                    yield uow
                    await uow.flush()
        except (OperationFailure, ConnectionFailure) as e:
            if _is_transient(e):
                log.debug("mongo_transient_error", error=str(e))
                raise WriteConflict(str(e)) from e
            raise
        uow.bump_versions()

    async def get_wallet(self, user_id: str) -> Wallet | None:
        return to_domain(Wallet, await WalletDocument.get(user_id))

    async def get_transaction(self, transaction_id: str) -> Transaction | None:
        return to_domain(Transaction, await TransactionDocument.get(transaction_id))

    async def get_transaction_by_ref(self, external_ref: str) -> Transaction | None:
        doc = await TransactionDocument.find_one(TransactionDocument.external_ref == external_ref)
        return to_domain(Transaction, doc)

    async def get_cashout(self, cashout_id: str) -> CashoutRequest | None:
        return to_domain(CashoutRequest, await CashoutRequestDocument.get(cashout_id))

    async def get_subscription(self, subscription_id: str) -> PostSubscription | None:
        return to_domain(PostSubscription, await PostSubscriptionDocument.get(subscription_id))

    async def get_post(self, post_id: str) -> Post | None:
        return to_domain(Post, await PostDocument.get(post_id))

    async def list_wallets(self, limit: int = 50, offset: int = 0) -> list[Wallet]:
        docs = await WalletDocument.find_all().sort(-WalletDocument.balance_minor).skip(offset).limit(limit).to_list()
        return [to_domain(Wallet, d) for d in docs]

    async def list_transactions(self, filters: TransactionFilters, limit: int = 50, offset: int = 0) -> list[Transaction]:
        query: dict[str, Any] = {}
        if filters.user_id is not None:
            query["user_id"] = filters.user_id
        if filters.type is not None:
            query["type"] = filters.type.value
        if filters.status is not None:
            query["status"] = filters.status.value
        if filters.external_ref is not None:
            query["external_ref"] = filters.external_ref
        docs = (
            await TransactionDocument.find(query)
            .sort(-TransactionDocument.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [to_domain(Transaction, d) for d in docs]

    async def list_cashouts(self, filters: CashoutFilters, limit: int = 50, offset: int = 0) -> list[CashoutRequest]:
        query: dict[str, Any] = {}
        if filters.user_id is not None:
            query["user_id"] = filters.user_id
        if filters.status is not None:
            query["status"] = filters.status.value
        if filters.payment_method_id is not None:
            query["payment_method_id"] = filters.payment_method_id
        created: dict[str, datetime] = {}
        if filters.date_from is not None:
            created["$gte"] = filters.date_from
        if filters.date_to is not None:
            created["$lte"] = filters.date_to
        if created:
            query["created_at"] = created
        docs = (
            await CashoutRequestDocument.find(query)
            .sort(-CashoutRequestDocument.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [to_domain(CashoutRequest, d) for d in docs]

    async def list_subscriptions(
        self, filters: SubscriptionFilters, limit: int = 50, offset: int = 0
    ) -> list[PostSubscription]:
        query: dict[str, Any] = {}
        if filters.buyer_id is not None:
            query["buyer_id"] = filters.buyer_id
        if filters.author_id is not None:
            query["author_id"] = filters.author_id
        if filters.post_id is not None:
            query["post_id"] = filters.post_id
        if filters.status is not None:
            query["status"] = filters.status.value
        docs = (
            await PostSubscriptionDocument.find(query)
            .sort(-PostSubscriptionDocument.subscribed_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [to_domain(PostSubscription, d) for d in docs]

    async def list_expired_posts(
        self, now: datetime, limit: int, after: tuple[datetime, str] | None = None
    ) -> list[Post]:
        query: dict[str, Any] = {
            "status": {"$in": [PostStatus.ACTIVE.value, PostStatus.SUBSCRIBED.value]},
            "expires_at": {"$lte": now},
        }
        if after is not None:
            expires_at, post_id = after
            query["$or"] = [
                {"expires_at": {"$gt": expires_at}},
                {"expires_at": expires_at, "_id": {"$gt": post_id}},
            ]
        docs = (
            await PostDocument.find(query)
            .sort([("expires_at", ASCENDING), ("_id", ASCENDING)])
            .limit(limit)
            .to_list()
        )
        return [to_domain(Post, d) for d in docs]

    async def add_audit_log(self, entry: AuditLog) -> None:
        await AuditLogDocument(**entry.model_dump(exclude={"version", "updated_at"})).insert()

    async def list_audit_logs(self, event_types: list[str], limit: int = 10) -> list[AuditLog]:
        docs = (
            await AuditLogDocument.find({"event_type": {"$in": event_types}})
            .sort(-AuditLogDocument.created_at)
            .limit(limit)
            .to_list()
        )
        return [to_domain(AuditLog, d) for d in docs]

    async def add_failed_job(self, job: FailedJob) -> None:
        await FailedJobDocument(**job.model_dump(exclude={"version", "updated_at"})).insert()
