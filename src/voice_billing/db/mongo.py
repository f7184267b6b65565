from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from .base import BalanceChange, BaseDBManager
from ..models.assistant import Assistant
from ..models.base import DBSerializableModel
from ..models.credit import Credit
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pending import PendingStatus, PendingTransaction
from ..models.phone_provider import PhoneProvider
from ..models.pricing import SystemSetting
from ..models.subscription import Subscription
from ..models.usage import UsageTracking, month_key
from ..money import add, subtract


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

MODELS: List[Type[DBSerializableModel]] = [
    Subscription,
    Credit,
    UsageTracking,
    PhoneProvider,
    Assistant,
    SystemSetting,
    PendingTransaction,
    NotificationEvent,
    LedgerEntry,
]

# Counters owned by the atomic update methods
_ATOMIC_FIELDS = ("credit_balance", "minutes_used", "calls_used")

# Six decimal places, matching money.quantize_balance
_BALANCE_PLACES = 6

_USAGE_WRITE_ATTEMPTS = 5


def _rounded(expression: Any) -> Dict[str, Any]:
    return {"$round": [expression, _BALANCE_PLACES]}


def _current_balance() -> Dict[str, Any]:
    return {"$ifNull": ["$credit_balance", 0]}


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    Balance changes use single-document pipeline updates
    (`find_one_and_update` returning the pre-image), so the balance read and
    write happen in one server-side step. Monthly usage documents are written
    with optimistic concurrency on their `version` field.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        for model_cls in MODELS:
            col = self._db[model_cls.collection_name]
            for keys, options in model_cls.indexes:
                await col.create_index(list(keys), **options)
        logger.info("Ensured indexes", extra={"collections": len(MODELS)})

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        return model_cls.model_validate(data)

    def _decode_many(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> List[TModel]:
        return [self._decode(model_cls, d) for d in docs if d is not None]  # type: ignore[misc]

    # Subscription operations
    @staticmethod
    def _active_filter(user_id: str) -> Dict[str, Any]:
        return {"user_id": user_id, "is_active": True}

    _LATEST = [("created_at", -1)]

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        doc = await self.get_active_subscription_document(user_id)
        return self._decode(Subscription, doc)

    async def get_active_subscription_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        col = self._db[Subscription.collection_name]
        return await col.find_one(self._active_filter(user_id), sort=self._LATEST)

    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one({"user_id": user_id}, sort=self._LATEST)
        return self._decode(Subscription, doc)

    async def add_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        data = self._prepare_insert(subscription)
        await col.insert_one(data)
        return subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        col = self._db[Subscription.collection_name]
        data = self._prepare_update(subscription)
        model_id = data.pop("_id")
        for field in _ATOMIC_FIELDS:
            data.pop(field, None)
        doc = await col.find_one_and_update(
            {"_id": model_id},
            {"$set": data},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ValueError(f"Subscription {model_id} not found")
        return self._decode(Subscription, doc)  # type: ignore[return-value]

    async def retire_active_subscriptions(
        self, user_id: str, keep_id: Optional[str] = None, when: Optional[datetime] = None
    ) -> int:
        col = self._db[Subscription.collection_name]
        when = when or datetime.utcnow()
        query: Dict[str, Any] = self._active_filter(user_id)
        if keep_id is not None:
            query["_id"] = {"$ne": keep_id}
        result = await col.update_many(
            query,
            {"$set": {"is_active": False, "cancelled_at": when, "updated_at": when}},
        )
        return result.modified_count

    async def increment_usage(
        self, user_id: str, minutes: int, calls: int = 1
    ) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one_and_update(
            self._active_filter(user_id),
            {
                "$inc": {"minutes_used": minutes, "calls_used": calls},
                "$set": {"updated_at": datetime.utcnow()},
            },
            sort=self._LATEST,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(Subscription, doc)

    async def reset_billing_period(
        self, user_id: str, period_start: datetime, period_end: datetime
    ) -> Optional[Subscription]:
        col = self._db[Subscription.collection_name]
        doc = await col.find_one_and_update(
            self._active_filter(user_id),
            {
                "$set": {
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                    "minutes_used": 0,
                    "calls_used": 0,
                    "updated_at": datetime.utcnow(),
                }
            },
            sort=self._LATEST,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(Subscription, doc)

    async def _update_balance(
        self, query: Dict[str, Any], new_balance: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        col = self._db[Subscription.collection_name]
        return await col.find_one_and_update(
            query,
            [{"$set": {"credit_balance": new_balance, "updated_at": datetime.utcnow()}}],
            sort=self._LATEST,
            return_document=ReturnDocument.BEFORE,
        )

    async def add_to_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        before_doc = await self._update_balance(
            self._active_filter(user_id),
            _rounded({"$add": [_current_balance(), amount]}),
        )
        if before_doc is None:
            return None
        before = before_doc.get("credit_balance", 0.0)
        return BalanceChange(balance_before=before, balance_after=add(before, amount))

    async def deduct_from_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        before_doc = await self._update_balance(
            self._active_filter(user_id),
            {"$max": [0, _rounded({"$subtract": [_current_balance(), amount]})]},
        )
        if before_doc is None:
            return None
        before = before_doc.get("credit_balance", 0.0)
        return BalanceChange(
            balance_before=before, balance_after=max(0.0, subtract(before, amount))
        )

    async def try_debit_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        query = self._active_filter(user_id)
        query["credit_balance"] = {"$gte": amount}
        before_doc = await self._update_balance(
            query,
            _rounded({"$subtract": [_current_balance(), amount]}),
        )
        if before_doc is None:
            return None
        before = before_doc["credit_balance"]
        return BalanceChange(balance_before=before, balance_after=subtract(before, amount))

    # Assistants
    async def add_assistant(self, assistant: Assistant) -> Assistant:
        col = self._db[Assistant.collection_name]
        data = self._prepare_insert(assistant)
        await col.insert_one(data)
        return assistant

    async def count_active_assistants(self, user_id: str) -> int:
        col = self._db[Assistant.collection_name]
        return await col.count_documents({"user_id": user_id, "is_active": True})

    # Usage tracking
    async def find_or_create_usage_for_month(
        self, user_id: str, moment: Optional[datetime] = None
    ) -> UsageTracking:
        col = self._db[UsageTracking.collection_name]
        query = {"user_id": user_id, "month": month_key(moment)}
        doc = await col.find_one(query)
        if doc is not None:
            return self._decode(UsageTracking, doc)  # type: ignore[return-value]

        usage = UsageTracking.for_month(user_id, moment)
        try:
            await col.insert_one(self._prepare_insert(usage))
        except DuplicateKeyError:
            # Another writer created the month concurrently
            doc = await col.find_one(query)
            return self._decode(UsageTracking, doc)  # type: ignore[return-value]
        return usage

    async def record_call_usage(
        self,
        user_id: str,
        assistant_id: str,
        assistant_name: str,
        minutes: int,
        cost: float,
        overage_cost: float = 0.0,
        moment: Optional[datetime] = None,
    ) -> UsageTracking:
        col = self._db[UsageTracking.collection_name]
        for attempt in range(1, _USAGE_WRITE_ATTEMPTS + 1):
            usage = await self.find_or_create_usage_for_month(user_id, moment)
            expected_version = usage.version
            usage.add_call_usage(assistant_id, assistant_name, minutes, cost, moment)
            if overage_cost > 0:
                usage.add_overage_cost(overage_cost)
            usage.version = expected_version + 1

            data = self._prepare_update(usage)
            query: Dict[str, Any] = {"_id": data["_id"], "version": expected_version}
            if expected_version == 0:
                # Documents written before versioning have no field at all
                query = {"_id": data["_id"], "version": {"$in": [0, None]}}
            result = await col.replace_one(query, data, upsert=False)
            if result.modified_count == 1:
                return usage
            logger.debug(
                "Usage document changed concurrently, retrying",
                extra={"user_id": user_id, "attempt": attempt},
            )
        raise RuntimeError(
            f"Could not record usage for user {user_id} after {_USAGE_WRITE_ATTEMPTS} attempts"
        )

    # Credit ledger
    async def add_credit(self, credit: Credit) -> Credit:
        col = self._db[Credit.collection_name]
        data = self._prepare_insert(credit)
        await col.insert_one(data)
        return credit

    async def get_credits(self, user_id: str, limit: Optional[int] = None) -> Iterable[Credit]:
        col = self._db[Credit.collection_name]
        cursor = col.find({"user_id": user_id}).sort("created_at", -1)
        if limit is not None:
            cursor = cursor.limit(limit)
        docs = await cursor.to_list(length=limit)
        return self._decode_many(Credit, docs)

    async def find_credit_by_reference(self, reference: str) -> Optional[Credit]:
        col = self._db[Credit.collection_name]
        doc = await col.find_one({"reference": reference})
        return self._decode(Credit, doc)

    # Phone providers
    async def add_phone_provider(self, provider: PhoneProvider) -> PhoneProvider:
        col = self._db[PhoneProvider.collection_name]
        data = self._prepare_insert(provider)
        if provider.is_default:
            await col.update_many(
                {"user_id": provider.user_id, "_id": {"$ne": data["_id"]}, "is_default": True},
                {"$set": {"is_default": False, "updated_at": datetime.utcnow()}},
            )
        await col.replace_one({"_id": data["_id"]}, data, upsert=True)
        return provider

    async def get_default_phone_provider(self, user_id: str) -> Optional[PhoneProvider]:
        col = self._db[PhoneProvider.collection_name]
        doc = await col.find_one({"user_id": user_id, "is_default": True, "is_active": True})
        return self._decode(PhoneProvider, doc)

    async def set_vapi_phone_number_id(self, provider_id: str, vapi_phone_number_id: str) -> None:
        col = self._db[PhoneProvider.collection_name]
        await col.update_one(
            {"_id": provider_id},
            {"$set": {"vapi_phone_number_id": vapi_phone_number_id, "updated_at": datetime.utcnow()}},
        )

    # System settings
    async def get_settings_by_category(self, category: str) -> Dict[str, Any]:
        col = self._db[SystemSetting.collection_name]
        docs = await col.find({"category": category}).to_list(length=None)
        return {d["key"]: d.get("value") for d in docs}

    async def upsert_setting(self, setting: SystemSetting) -> SystemSetting:
        col = self._db[SystemSetting.collection_name]
        data = setting.serialize_for_db()
        new_id = setting.id or uuid4().hex
        on_insert = {"_id": new_id, "id": new_id, "created_at": data.pop("created_at")}
        data.pop("id", None)
        doc = await col.find_one_and_update(
            {"key": setting.key},
            {"$set": data, "$setOnInsert": on_insert},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(SystemSetting, doc)  # type: ignore[return-value]

    # Pending PayPal transactions
    async def add_pending_transaction(self, pending: PendingTransaction) -> PendingTransaction:
        col = self._db[PendingTransaction.collection_name]
        data = self._prepare_insert(pending)
        await col.insert_one(data)
        return pending

    async def get_pending_transaction(
        self, order_id: str, user_id: str, status: PendingStatus = PendingStatus.PENDING
    ) -> Optional[PendingTransaction]:
        col = self._db[PendingTransaction.collection_name]
        doc = await col.find_one(
            {"order_id": order_id, "user_id": user_id, "status": PendingStatus(status).value}
        )
        return self._decode(PendingTransaction, doc)

    async def complete_pending_transaction(
        self, order_id: str, user_id: str, when: Optional[datetime] = None
    ) -> Optional[PendingTransaction]:
        col = self._db[PendingTransaction.collection_name]
        doc = await col.find_one_and_update(
            {"order_id": order_id, "user_id": user_id, "status": PendingStatus.PENDING.value},
            {
                "$set": {
                    "status": PendingStatus.COMPLETED.value,
                    "completed_at": when or datetime.utcnow(),
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(PendingTransaction, doc)

    async def reopen_pending_transaction(
        self, order_id: str, user_id: str
    ) -> Optional[PendingTransaction]:
        col = self._db[PendingTransaction.collection_name]
        doc = await col.find_one_and_update(
            {"order_id": order_id, "user_id": user_id, "status": PendingStatus.COMPLETED.value},
            {"$set": {"status": PendingStatus.PENDING.value, "completed_at": None}},
            return_document=ReturnDocument.AFTER,
        )
        return self._decode(PendingTransaction, doc)

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        col = self._db[NotificationEvent.collection_name]
        data = self._prepare_insert(notification)
        await col.insert_one(data)
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        await col.insert_one(data)
        return entry
