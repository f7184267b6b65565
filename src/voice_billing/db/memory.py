from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from .base import BalanceChange, BaseDBManager
from ..models.assistant import Assistant
from ..models.credit import Credit
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pending import PendingStatus, PendingTransaction
from ..models.phone_provider import PhoneProvider
from ..models.pricing import SystemSetting
from ..models.subscription import Subscription
from ..models.usage import UsageTracking, month_key
from ..money import add, subtract


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Subscriptions are kept as stored documents rather than live models so
    reads behave like a real database: callers get a fresh copy and must go
    through the manager to change anything.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Dict[str, Any]] = {}
        self._assistants: Dict[str, Assistant] = {}
        self._usage: Dict[str, UsageTracking] = {}
        self._credits: List[Credit] = []
        self._phone_providers: Dict[str, PhoneProvider] = {}
        self._settings: Dict[str, SystemSetting] = {}
        self._pending: Dict[str, PendingTransaction] = {}
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Subscription operations
    def _active_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        active = [
            doc
            for doc in self._subscriptions.values()
            if doc.get("user_id") == user_id and doc.get("is_active", False)
        ]
        if not active:
            return None
        return max(active, key=lambda doc: doc.get("created_at") or datetime.min)

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        doc = self._active_document(user_id)
        if doc is None:
            return None
        return Subscription.model_validate(doc)

    async def get_active_subscription_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        doc = self._active_document(user_id)
        return dict(doc) if doc is not None else None

    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        docs = [doc for doc in self._subscriptions.values() if doc.get("user_id") == user_id]
        if not docs:
            return None
        latest = max(docs, key=lambda doc: doc.get("created_at") or datetime.min)
        return Subscription.model_validate(latest)

    async def add_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            subscription.id = self._next_id()
        self._subscriptions[subscription.id] = subscription.serialize_for_db()
        return subscription

    async def update_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None or subscription.id not in self._subscriptions:
            raise ValueError("Subscription must have id to be updated")
        stored = self._subscriptions[subscription.id]
        data = subscription.serialize_for_db()
        # Counters and balance are owned by the atomic operations
        for field in ("credit_balance", "minutes_used", "calls_used"):
            if field in stored:
                data[field] = stored[field]
        self._subscriptions[subscription.id] = data
        return Subscription.model_validate(data)

    async def retire_active_subscriptions(
        self, user_id: str, keep_id: Optional[str] = None, when: Optional[datetime] = None
    ) -> int:
        when = when or datetime.utcnow()
        retired = 0
        for sub_id, doc in self._subscriptions.items():
            if doc.get("user_id") != user_id or not doc.get("is_active", False):
                continue
            if keep_id is not None and sub_id == keep_id:
                continue
            doc["is_active"] = False
            doc["cancelled_at"] = when
            doc["updated_at"] = when
            retired += 1
        return retired

    async def increment_usage(
        self, user_id: str, minutes: int, calls: int = 1
    ) -> Optional[Subscription]:
        doc = self._active_document(user_id)
        if doc is None:
            return None
        doc["minutes_used"] = doc.get("minutes_used", 0) + minutes
        doc["calls_used"] = doc.get("calls_used", 0) + calls
        doc["updated_at"] = datetime.utcnow()
        return Subscription.model_validate(doc)

    async def reset_billing_period(
        self, user_id: str, period_start: datetime, period_end: datetime
    ) -> Optional[Subscription]:
        doc = self._active_document(user_id)
        if doc is None:
            return None
        doc.update(
            current_period_start=period_start,
            current_period_end=period_end,
            minutes_used=0,
            calls_used=0,
            updated_at=datetime.utcnow(),
        )
        return Subscription.model_validate(doc)

    async def add_to_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        doc = self._active_document(user_id)
        if doc is None:
            return None
        before = doc.get("credit_balance", 0.0)
        doc["credit_balance"] = add(before, amount)
        doc["updated_at"] = datetime.utcnow()
        return BalanceChange(balance_before=before, balance_after=doc["credit_balance"])

    async def deduct_from_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        doc = self._active_document(user_id)
        if doc is None:
            return None
        before = doc.get("credit_balance", 0.0)
        doc["credit_balance"] = max(0.0, subtract(before, amount))
        doc["updated_at"] = datetime.utcnow()
        return BalanceChange(balance_before=before, balance_after=doc["credit_balance"])

    async def try_debit_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        doc = self._active_document(user_id)
        if doc is None or doc.get("credit_balance", 0.0) < amount:
            return None
        before = doc["credit_balance"]
        doc["credit_balance"] = subtract(before, amount)
        doc["updated_at"] = datetime.utcnow()
        return BalanceChange(balance_before=before, balance_after=doc["credit_balance"])

    # Assistants
    async def add_assistant(self, assistant: Assistant) -> Assistant:
        if assistant.id is None:
            assistant.id = self._next_id()
        self._assistants[assistant.id] = assistant
        return assistant

    async def count_active_assistants(self, user_id: str) -> int:
        return sum(
            1 for a in self._assistants.values() if a.user_id == user_id and a.is_active
        )

    # Usage tracking
    async def find_or_create_usage_for_month(
        self, user_id: str, moment: Optional[datetime] = None
    ) -> UsageTracking:
        key = f"{user_id}:{month_key(moment)}"
        usage = self._usage.get(key)
        if usage is None:
            usage = UsageTracking.for_month(user_id, moment)
            usage.id = self._next_id()
            self._usage[key] = usage
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
        usage = await self.find_or_create_usage_for_month(user_id, moment)
        usage.add_call_usage(assistant_id, assistant_name, minutes, cost, moment)
        if overage_cost > 0:
            usage.add_overage_cost(overage_cost)
        usage.version += 1
        return usage

    # Credit ledger
    async def add_credit(self, credit: Credit) -> Credit:
        if credit.id is None:
            credit.id = self._next_id()
        self._credits.append(credit)
        return credit

    async def get_credits(self, user_id: str, limit: Optional[int] = None) -> Iterable[Credit]:
        rows = [c for c in reversed(self._credits) if c.user_id == user_id]
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows[:limit] if limit is not None else rows

    async def find_credit_by_reference(self, reference: str) -> Optional[Credit]:
        return next((c for c in self._credits if c.reference == reference), None)

    # Phone providers
    async def add_phone_provider(self, provider: PhoneProvider) -> PhoneProvider:
        if provider.id is None:
            provider.id = self._next_id()
        if provider.is_default:
            for other in self._phone_providers.values():
                if other.user_id == provider.user_id and other.id != provider.id:
                    other.is_default = False
        self._phone_providers[provider.id] = provider
        return provider

    async def get_default_phone_provider(self, user_id: str) -> Optional[PhoneProvider]:
        return next(
            (
                p
                for p in self._phone_providers.values()
                if p.user_id == user_id and p.is_default and p.is_active
            ),
            None,
        )

    async def set_vapi_phone_number_id(self, provider_id: str, vapi_phone_number_id: str) -> None:
        provider = self._phone_providers.get(provider_id)
        if provider is None:
            raise ValueError(f"Phone provider {provider_id} not found")
        provider.vapi_phone_number_id = vapi_phone_number_id
        provider.updated_at = datetime.utcnow()

    # System settings
    async def get_settings_by_category(self, category: str) -> Dict[str, Any]:
        return {s.key: s.value for s in self._settings.values() if s.category == category}

    async def upsert_setting(self, setting: SystemSetting) -> SystemSetting:
        existing = self._settings.get(setting.key)
        setting.id = existing.id if existing is not None else (setting.id or self._next_id())
        if existing is not None:
            setting.created_at = existing.created_at
        self._settings[setting.key] = setting
        return setting

    # Pending PayPal transactions
    async def add_pending_transaction(self, pending: PendingTransaction) -> PendingTransaction:
        if pending.order_id in self._pending:
            raise ValueError(f"Pending transaction for order {pending.order_id} already exists")
        if pending.id is None:
            pending.id = self._next_id()
        self._pending[pending.order_id] = pending
        return pending

    async def get_pending_transaction(
        self, order_id: str, user_id: str, status: PendingStatus = PendingStatus.PENDING
    ) -> Optional[PendingTransaction]:
        pending = self._pending.get(order_id)
        if pending is None or pending.user_id != user_id:
            return None
        if pending.status != PendingStatus(status).value:
            return None
        return pending

    async def complete_pending_transaction(
        self, order_id: str, user_id: str, when: Optional[datetime] = None
    ) -> Optional[PendingTransaction]:
        pending = await self.get_pending_transaction(order_id, user_id)
        if pending is None:
            return None
        pending.status = PendingStatus.COMPLETED
        pending.completed_at = when or datetime.utcnow()
        return pending

    async def reopen_pending_transaction(
        self, order_id: str, user_id: str
    ) -> Optional[PendingTransaction]:
        pending = await self.get_pending_transaction(order_id, user_id, PendingStatus.COMPLETED)
        if pending is None:
            return None
        pending.status = PendingStatus.PENDING
        pending.completed_at = None
        return pending

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification)
        return notification

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry)
        return entry
