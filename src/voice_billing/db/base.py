from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel

from ..models.assistant import Assistant
from ..models.credit import Credit
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.pending import PendingStatus, PendingTransaction
from ..models.phone_provider import PhoneProvider
from ..models.pricing import SystemSetting
from ..models.subscription import Subscription
from ..models.usage import UsageTracking


class BalanceChange(BaseModel):
    """Balance immediately before and after one atomic balance update."""

    balance_before: float
    balance_after: float


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface for the billing documents.

    Balance and usage counters are only changed through the dedicated
    atomic methods (`increment_usage`, `add_to_balance`,
    `deduct_from_balance`, `try_debit_balance`), never by saving a whole
    subscription read earlier, so concurrent webhooks for the same user
    cannot overwrite each other's updates.
    """

    # Subscriptions
    @abstractmethod
    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]: ...

    @abstractmethod
    async def get_active_subscription_document(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Raw stored fields of the active subscription, without model validation."""
        ...

    @abstractmethod
    async def get_latest_subscription(self, user_id: str) -> Optional[Subscription]:
        """Most recently created subscription, active or not."""
        ...

    @abstractmethod
    async def add_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def update_subscription(self, subscription: Subscription) -> Subscription:
        """Persist plan fields. Must not be used to change balance or usage counters."""
        ...

    @abstractmethod
    async def retire_active_subscriptions(
        self, user_id: str, keep_id: Optional[str] = None, when: Optional[datetime] = None
    ) -> int: ...

    @abstractmethod
    async def increment_usage(
        self, user_id: str, minutes: int, calls: int = 1
    ) -> Optional[Subscription]:
        """Atomically add to the period counters; returns the updated subscription."""
        ...

    @abstractmethod
    async def reset_billing_period(
        self, user_id: str, period_start: datetime, period_end: datetime
    ) -> Optional[Subscription]:
        """Start a new period and zero the period counters in one write."""
        ...

    @abstractmethod
    async def add_to_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]: ...

    @abstractmethod
    async def deduct_from_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        """Atomically subtract `amount`, clamping the stored balance at zero."""
        ...

    @abstractmethod
    async def try_debit_balance(self, user_id: str, amount: float) -> Optional[BalanceChange]:
        """Subtract `amount` only if the balance covers it; None otherwise."""
        ...

    # Assistants
    @abstractmethod
    async def add_assistant(self, assistant: Assistant) -> Assistant: ...

    @abstractmethod
    async def count_active_assistants(self, user_id: str) -> int: ...

    # Usage tracking
    @abstractmethod
    async def find_or_create_usage_for_month(
        self, user_id: str, moment: Optional[datetime] = None
    ) -> UsageTracking: ...

    @abstractmethod
    async def record_call_usage(
        self,
        user_id: str,
        assistant_id: str,
        assistant_name: str,
        minutes: int,
        cost: float,
        overage_cost: float = 0.0,
        moment: Optional[datetime] = None,
    ) -> UsageTracking: ...

    # Credit ledger (insert and read only)
    @abstractmethod
    async def add_credit(self, credit: Credit) -> Credit: ...

    @abstractmethod
    async def get_credits(self, user_id: str, limit: Optional[int] = None) -> Iterable[Credit]:
        """Newest first."""
        ...

    @abstractmethod
    async def find_credit_by_reference(self, reference: str) -> Optional[Credit]: ...

    # Phone providers
    @abstractmethod
    async def add_phone_provider(self, provider: PhoneProvider) -> PhoneProvider:
        """Saving a default provider clears the default flag on the user's others."""
        ...

    @abstractmethod
    async def get_default_phone_provider(self, user_id: str) -> Optional[PhoneProvider]: ...

    @abstractmethod
    async def set_vapi_phone_number_id(self, provider_id: str, vapi_phone_number_id: str) -> None: ...

    # System settings
    @abstractmethod
    async def get_settings_by_category(self, category: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def upsert_setting(self, setting: SystemSetting) -> SystemSetting: ...

    # Pending PayPal transactions
    @abstractmethod
    async def add_pending_transaction(self, pending: PendingTransaction) -> PendingTransaction: ...

    @abstractmethod
    async def get_pending_transaction(
        self, order_id: str, user_id: str, status: PendingStatus = PendingStatus.PENDING
    ) -> Optional[PendingTransaction]: ...

    @abstractmethod
    async def complete_pending_transaction(
        self, order_id: str, user_id: str, when: Optional[datetime] = None
    ) -> Optional[PendingTransaction]:
        """Atomically move a pending order to completed; None if it was not pending."""
        ...

    @abstractmethod
    async def reopen_pending_transaction(
        self, order_id: str, user_id: str
    ) -> Optional[PendingTransaction]:
        """Move a completed order back to pending so its capture can be retried."""
        ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
