from __future__ import annotations

import calendar
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from ..policy import (
    UNLIMITED,
    Affordability,
    BillingSnapshot,
    PlanType,
    assess_assistant_creation,
    assess_call,
    remaining,
    total_limit,
)
from .base import DBSerializableModel, IndexSpec


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the last day of shorter months."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def _default_period_end() -> datetime:
    return add_one_month(datetime.utcnow())


class Subscription(DBSerializableModel):
    """
    Per-user plan state: quotas, usage counters and prepaid credit balance.

    A user without an active subscription has never paid and is blocked.
    `assistants_created` is informational only; permission checks use the
    live count of active assistants.
    """

    collection_name: ClassVar[str] = "subscriptions"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("is_active", 1)], {}),
        ([("current_period_end", 1)], {}),
        ([("paypal_subscription_id", 1)], {"sparse": True}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str

    plan_type: PlanType
    plan_name: str
    monthly_price: float = 0.0

    monthly_minute_limit: int = Field(ge=UNLIMITED, description="-1 means unlimited.")
    monthly_call_limit: int = Field(default=UNLIMITED, ge=UNLIMITED)
    assistant_limit: int = Field(ge=UNLIMITED, description="-1 means unlimited.")

    current_period_start: datetime = Field(default_factory=datetime.utcnow)
    current_period_end: datetime = Field(default_factory=_default_period_end)
    minutes_used: int = Field(default=0, ge=0)
    assistants_created: int = Field(default=0, ge=0)
    calls_used: int = Field(default=0, ge=0)

    extra_minutes: int = Field(default=0, ge=0)
    extra_assistants: int = Field(default=0, ge=0)

    credit_balance: float = Field(default=0.0, description="Prepaid balance in USD.")
    auto_topup_enabled: bool = False
    auto_topup_amount: float = 5.0
    minimum_balance: float = Field(
        default=5.0, ge=0, description="Balance at or below which a top-up is needed."
    )

    paypal_subscription_id: Optional[str] = None
    is_active: bool = True
    is_trial: bool = False
    trial_ends_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @classmethod
    def payg(cls, user_id: str, credit_balance: float = 0.0) -> "Subscription":
        return cls(
            user_id=user_id,
            plan_type=PlanType.PAYG,
            plan_name="Pay-as-you-go",
            monthly_price=0.0,
            monthly_minute_limit=UNLIMITED,
            assistant_limit=UNLIMITED,
            credit_balance=credit_balance,
        )

    @property
    def is_payg(self) -> bool:
        return self.plan_type == PlanType.PAYG

    def get_total_minute_limit(self) -> int:
        return total_limit(self.monthly_minute_limit, self.extra_minutes)

    def get_total_assistant_limit(self) -> int:
        return total_limit(self.assistant_limit, self.extra_assistants)

    def get_minutes_remaining(self) -> int:
        return remaining(self.get_total_minute_limit(), self.minutes_used)

    def get_assistants_remaining(self, active_assistants: Optional[int] = None) -> int:
        used = self.assistants_created if active_assistants is None else active_assistants
        return remaining(self.get_total_assistant_limit(), used)

    def get_calls_remaining(self) -> int:
        return remaining(self.monthly_call_limit, self.calls_used)

    def needs_topup(self) -> bool:
        return self.credit_balance <= self.minimum_balance

    def snapshot(self, active_assistants: Optional[int] = None) -> BillingSnapshot:
        return BillingSnapshot(
            plan_type=self.plan_type,
            credit_balance=self.credit_balance,
            minutes_used=self.minutes_used,
            minute_limit=self.get_total_minute_limit(),
            assistants_active=(
                self.assistants_created if active_assistants is None else active_assistants
            ),
            assistant_limit=self.get_total_assistant_limit(),
            calls_used=self.calls_used,
            call_limit=self.monthly_call_limit,
        )

    def can_afford_call(self, estimated_cost: float) -> bool:
        return assess_call(self.snapshot(), estimated_cost).can_afford

    def can_afford_assistant(
        self, assistant_cost: float, active_assistants: Optional[int] = None
    ) -> Affordability:
        return assess_assistant_creation(self.snapshot(active_assistants), assistant_cost)

    def is_in_billing_period(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.utcnow()
        return self.current_period_start <= now <= self.current_period_end

    def reset_billing_period(self, now: Optional[datetime] = None) -> None:
        # Assistants persist across periods; only the minute counters restart.
        now = now or datetime.utcnow()
        self.current_period_start = now
        self.current_period_end = add_one_month(now)
        self.minutes_used = 0
        self.calls_used = 0
        self.updated_at = now
