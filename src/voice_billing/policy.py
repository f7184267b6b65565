"""
Pure billing policy.

Every permission decision and every usage charge is computed here from a
plain `BillingSnapshot`, so the validator's normal path and its recovery
path share one implementation of the quota and credit rules.
"""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel

from .money import multiply

UNLIMITED = -1


class PlanType(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    PAYG = "payg"
    STARTER = "starter"
    GROWTH = "growth"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class BillingSnapshot(BaseModel):
    """Point-in-time view of a subscription, detached from storage."""

    plan_type: PlanType
    credit_balance: float = 0.0
    minutes_used: int = 0
    minute_limit: int = 0
    assistants_active: int = 0
    assistant_limit: int = 0
    calls_used: int = 0
    call_limit: int = UNLIMITED

    @property
    def is_payg(self) -> bool:
        return self.plan_type == PlanType.PAYG

    @property
    def minutes_remaining(self) -> int:
        return remaining(self.minute_limit, self.minutes_used)

    @property
    def assistants_remaining(self) -> int:
        return remaining(self.assistant_limit, self.assistants_active)

    @property
    def calls_remaining(self) -> int:
        return remaining(self.call_limit, self.calls_used)


class Affordability(BaseModel):
    can_afford: bool
    cost: float = 0.0
    use_credits: bool = False


class CallCharge(BaseModel):
    minutes: int
    billable_minutes: int
    cost: float


def remaining(limit: int, used: int) -> int:
    if limit == UNLIMITED:
        return UNLIMITED
    return max(0, limit - used)


def total_limit(base: int, extra: int) -> int:
    if base == UNLIMITED:
        return UNLIMITED
    return base + (extra or 0)


def has_headroom(remaining_quota: int) -> bool:
    return remaining_quota == UNLIMITED or remaining_quota > 0


def billable_minutes(duration_seconds: float) -> int:
    """Partial minutes are always billed as a full minute."""
    if duration_seconds <= 0:
        return 0
    return math.ceil(duration_seconds / 60)


def assess_assistant_creation(snapshot: BillingSnapshot, assistant_cost: float) -> Affordability:
    # PAYG has no assistant quota; every assistant is paid from credits
    if not snapshot.is_payg and has_headroom(snapshot.assistants_remaining):
        return Affordability(can_afford=True, cost=0.0, use_credits=False)
    return Affordability(
        can_afford=snapshot.credit_balance >= assistant_cost,
        cost=assistant_cost,
        use_credits=True,
    )


def assess_call(snapshot: BillingSnapshot, estimated_cost: float) -> Affordability:
    if snapshot.plan_type == PlanType.TRIAL:
        return Affordability(
            can_afford=has_headroom(snapshot.calls_remaining),
            cost=0.0,
            use_credits=False,
        )
    if not snapshot.is_payg and has_headroom(snapshot.minutes_remaining):
        return Affordability(can_afford=True, cost=0.0, use_credits=False)
    return Affordability(
        can_afford=snapshot.credit_balance >= estimated_cost,
        cost=estimated_cost,
        use_credits=True,
    )


def compute_call_charge(
    plan_type: PlanType,
    minutes: int,
    minutes_used_after: int,
    minute_limit: int,
    payg_rate: float,
    overage_rate: float,
) -> CallCharge:
    """
    Price a finished call.

    `minutes_used_after` is the period counter including this call. PAYG
    bills every minute at the PAYG rate; quota plans bill only the minutes
    that pushed the counter past the limit, at the overage rate.
    """
    if plan_type == PlanType.PAYG:
        return CallCharge(
            minutes=minutes,
            billable_minutes=minutes,
            cost=multiply(payg_rate, minutes),
        )

    if minute_limit == UNLIMITED or minutes_used_after <= minute_limit:
        return CallCharge(minutes=minutes, billable_minutes=0, cost=0.0)

    overage = min(minutes, minutes_used_after - minute_limit)
    return CallCharge(
        minutes=minutes,
        billable_minutes=overage,
        cost=multiply(overage_rate, overage),
    )
