from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class PayPalSubscriptionPlan(BaseModel):
    name: str
    description: str
    value: str = Field(description="Price per cycle as a decimal string, e.g. '29.00'.")
    frequency: str = "month"
    tenure_type: str = "regular"
    sequence: int = 1


class PayPalOneTimePayment(BaseModel):
    amount: float = Field(gt=0)
    description: str
    currency: str = "USD"


class UsageChargeType(str, Enum):
    USAGE_BASED = "usage-based"
    PLATFORM_FEE = "platform-fee"
    OVERAGE = "overage"


class PayPalUsageCharge(BaseModel):
    user_id: str
    amount: float = Field(gt=0)
    description: str
    type: UsageChargeType = UsageChargeType.USAGE_BASED
