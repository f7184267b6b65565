from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Overage(BaseModel):
    minutes: float
    cost: float


class ValidationResult(BaseModel):
    can_create: bool
    can_call: bool
    reason: Optional[str] = None
    upgrade_required: bool = False
    overage: Optional[Overage] = None


class UsageSummary(BaseModel):
    plan_type: str
    plan_name: str

    minutes_used: int
    minute_limit: int
    minutes_remaining: int
    minutes_overage: int

    assistants_created: int
    assistant_limit: int
    assistants_remaining: int

    current_period_start: datetime
    current_period_end: datetime
    is_over_limit: bool
    is_pay_as_you_go: bool

    current_period_cost: float
    overage_cost: float

    credit_balance: float
    needs_topup: bool


class UpgradeOption(BaseModel):
    plan_type: str
    plan_name: str
    monthly_price: float
    minute_limit: int
    assistant_limit: int
    savings: Optional[float] = None


class ResolvedPhoneNumber(BaseModel):
    vapi_phone_number_id: str
    is_default: bool


class CreditBalanceResponse(BaseModel):
    user_id: str
    credit_balance: float
    needs_topup: bool


class CreditHistoryItem(BaseModel):
    transaction_type: str
    amount: float
    description: str
    reference: Optional[str] = None
    balance_before: float
    balance_after: float
    created_at: datetime


class CreateOrderRequest(BaseModel):
    amount: float = Field(gt=0)
    plan_type: str = "credit-topup"
    description: Optional[str] = None


class CreateOrderResponse(BaseModel):
    order_id: str
    approve_url: Optional[str] = None


class CaptureOrderResponse(BaseModel):
    success: bool
    message: str
    credit_balance: float
    already_processed: bool = False
    capture_id: Optional[str] = None


class CallCompletedRequest(BaseModel):
    call_id: Optional[str] = None
    assistant_id: str
    assistant_name: str
    duration_seconds: float = Field(ge=0)


class CreditHistoryResponse(BaseModel):
    user_id: str
    items: List[CreditHistoryItem]
