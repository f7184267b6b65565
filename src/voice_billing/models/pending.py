from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class TopupPlanType(str, Enum):
    PAYG = "payg"
    CREDIT_TOPUP = "credit-topup"


class PendingStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PendingTransaction(DBSerializableModel):
    """
    A PayPal order created for a top-up and not yet captured.

    The amount stored here, not the one the client sends on capture, is
    what gets credited.
    """

    collection_name: ClassVar[str] = "pending_transactions"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("order_id", 1)], {"unique": True}),
        ([("user_id", 1), ("status", 1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    order_id: str
    amount: float = Field(ge=0)
    plan_type: TopupPlanType
    description: str
    status: PendingStatus = PendingStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
