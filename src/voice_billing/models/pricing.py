from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, IndexSpec

PRICING_CATEGORY = "pricing"


class PricingConfig(BaseModel):
    """Effective prices in USD."""

    assistant_base_cost: float = 20.0
    cost_per_minute_payg: float = 0.07
    cost_per_minute_overage: float = 0.05
    minimum_topup_amount: float = 5.0
    initial_payg_charge: float = 25.0
    payg_initial_credits: float = 5.0


class SystemSetting(DBSerializableModel):
    """
    Admin-editable key/value setting. Pricing overrides live under the
    `pricing` category, keyed by `PricingConfig` field name.
    """

    collection_name: ClassVar[str] = "system_settings"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("key", 1)], {"unique": True}),
        ([("category", 1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    key: str
    value: Any
    category: str = "general"
    description: Optional[str] = None
    is_public: bool = False
    updated_by: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
