from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class ProviderName(str, Enum):
    TWILIO = "twilio"
    PLIVO = "plivo"
    NEXMO = "nexmo"


class ProviderTestStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class PhoneProvider(DBSerializableModel):
    """
    A user's own telephony account and number.

    `vapi_phone_number_id` caches the identifier of the number once it has
    been registered with the voice platform; until then the provider cannot
    place calls. At most one active provider per user is the default.
    """

    collection_name: ClassVar[str] = "phone_providers"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("is_default", 1)], {}),
        ([("user_id", 1), ("is_active", 1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    provider_name: ProviderName
    display_name: str
    phone_number: str = Field(pattern=r"^\+[1-9]\d{1,14}$", description="E.164 number.")
    credentials: Dict[str, Any] = Field(default_factory=dict)
    vapi_phone_number_id: Optional[str] = None
    is_active: bool = True
    is_default: bool = False
    last_tested_at: Optional[datetime] = None
    test_status: Optional[ProviderTestStatus] = None
    test_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
