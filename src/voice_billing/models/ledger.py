from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class LedgerEventType(str, Enum):
    TRANSACTION = "transaction"
    ERROR = "error"


class LedgerEntry(DBSerializableModel):
    """
    Structured audit event persisted to DB and mirrored to the ledger file.

    This complements the `Credit` rows: credits hold money movements,
    ledger entries hold what the billing layer did and why.
    """

    collection_name: ClassVar[str] = "billing_ledger"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("created_at", -1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    event_type: LedgerEventType
    user_id: Optional[str] = None
    correlation_id: Optional[str] = Field(
        default=None,
        description="Correlation id for tracing a logical operation across components.",
    )
    message: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
