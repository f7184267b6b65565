from __future__ import annotations

from datetime import datetime
from typing import ClassVar, List, Optional

from pydantic import Field

from .base import DBSerializableModel, IndexSpec


class Assistant(DBSerializableModel):
    """
    The slice of the application's assistant document billing relies on.
    Only active assistants count against a plan's assistant limit.
    """

    collection_name: ClassVar[str] = "assistants"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("is_active", 1)], {}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    name: str
    vapi_assistant_id: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
