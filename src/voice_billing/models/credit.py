from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import Field, model_validator

from ..money import add, money
from .base import DBSerializableModel, IndexSpec


class CreditTransactionType(str, Enum):
    USAGE = "usage"
    TOPUP = "topup"
    ADJUSTMENT = "adjustment"
    REFUND = "refund"
    ASSISTANT_PURCHASE = "assistant_purchase"


class Credit(DBSerializableModel):
    """
    One immutable row of the credit ledger.

    `amount` is signed (negative for usage and purchases) and the balance
    snapshot always satisfies `balance_after == balance_before + amount`.
    Rows are only ever inserted.
    """

    collection_name: ClassVar[str] = "credits"
    indexes: ClassVar[List[IndexSpec]] = [
        ([("user_id", 1), ("created_at", -1)], {}),
        ([("user_id", 1), ("transaction_type", 1)], {}),
        ([("reference", 1)], {"sparse": True}),
    ]

    id: Optional[str] = Field(default=None)
    user_id: str
    transaction_type: CreditTransactionType
    amount: float
    description: str
    reference: Optional[str] = Field(
        default=None,
        description="Call id, PayPal order id or admin reference the row relates to.",
    )
    balance_before: float
    balance_after: float
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @model_validator(mode="after")
    def _check_balance_snapshot(self) -> "Credit":
        if money(self.balance_after) != add(self.balance_before, self.amount):
            raise ValueError("balance_after must equal balance_before + amount")
        return self

    @classmethod
    def _entry(
        cls,
        user_id: str,
        transaction_type: CreditTransactionType,
        amount: float,
        description: str,
        reference: Optional[str],
        balance_before: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Credit":
        return cls(
            user_id=user_id,
            transaction_type=transaction_type,
            amount=money(amount),
            description=description,
            reference=reference,
            balance_before=money(balance_before),
            balance_after=add(balance_before, amount),
            metadata=metadata or {},
        )

    @classmethod
    def topup(
        cls,
        user_id: str,
        amount: float,
        description: str,
        order_id: str,
        balance_before: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Credit":
        return cls._entry(
            user_id, CreditTransactionType.TOPUP, abs(amount), description,
            order_id, balance_before, metadata,
        )

    @classmethod
    def usage(
        cls,
        user_id: str,
        amount: float,
        description: str,
        call_id: str,
        balance_before: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Credit":
        return cls._entry(
            user_id, CreditTransactionType.USAGE, -abs(amount), description,
            call_id, balance_before, metadata,
        )

    @classmethod
    def adjustment(
        cls,
        user_id: str,
        amount: float,
        description: str,
        reference: str,
        balance_before: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Credit":
        # Signed: positive adds, negative removes
        return cls._entry(
            user_id, CreditTransactionType.ADJUSTMENT, amount, description,
            reference, balance_before, metadata,
        )

    @classmethod
    def refund(
        cls,
        user_id: str,
        amount: float,
        description: str,
        reference: str,
        balance_before: float,
    ) -> "Credit":
        return cls._entry(
            user_id, CreditTransactionType.REFUND, abs(amount), description,
            reference, balance_before,
        )

    @classmethod
    def assistant_purchase(
        cls,
        user_id: str,
        amount: float,
        assistant_id: str,
        assistant_name: str,
        balance_before: float,
    ) -> "Credit":
        return cls._entry(
            user_id,
            CreditTransactionType.ASSISTANT_PURCHASE,
            -abs(amount),
            f"Assistant purchase: {assistant_name}",
            f"assistant-{assistant_id}",
            balance_before,
            {"assistant_id": assistant_id},
        )
