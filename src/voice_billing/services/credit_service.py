from __future__ import annotations

import logging
import time
from typing import List, Optional

from ..db.base import BaseDBManager
from ..exceptions import InsufficientCreditsError, NotFoundError, ValidationError
from ..logging.ledger_logger import LedgerLogger
from ..models.credit import Credit, CreditTransactionType
from ..models.subscription import Subscription
from ..money import format_usd
from ..policy import assess_assistant_creation
from .pricing_service import PricingService


logger = logging.getLogger(__name__)


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class CreditService:
    """
    Credit balance operations outside call usage: top-ups, refunds, admin
    adjustments and assistant purchases.

    Every mutation changes the balance through one atomic storage update,
    then appends exactly one `Credit` row and one ledger entry.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        pricing: PricingService,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._pricing = pricing

    async def add_credits(
        self,
        user_id: str,
        amount: float,
        description: str,
        reference: str,
        transaction_type: CreditTransactionType = CreditTransactionType.TOPUP,
        metadata: Optional[dict] = None,
    ) -> Credit:
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if transaction_type not in (CreditTransactionType.TOPUP, CreditTransactionType.REFUND):
            raise ValidationError(f"add_credits does not record {transaction_type} rows")

        change = await self._db.add_to_balance(user_id, amount)
        if change is None:
            raise NotFoundError(f"No active subscription for user {user_id}")

        if transaction_type == CreditTransactionType.REFUND:
            credit = Credit.refund(user_id, amount, description, reference, change.balance_before)
        else:
            credit = Credit.topup(
                user_id, amount, description, reference, change.balance_before, metadata
            )
        credit = await self._db.add_credit(credit)
        await self._ledger.log_credit(credit, "Credits added", {"description": description})
        return credit

    async def adjust_credits(
        self, user_id: str, amount: float, reason: str, admin_id: str
    ) -> Credit:
        """
        Admin adjustment: positive adds, negative removes. Removing more than
        the current balance is rejected. A user without a subscription gets
        a Pay-as-you-go one so the credit has somewhere to live.
        """
        if amount == 0:
            raise ValidationError("Amount cannot be zero")
        if not reason:
            raise ValidationError("reason is required")

        if await self._db.get_active_subscription_document(user_id) is None:
            await self._db.add_subscription(Subscription.payg(user_id))
            logger.info("Created Pay-as-you-go subscription for adjustment", extra={"user_id": user_id})

        if amount > 0:
            change = await self._db.add_to_balance(user_id, amount)
        else:
            change = await self._db.try_debit_balance(user_id, -amount)
        if change is None:
            balance = await self.get_balance(user_id)
            await self._ledger.log_error(
                message="Admin removal exceeds balance",
                details={"requested": amount, "balance": balance, "admin_id": admin_id},
                user_id=user_id,
            )
            raise InsufficientCreditsError(
                f"Cannot remove ${format_usd(-amount)}. "
                f"User only has ${format_usd(balance)} available."
            )

        description = f"Admin credit: {reason}" if amount > 0 else f"Admin debit: {reason}"
        reference = f"admin-{admin_id}-{_timestamp_ms()}"
        credit = await self._db.add_credit(
            Credit.adjustment(
                user_id,
                amount,
                description,
                reference,
                change.balance_before,
                {"admin_id": admin_id, "reason": reason},
            )
        )

        await self._ledger.log_credit(credit, "Admin adjusted credits")
        return credit

    async def charge_assistant_creation(
        self, user_id: str, assistant_id: str, assistant_name: str
    ) -> Optional[Credit]:
        """
        Pay for a new assistant from credits when the plan quota does not
        cover it. Returns None when the quota covers it; charging the same
        assistant twice returns the first row.
        """
        existing = await self._db.find_credit_by_reference(f"assistant-{assistant_id}")
        if existing is not None:
            return existing

        subscription = await self._db.get_active_subscription(user_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription for user {user_id}")

        cost = await self._pricing.get_assistant_cost()
        # The new assistant is already saved, so it is excluded from the count
        active = max(0, await self._db.count_active_assistants(user_id) - 1)
        affordability = assess_assistant_creation(subscription.snapshot(active), cost)
        if not affordability.use_credits:
            return None

        change = await self._db.try_debit_balance(user_id, cost)
        if change is None:
            raise InsufficientCreditsError(
                f"Insufficient credits. Need ${format_usd(cost)} to create assistant "
                f"(current balance: ${format_usd(await self.get_balance(user_id))})"
            )

        credit = await self._db.add_credit(
            Credit.assistant_purchase(
                user_id, cost, assistant_id, assistant_name, change.balance_before
            )
        )
        await self._ledger.log_credit(credit, "Assistant purchased with credits")
        return credit

    async def get_balance(self, user_id: str) -> float:
        subscription = await self._db.get_active_subscription(user_id)
        return subscription.credit_balance if subscription is not None else 0.0

    async def get_credit_history(self, user_id: str, limit: int = 50) -> List[Credit]:
        return list(await self._db.get_credits(user_id, limit=limit))
