from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.subscription import Subscription
from ..policy import UNLIMITED, PlanType


logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Subscription lifecycle: Pay-as-you-go activation and plan retirement.

    A user has at most one active subscription; activating a plan retires
    any other active one.
    """

    def __init__(self, db: BaseDBManager, ledger: LedgerLogger) -> None:
        self._db = db
        self._ledger = ledger

    async def get_active_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._db.get_active_subscription(user_id)

    async def activate_payg(self, user_id: str) -> Subscription:
        """
        Put the user on Pay-as-you-go, keeping any existing credit balance.

        Creates the plan for first-time payers, converts an active trial or
        quota plan in place, and reactivates a retired Pay-as-you-go plan.
        """
        active = await self._db.get_active_subscription(user_id)
        action: str

        if active is None:
            latest = await self._db.get_latest_subscription(user_id)
            if latest is not None and latest.is_payg:
                latest.is_active = True
                latest.cancelled_at = None
                latest.updated_at = datetime.utcnow()
                subscription = await self._db.update_subscription(latest)
                action = "reactivated"
            else:
                subscription = await self._db.add_subscription(Subscription.payg(user_id))
                action = "created"
        elif not active.is_payg:
            previous_plan = active.plan_type
            active.plan_type = PlanType.PAYG
            active.plan_name = "Pay-as-you-go"
            active.monthly_price = 0.0
            active.monthly_minute_limit = UNLIMITED
            active.monthly_call_limit = UNLIMITED
            active.assistant_limit = UNLIMITED
            active.is_trial = False
            active.trial_ends_at = None
            active.metadata = {**active.metadata, "previous_plan": previous_plan}
            active.updated_at = datetime.utcnow()
            subscription = await self._db.update_subscription(active)
            action = "upgraded_from_trial" if previous_plan == PlanType.TRIAL else "converted"
        else:
            return active

        retired = await self._db.retire_active_subscriptions(user_id, keep_id=subscription.id)
        await self._ledger.log_transaction(
            user_id=user_id,
            message="Pay-as-you-go activated",
            details={
                "subscription_id": subscription.id,
                "action": action,
                "retired_subscriptions": retired,
            },
        )
        logger.info(
            "Pay-as-you-go activated",
            extra={"user_id": user_id, "action": action},
        )
        return subscription

    async def retire_subscription(self, user_id: str, reason: str) -> int:
        retired = await self._db.retire_active_subscriptions(user_id)
        if retired:
            await self._ledger.log_transaction(
                user_id=user_id,
                message="Subscription retired",
                details={"reason": reason, "retired_subscriptions": retired},
            )
        return retired
