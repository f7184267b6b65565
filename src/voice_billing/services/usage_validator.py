from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, List, Mapping, Optional

from ..db.base import BaseDBManager
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import Overage, UpgradeOption, UsageSummary, ValidationResult
from ..models.credit import Credit
from ..models.subscription import Subscription, add_one_month
from ..money import format_usd, multiply, subtract
from ..policy import (
    UNLIMITED,
    BillingSnapshot,
    PlanType,
    assess_assistant_creation,
    assess_call,
    billable_minutes,
    compute_call_charge,
    total_limit,
)
from .notification_service import NotificationService
from .pricing_service import PricingService


logger = logging.getLogger(__name__)


def snapshot_from_document(doc: Mapping[str, Any], active_assistants: int) -> BillingSnapshot:
    """
    Build a snapshot straight from stored fields, tolerating documents the
    `Subscription` model rejects. Missing limits are read as zero, so a
    damaged record can only lose quota, never gain it.
    """
    return BillingSnapshot(
        plan_type=doc.get("plan_type") or PlanType.NONE,
        credit_balance=doc.get("credit_balance") or 0.0,
        minutes_used=doc.get("minutes_used") or 0,
        minute_limit=total_limit(
            int(doc.get("monthly_minute_limit") or 0), int(doc.get("extra_minutes") or 0)
        ),
        assistants_active=active_assistants,
        assistant_limit=total_limit(
            int(doc.get("assistant_limit") or 0), int(doc.get("extra_assistants") or 0)
        ),
        calls_used=doc.get("calls_used") or 0,
        call_limit=doc.get("monthly_call_limit", UNLIMITED),
    )


class UsageValidator:
    """
    Permission checks and usage accounting for assistants and calls.

    Permission checks fail closed: any unexpected error produces a denial,
    never a grant. Read queries degrade to empty or zero values. Call usage
    tracking is best effort and never raises into the webhook that reports
    the call.
    """

    def __init__(
        self,
        db: BaseDBManager,
        pricing: PricingService,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._db = db
        self._pricing = pricing
        self._ledger = ledger
        self._notifications = notifications

    async def _load_snapshot(
        self, user_id: str, active_assistants: int
    ) -> Optional[BillingSnapshot]:
        doc = await self._db.get_active_subscription_document(user_id)
        if doc is None:
            return None
        try:
            subscription = Subscription.model_validate(doc)
            return subscription.snapshot(active_assistants)
        except Exception:
            logger.exception(
                "Subscription snapshot failed; re-deriving from stored fields",
                extra={"user_id": user_id, "subscription_id": doc.get("_id") or doc.get("id")},
            )
        return snapshot_from_document(doc, active_assistants)

    async def can_create_assistant(self, user_id: str) -> ValidationResult:
        try:
            pricing = await self._pricing.get_pricing()
            active = await self._db.count_active_assistants(user_id)
            snapshot = await self._load_snapshot(user_id, active)

            if snapshot is None:
                return ValidationResult(
                    can_create=False,
                    can_call=False,
                    reason=(
                        "Payment required to create assistants. "
                        f"Pay ${format_usd(pricing.initial_payg_charge)} for Pay-as-you-go "
                        "or choose a monthly plan."
                    ),
                    upgrade_required=True,
                )

            cost = pricing.assistant_base_cost
            affordability = assess_assistant_creation(snapshot, cost)
            logger.info(
                "Assistant creation check",
                extra={
                    "user_id": user_id,
                    "plan_type": snapshot.plan_type,
                    "active_assistants": active,
                    "can_afford": affordability.can_afford,
                },
            )

            if affordability.can_afford:
                return ValidationResult(
                    can_create=True,
                    can_call=True,
                    reason=(
                        f"Will charge ${format_usd(affordability.cost)} from credits"
                        if affordability.use_credits
                        else "Using plan quota"
                    ),
                )

            if snapshot.is_payg:
                reason = (
                    f"Insufficient credits. Need ${format_usd(cost)} to create assistant "
                    f"(current balance: ${format_usd(snapshot.credit_balance)})"
                )
            else:
                reason = (
                    f"Assistant limit reached ({active}/{snapshot.assistant_limit}). "
                    f"Top up with ${format_usd(cost)} or upgrade your plan."
                )
            return ValidationResult(
                can_create=False, can_call=False, reason=reason, upgrade_required=True
            )
        except Exception as exc:
            logger.exception(
                "Failed to validate assistant creation", extra={"user_id": user_id}
            )
            return ValidationResult(
                can_create=False,
                can_call=False,
                reason=f"Validation error: {exc}. Please try again or contact support.",
                upgrade_required=True,
            )

    async def can_make_call(self, user_id: str, estimated_minutes: int) -> ValidationResult:
        try:
            pricing = await self._pricing.get_pricing()
            estimated_cost = multiply(pricing.cost_per_minute_payg, estimated_minutes)
            overage = Overage(minutes=estimated_minutes, cost=estimated_cost)

            snapshot = await self._load_snapshot(
                user_id, await self._db.count_active_assistants(user_id)
            )
            if snapshot is None:
                return ValidationResult(
                    can_create=False,
                    can_call=False,
                    reason=(
                        "Payment required to make calls. "
                        f"Pay ${format_usd(pricing.initial_payg_charge)} for Pay-as-you-go "
                        "or choose a monthly plan."
                    ),
                    upgrade_required=True,
                    overage=overage,
                )

            affordability = assess_call(snapshot, estimated_cost)
            if affordability.can_afford:
                return ValidationResult(
                    can_create=True,
                    can_call=True,
                    reason=(
                        f"Will charge ${format_usd(estimated_cost)} from credits"
                        if affordability.use_credits
                        else "Using plan quota"
                    ),
                )

            if snapshot.is_payg:
                reason = (
                    f"Insufficient credits. Need ${format_usd(estimated_cost)} for "
                    f"{estimated_minutes} minutes "
                    f"(current balance: ${format_usd(snapshot.credit_balance)})"
                )
            elif snapshot.plan_type == PlanType.TRIAL:
                reason = (
                    f"Trial call limit reached ({snapshot.calls_used}/{snapshot.call_limit}). "
                    "Upgrade to keep making calls."
                )
            else:
                reason = (
                    f"Not enough minutes remaining "
                    f"({snapshot.minutes_remaining}/{snapshot.minute_limit}). "
                    "Top up with credits or upgrade your plan."
                )
            # The user keeps assistant access; only the call is refused
            return ValidationResult(
                can_create=True,
                can_call=False,
                reason=reason,
                upgrade_required=True,
                overage=overage,
            )
        except Exception:
            logger.exception(
                "Failed to validate call permission",
                extra={"user_id": user_id, "estimated_minutes": estimated_minutes},
            )
            return ValidationResult(
                can_create=False,
                can_call=False,
                reason="Validation error. Please try again or contact support.",
                upgrade_required=True,
            )

    async def get_current_usage(self, user_id: str) -> UsageSummary:
        try:
            active = await self._db.count_active_assistants(user_id)
            subscription = await self._db.get_active_subscription(user_id)

            if subscription is None:
                now = datetime.utcnow()
                return UsageSummary(
                    plan_type=PlanType.NONE.value,
                    plan_name="No Plan (Payment Required)",
                    minutes_used=0,
                    minute_limit=0,
                    minutes_remaining=0,
                    minutes_overage=0,
                    assistants_created=active,
                    assistant_limit=0,
                    assistants_remaining=0,
                    current_period_start=now,
                    current_period_end=now,
                    is_over_limit=True,
                    is_pay_as_you_go=False,
                    current_period_cost=0.0,
                    overage_cost=0.0,
                    credit_balance=0.0,
                    needs_topup=True,
                )

            minute_limit = subscription.get_total_minute_limit()
            assistant_limit = subscription.get_total_assistant_limit()
            minutes_used = subscription.minutes_used
            minutes_overage = 0 if minute_limit == UNLIMITED else max(0, minutes_used - minute_limit)

            usage = await self._db.find_or_create_usage_for_month(user_id)

            return UsageSummary(
                plan_type=subscription.plan_type,
                plan_name=subscription.plan_name,
                minutes_used=minutes_used,
                minute_limit=minute_limit,
                minutes_remaining=subscription.get_minutes_remaining(),
                minutes_overage=minutes_overage,
                assistants_created=active,
                assistant_limit=assistant_limit,
                assistants_remaining=subscription.get_assistants_remaining(active),
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                is_over_limit=minutes_overage > 0
                or (assistant_limit != UNLIMITED and active > assistant_limit),
                is_pay_as_you_go=subscription.is_payg,
                current_period_cost=usage.total_cost,
                overage_cost=usage.overage_cost,
                credit_balance=subscription.credit_balance,
                needs_topup=subscription.needs_topup(),
            )
        except Exception:
            logger.exception("Failed to get usage summary", extra={"user_id": user_id})
            now = datetime.utcnow()
            return UsageSummary(
                plan_type=PlanType.NONE.value,
                plan_name="Usage unavailable",
                minutes_used=0,
                minute_limit=0,
                minutes_remaining=0,
                minutes_overage=0,
                assistants_created=0,
                assistant_limit=0,
                assistants_remaining=0,
                current_period_start=now,
                current_period_end=now,
                is_over_limit=False,
                is_pay_as_you_go=False,
                current_period_cost=0.0,
                overage_cost=0.0,
                credit_balance=0.0,
                needs_topup=False,
            )

    async def track_call_usage(
        self,
        user_id: str,
        assistant_id: str,
        assistant_name: str,
        duration_seconds: float,
        call_id: Optional[str] = None,
    ) -> None:
        """
        Record a finished call: bump the period counters, charge the cost
        from the credit balance and roll the call into the monthly usage.

        Partial minutes are billed as whole minutes. The balance never goes
        below zero; when it cannot cover the cost, the ledger row records
        what was actually deducted and the shortfall goes into its metadata.
        """
        try:
            if call_id and await self._db.find_credit_by_reference(f"call-{call_id}") is not None:
                logger.info(
                    "Call already billed, skipping redelivered usage",
                    extra={"user_id": user_id, "call_id": call_id},
                )
                return

            minutes = billable_minutes(duration_seconds)
            pricing = await self._pricing.get_pricing()

            subscription = await self._db.increment_usage(user_id, minutes)
            if subscription is None:
                logger.warning(
                    "Call usage reported for user without an active subscription",
                    extra={"user_id": user_id, "assistant_id": assistant_id, "minutes": minutes},
                )
                return

            charge = compute_call_charge(
                plan_type=subscription.plan_type,
                minutes=minutes,
                minutes_used_after=subscription.minutes_used,
                minute_limit=subscription.get_total_minute_limit(),
                payg_rate=pricing.cost_per_minute_payg,
                overage_rate=pricing.cost_per_minute_overage,
            )

            if charge.cost > 0:
                await self._charge_call(
                    subscription, assistant_id, assistant_name, minutes, charge.cost,
                    charge.billable_minutes, call_id,
                )

            await self._db.record_call_usage(
                user_id=user_id,
                assistant_id=assistant_id,
                assistant_name=assistant_name,
                minutes=minutes,
                cost=charge.cost,
                overage_cost=0.0 if subscription.is_payg else charge.cost,
            )

            logger.info(
                "Call usage tracked",
                extra={
                    "user_id": user_id,
                    "assistant_id": assistant_id,
                    "minutes": minutes,
                    "cost": charge.cost,
                    "total_minutes_used": subscription.minutes_used,
                },
            )
        except Exception:
            logger.exception(
                "Failed to track call usage",
                extra={
                    "user_id": user_id,
                    "assistant_id": assistant_id,
                    "duration_seconds": duration_seconds,
                },
            )

    async def _charge_call(
        self,
        subscription: Subscription,
        assistant_id: str,
        assistant_name: str,
        minutes: int,
        cost: float,
        billed_minutes: int,
        call_id: Optional[str],
    ) -> None:
        user_id = subscription.user_id
        change = await self._db.deduct_from_balance(user_id, cost)
        if change is None:
            logger.warning(
                "Subscription disappeared before charging call", extra={"user_id": user_id}
            )
            return

        deducted = subtract(change.balance_before, change.balance_after)
        shortfall = subtract(cost, deducted)
        reference = f"call-{call_id}" if call_id else f"call-{assistant_id}-{int(time.time() * 1000)}"
        metadata = {
            "assistant_id": assistant_id,
            "assistant_name": assistant_name,
            "minutes": minutes,
            "billable_minutes": billed_minutes,
            "computed_cost": cost,
        }
        if shortfall > 0:
            metadata["shortfall"] = shortfall
            logger.warning(
                "Credit balance did not cover call cost; balance clamped at zero",
                extra={"user_id": user_id, "cost": cost, "shortfall": shortfall},
            )

        try:
            credit = await self._db.add_credit(
                Credit.usage(
                    user_id=user_id,
                    amount=deducted,
                    description=f"Call usage: {minutes} minutes via {assistant_name}",
                    call_id=reference,
                    balance_before=change.balance_before,
                    metadata=metadata,
                )
            )
        except Exception:
            logger.exception(
                "Failed to log credit usage transaction",
                extra={"user_id": user_id, "assistant_id": assistant_id, "cost": cost},
            )
            await self._ledger.log_error(
                message="Call charged without a credit row",
                details={
                    **metadata,
                    "balance_before": change.balance_before,
                    "balance_after": change.balance_after,
                },
                user_id=user_id,
                correlation_id=reference,
            )
        else:
            await self._ledger.log_credit(credit, "Credits deducted for call usage")

        if (
            self._notifications is not None
            and change.balance_before > subscription.minimum_balance
            and change.balance_after <= subscription.minimum_balance
        ):
            await self._notifications.notify_low_balance(
                user_id, change.balance_after, subscription.minimum_balance
            )

    async def get_upgrade_options(self, user_id: str) -> List[UpgradeOption]:
        try:
            subscription = await self._db.get_active_subscription_document(user_id)
            if subscription is not None and subscription.get("plan_type") not in (
                None,
                PlanType.NONE.value,
            ):
                return []
            # Pay-as-you-go is the only plan sold
            return [
                UpgradeOption(
                    plan_type=PlanType.PAYG.value,
                    plan_name="Pay-as-you-go",
                    monthly_price=0.0,
                    minute_limit=UNLIMITED,
                    assistant_limit=UNLIMITED,
                )
            ]
        except Exception:
            logger.exception("Failed to get upgrade options", extra={"user_id": user_id})
            return []

    async def reset_billing_period(self, user_id: str) -> None:
        try:
            now = datetime.utcnow()
            subscription = await self._db.reset_billing_period(user_id, now, add_one_month(now))
            if subscription is None:
                return
            logger.info(
                "Billing period reset",
                extra={
                    "user_id": user_id,
                    "period_start": subscription.current_period_start.isoformat(),
                    "period_end": subscription.current_period_end.isoformat(),
                },
            )
        except Exception:
            logger.exception("Failed to reset billing period", extra={"user_id": user_id})
