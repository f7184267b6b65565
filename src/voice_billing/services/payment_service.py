from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..db.base import BaseDBManager
from ..exceptions import PayPalError, ValidationError
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import CaptureOrderResponse, CreateOrderResponse
from ..models.pending import PendingTransaction, TopupPlanType
from ..models.paypal import PayPalOneTimePayment
from ..money import format_usd, money
from ..policy import PlanType
from .credit_service import CreditService
from .notification_service import NotificationService
from .paypal_service import PayPalService, capture_id
from .pricing_service import PricingService
from .subscription_service import SubscriptionService


logger = logging.getLogger(__name__)

ORDER_ALREADY_CAPTURED = "ORDER_ALREADY_CAPTURED"


class PaymentService:
    """
    PayPal top-up flow: create an order, then capture it into credits.

    The amount credited always comes from the stored pending transaction,
    never from the client. Capturing is idempotent per order id.
    """

    def __init__(
        self,
        db: BaseDBManager,
        paypal: PayPalService,
        pricing: PricingService,
        credits: CreditService,
        subscriptions: SubscriptionService,
        ledger: LedgerLogger,
        notifications: Optional[NotificationService] = None,
    ) -> None:
        self._db = db
        self._paypal = paypal
        self._pricing = pricing
        self._credits = credits
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._notifications = notifications

    async def create_topup_order(
        self,
        user_id: str,
        amount: float,
        plan_type: str = TopupPlanType.CREDIT_TOPUP.value,
        description: Optional[str] = None,
    ) -> CreateOrderResponse:
        try:
            topup_type = TopupPlanType(plan_type)
        except ValueError:
            raise ValidationError(f"Unknown plan type: {plan_type}") from None

        pricing = await self._pricing.get_pricing()
        minimum = (
            pricing.initial_payg_charge
            if topup_type == TopupPlanType.PAYG
            else pricing.minimum_topup_amount
        )
        if amount < minimum:
            raise ValidationError(f"Minimum charge is ${format_usd(minimum)}")

        amount = money(amount)
        description = description or f"Credit top-up: ${format_usd(amount)}"
        order = await self._paypal.create_one_time_payment(
            PayPalOneTimePayment(amount=amount, description=description), user_id
        )

        await self._db.add_pending_transaction(
            PendingTransaction(
                user_id=user_id,
                order_id=order["id"],
                amount=amount,
                plan_type=topup_type,
                description=description,
            )
        )
        logger.info(
            "PayPal order created for credit top-up",
            extra={"user_id": user_id, "order_id": order["id"], "amount": amount},
        )

        approve_url = next(
            (link.get("href") for link in order.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        return CreateOrderResponse(order_id=order["id"], approve_url=approve_url)

    async def _capture(self, user_id: str, order_id: str) -> Dict[str, Any]:
        try:
            result = await self._paypal.capture_payment(order_id)
        except PayPalError as exc:
            if not (exc.has_issue(ORDER_ALREADY_CAPTURED) or ORDER_ALREADY_CAPTURED in str(exc)):
                if self._notifications is not None:
                    await self._notifications.notify_payment_failed(user_id, order_id, str(exc))
                raise
            details = await self._paypal.get_order_details(order_id)
            if details.get("status") != "COMPLETED":
                raise PayPalError(
                    "Payment verification failed", status_code=exc.status_code, body=details
                ) from exc
            logger.info(
                "Order was already captured, using existing details",
                extra={"user_id": user_id, "order_id": order_id},
            )
            return details

        if result.get("status") != "COMPLETED":
            raise PayPalError("Payment capture failed", body=result)
        return result

    async def capture_topup_order(self, user_id: str, order_id: str) -> CaptureOrderResponse:
        existing = await self._db.find_credit_by_reference(order_id)
        if existing is not None:
            logger.info(
                "Duplicate payment capture prevented",
                extra={"user_id": user_id, "order_id": order_id},
            )
            return CaptureOrderResponse(
                success=True,
                message="Credits already added to your account",
                credit_balance=await self._credits.get_balance(user_id),
                already_processed=True,
            )

        pending = await self._db.get_pending_transaction(order_id, user_id)
        if pending is None:
            raise ValidationError("Pending transaction not found or already processed")

        result = await self._capture(user_id, order_id)

        claimed = await self._db.complete_pending_transaction(order_id, user_id)
        if claimed is None:
            # A concurrent capture of the same order got here first
            return CaptureOrderResponse(
                success=True,
                message="Credits already added to your account",
                credit_balance=await self._credits.get_balance(user_id),
                already_processed=True,
            )

        captured_id = capture_id(result)
        try:
            active = await self._subscriptions.get_active_subscription(user_id)
            if (
                claimed.plan_type == TopupPlanType.PAYG.value
                or active is None
                or active.plan_type == PlanType.TRIAL
            ):
                await self._subscriptions.activate_payg(user_id)

            credit = await self._credits.add_credits(
                user_id=user_id,
                amount=claimed.amount,
                description=claimed.description,
                reference=order_id,
                metadata={"capture_id": captured_id, "plan_type": claimed.plan_type},
            )
        except Exception:
            # PayPal already holds the money; a retry re-verifies the order and credits it
            await self._db.reopen_pending_transaction(order_id, user_id)
            await self._ledger.log_error(
                message="Captured payment could not be credited",
                details={"order_id": order_id, "amount": claimed.amount, "capture_id": captured_id},
                user_id=user_id,
                correlation_id=order_id,
            )
            raise

        if claimed.plan_type == TopupPlanType.PAYG.value:
            message = (
                f"Pay-as-you-go activated! ${format_usd(credit.balance_after)} "
                "available for assistants and calls."
            )
        else:
            message = f"${format_usd(claimed.amount)} credits added to your account"

        logger.info(
            "Credits added from PayPal capture",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "amount": claimed.amount,
                "balance_after": credit.balance_after,
            },
        )
        return CaptureOrderResponse(
            success=True,
            message=message,
            credit_balance=credit.balance_after,
            capture_id=captured_id,
        )

    async def handle_webhook_event(self, event: Dict[str, Any]) -> None:
        """Apply a verified PayPal webhook event. Unknown types are only logged."""
        event_type = event.get("event_type")
        resource = event.get("resource") or {}
        user_id = resource.get("custom_id")

        if event_type in ("BILLING.SUBSCRIPTION.CANCELLED", "BILLING.SUBSCRIPTION.SUSPENDED"):
            if not user_id:
                logger.warning(
                    "Subscription webhook without custom_id", extra={"event_type": event_type}
                )
                return
            await self._subscriptions.retire_subscription(user_id, reason=event_type)
            return

        logger.info(
            "PayPal webhook received",
            extra={"event_type": event_type, "resource_id": resource.get("id")},
        )
