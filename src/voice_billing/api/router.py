from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from ..cache.memory import InMemoryAsyncCache
from ..config import Settings, settings
from ..db.base import BaseDBManager
from ..db.mongo import MongoDBManager
from ..exceptions import (
    ConfigurationError,
    InsufficientCreditsError,
    NotFoundError,
    PayPalError,
    ServiceError,
    ValidationError,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.api_models import (
    CallCompletedRequest,
    CaptureOrderResponse,
    CreateOrderRequest,
    CreateOrderResponse,
    CreditBalanceResponse,
    CreditHistoryItem,
    CreditHistoryResponse,
    ResolvedPhoneNumber,
    UpgradeOption,
    UsageSummary,
    ValidationResult,
)
from ..notifications.queue import InMemoryNotificationQueue
from ..services.credit_service import CreditService
from ..services.notification_service import NotificationService
from ..services.payment_service import PaymentService
from ..services.paypal_service import PayPalService
from ..services.phone_provider_resolver import (
    DefaultPhoneProviderResolver,
    get_no_phone_provider_error_message,
)
from ..services.pricing_service import PricingService
from ..services.subscription_service import SubscriptionService
from ..services.usage_validator import UsageValidator


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@dataclass
class BillingServices:
    db: BaseDBManager
    pricing: PricingService
    validator: UsageValidator
    credits: CreditService
    subscriptions: SubscriptionService
    payments: PaymentService
    paypal: PayPalService
    phone_resolver: DefaultPhoneProviderResolver

    @classmethod
    def build(
        cls,
        db: BaseDBManager,
        config: Settings,
        paypal_http_client: Optional[httpx.AsyncClient] = None,
    ) -> "BillingServices":
        ledger = LedgerLogger(db=db, file_path=config.LEDGER_LOG_PATH)
        pricing = PricingService(
            db=db,
            cache=InMemoryAsyncCache(),
            cache_ttl_seconds=config.PRICING_CACHE_TTL_SECONDS,
        )
        notifications = (
            NotificationService(db=db, queue=InMemoryNotificationQueue())
            if config.LOW_BALANCE_NOTIFICATIONS
            else None
        )
        paypal = PayPalService(
            client_id=config.PAYPAL_CLIENT_ID,
            client_secret=config.PAYPAL_CLIENT_SECRET,
            base_url=config.paypal_base_url,
            app_url=config.APP_URL,
            webhook_id=config.PAYPAL_WEBHOOK_ID,
            product_id=config.PAYPAL_PRODUCT_ID,
            brand_name=config.PAYPAL_BRAND_NAME,
            http_client=paypal_http_client,
        )
        credits = CreditService(db=db, ledger=ledger, pricing=pricing)
        subscriptions = SubscriptionService(db=db, ledger=ledger)
        return cls(
            db=db,
            pricing=pricing,
            validator=UsageValidator(
                db=db, pricing=pricing, ledger=ledger, notifications=notifications
            ),
            credits=credits,
            subscriptions=subscriptions,
            payments=PaymentService(
                db=db,
                paypal=paypal,
                pricing=pricing,
                credits=credits,
                subscriptions=subscriptions,
                ledger=ledger,
                notifications=notifications,
            ),
            paypal=paypal,
            phone_resolver=DefaultPhoneProviderResolver(
                db=db,
                default_us_vapi_phone_number_id=config.DEFAULT_US_VAPI_PHONE_NUMBER_ID,
            ),
        )


_services: Optional[BillingServices] = None


def get_services() -> BillingServices:
    """Process-wide services, built from `settings` on first use."""
    global _services
    if _services is None:
        db = MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
        _services = BillingServices.build(db, settings)
    return _services


def current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    # Authentication happens upstream; the gateway forwards the user id
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user id")
    return x_user_id


_STATUS_BY_ERROR = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
    PayPalError: status.HTTP_502_BAD_GATEWAY,
}


def _http_error(exc: ServiceError) -> HTTPException:
    code = next(
        (code for error_cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=code, detail={"error": exc.message, "code": exc.code})


@router.get("/usage", response_model=UsageSummary)
async def get_usage(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> UsageSummary:
    return await services.validator.get_current_usage(user_id)


@router.get("/can-create-assistant", response_model=ValidationResult)
async def can_create_assistant(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> ValidationResult:
    return await services.validator.can_create_assistant(user_id)


@router.get("/can-make-call", response_model=ValidationResult)
async def can_make_call(
    estimated_minutes: int = Query(1, ge=1),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> ValidationResult:
    return await services.validator.can_make_call(user_id, estimated_minutes)


@router.get("/upgrade-options", response_model=List[UpgradeOption])
async def upgrade_options(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> List[UpgradeOption]:
    return await services.validator.get_upgrade_options(user_id)


@router.get("/credits", response_model=CreditHistoryResponse)
async def credit_history(
    limit: int = Query(50, ge=1, le=500),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> CreditHistoryResponse:
    rows = await services.credits.get_credit_history(user_id, limit=limit)
    return CreditHistoryResponse(
        user_id=user_id,
        items=[CreditHistoryItem.model_validate(row.model_dump()) for row in rows],
    )


@router.get("/credits/balance", response_model=CreditBalanceResponse)
async def credit_balance(
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> CreditBalanceResponse:
    subscription = await services.subscriptions.get_active_subscription(user_id)
    if subscription is None:
        return CreditBalanceResponse(user_id=user_id, credit_balance=0.0, needs_topup=True)
    return CreditBalanceResponse(
        user_id=user_id,
        credit_balance=subscription.credit_balance,
        needs_topup=subscription.needs_topup(),
    )


@router.post("/paypal/orders", response_model=CreateOrderResponse)
async def create_order(
    payload: CreateOrderRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> CreateOrderResponse:
    try:
        return await services.payments.create_topup_order(
            user_id=user_id,
            amount=payload.amount,
            plan_type=payload.plan_type,
            description=payload.description,
        )
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/paypal/orders/{order_id}/capture", response_model=CaptureOrderResponse)
async def capture_order(
    order_id: str,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> CaptureOrderResponse:
    try:
        return await services.payments.capture_topup_order(user_id, order_id)
    except ServiceError as exc:
        raise _http_error(exc) from exc


@router.post("/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    services: BillingServices = Depends(get_services),
) -> Dict[str, bool]:
    body = await request.body()
    if not await services.paypal.verify_webhook_signature(body, request.headers):
        logger.warning(
            "Rejected PayPal webhook",
            extra={"transmission_id": request.headers.get("paypal-transmission-id")},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid webhook signature"
        )
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook processing failed"
        ) from exc
    await services.payments.handle_webhook_event(event)
    return {"received": True}


@router.post("/calls/completed", status_code=status.HTTP_202_ACCEPTED)
async def call_completed(
    payload: CallCompletedRequest,
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> Dict[str, bool]:
    # Calls shorter than a second never connected
    if payload.duration_seconds < 1:
        return {"tracked": False}
    await services.validator.track_call_usage(
        user_id=user_id,
        assistant_id=payload.assistant_id,
        assistant_name=payload.assistant_name,
        duration_seconds=payload.duration_seconds,
        call_id=payload.call_id,
    )
    return {"tracked": True}


@router.get("/phone-number", response_model=ResolvedPhoneNumber)
async def resolve_phone_number(
    target: Optional[str] = Query(None, description="E.164 number being called."),
    user_id: str = Depends(current_user_id),
    services: BillingServices = Depends(get_services),
) -> ResolvedPhoneNumber:
    resolved = await services.phone_resolver.get_phone_provider_or_default(user_id, target)
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=get_no_phone_provider_error_message(target),
        )
    return resolved
