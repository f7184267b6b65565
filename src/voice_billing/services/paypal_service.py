from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

import httpx

from ..exceptions import ConfigurationError, PayPalError
from ..models.paypal import PayPalOneTimePayment, PayPalSubscriptionPlan, PayPalUsageCharge
from ..money import format_usd


logger = logging.getLogger(__name__)

# Refresh this long before PayPal says the token expires
TOKEN_REFRESH_MARGIN_SECONDS = 60


def _now_ms() -> int:
    return int(time.time() * 1000)


class PayPalService:
    """
    Thin async wrapper over the PayPal REST API.

    Credentials, base URL and the HTTP client are injected, and the OAuth
    token is cached on the instance, so separate instances never share
    tokens. Every failure is logged and raised as `PayPalError` carrying
    the HTTP status and response body; only webhook verification swallows
    errors and answers False.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        base_url: str,
        app_url: str = "",
        webhook_id: str = "",
        product_id: str = "SAAS_VOICE_ASSISTANT",
        brand_name: str = "AI Voice Assistant",
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._base_url = base_url.rstrip("/")
        self._app_url = app_url.rstrip("/")
        self._webhook_id = webhook_id
        self._product_id = product_id
        self._brand_name = brand_name
        self._http = http_client or httpx.AsyncClient(timeout=30.0)
        self._owns_client = http_client is None
        self._clock = clock

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get_access_token(self) -> str:
        if self._access_token and self._clock() < self._token_expires_at:
            return self._access_token

        if not self._client_id or not self._client_secret:
            raise ConfigurationError("PayPal credentials not configured")

        try:
            response = await self._http.post(
                f"{self._base_url}/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("Failed to get PayPal access token", exc_info=True)
            raise PayPalError(f"PayPal auth failed: {exc}") from exc

        if response.is_error:
            logger.error(
                "Failed to get PayPal access token",
                extra={"status_code": response.status_code},
            )
            raise PayPalError(
                f"PayPal auth failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=self._body(response),
            )

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expires_at = (
            self._clock() + float(data.get("expires_in", 0)) - TOKEN_REFRESH_MARGIN_SECONDS
        )
        return self._access_token

    @staticmethod
    def _body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        payload: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id

        try:
            response = await self._http.request(
                method, f"{self._base_url}{path}", json=payload, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.error(f"PayPal {action} failed", exc_info=True, extra=context or {})
            raise PayPalError(f"PayPal {action} failed: {exc}") from exc

        if response.is_error:
            logger.error(
                f"PayPal {action} failed",
                extra={**(context or {}), "status_code": response.status_code},
            )
            raise PayPalError(
                f"PayPal {action} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
                body=self._body(response),
            )

        if not response.content:
            return {}
        return response.json()

    async def create_subscription_plan(self, plan: PayPalSubscriptionPlan) -> str:
        body = {
            "product_id": self._product_id,
            "name": plan.name,
            "description": plan.description,
            "status": "ACTIVE",
            "billing_cycles": [
                {
                    "frequency": {
                        "interval_unit": plan.frequency.upper(),
                        "interval_count": 1,
                    },
                    "tenure_type": plan.tenure_type.upper(),
                    "sequence": plan.sequence,
                    "total_cycles": 0,  # infinite
                    "pricing_scheme": {
                        "fixed_price": {"value": plan.value, "currency_code": "USD"},
                    },
                }
            ],
            "payment_preferences": {
                "auto_bill_outstanding": True,
                "setup_fee_failure_action": "CONTINUE",
                "payment_failure_threshold": 3,
            },
        }
        result = await self._request(
            "POST",
            "/v1/billing/plans",
            "plan creation",
            payload=body,
            request_id=f"plan-{_now_ms()}",
            context={"plan_name": plan.name},
        )
        logger.info("PayPal subscription plan created", extra={"plan_id": result.get("id")})
        return result["id"]

    async def create_subscription(self, plan_id: str, user_id: str) -> Dict[str, Any]:
        start_time = datetime.now(timezone.utc) + timedelta(seconds=5)
        body = {
            "plan_id": plan_id,
            "start_time": start_time.isoformat().replace("+00:00", "Z"),
            "quantity": 1,
            "subscriber": {"name": {"given_name": "User", "surname": user_id[:10]}},
            "custom_id": user_id,
            "application_context": {
                "brand_name": self._brand_name,
                "locale": "en-US",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "SUBSCRIBE_NOW",
                "payment_method": {
                    "payer_selected": "PAYPAL",
                    "payee_preferred": "IMMEDIATE_PAYMENT_REQUIRED",
                },
                "return_url": f"{self._app_url}/dashboard?subscription=success",
                "cancel_url": f"{self._app_url}/pricing?subscription=cancelled",
            },
        }
        result = await self._request(
            "POST",
            "/v1/billing/subscriptions",
            "subscription creation",
            payload=body,
            request_id=f"sub-{user_id}-{_now_ms()}",
            context={"user_id": user_id, "plan_id": plan_id},
        )
        logger.info(
            "PayPal subscription created",
            extra={"user_id": user_id, "paypal_subscription_id": result.get("id")},
        )
        return result

    async def cancel_subscription(self, subscription_id: str, reason: str) -> None:
        await self._request(
            "POST",
            f"/v1/billing/subscriptions/{subscription_id}/cancel",
            "subscription cancellation",
            payload={"reason": reason},
            context={"paypal_subscription_id": subscription_id},
        )
        logger.info(
            "PayPal subscription cancelled",
            extra={"paypal_subscription_id": subscription_id, "reason": reason},
        )

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/v1/billing/subscriptions/{subscription_id}",
            "subscription fetch",
            context={"paypal_subscription_id": subscription_id},
        )

    async def create_one_time_payment(
        self, payment: PayPalOneTimePayment, user_id: str
    ) -> Dict[str, Any]:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": payment.currency,
                        "value": format_usd(payment.amount),
                    },
                    "description": payment.description,
                    "custom_id": user_id,
                }
            ],
            "application_context": {
                "brand_name": self._brand_name,
                "landing_page": "NO_PREFERENCE",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": f"{self._app_url}/dashboard?payment=success",
                "cancel_url": f"{self._app_url}/dashboard?payment=cancelled",
            },
        }
        result = await self._request(
            "POST",
            "/v2/checkout/orders",
            "payment creation",
            payload=body,
            request_id=f"payment-{user_id}-{_now_ms()}",
            context={"user_id": user_id, "amount": payment.amount},
        )
        logger.info(
            "PayPal one-time payment created",
            extra={"user_id": user_id, "order_id": result.get("id"), "amount": payment.amount},
        )
        return result

    async def create_usage_charge(self, charge: PayPalUsageCharge) -> Dict[str, Any]:
        result = await self.create_one_time_payment(
            PayPalOneTimePayment(amount=charge.amount, description=charge.description),
            charge.user_id,
        )
        logger.info(
            "Usage-based charge created",
            extra={
                "user_id": charge.user_id,
                "order_id": result.get("id"),
                "charge_type": charge.type,
            },
        )
        return result

    async def get_order_details(self, order_id: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/v2/checkout/orders/{order_id}",
            "order fetch",
            context={"order_id": order_id},
        )

    async def capture_payment(self, order_id: str) -> Dict[str, Any]:
        result = await self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            "payment capture",
            request_id=f"capture-{order_id}",
            context={"order_id": order_id},
        )
        logger.info(
            "PayPal payment captured",
            extra={"order_id": order_id, "capture_id": capture_id(result)},
        )
        return result

    async def verify_webhook_signature(
        self, body: Union[str, bytes], headers: Mapping[str, str]
    ) -> bool:
        try:
            if not self._webhook_id:
                logger.warning("PayPal webhook id not configured; rejecting webhook")
                return False
            lowered = {k.lower(): v for k, v in headers.items()}
            payload = {
                "auth_algo": lowered.get("paypal-auth-algo"),
                "cert_id": lowered.get("paypal-cert-id"),
                "transmission_id": lowered.get("paypal-transmission-id"),
                "transmission_sig": lowered.get("paypal-transmission-sig"),
                "transmission_time": lowered.get("paypal-transmission-time"),
                "webhook_id": self._webhook_id,
                "webhook_event": json.loads(body),
            }
            result = await self._request(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                "webhook verification",
                payload=payload,
            )
            return result.get("verification_status") == "SUCCESS"
        except Exception:
            logger.error("Failed to verify PayPal webhook", exc_info=True)
            return False


def capture_id(result: Mapping[str, Any]) -> Optional[str]:
    """First capture id in an order or capture response, if any."""
    for unit in result.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0].get("id")
    return None
