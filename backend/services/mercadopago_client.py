"""Mercado Pago API client.

Thin async wrapper around the preapproval (subscription) endpoints:
- POST /preapproval_plan      create a monthly plan
- POST /v1/customers/cards    register a card from a front-end token
- POST /preapproval           create a subscription against a plan
- GET  /preapproval/{id}      authoritative subscription status

The client is constructed explicitly with its credentials and injected into
the services that need it. Errors are normalized to GatewayUnavailableError
(timeouts, transport errors, 5xx, 429) and GatewayRejectedError (other 4xx).
"""
import logging
from typing import Any, Dict, Optional

import httpx

from models import GatewaySubscription, PaymentMethod, PaymentMethodStatus, PaymentMethodType, PlanDefinition
from services.billing_errors import GatewayRejectedError, GatewayUnavailableError

logger = logging.getLogger(__name__)

MERCADOPAGO_API_BASE = "https://api.mercadopago.com"
DEFAULT_TIMEOUT_SECONDS = 10.0


class MercadoPagoClient:
    """Mercado Pago REST client (bearer-token authenticated)."""

    def __init__(
        self,
        access_token: str,
        base_url: str = MERCADOPAGO_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        back_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.back_url = back_url
        self._access_token = access_token
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self):
        await self._client.aclose()

    # =========================================================================
    # Request plumbing
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._access_token:
            raise GatewayUnavailableError(detail="MERCADOPAGO_ACCESS_TOKEN is not set")

        headers = {}
        if idempotency_key:
            headers["X-Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error("Mercado Pago timeout %s %s: %s", method, path, e)
            raise GatewayUnavailableError(detail=f"Timeout calling {method} {path}")
        except httpx.TransportError as e:
            logger.error("Mercado Pago transport error %s %s: %s", method, path, e)
            raise GatewayUnavailableError(detail=f"Transport error calling {method} {path}: {e}")

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(
                "Mercado Pago unavailable %s %s status=%s body=%s",
                method, path, response.status_code, response.text[:500],
            )
            raise GatewayUnavailableError(detail=f"Gateway returned {response.status_code}")

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(
                "Mercado Pago rejected %s %s status=%s message=%s",
                method, path, response.status_code, message,
            )
            raise GatewayRejectedError(
                detail=message,
                gateway_status=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            raise GatewayUnavailableError(detail=f"Invalid JSON from {method} {path}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(body, dict):
            return str(body.get("message") or body.get("error") or body)
        return str(body)

    # =========================================================================
    # Operations
    # =========================================================================

    async def create_plan(self, plan: PlanDefinition, idempotency_key: Optional[str] = None) -> str:
        """Create a monthly preapproval plan. Returns the remote plan id."""
        payload = {
            "reason": plan.name,
            "auto_recurring": {
                "frequency": plan.frequency,
                "frequency_type": plan.frequency_type,
                "transaction_amount": float(plan.monthly_amount),
                "currency_id": plan.currency,
            },
            "payment_methods_allowed": {
                "payment_types": [
                    {"id": PaymentMethodType.CREDIT_CARD.value},
                    {"id": PaymentMethodType.PIX.value},
                ],
            },
            "status": "active",
        }
        if self.back_url:
            payload["back_url"] = self.back_url

        data = await self._request("POST", "/preapproval_plan", json=payload, idempotency_key=idempotency_key)
        remote_plan_id = data.get("id")
        if not remote_plan_id:
            raise GatewayRejectedError(detail="Plan creation returned no id")
        logger.info("Mercado Pago plan created: %s (%s)", remote_plan_id, plan.code)
        return str(remote_plan_id)

    async def register_card_method(self, card_token: str, payer_email: str) -> PaymentMethod:
        data = await self._request(
            "POST",
            "/v1/customers/cards",
            json={"token": card_token, "email": payer_email},
        )
        method_id = data.get("id")
        if not method_id:
            raise GatewayRejectedError(detail="Card registration returned no id")
        issuer = data.get("issuer") or {}
        return PaymentMethod(
            id=str(method_id),
            name=(data.get("payment_method") or {}).get("name") or issuer.get("name") or "Cartão de crédito",
            type=PaymentMethodType.CREDIT_CARD,
            status=PaymentMethodStatus.ACTIVE,
        )

    async def create_subscription(
        self,
        remote_plan_id: str,
        payer_email: str,
        payment_method_id: str,
        idempotency_key: Optional[str] = None,
    ) -> GatewaySubscription:
        payload = {
            "preapproval_plan_id": remote_plan_id,
            "payer_email": payer_email,
            "payment_method_id": payment_method_id,
            "status": "authorized",
        }
        if self.back_url:
            payload["back_url"] = self.back_url

        data = await self._request("POST", "/preapproval", json=payload, idempotency_key=idempotency_key)
        return self._to_subscription(data)

    async def get_subscription_status(self, subscription_id: str) -> GatewaySubscription:
        data = await self._request("GET", f"/preapproval/{subscription_id}")
        return self._to_subscription(data)

    @staticmethod
    def _to_subscription(data: Dict[str, Any]) -> GatewaySubscription:
        if not data.get("id") or not data.get("status"):
            raise GatewayRejectedError(detail="Subscription response missing id or status")
        return GatewaySubscription(
            subscription_id=str(data["id"]),
            status=str(data["status"]),
            payer_email=data.get("payer_email"),
            plan_id=data.get("preapproval_plan_id"),
            next_payment_date=(data.get("auto_recurring") or {}).get("next_payment_date") or data.get("next_payment_date"),
            last_modified=data.get("last_modified"),
        )
