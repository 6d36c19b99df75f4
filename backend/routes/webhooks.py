"""Webhook Routes - Mercado Pago notifications.

POST /api/payment/webhook - Subscription notifications ({type, data: {id}})

Mercado Pago may also send the notification as query parameters
(?type=subscription_preapproval&data.id=...), so both shapes are accepted.
Processing failures answer 4xx/5xx so the gateway redelivers; duplicate
deliveries are absorbed by the webhook_events ledger.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
import json
import logging

from dependencies import BillingServices, get_billing
from models import WebhookNotification
from services.billing_errors import InvalidNotificationError

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _parse_notification(request: Request) -> WebhookNotification:
    raw = await request.body()
    body = {}
    if raw.strip():
        try:
            body = json.loads(raw)
        except ValueError:
            raise InvalidNotificationError(detail="Webhook body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidNotificationError(detail="Webhook body must be a JSON object")

    params = request.query_params
    if not body.get("type"):
        body["type"] = params.get("type") or params.get("topic")
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    if not data.get("id") and (params.get("data.id") or params.get("id")):
        data = {**data, "id": params.get("data.id") or params.get("id")}
    body["data"] = data

    try:
        return WebhookNotification(**body)
    except ValidationError as e:
        raise InvalidNotificationError(detail=str(e))


@router.post("/api/payment/webhook")
async def mercadopago_webhook(request: Request, billing: BillingServices = Depends(get_billing)):
    """
    Handle Mercado Pago subscription notifications.

    The subscription status is re-fetched from the gateway; the body only
    says which subscription changed.
    """
    notification = await _parse_notification(request)
    outcome = await billing.webhooks.handle(notification)

    if outcome.reason == "ignored_type":
        return {"success": True, "message": "Notificação ignorada"}
    return {"success": True, **outcome.model_dump(exclude_none=True)}
