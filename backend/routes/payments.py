"""Payment Routes - Subscription creation and billing status.

Endpoints:
- POST /api/payment/subscription - Subscribe a subscriber to the plan of their role
- GET /api/payment/status/{subscriber_id} - Billing status (initializes the trial on first call)
- GET /api/payment/history/{subscriber_id} - Billing audit trail
- GET /api/payment/plans - Plan catalog
- GET /api/payment/public-key - Public key for the card form

Callers are authenticated upstream by the identity provider.
"""
from fastapi import APIRouter, Depends
import logging

from config import Settings, get_settings
from dependencies import BillingServices, get_billing
from models import SubscribeRequest
from services.billing_errors import GatewayUnavailableError
from utils.audit import get_audit_logs_for_subscriber

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.post("/subscription")
async def create_subscription(body: SubscribeRequest, billing: BillingServices = Depends(get_billing)):
    """
    Create a gateway subscription for the subscriber.

    Rejected with 409 while a trial or paid period is still running, including
    a trial that was never initialized through /status.
    Errors are mapped to {"error": message} by the billing exception handler.
    """
    profile = await billing.directory.get_profile(body.subscriber_id)
    result = await billing.lifecycle.subscribe(body, profile=profile)
    return {
        "success": True,
        "subscription": result.subscription.model_dump(mode="json"),
        "paymentMethod": result.payment_method.model_dump(mode="json"),
        "record": result.record.model_dump(mode="json"),
    }


@router.get("/status/{subscriber_id}")
async def get_payment_status(subscriber_id: str, billing: BillingServices = Depends(get_billing)):
    """Current billing status. Creates the trial record on the first check."""
    profile = await billing.directory.get_profile(subscriber_id)
    billing_status = await billing.lifecycle.get_billing_status(profile)
    return billing_status.model_dump(mode="json")


@router.get("/history/{subscriber_id}")
async def get_payment_history(subscriber_id: str, limit: int = 50):
    """Billing transitions recorded for the subscriber, newest first."""
    limit = max(1, min(limit, 200))
    entries = await get_audit_logs_for_subscriber(subscriber_id, limit=limit)
    return {"subscriber_id": subscriber_id, "entries": entries}


@router.get("/plans")
async def get_available_plans(billing: BillingServices = Depends(get_billing)):
    """All subscription plans by role."""
    return {
        "plans": [
            {
                "code": plan.code,
                "role": plan.role.value,
                "name": plan.name,
                "monthly_amount": str(plan.monthly_amount),
                "currency": plan.currency,
                "trial_period_days": plan.trial_period_days,
            }
            for plan in billing.catalog.all_plans()
        ],
    }


@router.get("/public-key")
async def get_public_key(settings: Settings = Depends(get_settings)):
    """Mercado Pago public key for the front-end card form (initMercadoPago)."""
    if not settings.mercadopago_public_key:
        raise GatewayUnavailableError(detail="MERCADOPAGO_PUBLIC_KEY is not set")
    return {"publicKey": settings.mercadopago_public_key}
