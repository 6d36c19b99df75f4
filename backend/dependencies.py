"""Billing service wiring.

Everything the routes need is built once at startup from the database handle
and settings, stored on app.state, and handed to routes via Depends.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from config import Settings
from services.mercadopago_client import MercadoPagoClient
from services.mercadopago_webhook_service import MercadoPagoWebhookService
from services.plan_catalog import PlanCatalog, plan_catalog
from services.subscriber_directory import SubscriberDirectory
from services.subscription_lifecycle import SubscriptionLifecycleManager, utcnow
from services.subscription_store import GatewayPlanStore, SubscriptionRecordStore, WebhookEventLedger


@dataclass
class BillingServices:
    catalog: PlanCatalog
    gateway: MercadoPagoClient
    store: SubscriptionRecordStore
    directory: SubscriberDirectory
    lifecycle: SubscriptionLifecycleManager
    webhooks: MercadoPagoWebhookService

    async def aclose(self):
        await self.gateway.aclose()


def build_billing_services(
    db,
    settings: Settings,
    gateway: Optional[MercadoPagoClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> BillingServices:
    gateway = gateway or MercadoPagoClient(
        access_token=settings.mercadopago_access_token,
        base_url=settings.mercadopago_api_base,
        timeout=settings.mercadopago_timeout_seconds,
        back_url=settings.mercadopago_back_url,
    )
    store = SubscriptionRecordStore(db)
    lifecycle = SubscriptionLifecycleManager(
        catalog=plan_catalog,
        gateway=gateway,
        store=store,
        plan_store=GatewayPlanStore(db),
        clock=clock,
    )
    return BillingServices(
        catalog=plan_catalog,
        gateway=gateway,
        store=store,
        directory=SubscriberDirectory(db),
        lifecycle=lifecycle,
        webhooks=MercadoPagoWebhookService(
            lifecycle=lifecycle,
            gateway=gateway,
            store=store,
            ledger=WebhookEventLedger(db, clock=clock),
        ),
    )


def get_billing(request: Request) -> BillingServices:
    return request.app.state.billing
