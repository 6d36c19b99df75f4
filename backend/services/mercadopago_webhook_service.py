"""Mercado Pago Webhook Service - subscription notifications with idempotency.

Key Principles:
1. The notification body is only a signal: the subscription status is always
   re-fetched from the gateway by id.
2. Idempotency: each delivery is claimed in the webhook_events ledger before
   any record is touched, so duplicate "authorized" deliveries do not extend
   the paid period twice.
3. Only subscription notifications are handled; everything else is
   acknowledged and ignored.
"""
from datetime import datetime
from typing import Optional
import logging

from models import AuditAction, GatewaySubscription, WebhookNotification, WebhookOutcome
from services.billing_errors import InvalidNotificationError, SubscriptionNotFoundError
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

SUBSCRIPTION_NOTIFICATION_TYPES = frozenset({"subscription", "subscription_preapproval"})


def build_event_key(
    notification: WebhookNotification,
    subscription: GatewaySubscription,
    now: datetime,
) -> str:
    """Dedup key: gateway notification id when sent, else (subscription, status, change marker)."""
    if notification.id:
        return f"notification:{notification.id}"
    marker = subscription.last_modified or now.strftime("%Y-%m-%dT%H")
    return f"subscription:{subscription.subscription_id}:{subscription.status.lower()}:{marker}"


class MercadoPagoWebhookService:
    """Resolves gateway notifications to subscription records and applies transitions."""

    def __init__(self, lifecycle, gateway, store, ledger):
        self.lifecycle = lifecycle
        self.gateway = gateway
        self.store = store
        self.ledger = ledger

    async def handle(self, notification: WebhookNotification) -> WebhookOutcome:
        logger.info(
            "WEBHOOK_RECEIVED notification_id=%s type=%s action=%s data_id=%s",
            notification.id, notification.type, notification.action, notification.data.id,
        )

        if notification.type not in SUBSCRIPTION_NOTIFICATION_TYPES:
            logger.info(f"Ignoring notification type: {notification.type}")
            return WebhookOutcome(reason="ignored_type")

        if not notification.data.id:
            raise InvalidNotificationError(detail="Subscription notification without data.id")

        subscription = await self.gateway.get_subscription_status(notification.data.id)

        try:
            record = await self.store.find_by_subscription_id(subscription.subscription_id)
        except SubscriptionNotFoundError:
            logger.warning(
                "WEBHOOK_SUBSCRIPTION_NOT_FOUND subscription_id=%s status=%s - notification dropped",
                subscription.subscription_id, subscription.status,
            )
            raise

        event_key = build_event_key(notification, subscription, self.lifecycle.clock())
        claimed = await self.ledger.begin(event_key, subscription.subscription_id, subscription.status)
        if not claimed:
            logger.info(f"Webhook event {event_key} already processed - skipping")
            return WebhookOutcome(
                reason="duplicate",
                subscription_id=subscription.subscription_id,
                subscriber_id=record.subscriber_id,
                status=subscription.status,
            )

        try:
            updated = await self.lifecycle.apply_gateway_status(record, subscription)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_key=%s subscription_id=%s error=%s",
                event_key, subscription.subscription_id, e,
            )
            await self.ledger.mark_failed(event_key, str(e))
            await create_audit_log(
                action=AuditAction.WEBHOOK_FAILED,
                subscriber_id=record.subscriber_id,
                resource_type="webhook_event",
                resource_id=event_key,
                metadata={"subscription_id": subscription.subscription_id, "error": str(e)},
            )
            raise

        await self.ledger.mark_processed(event_key)
        logger.info(
            "WEBHOOK_PROCESSED_OK event_key=%s subscription_id=%s status=%s applied=%s",
            event_key, subscription.subscription_id, subscription.status, updated is not None,
        )
        return WebhookOutcome(
            applied=updated is not None,
            reason="applied" if updated is not None else "unknown_status",
            subscription_id=subscription.subscription_id,
            subscriber_id=record.subscriber_id,
            status=subscription.status,
        )
