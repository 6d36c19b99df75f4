"""Subscription Lifecycle Manager - billing state machine.

States are derived from the stored record:

    NO_BILLING -> TRIAL -> SUBSCRIBING -> AUTHORIZED | PENDING
    AUTHORIZED -> AUTHORIZED (renewal) | CANCELLED | EXPIRED | PAUSED

Key Principles:
1. Expiry is lazy: is_active is recomputed from stored end dates on every
   read and write. There is no timer.
2. A record is written only after every gateway call of a transition has
   succeeded, and always as one full upsert.
3. The gateway status fetched by id is the only input to webhook transitions.
"""
from datetime import datetime, time, timedelta, timezone
from typing import Callable, Optional
import logging
import math

from models import (
    AuditAction,
    BillingPhase,
    BillingStatus,
    GatewaySubscription,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
    PlanDefinition,
    SubscribeRequest,
    SubscribeResult,
    SubscriberProfile,
    SubscriptionRecord,
    SubscriptionStatus,
)
from services.billing_errors import AlreadySubscribedError
from services.plan_catalog import PlanCatalog
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

BILLING_PERIOD = timedelta(days=30)

TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def end_of_day(value: datetime) -> datetime:
    """Last millisecond of value's calendar day, in UTC."""
    value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.combine(value.date(), time(23, 59, 59, 999000), tzinfo=timezone.utc)


def trial_end_for(created_at: datetime, trial_period_days: int) -> datetime:
    return end_of_day(created_at + timedelta(days=trial_period_days))


def in_trial(record: SubscriptionRecord, now: datetime) -> bool:
    return record.trial_ends_at is not None and now < record.trial_ends_at


def in_subscription(record: SubscriptionRecord, now: datetime) -> bool:
    """Paid window is open. A paused subscription keeps its dates but grants no access."""
    if record.status == SubscriptionStatus.PAUSED:
        return False
    return record.subscription_ends_at is not None and now < record.subscription_ends_at


def compute_is_active(record: SubscriptionRecord, now: datetime) -> bool:
    return in_trial(record, now) or in_subscription(record, now)


def parse_gateway_status(value: str) -> Optional[SubscriptionStatus]:
    try:
        status = SubscriptionStatus((value or "").lower())
    except ValueError:
        return None
    return None if status == SubscriptionStatus.NONE else status


def subscription_idempotency_key(
    subscriber_id: str,
    plan: PlanDefinition,
    payment_method: PaymentMethod,
    existing: Optional[SubscriptionRecord],
    now: datetime,
) -> str:
    """Stable across retries of one attempt; changes with a new payment method
    or once a previous subscription exists (resubscribe after a cutoff)."""
    previous = existing.subscription_id if existing and existing.subscription_id else "first"
    return f"sub-{subscriber_id}-{plan.code}-{payment_method.id}-{previous}-{now.date().isoformat()}"


def _audit_state(record: Optional[SubscriptionRecord]) -> Optional[dict]:
    return record.model_dump(mode="json") if record else None


class SubscriptionLifecycleManager:
    """Orchestrates trial initialization, subscription creation and webhook transitions."""

    def __init__(
        self,
        catalog: PlanCatalog,
        gateway,
        store,
        plan_store,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.store = store
        self.plan_store = plan_store
        self.clock = clock

    # =========================================================================
    # Reads
    # =========================================================================

    def refresh(self, record: SubscriptionRecord, now: Optional[datetime] = None) -> SubscriptionRecord:
        """Return the record with its cached is_active recomputed for now."""
        now = now or self.clock()
        is_active = compute_is_active(record, now)
        if is_active == record.is_active:
            return record
        return record.model_copy(update={"is_active": is_active})

    async def ensure_initialized(self, profile: SubscriberProfile) -> SubscriptionRecord:
        """NO_BILLING -> TRIAL on the first billing check. Idempotent."""
        now = self.clock()
        existing = await self.store.get(profile.subscriber_id)
        if existing is not None:
            refreshed = self.refresh(existing, now)
            if refreshed.is_active != existing.is_active:
                refreshed = refreshed.model_copy(update={"updated_at": now})
                await self.store.put(profile.subscriber_id, refreshed)
            return refreshed

        plan = self.catalog.plan_for(profile.role)
        trial_ends_at = trial_end_for(profile.created_at, plan.trial_period_days)
        record = SubscriptionRecord(
            subscriber_id=profile.subscriber_id,
            trial_ends_at=trial_ends_at,
            is_active=now < trial_ends_at,
            amount=plan.monthly_amount,
            role=plan.role,
            created_at=now,
            updated_at=now,
        )
        await self.store.put(profile.subscriber_id, record)
        logger.info(
            "TRIAL_INITIALIZED subscriber_id=%s trial_ends_at=%s is_active=%s",
            profile.subscriber_id, trial_ends_at.isoformat(), record.is_active,
        )
        await create_audit_log(
            action=AuditAction.TRIAL_INITIALIZED,
            subscriber_id=profile.subscriber_id,
            resource_type="subscription_record",
            after_state=_audit_state(record),
            metadata={"plan_code": plan.code, "trial_period_days": plan.trial_period_days},
        )
        return record

    async def get_billing_status(self, profile: SubscriberProfile) -> BillingStatus:
        record = await self.ensure_initialized(profile)
        now = self.clock()
        return self.describe(record, now)

    def describe(self, record: SubscriptionRecord, now: datetime) -> BillingStatus:
        # The paid window wins reporting precedence over an overlapping trial
        if in_subscription(record, now):
            phase, expires_at, plan_label = BillingPhase.SUBSCRIPTION, record.subscription_ends_at, "Plano Mensal"
        elif in_trial(record, now):
            phase, expires_at, plan_label = BillingPhase.TRIAL, record.trial_ends_at, "Período de Teste"
        else:
            phase = BillingPhase.EXPIRED
            expires_at = record.subscription_ends_at or record.trial_ends_at
            plan_label = "Plano Mensal" if record.subscription_id else "Período de Teste"

        days_left = 0
        if phase != BillingPhase.EXPIRED and expires_at is not None:
            days_left = math.ceil((expires_at - now).total_seconds() / 86400)

        return BillingStatus(
            subscriber_id=record.subscriber_id,
            is_active=compute_is_active(record, now),
            phase=phase,
            plan_label=plan_label,
            days_left=days_left,
            expires_at=expires_at,
            amount=record.amount,
            status=record.status,
            trial_ends_at=record.trial_ends_at,
            subscription_ends_at=record.subscription_ends_at,
            last_payment_at=record.last_payment_at,
            next_payment_at=record.next_payment_at,
        )

    # =========================================================================
    # Subscribe
    # =========================================================================

    async def subscribe(
        self,
        request: SubscribeRequest,
        profile: Optional[SubscriberProfile] = None,
    ) -> SubscribeResult:
        """TRIAL or expired -> SUBSCRIBING. Persists only after all gateway calls succeed.

        With a profile, the trial is initialized first so a subscriber who never
        checked their status cannot skip a running trial.
        """
        if profile is not None:
            existing = await self.ensure_initialized(profile)
        else:
            existing = await self.store.get(request.subscriber_id)
        now = self.clock()
        if existing is not None and compute_is_active(existing, now):
            logger.info("Subscribe rejected for %s: trial or subscription still active", request.subscriber_id)
            raise AlreadySubscribedError()

        plan = self.catalog.plan_for(request.role)
        remote_plan_id = await self._resolve_remote_plan(plan)
        payment_method = await self._register_payment_method(request, now)

        idempotency_key = subscription_idempotency_key(request.subscriber_id, plan, payment_method, existing, now)
        subscription = await self.gateway.create_subscription(
            remote_plan_id,
            request.email,
            payment_method.id,
            idempotency_key=idempotency_key,
        )

        subscription_ends_at = now + BILLING_PERIOD
        status = parse_gateway_status(subscription.status) or SubscriptionStatus.PENDING
        record = SubscriptionRecord(
            subscriber_id=request.subscriber_id,
            trial_ends_at=None,
            subscription_ends_at=subscription_ends_at,
            is_active=True,
            last_payment_at=now,
            next_payment_at=subscription_ends_at,
            amount=plan.monthly_amount,
            subscription_id=subscription.subscription_id,
            payment_method_id=payment_method.id,
            status=status,
            role=plan.role,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        await self.store.put(request.subscriber_id, record)

        logger.info(
            "SUBSCRIPTION_CREATED subscriber_id=%s subscription_id=%s status=%s plan=%s",
            request.subscriber_id, subscription.subscription_id, status.value, plan.code,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            subscriber_id=request.subscriber_id,
            resource_type="subscription_record",
            resource_id=subscription.subscription_id,
            before_state=_audit_state(existing),
            after_state=_audit_state(record),
            metadata={"plan_code": plan.code, "payment_method_type": payment_method.type.value},
        )
        return SubscribeResult(subscription=subscription, payment_method=payment_method, record=record)

    async def _resolve_remote_plan(self, plan: PlanDefinition) -> str:
        remote_plan_id = await self.plan_store.get_remote_plan_id(plan)
        if remote_plan_id:
            return remote_plan_id

        remote_plan_id = await self.gateway.create_plan(plan, idempotency_key=f"plan-{plan.code}-{plan.monthly_amount}")
        await self.plan_store.save_remote_plan_id(plan, remote_plan_id)
        await create_audit_log(
            action=AuditAction.GATEWAY_PLAN_CREATED,
            resource_type="gateway_plan",
            resource_id=remote_plan_id,
            metadata={"plan_code": plan.code, "amount": str(plan.monthly_amount)},
        )
        return remote_plan_id

    async def _register_payment_method(self, request: SubscribeRequest, now: datetime) -> PaymentMethod:
        descriptor = request.payment_method
        if descriptor.type == PaymentMethodType.CREDIT_CARD:
            return await self.gateway.register_card_method(descriptor.token, request.email)

        # Pix methods are created asynchronously by the gateway once paid
        return PaymentMethod(
            id=f"pix_{int(now.timestamp() * 1000)}",
            name="PIX",
            type=PaymentMethodType.PIX,
            status=PaymentMethodStatus.PENDING,
        )

    # =========================================================================
    # Webhook-driven transitions
    # =========================================================================

    def transition(
        self,
        record: SubscriptionRecord,
        status: SubscriptionStatus,
        now: datetime,
    ) -> Optional[SubscriptionRecord]:
        """Pure transition function. Returns None when the status has no transition."""
        if status == SubscriptionStatus.AUTHORIZED:
            subscription_ends_at = now + BILLING_PERIOD
            update = {
                "subscription_ends_at": subscription_ends_at,
                "is_active": True,
                "last_payment_at": now,
                "next_payment_at": subscription_ends_at,
                "status": status,
            }
        elif status in TERMINAL_STATUSES:
            update = {
                "is_active": False,
                "status": status,
                "subscription_ends_at": now,
            }
        elif status == SubscriptionStatus.PENDING:
            update = {"status": status}
        elif status == SubscriptionStatus.PAUSED:
            update = {"is_active": False, "status": status}
        else:
            return None

        return record.model_copy(update={**update, "updated_at": now})

    async def apply_gateway_status(
        self,
        record: SubscriptionRecord,
        subscription: GatewaySubscription,
    ) -> Optional[SubscriptionRecord]:
        """Dispatch an authoritative gateway status to its transition and persist it."""
        status = parse_gateway_status(subscription.status)
        if status is None:
            logger.info(
                "Ignoring unknown gateway status %r for subscription %s",
                subscription.status, subscription.subscription_id,
            )
            return None

        now = self.clock()
        updated = self.transition(record, status, now)
        if updated is None:
            return None

        await self.store.put(record.subscriber_id, updated)
        logger.info(
            "SUBSCRIPTION_STATUS_APPLIED subscriber_id=%s subscription_id=%s status=%s is_active=%s",
            record.subscriber_id, subscription.subscription_id, status.value, updated.is_active,
        )
        await create_audit_log(
            action=_AUDIT_ACTIONS[status],
            subscriber_id=record.subscriber_id,
            resource_type="subscription_record",
            resource_id=subscription.subscription_id,
            before_state=_audit_state(record),
            after_state=_audit_state(updated),
            metadata={"gateway_status": subscription.status},
        )
        return updated


_AUDIT_ACTIONS = {
    SubscriptionStatus.AUTHORIZED: AuditAction.SUBSCRIPTION_RENEWED,
    SubscriptionStatus.CANCELLED: AuditAction.SUBSCRIPTION_TERMINATED,
    SubscriptionStatus.EXPIRED: AuditAction.SUBSCRIPTION_TERMINATED,
    SubscriptionStatus.PENDING: AuditAction.SUBSCRIPTION_PENDING,
    SubscriptionStatus.PAUSED: AuditAction.SUBSCRIPTION_PAUSED,
}
