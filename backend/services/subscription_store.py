"""Subscription persistence on MongoDB.

Collections:
- subscription_records  one document per subscriber (full upsert, last writer wins)
- gateway_plans         remote plan id per catalog plan, so plans are created once
- webhook_events        processed-once ledger for gateway notifications
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
import logging

from bson.decimal128 import Decimal128
from pymongo.errors import DuplicateKeyError, PyMongoError

from models import PlanDefinition, SubscriptionRecord, WebhookEventState
from services.billing_errors import RecordStoreError, SubscriptionNotFoundError

logger = logging.getLogger(__name__)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or not isinstance(value, datetime):
        return value
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def record_to_document(record: SubscriptionRecord) -> Dict[str, Any]:
    doc = record.model_dump(mode="python")
    doc["amount"] = Decimal128(record.amount)
    doc["status"] = record.status.value
    doc["role"] = record.role.value if record.role else None
    # Absent rather than null, so unsubscribed records stay out of the unique index
    for key in ("subscription_id", "payment_method_id"):
        if doc.get(key) is None:
            doc.pop(key, None)
    return doc


def document_to_record(doc: Dict[str, Any]) -> SubscriptionRecord:
    doc = {k: v for k, v in doc.items() if k != "_id"}
    amount = doc.get("amount")
    if isinstance(amount, Decimal128):
        doc["amount"] = amount.to_decimal()
    elif amount is not None and not isinstance(amount, Decimal):
        doc["amount"] = Decimal(str(amount))
    for key in ("trial_ends_at", "subscription_ends_at", "last_payment_at", "next_payment_at", "created_at", "updated_at"):
        if key in doc:
            doc[key] = _ensure_utc(doc[key])
    return SubscriptionRecord(**doc)


class SubscriptionRecordStore:
    """Record store contract consumed by the lifecycle manager."""

    def __init__(self, db):
        self.collection = db.subscription_records

    async def get(self, subscriber_id: str) -> Optional[SubscriptionRecord]:
        try:
            doc = await self.collection.find_one({"subscriber_id": subscriber_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Failed to read subscription record for {subscriber_id}: {e}")
            raise RecordStoreError(detail=str(e))
        return document_to_record(doc) if doc else None

    async def put(self, subscriber_id: str, record: SubscriptionRecord) -> None:
        doc = record_to_document(record)
        doc["subscriber_id"] = subscriber_id
        try:
            await self.collection.replace_one({"subscriber_id": subscriber_id}, doc, upsert=True)
        except PyMongoError as e:
            logger.error(f"Failed to write subscription record for {subscriber_id}: {e}")
            raise RecordStoreError(detail=str(e))

    async def find_by_subscription_id(self, subscription_id: str) -> SubscriptionRecord:
        try:
            doc = await self.collection.find_one({"subscription_id": subscription_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error(f"Failed to look up subscription {subscription_id}: {e}")
            raise RecordStoreError(detail=str(e))
        if not doc:
            raise SubscriptionNotFoundError(detail=f"No record for subscription_id={subscription_id}")
        return document_to_record(doc)


class GatewayPlanStore:
    """Caches the remote plan id created for each catalog plan."""

    def __init__(self, db):
        self.collection = db.gateway_plans

    async def get_remote_plan_id(self, plan: PlanDefinition) -> Optional[str]:
        try:
            doc = await self.collection.find_one({"plan_code": plan.code}, {"_id": 0})
        except PyMongoError as e:
            raise RecordStoreError(detail=str(e))
        if not doc:
            return None
        # A price change invalidates the cached remote plan
        cached_amount = doc.get("amount")
        if isinstance(cached_amount, Decimal128):
            cached_amount = cached_amount.to_decimal()
        if cached_amount is not None and Decimal(str(cached_amount)) != plan.monthly_amount:
            logger.info(f"Cached gateway plan for {plan.code} has a stale amount - ignoring")
            return None
        return doc.get("remote_plan_id")

    async def save_remote_plan_id(self, plan: PlanDefinition, remote_plan_id: str) -> None:
        try:
            await self.collection.update_one(
                {"plan_code": plan.code},
                {
                    "$set": {
                        "plan_code": plan.code,
                        "role": plan.role.value,
                        "remote_plan_id": remote_plan_id,
                        "amount": Decimal128(plan.monthly_amount),
                        "created_at": datetime.now(timezone.utc),
                    }
                },
                upsert=True,
            )
        except PyMongoError as e:
            raise RecordStoreError(detail=str(e))


class WebhookEventLedger:
    """Processed-once guard for webhook deliveries (unique event_key).

    A PROCESSING entry younger than PROCESSING_STALE_AFTER belongs to an
    in-flight delivery and is not claimed again; older ones are treated as
    interrupted and may be retried, like FAILED entries.
    """

    PROCESSING_STALE_AFTER = timedelta(minutes=5)

    def __init__(self, db, clock: Callable[[], datetime] = None):
        self.collection = db.webhook_events
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def begin(self, event_key: str, subscription_id: str, status: str) -> bool:
        """Claim an event for processing. Returns False if it was handled or is in flight."""
        now = self.clock()
        try:
            existing = await self.collection.find_one({"event_key": event_key}, {"_id": 0})
            if existing and existing.get("state") == WebhookEventState.PROCESSED.value:
                return False

            if existing and existing.get("state") == WebhookEventState.PROCESSING.value:
                claimed_at = _ensure_utc(existing.get("claimed_at") or existing.get("created_at"))
                if claimed_at is not None and now - claimed_at < self.PROCESSING_STALE_AFTER:
                    logger.info(f"Webhook event {event_key} is already being processed - skipping")
                    return False

            record = {
                "event_key": event_key,
                "subscription_id": subscription_id,
                "status": status,
                "state": WebhookEventState.PROCESSING.value,
                "claimed_at": now,
                "processed_at": None,
                "error": None,
            }
            if existing:
                # Previous attempt failed or was interrupted - retry it.
                # Matching on the observed claim makes the takeover single-winner.
                result = await self.collection.update_one(
                    {
                        "event_key": event_key,
                        "state": existing.get("state"),
                        "claimed_at": existing.get("claimed_at"),
                    },
                    {"$set": record},
                )
                return result.modified_count == 1
            try:
                await self.collection.insert_one({**record, "created_at": now})
            except DuplicateKeyError:
                logger.info(f"Webhook event {event_key} duplicate insert (race) - skipping")
                return False
            return True
        except PyMongoError as e:
            raise RecordStoreError(detail=str(e))

    async def mark_processed(self, event_key: str) -> None:
        await self._set_state(event_key, WebhookEventState.PROCESSED)

    async def mark_failed(self, event_key: str, error: str) -> None:
        await self._set_state(event_key, WebhookEventState.FAILED, error=error)

    async def _set_state(self, event_key: str, state: WebhookEventState, error: Optional[str] = None) -> None:
        try:
            await self.collection.update_one(
                {"event_key": event_key},
                {
                    "$set": {
                        "state": state.value,
                        "processed_at": self.clock(),
                        "error": error,
                    }
                },
            )
        except PyMongoError as e:
            raise RecordStoreError(detail=str(e))
