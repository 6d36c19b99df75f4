"""Subscriber profile lookup against the external user-account store.

The `users` collection is owned by the account service; this module only
reads uid, email, role and account creation time from it.
"""
from datetime import timezone
import logging

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from models import SubscriberProfile
from services.billing_errors import InvalidRoleError, RecordStoreError, SubscriberNotFoundError

logger = logging.getLogger(__name__)


class SubscriberDirectory:
    def __init__(self, db):
        self.collection = db.users

    async def get_profile(self, subscriber_id: str) -> SubscriberProfile:
        try:
            doc = await self.collection.find_one(
                {"uid": subscriber_id},
                {"_id": 0, "uid": 1, "email": 1, "role": 1, "createdAt": 1},
            )
        except PyMongoError as e:
            logger.error(f"Failed to read subscriber profile {subscriber_id}: {e}")
            raise RecordStoreError(detail=str(e))

        if not doc:
            raise SubscriberNotFoundError(detail=f"No user with uid={subscriber_id}")

        try:
            profile = SubscriberProfile(**doc)
        except ValidationError as e:
            if any(err.get("loc") == ("role",) for err in e.errors()):
                raise InvalidRoleError(detail=f"Unrecognized role for {subscriber_id}: {doc.get('role')!r}")
            raise SubscriberNotFoundError(detail=f"Incomplete profile for {subscriber_id}: {e}")

        if profile.created_at.tzinfo is None:
            profile = profile.model_copy(update={"created_at": profile.created_at.replace(tzinfo=timezone.utc)})
        return profile
