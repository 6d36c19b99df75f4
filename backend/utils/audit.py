from database import database
from models import AuditLog, AuditAction
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """Calculate the differences between before and after states.

    Returns a dict with:
    - added: fields that exist in after but not in before
    - removed: fields that exist in before but not in after
    - changed: fields that exist in both but have different values
    """
    if not before and not after:
        return {}

    if not before:
        return {"added": after, "removed": {}, "changed": {}}

    if not after:
        return {"added": {}, "removed": before, "changed": {}}

    diff = {"added": {}, "removed": {}, "changed": {}}

    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)

        if key not in before:
            diff["added"][key] = after_val
        elif key not in after:
            diff["removed"][key] = before_val
        elif before_val != after_val:
            diff["changed"][key] = {
                "from": before_val,
                "to": after_val
            }

    # Remove empty categories
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    subscriber_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    auto_diff: bool = True
) -> str:
    """Create an audit log entry for a billing transition.

    Args:
        action: The audit action type
        subscriber_id: Subscriber whose billing state changed
        resource_type: Type of resource being modified (e.g., 'subscription_record')
        resource_id: ID of the specific resource (e.g., gateway subscription id)
        before_state: State before the change (JSON-safe dict)
        after_state: State after the change (JSON-safe dict)
        metadata: Additional metadata
        auto_diff: If True, automatically calculate and store diff
    """
    try:
        db = database.get_db()

        diff = None
        if auto_diff and before_state and after_state:
            diff = calculate_diff(before_state, after_state)

        enriched_metadata = metadata.copy() if metadata else {}
        if diff:
            enriched_metadata["diff"] = diff
            enriched_metadata["changes_count"] = sum(len(v) for v in diff.values())

        audit_log = AuditLog(
            action=action,
            subscriber_id=subscriber_id,
            resource_type=resource_type,
            resource_id=resource_id,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata if enriched_metadata else None,
        )

        doc = audit_log.model_dump()
        doc["action"] = action.value
        doc["timestamp"] = doc["timestamp"].isoformat() if isinstance(doc["timestamp"], datetime) else doc["timestamp"]

        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} subscriber={subscriber_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""

async def get_audit_logs_for_subscriber(
    subscriber_id: str,
    limit: int = 50
) -> List[Dict[str, Any]]:
    """Get the billing audit trail of a subscriber, newest first."""
    try:
        db = database.get_db()
        cursor = db.audit_logs.find(
            {"subscriber_id": subscriber_id},
            {"_id": 0}
        ).sort("timestamp", -1).limit(limit)

        return await cursor.to_list(length=limit)
    except Exception as e:
        logger.error(f"Failed to get audit logs for subscriber: {e}")
        return []
