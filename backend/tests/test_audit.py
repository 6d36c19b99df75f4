"""Audit trail helpers."""
from unittest.mock import MagicMock, patch

import pytest

from models import AuditAction
from utils import audit
from utils.audit import calculate_diff


def test_diff_reports_changed_fields_only():
    before = {"status": "authorized", "is_active": True, "amount": "15.00"}
    after = {"status": "cancelled", "is_active": False, "amount": "15.00"}

    diff = calculate_diff(before, after)

    assert diff == {
        "changed": {
            "status": {"from": "authorized", "to": "cancelled"},
            "is_active": {"from": True, "to": False},
        }
    }


def test_diff_without_before_state():
    assert calculate_diff({}, {"status": "pending"}) == {
        "added": {"status": "pending"}, "removed": {}, "changed": {},
    }


@pytest.mark.asyncio
async def test_audit_failure_never_raises():
    fake_database = MagicMock()
    fake_database.get_db.side_effect = RuntimeError("Database not connected")

    with patch.object(audit, "database", fake_database):
        result = await audit.create_audit_log(
            action=AuditAction.SUBSCRIPTION_RENEWED,
            subscriber_id="exec-1",
        )

    assert result == ""
