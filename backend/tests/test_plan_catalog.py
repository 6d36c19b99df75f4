"""Plan catalog: role -> monthly plan, administrators never billed."""
from decimal import Decimal

import pytest

from models import SubscriberRole
from services.billing_errors import InvalidRoleError
from services.plan_catalog import PlanCatalog, plan_catalog


def test_sales_executive_plan():
    plan = plan_catalog.plan_for(SubscriberRole.SALES_EXECUTIVE)
    assert plan.name == "Plano Executivo"
    assert plan.monthly_amount == Decimal("15.00")
    assert plan.trial_period_days == 7
    assert plan.currency == "BRL"


def test_focus_unit_plan_from_wire_string():
    plan = plan_catalog.plan_for("Foco da Unidade")
    assert plan.role == SubscriberRole.FOCUS_UNIT
    assert plan.monthly_amount == Decimal("20.00")


def test_role_accepted_by_member_name():
    assert plan_catalog.plan_for("sales_executive").code == "PLAN_SALES_EXECUTIVE"


def test_administrator_is_not_billable():
    with pytest.raises(InvalidRoleError) as exc:
        plan_catalog.plan_for(SubscriberRole.ADMINISTRATOR)
    assert exc.value.status_code == 400
    assert "Administradores" in exc.value.message


def test_unknown_role_rejected():
    with pytest.raises(InvalidRoleError):
        plan_catalog.plan_for("Gerente Regional")


def test_role_without_definition_rejected():
    catalog = PlanCatalog(definitions={})
    with pytest.raises(InvalidRoleError):
        catalog.plan_for(SubscriberRole.SALES_EXECUTIVE)


def test_all_plans_lists_only_billable_roles():
    roles = {plan.role for plan in plan_catalog.all_plans()}
    assert roles == {SubscriberRole.SALES_EXECUTIVE, SubscriberRole.FOCUS_UNIT}
