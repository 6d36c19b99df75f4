"""Plan Catalog - Single source of truth for subscription pricing.

Maps each billable subscriber role to a fixed monthly plan:
- Executivo de Vendas: Plano Executivo (R$15.00/month, 7-day trial)
- Foco da Unidade: Plano Foco da Unidade (R$20.00/month, 7-day trial)

Administrators are never billed.
"""
from decimal import Decimal
from typing import Dict, List, Union
import logging

from models import PlanDefinition, SubscriberRole
from services.billing_errors import InvalidRoleError

logger = logging.getLogger(__name__)


PLAN_DEFINITIONS: Dict[SubscriberRole, PlanDefinition] = {
    SubscriberRole.SALES_EXECUTIVE: PlanDefinition(
        code="PLAN_SALES_EXECUTIVE",
        role=SubscriberRole.SALES_EXECUTIVE,
        name="Plano Executivo",
        monthly_amount=Decimal("15.00"),
        trial_period_days=7,
    ),
    SubscriberRole.FOCUS_UNIT: PlanDefinition(
        code="PLAN_FOCUS_UNIT",
        role=SubscriberRole.FOCUS_UNIT,
        name="Plano Foco da Unidade",
        monthly_amount=Decimal("20.00"),
        trial_period_days=7,
    ),
}

NON_BILLABLE_ROLES = frozenset({SubscriberRole.ADMINISTRATOR})


class PlanCatalog:
    """Pure lookup over PLAN_DEFINITIONS."""

    def __init__(self, definitions: Dict[SubscriberRole, PlanDefinition] = None):
        self._definitions = dict(definitions if definitions is not None else PLAN_DEFINITIONS)

    @staticmethod
    def resolve_role(role: Union[SubscriberRole, str]) -> SubscriberRole:
        if isinstance(role, SubscriberRole):
            return role
        try:
            return SubscriberRole(role)
        except ValueError:
            # Accept enum member names too (SALES_EXECUTIVE)
            try:
                return SubscriberRole[str(role).upper()]
            except KeyError:
                raise InvalidRoleError(detail=f"Unknown role: {role!r}")

    def plan_for(self, role: Union[SubscriberRole, str]) -> PlanDefinition:
        resolved = self.resolve_role(role)
        if resolved in NON_BILLABLE_ROLES:
            raise InvalidRoleError(
                "Administradores não precisam de assinatura",
                detail=f"Role {resolved.value} is not billable",
            )
        plan = self._definitions.get(resolved)
        if plan is None:
            raise InvalidRoleError(detail=f"No plan configured for role {resolved.value}")
        return plan

    def all_plans(self) -> List[PlanDefinition]:
        return list(self._definitions.values())


plan_catalog = PlanCatalog()
