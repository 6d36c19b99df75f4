"""
Mercado Pago Plan Setup Script

Creates the remote preapproval plan of every catalog plan once and stores
its id in the gateway_plans cache, so the first subscriber of a role does
not pay the plan-creation round trip.

Usage:
    python scripts/setup_mercadopago_plans.py [--dry-run] [--force]

Environment:
    MERCADOPAGO_ACCESS_TOKEN - Required
    MONGO_URL, DB_NAME - Required
"""
import os
import sys
import asyncio
import argparse
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import get_settings
from database import get_db_context
from services.mercadopago_client import MercadoPagoClient
from services.plan_catalog import plan_catalog
from services.subscription_store import GatewayPlanStore

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def setup_plans(db, gateway, dry_run: bool = False, force: bool = False) -> dict:
    """Create missing remote plans. Returns {plan_code: remote_plan_id or None}."""
    plan_store = GatewayPlanStore(db)
    results = {}
    for plan in plan_catalog.all_plans():
        cached = await plan_store.get_remote_plan_id(plan)
        if cached and not force:
            logger.info(f"{plan.code}: already configured ({cached})")
            results[plan.code] = cached
            continue

        if dry_run:
            logger.info(f"[DRY RUN] Would create plan {plan.code} ({plan.name}, {plan.monthly_amount} {plan.currency})")
            results[plan.code] = None
            continue

        remote_plan_id = await gateway.create_plan(plan, idempotency_key=f"plan-{plan.code}-{plan.monthly_amount}")
        await plan_store.save_remote_plan_id(plan, remote_plan_id)
        logger.info(f"{plan.code}: created {remote_plan_id}")
        results[plan.code] = remote_plan_id
    return results


async def main():
    parser = argparse.ArgumentParser(description="Create Mercado Pago plans for every billable role")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without making them")
    parser.add_argument("--force", action="store_true", help="Create new remote plans even when cached")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.mercadopago_access_token:
        logger.error("MERCADOPAGO_ACCESS_TOKEN is not set")
        sys.exit(1)

    gateway = MercadoPagoClient(
        access_token=settings.mercadopago_access_token,
        base_url=settings.mercadopago_api_base,
        timeout=settings.mercadopago_timeout_seconds,
        back_url=settings.mercadopago_back_url,
    )
    try:
        async with get_db_context() as db:
            await setup_plans(db, gateway, dry_run=args.dry_run, force=args.force)
    finally:
        await gateway.aclose()


if __name__ == "__main__":
    asyncio.run(main())
