#!/usr/bin/env python3
"""
Seed the subscription plan catalogue.

Creates a Stripe product and monthly price for each plan and upserts the
matching subscription_plans row (keyed by plan_name). Re-running reuses the
existing Stripe product/price ids stored in the database.

Usage:
    # Create products/prices and write the catalogue
    python3 scripts/seed_subscription_plans.py

    # Show what would be written, no Stripe or database writes
    python3 scripts/seed_subscription_plans.py --dry-run

    # Only check that stored ids still resolve in Stripe
    python3 scripts/seed_subscription_plans.py --verify-only
"""

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass

import stripe
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ava_api.config import settings
from ava_api.db.models import SubscriptionPlan
from ava_api.db.session import Database

logger = structlog.get_logger()


@dataclass(frozen=True)
class PlanSeed:
    plan_name: str
    display_name: str
    description: str
    price_amount: int  # cents
    credits_included: int
    features: tuple[tuple[str, str], ...]


SUBSCRIPTION_PLANS = (
    PlanSeed(
        plan_name="starting",
        display_name="Starting Plan",
        description="Perfect for getting started with AI assistance",
        price_amount=999,
        credits_included=80,
        features=(
            ("ai_chat_support", "basic"),
            ("email_support", "standard"),
            ("voice_messages", "false"),
        ),
    ),
    PlanSeed(
        plan_name="scaling",
        display_name="Scaling Plan",
        description="Advanced features for growing businesses",
        price_amount=1999,
        credits_included=160,
        features=(
            ("ai_chat_support", "advanced"),
            ("email_support", "priority"),
            ("voice_messages", "true"),
        ),
    ),
    PlanSeed(
        plan_name="summit",
        display_name="Summit Plan",
        description="Premium experience with all features included",
        price_amount=3999,
        credits_included=400,
        features=(
            ("ai_chat_support", "premium"),
            ("email_support", "24/7_priority"),
            ("voice_messages", "true"),
            ("priority_support", "true"),
        ),
    ),
)


async def get_plan_row(session: AsyncSession, plan_name: str) -> SubscriptionPlan | None:
    result = await session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.plan_name == plan_name)
    )
    return result.scalar_one_or_none()


async def create_stripe_price(client: stripe.StripeClient, plan: PlanSeed) -> tuple[str, str]:
    """Create the Stripe product and recurring price; returns (product_id, price_id)."""
    metadata = {"plan_name": plan.plan_name, "credits_included": str(plan.credits_included)}
    product = await client.products.create_async(
        params={
            "name": plan.display_name,
            "description": plan.description,
            "metadata": {**metadata, "features": json.dumps(dict(plan.features))},
        }
    )
    price = await client.prices.create_async(
        params={
            "product": product.id,
            "unit_amount": plan.price_amount,
            "currency": "usd",
            "recurring": {"interval": "month"},
            "metadata": metadata,
        }
    )
    return product.id, price.id


async def seed_plan(
    session: AsyncSession, client: stripe.StripeClient, plan: PlanSeed, dry_run: bool
) -> None:
    row = await get_plan_row(session, plan.plan_name)

    if dry_run:
        logger.info(
            "plan_seed_dry_run",
            plan_name=plan.plan_name,
            exists=row is not None,
            price_amount=plan.price_amount,
            credits_included=plan.credits_included,
        )
        return

    if row is None:
        product_id, price_id = await create_stripe_price(client, plan)
        row = SubscriptionPlan(
            stripe_product_id=product_id,
            stripe_price_id=price_id,
            plan_name=plan.plan_name,
            billing_interval="month",
        )
        session.add(row)
        logger.info("plan_created", plan_name=plan.plan_name, price_id=price_id)
    else:
        logger.info("plan_updated", plan_name=plan.plan_name, price_id=row.stripe_price_id)

    row.display_name = plan.display_name
    row.description = plan.description
    row.price_amount = plan.price_amount
    row.currency = "usd"
    row.credits_included = plan.credits_included
    row.is_active = True
    await session.commit()


async def verify_plans(session: AsyncSession, client: stripe.StripeClient) -> bool:
    """Check every active plan's product and price still exist in Stripe."""
    result = await session.execute(
        select(SubscriptionPlan).where(SubscriptionPlan.is_active.is_(True))
    )
    ok = True
    for plan in result.scalars():
        try:
            await client.products.retrieve_async(plan.stripe_product_id)
            await client.prices.retrieve_async(plan.stripe_price_id)
        except stripe.StripeError as e:
            ok = False
            logger.error("plan_verification_failed", plan_name=plan.plan_name, error=str(e))
            continue
        logger.info(
            "plan_verified",
            plan_name=plan.plan_name,
            price_id=plan.stripe_price_id,
            credits_included=plan.credits_included,
        )
    return ok


async def run(dry_run: bool, verify_only: bool) -> bool:
    if not settings.stripe_secret_key:
        logger.error("stripe_secret_key_missing")
        return False

    client = stripe.StripeClient(settings.stripe_secret_key)
    database = Database.from_settings(settings)
    try:
        async with database.session() as session:
            if not verify_only:
                for plan in SUBSCRIPTION_PLANS:
                    await seed_plan(session, client, plan, dry_run)
            if dry_run:
                return True
            return await verify_plans(session, client)
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Create Stripe products/prices and seed subscription_plans",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Don't touch Stripe or the database"
    )
    parser.add_argument(
        "--verify-only", action="store_true", help="Only verify the stored catalogue"
    )
    args = parser.parse_args()

    success = asyncio.run(run(dry_run=args.dry_run, verify_only=args.verify_only))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
