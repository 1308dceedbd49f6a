"""Create Stripe products and prices for the plan catalog in test mode.

Run once:
    python -m reconciler.billing.scripts.create_stripe_products

Each price gets ``lookup_key`` = plan slug, which the webhook handlers also
accept when no price id is configured. Outputs the price ids to set in .env.
"""

import asyncio

import stripe
from stripe import StripeClient

from reconciler.billing.plans import ADDONS, PLANS
from reconciler.config import settings


async def _create(client: StripeClient, name: str, slug: str, amount: int, interval: str) -> str:
    product = await client.v1.products.create_async(params={"name": name, "metadata": {"slug": slug}})
    price = await client.v1.prices.create_async(
        params={
            "product": product.id,
            "unit_amount": amount,
            "currency": "eur",
            "recurring": {"interval": interval},
            "lookup_key": slug if interval == "month" else f"{slug}_yearly",
        }
    )
    print(f"Created {name} ({product.id}): {amount / 100:.2f} EUR/{interval} ({price.id})")
    return price.id


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )

    env_lines = []
    for plan in PLANS.values():
        if not plan.price_monthly_cents:
            continue  # free tier and quoted enterprise
        price_id = await _create(client, plan.display_name, plan.slug, plan.price_monthly_cents, "month")
        if plan.price_yearly_cents:
            await _create(client, plan.display_name, plan.slug, plan.price_yearly_cents, "year")
        env_lines.append(f"STRIPE_{plan.slug.upper()}_PRICE_ID={price_id}")

    for addon in ADDONS.values():
        await _create(client, addon.display_name, addon.slug, addon.price_monthly_cents, "month")

    print("\n--- Add these to your .env ---")
    print("\n".join(env_lines))


if __name__ == "__main__":
    asyncio.run(main())
