"""Async Stripe API wrapper.

One :class:`ProviderClient` is built at startup and injected into the
ingestor and the admin service; nothing here keeps module-level state.
"""

import logging

import stripe
from stripe import StripeClient

from reconciler.config import Settings

logger = logging.getLogger(__name__)


def _first_item(stripe_sub: stripe.Subscription):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


class ProviderClient:
    """Signature verification and subscription commands against Stripe."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        webhook_tolerance: int = 300,
        client: StripeClient | None = None,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._client = client or StripeClient(
            secret_key or "sk_unconfigured",
            http_client=stripe.HTTPXClient(),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClient":
        return cls(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
        )

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous).

        Raises:
            stripe.SignatureVerificationError: If the signature does not match.
            ValueError: If the payload is not valid JSON.
        """
        return self._client.construct_event(
            payload,
            sig_header,
            self._webhook_secret,
            tolerance=self._webhook_tolerance,
        )

    async def retrieve_subscription(self, subscription_ref: str) -> stripe.Subscription:
        """Retrieve a Stripe subscription by ID."""
        return await self._client.v1.subscriptions.retrieve_async(subscription_ref)

    async def change_subscription_price(self, subscription_ref: str, price_id: str) -> stripe.Subscription:
        """Swap the price of a subscription's main item.

        Raises:
            stripe.StripeError: If Stripe rejects the change.
            ValueError: If the subscription has no item to swap.
        """
        stripe_sub = await self.retrieve_subscription(subscription_ref)
        item = _first_item(stripe_sub)
        if item is None:
            raise ValueError(f"Stripe subscription {subscription_ref} has no items")

        logger.info("Changing Stripe subscription %s to price %s", subscription_ref, price_id)
        return await self._client.v1.subscriptions.update_async(
            subscription_ref,
            params={
                "items": [{"id": item.id, "price": price_id}],
                "proration_behavior": "create_prorations",
            },
        )
