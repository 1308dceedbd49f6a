"""Admin override service — privileged, provider-independent subscription changes.

Admin actions skip the staleness rule and are guarded by the subscription
version instead: the caller supplies the version it read (or we read it
now), and a mismatch raises :class:`ConcurrentModification`.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.errors import AdminActionError, AdminValidationError, SubscriptionNotFound
from reconciler.billing.plans import VALID_PLAN_SLUGS
from reconciler.billing.reconciliation import ReconciliationCore
from reconciler.billing.state_machine import (
    ACCEPT_PRICE_CHANGE,
    ADMIN_ACTION_TYPES,
    GIFT_DAYS,
    OVERRIDE_PLAN,
    SUSPEND,
    UNSUSPEND,
)
from reconciler.billing.stripe_client import ProviderClient
from reconciler.config import Settings
from reconciler.models import Subscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdminCommand:
    action_type: str
    owner_id: uuid.UUID
    actor_id: uuid.UUID
    reason: str = ""
    notify_user: bool = False
    params: dict[str, Any] = field(default_factory=dict)
    expected_version: int | None = None


@dataclass(frozen=True)
class AdminActionResult:
    action_type: str
    owner_id: uuid.UUID
    subscription_id: uuid.UUID
    version: int
    message: str
    notify_user: bool


class AdminOverrideService:
    """Validates admin commands and runs them through the reconciliation core."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        core: ReconciliationCore,
        provider: ProviderClient,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._core = core
        self._provider = provider
        self._settings = settings

    async def apply_admin_action(self, command: AdminCommand) -> AdminActionResult:
        """Apply one admin command; either fully applied or not at all.

        Raises:
            AdminValidationError: Unknown action or missing reason, raised before
                anything is recorded. Bad days, unknown plan or a plan without a
                configured price are audited as failed, then re-raised.
            SubscriptionNotFound: The owner has no subscription.
            ConcurrentModification, AdminActionRejected, RemoteCommandFailure:
                The attempt is audited as failed, then re-raised.
        """
        reason = self._validate_reason(command)

        subscription = await self._subscription_for(command.owner_id)
        expected_version = command.expected_version if command.expected_version is not None else subscription.version

        try:
            self._validate_params(command)
            remote_command = None
            if command.action_type == OVERRIDE_PLAN and subscription.external_subscription_ref:
                remote_command = self._price_change(subscription, command.params["plan"])

            change = await self._core.apply_admin_change(
                subscription.id,
                expected_version,
                command.action_type,
                command.params,
                actor_id=command.actor_id,
                reason=reason,
                notify_user=command.notify_user,
                remote_command=remote_command,
            )
        except AdminActionError as exc:
            logger.warning(
                "Admin %s failed %s on owner %s: %s",
                command.actor_id,
                command.action_type,
                command.owner_id,
                exc,
            )
            await self._core.record_failed_admin_action(
                subscription,
                command.action_type,
                command.params,
                actor_id=command.actor_id,
                reason=reason,
                notify_user=command.notify_user,
                error=f"{exc.kind.value}: {exc}",
            )
            raise

        if command.notify_user:
            logger.info(
                "Owner %s to be notified of %s: %s",
                command.owner_id,
                command.action_type,
                change.message,
            )

        return AdminActionResult(
            action_type=command.action_type,
            owner_id=change.owner_id,
            subscription_id=change.subscription_id,
            version=change.version,
            message=change.message,
            notify_user=command.notify_user,
        )

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------

    async def gift_days(
        self,
        owner_id: uuid.UUID,
        days: int,
        reason: str,
        notify: bool,
        actor_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> AdminActionResult:
        return await self.apply_admin_action(
            AdminCommand(GIFT_DAYS, owner_id, actor_id, reason, notify, {"days": days}, expected_version)
        )

    async def override_plan(
        self,
        owner_id: uuid.UUID,
        plan_slug: str,
        reason: str,
        notify: bool,
        actor_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> AdminActionResult:
        return await self.apply_admin_action(
            AdminCommand(OVERRIDE_PLAN, owner_id, actor_id, reason, notify, {"plan": plan_slug}, expected_version)
        )

    async def suspend(
        self,
        owner_id: uuid.UUID,
        reason: str,
        notify: bool,
        actor_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> AdminActionResult:
        return await self.apply_admin_action(
            AdminCommand(SUSPEND, owner_id, actor_id, reason, notify, {}, expected_version)
        )

    async def unsuspend(
        self,
        owner_id: uuid.UUID,
        reason: str,
        notify: bool,
        actor_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> AdminActionResult:
        return await self.apply_admin_action(
            AdminCommand(UNSUSPEND, owner_id, actor_id, reason, notify, {}, expected_version)
        )

    async def accept_price_change(self, owner_id: uuid.UUID, actor_id: uuid.UUID | None = None) -> AdminActionResult:
        """Owner-initiated; the owner is the actor unless someone acts on their behalf."""
        return await self.apply_admin_action(
            AdminCommand(
                ACCEPT_PRICE_CHANGE,
                owner_id,
                actor_id or owner_id,
                reason="Price change accepted by owner",
            )
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_reason(self, command: AdminCommand) -> str:
        if command.action_type not in ADMIN_ACTION_TYPES:
            raise AdminValidationError(f"Unknown admin action {command.action_type!r}")

        reason = (command.reason or "").strip()
        if command.action_type != ACCEPT_PRICE_CHANGE:
            min_length = self._settings.admin_reason_min_length
            if len(reason) < min_length:
                raise AdminValidationError(f"A reason of at least {min_length} characters is required")

        return reason

    def _validate_params(self, command: AdminCommand) -> None:
        if command.action_type == GIFT_DAYS:
            days = command.params.get("days")
            max_days = self._settings.admin_gift_days_max
            if not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= max_days:
                raise AdminValidationError(f"days must be an integer between 1 and {max_days}")

        if command.action_type == OVERRIDE_PLAN:
            plan_slug = command.params.get("plan")
            if plan_slug not in VALID_PLAN_SLUGS:
                raise AdminValidationError(f"Unknown plan {plan_slug!r}")

    async def _subscription_for(self, owner_id: uuid.UUID) -> Subscription:
        async with self._session_factory() as session:
            result = await session.execute(select(Subscription).where(Subscription.owner_id == owner_id))
            subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFound(f"Owner {owner_id} has no subscription")
        return subscription

    def _price_change(self, subscription: Subscription, plan_slug: str):
        price_id = self._settings.plan_price_ids.get(plan_slug)
        if price_id is None:
            raise AdminValidationError(f"Plan {plan_slug!r} has no Stripe price configured")
        subscription_ref = subscription.external_subscription_ref

        async def change_remote_price() -> None:
            await self._provider.change_subscription_price(subscription_ref, price_id)

        return change_remote_price
