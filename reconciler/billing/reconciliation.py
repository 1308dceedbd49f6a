"""Reconciliation core — the only writer of subscription status and version.

Remote events and admin actions both end up here. Each accepted change runs
in one transaction that holds the subscription row ``FOR UPDATE``, bumps
``version`` by exactly one, and appends a ``SubscriptionEvent`` audit row.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.errors import (
    AdminActionRejected,
    BillingError,
    ConcurrentModification,
    ErrorKind,
    HandlerResult,
    RemoteCommandFailure,
    SubscriptionNotFound,
)
from reconciler.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoiceEvent,
    InvoicePaid,
)
from reconciler.billing.locks import SubscriptionLocks
from reconciler.billing.state_machine import (
    Decision,
    DecisionKind,
    SubscriptionState,
    admin_transition,
    classify_mrr_movement,
    revenue_of,
    transition,
)
from reconciler.billing.timestamps import utcnow
from reconciler.models import (
    AddonSubscription,
    AdminAction,
    EventOutcome,
    ProcessingStatus,
    RemoteEvent,
    Subscription,
    SubscriptionEvent,
    SubscriptionInvoice,
    User,
)

logger = logging.getLogger(__name__)

_OUTCOME_BY_KIND = {
    DecisionKind.APPLY: EventOutcome.APPLIED,
    DecisionKind.STALE: EventOutcome.STALE,
    DecisionKind.TERMINAL: EventOutcome.REJECTED,
    DecisionKind.IGNORE: EventOutcome.IGNORED,
}


@dataclass(frozen=True)
class AdminChange:
    """Result of an admin change that was committed."""

    subscription_id: uuid.UUID
    owner_id: uuid.UUID
    version: int
    message: str


class ReconciliationCore:
    """Applies remote events and admin changes to subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        locks: SubscriptionLocks,
        provider_command_timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._locks = locks
        self._provider_command_timeout = provider_command_timeout

    @asynccontextmanager
    async def exclusive(self, subscription_id: uuid.UUID) -> AsyncIterator[None]:
        """The per-subscription critical section shared by every writer."""
        async with self._locks.hold(subscription_id):
            yield

    # ------------------------------------------------------------------
    # Lookup and provisioning
    # ------------------------------------------------------------------

    async def locate_subscription(self, session: AsyncSession, event: BillingEvent) -> Subscription | None:
        """Find the local subscription an event is about."""
        if isinstance(event, CheckoutCompleted):
            owner_id = _owner_uuid(event.owner_id)
            if owner_id is not None:
                found = await _scalar(session, select(Subscription).where(Subscription.owner_id == owner_id))
                if found is not None:
                    return found
            return await _by_customer(session, event.customer_ref)

        subscription_ref = getattr(event, "subscription_ref", None)
        if subscription_ref:
            found = await _scalar(
                session, select(Subscription).where(Subscription.external_subscription_ref == subscription_ref)
            )
            if found is not None:
                return found
        return await _by_customer(session, getattr(event, "customer_ref", None))

    async def resolve_subscription(self, event: BillingEvent) -> Subscription | None:
        """Locate the subscription for an event, provisioning it on a first checkout.

        A ``checkout.session.completed`` for a subscription may arrive before
        anything created the owner's row. When the checkout names an existing
        user, the ``incomplete`` row is provisioned here so the transition can
        apply right after. Returns None when nothing matches.
        """
        async with self._session_factory() as session:
            found = await self.locate_subscription(session, event)
            if found is not None or not isinstance(event, CheckoutCompleted) or not event.subscription_ref:
                return found
            owner_id = _owner_uuid(event.owner_id)
            if owner_id is None or await session.get(User, owner_id) is None:
                return None
        logger.info(
            "Checkout %s for owner %s has no subscription yet, provisioning", event.external_event_id, owner_id
        )
        return await self.provision(owner_id, event.customer_ref)

    async def provision(self, owner_id: uuid.UUID, customer_ref: str | None = None) -> Subscription:
        """Create the ``incomplete`` subscription for a new owner (idempotent)."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await _scalar(session, select(Subscription).where(Subscription.owner_id == owner_id))
                    if existing is not None:
                        if customer_ref and not existing.external_customer_ref:
                            existing.external_customer_ref = customer_ref
                        return existing

                    subscription = Subscription(owner_id=owner_id, external_customer_ref=customer_ref, addons=[])
                    session.add(subscription)
                    await session.flush()
                    session.add(
                        SubscriptionEvent(
                            subscription_id=subscription.id,
                            owner_id=owner_id,
                            event_type="created",
                            source="system",
                            to_status=subscription.status,
                            to_plan=subscription.plan_id,
                            message="Subscription provisioned",
                            version=subscription.version,
                        )
                    )
        except IntegrityError:
            # A concurrent provisioning of the same owner won the insert
            async with self._session_factory() as session:
                existing = await _scalar(session, select(Subscription).where(Subscription.owner_id == owner_id))
            if existing is None:
                raise
            return existing
        logger.info("Provisioned subscription %s for owner %s", subscription.id, owner_id)
        return subscription

    # ------------------------------------------------------------------
    # Remote events
    # ------------------------------------------------------------------

    async def apply_remote_event(
        self,
        remote_event_id: uuid.UUID,
        subscription_id: uuid.UUID,
        event: BillingEvent,
    ) -> HandlerResult:
        """Reconcile one remote event into its subscription.

        The caller must hold :meth:`exclusive` for ``subscription_id``.
        Persistence errors propagate so the dispatcher can retry them.
        """
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(RemoteEvent, remote_event_id, with_for_update=True)
                if row is None or row.processing_status in (ProcessingStatus.PROCESSED, ProcessingStatus.QUARANTINED):
                    return HandlerResult.already_done()

                subscription = await _scalar(
                    session,
                    select(Subscription).where(Subscription.id == subscription_id).with_for_update(),
                )
                if subscription is None:
                    return HandlerResult.failure(_missing(subscription_id))

                row.subscription_id = subscription.id
                state = SubscriptionState.from_model(subscription)
                decision = self._decide(state, event)

                if decision.kind == DecisionKind.INVALID:
                    return HandlerResult.failure(decision.error)  # type: ignore[arg-type]

                if decision.applies:
                    self._apply(session, subscription, decision, source="provider")
                    subscription.last_event_timestamp = event.occurred_at
                    if decision.addons is not None:
                        _reconcile_addons(session, subscription, decision.addons, event.occurred_at)
                    if isinstance(event, InvoiceEvent):
                        await _project_invoice(session, subscription, event)
                    logger.info(
                        "Applied %s to subscription %s: %s (version %d)",
                        event.external_event_id,
                        subscription.id,
                        decision.message,
                        subscription.version,
                    )
                elif decision.kind == DecisionKind.STALE:
                    logger.info("Discarded stale event: %s", decision.message)
                elif decision.kind == DecisionKind.TERMINAL:
                    logger.warning("Rejected event on canceled subscription %s: %s", subscription.id, decision.message)
                else:
                    logger.info("Ignored event %s: %s", event.external_event_id, decision.message)

                row.processing_status = ProcessingStatus.PROCESSED
                row.processed_at = utcnow()
                row.outcome = _OUTCOME_BY_KIND[decision.kind]
                row.last_error = None
                return HandlerResult.success(row.outcome)

    @staticmethod
    def _decide(state: SubscriptionState, event: BillingEvent) -> Decision:
        # Events about a provider subscription we have since replaced
        subscription_ref = getattr(event, "subscription_ref", None)
        superseded = (
            not isinstance(event, CheckoutCompleted)
            and subscription_ref is not None
            and state.external_subscription_ref is not None
            and subscription_ref != state.external_subscription_ref
        )
        if superseded:
            return Decision(
                kind=DecisionKind.IGNORE,
                message=f"Event targets superseded provider subscription {subscription_ref}",
            )
        return transition(state, event)

    # ------------------------------------------------------------------
    # Admin changes
    # ------------------------------------------------------------------

    async def apply_admin_change(
        self,
        subscription_id: uuid.UUID,
        expected_version: int,
        action_type: str,
        params: dict[str, Any],
        actor_id: uuid.UUID,
        reason: str,
        notify_user: bool = False,
        remote_command: Callable[[], Awaitable[Any]] | None = None,
    ) -> AdminChange:
        """Apply an admin action against the current version of a subscription.

        ``remote_command``, when given, runs after the local checks and before
        the commit; if it fails or times out nothing local is written.

        Raises:
            SubscriptionNotFound, ConcurrentModification, AdminActionRejected,
            RemoteCommandFailure.
        """
        async with self.exclusive(subscription_id):
            async with self._session_factory() as session:
                async with session.begin():
                    subscription = await _scalar(
                        session,
                        select(Subscription).where(Subscription.id == subscription_id).with_for_update(),
                    )
                    if subscription is None:
                        raise SubscriptionNotFound(f"Subscription {subscription_id} not found")
                    if subscription.version != expected_version:
                        raise ConcurrentModification(expected_version, subscription.version)

                    state = SubscriptionState.from_model(subscription)
                    decision = admin_transition(state, action_type, params, utcnow())
                    if decision.kind == DecisionKind.REJECTED:
                        raise AdminActionRejected(decision.message)

                    if remote_command is not None:
                        try:
                            async with asyncio.timeout(self._provider_command_timeout):
                                await remote_command()
                        except TimeoutError as exc:
                            raise RemoteCommandFailure(
                                f"Provider did not answer within {self._provider_command_timeout:g}s"
                            ) from exc
                        except Exception as exc:
                            raise RemoteCommandFailure(f"Provider rejected the change: {exc}") from exc

                    self._apply(session, subscription, decision, source="admin", actor_id=actor_id, reason=reason)
                    session.add(
                        AdminAction(
                            actor_id=actor_id,
                            target_subscription_id=subscription.id,
                            action_type=action_type,
                            reason=reason,
                            notify_user=notify_user,
                            parameters=params,
                            outcome="succeeded",
                            resulting_version=subscription.version,
                        )
                    )
                    change = AdminChange(
                        subscription_id=subscription.id,
                        owner_id=subscription.owner_id,
                        version=subscription.version,
                        message=decision.message,
                    )

        logger.info(
            "Admin %s applied %s to subscription %s (version %d): %s",
            actor_id,
            action_type,
            subscription_id,
            change.version,
            change.message,
        )
        return change

    async def record_failed_admin_action(
        self,
        subscription: Subscription,
        action_type: str,
        params: dict[str, Any],
        actor_id: uuid.UUID,
        reason: str,
        notify_user: bool,
        error: str,
    ) -> None:
        """Audit an admin action that did not go through."""
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    AdminAction(
                        actor_id=actor_id,
                        target_subscription_id=subscription.id,
                        action_type=action_type,
                        reason=reason,
                        notify_user=notify_user,
                        parameters=params,
                        outcome="failed",
                        error=error,
                    )
                )
                session.add(
                    SubscriptionEvent(
                        subscription_id=subscription.id,
                        owner_id=subscription.owner_id,
                        event_type=f"admin_{action_type}_failed",
                        source="admin",
                        from_status=subscription.status,
                        to_status=subscription.status,
                        from_plan=subscription.plan_id,
                        to_plan=subscription.plan_id,
                        actor_id=actor_id,
                        reason=reason,
                        message=error,
                    )
                )

    # ------------------------------------------------------------------
    # Shared write path
    # ------------------------------------------------------------------

    @staticmethod
    def _apply(
        session: AsyncSession,
        subscription: Subscription,
        decision: Decision,
        source: str,
        actor_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> None:
        from_status = subscription.status
        from_plan = subscription.plan_id
        before = revenue_of(subscription.status, subscription.plan_id, subscription.billing_cycle)

        for name, value in decision.changes.items():
            setattr(subscription, name, value)
        subscription.version += 1

        after = revenue_of(subscription.status, subscription.plan_id, subscription.billing_cycle)
        session.add(
            SubscriptionEvent(
                subscription_id=subscription.id,
                owner_id=subscription.owner_id,
                event_type=decision.event_type,
                source=source,
                from_status=from_status,
                to_status=subscription.status,
                from_plan=from_plan,
                to_plan=subscription.plan_id,
                mrr_movement=classify_mrr_movement(from_status, before, after),
                amount_cents=after - before,
                actor_id=actor_id,
                reason=reason,
                message=decision.message,
                version=subscription.version,
            )
        )


async def _scalar(session: AsyncSession, statement) -> Any:
    result = await session.execute(statement)
    return result.scalar_one_or_none()


def _owner_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


async def _by_customer(session: AsyncSession, customer_ref: str | None) -> Subscription | None:
    if not customer_ref:
        return None
    return await _scalar(session, select(Subscription).where(Subscription.external_customer_ref == customer_ref))


def _missing(subscription_id: uuid.UUID) -> BillingError:
    return BillingError(ErrorKind.SUBSCRIPTION_NOT_FOUND, f"Subscription {subscription_id} disappeared", retryable=True)


def _reconcile_addons(
    session: AsyncSession,
    subscription: Subscription,
    wanted: tuple[str, ...],
    occurred_at,
) -> None:
    """Bring add-on rows in line with what the provider reports."""
    existing = {addon.addon_id: addon for addon in subscription.addons}
    for slug, addon in existing.items():
        if slug not in wanted and addon.status == "active":
            addon.status = "canceled"
            addon.canceled_at = occurred_at
            logger.info("Canceled add-on %s on subscription %s", slug, subscription.id)
    for slug in wanted:
        addon = existing.get(slug)
        if addon is None:
            subscription.addons.append(
                AddonSubscription(addon_id=slug, status="active", activated_at=occurred_at)
            )
            logger.info("Activated add-on %s on subscription %s", slug, subscription.id)
        elif addon.status != "active":
            addon.status = "active"
            addon.activated_at = occurred_at
            addon.canceled_at = None


async def _project_invoice(session: AsyncSession, subscription: Subscription, event: InvoiceEvent) -> None:
    """Upsert the invoice mirror row for an invoice event."""
    status = "paid" if isinstance(event, InvoicePaid) else "failed"
    invoice = await _scalar(
        session, select(SubscriptionInvoice).where(SubscriptionInvoice.external_invoice_id == event.invoice_ref)
    )
    if invoice is None:
        session.add(
            SubscriptionInvoice(
                external_invoice_id=event.invoice_ref,
                subscription_id=subscription.id,
                amount_cents=event.amount_cents,
                currency=event.currency,
                status=status,
                period_start=event.period_start,
                period_end=event.period_end,
                invoice_pdf_url=event.invoice_pdf_url,
                event_timestamp=event.occurred_at,
            )
        )
        return
    if event.occurred_at >= invoice.event_timestamp:
        invoice.status = status
        invoice.amount_cents = event.amount_cents
        invoice.invoice_pdf_url = event.invoice_pdf_url or invoice.invoice_pdf_url
        invoice.event_timestamp = event.occurred_at
