"""Event dispatcher — routes stored events to the reconciliation core.

Every attempt on an event increments ``attempts``. Results are recorded on
the event row: ``processed`` on success, ``failed`` when the retry queue
should try again, ``quarantined`` when it must not.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.errors import BillingError, ErrorKind, HandlerResult
from reconciler.billing.events import (
    CHECKOUT_COMPLETED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    BillingEvent,
    CheckoutCompleted,
    InvoiceEvent,
    normalize_event_type,
    parse_event,
)
from reconciler.billing.reconciliation import ReconciliationCore
from reconciler.billing.timestamps import utcnow
from reconciler.models import EventOutcome, ProcessingStatus, RemoteEvent

logger = logging.getLogger(__name__)

_DONE = (ProcessingStatus.PROCESSED, ProcessingStatus.QUARANTINED)

Handler = Callable[[RemoteEvent], Awaitable[HandlerResult]]


class EventDispatcher:
    """Looks up a handler by event type and runs it under the subscription lock."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        core: ReconciliationCore,
        max_attempts: int = 5,
        processing_timeout: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._core = core
        self._max_attempts = max_attempts
        self._processing_timeout = processing_timeout
        self._handlers: dict[str, Handler] = {
            CHECKOUT_COMPLETED: self._reconcile,
            SUBSCRIPTION_UPDATED: self._reconcile,
            SUBSCRIPTION_DELETED: self._reconcile,
            INVOICE_PAID: self._reconcile,
            INVOICE_PAYMENT_FAILED: self._reconcile,
        }

    @property
    def handled_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def dispatch(self, event_id: uuid.UUID) -> HandlerResult:
        """Process one stored event.

        Never raises for handler problems; the returned result (and the
        event row) say what happened.
        """
        async with self._session_factory() as session:
            row = await session.get(RemoteEvent, event_id)

        if row is None:
            logger.warning("Dispatch requested for unknown event row %s", event_id)
            return HandlerResult.already_done()
        if row.processing_status in _DONE:
            logger.debug("Event %s already %s, skipping", row.external_event_id, row.processing_status)
            return HandlerResult.already_done()

        if not row.type or not row.type.strip():
            return await self._fail(
                row.id,
                BillingError(ErrorKind.UNKNOWN_EVENT_TYPE, "Event has no type", retryable=False),
            )

        handler = self._handlers.get(normalize_event_type(row.type), self._ignore)
        return await handler(row)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _ignore(self, row: RemoteEvent) -> HandlerResult:
        """Default for event types we do not subscribe to: log and move on."""
        logger.info("Unhandled event type %s (%s), marking processed", row.type, row.external_event_id)
        return await self._finish_ignored(row.id)

    async def _reconcile(self, row: RemoteEvent) -> HandlerResult:
        try:
            event = parse_event(row.external_event_id, row.type, row.payload or {}, row.event_timestamp)
        except (ValueError, TypeError) as exc:
            return await self._fail(row.id, BillingError(ErrorKind.INVALID_PAYLOAD, str(exc), retryable=False))

        try:
            subscription = await self._core.resolve_subscription(event)
        except SQLAlchemyError as exc:
            logger.exception("Subscription lookup failed for event %s", row.external_event_id)
            return await self._fail(row.id, BillingError.transient(f"Subscription lookup failed: {exc}"))

        if subscription is None:
            if _nothing_to_reconcile(event):
                logger.info("Event %s has no subscription to reconcile, skipping", row.external_event_id)
                return await self._finish_ignored(row.id)
            return await self._fail(
                row.id,
                BillingError(
                    ErrorKind.SUBSCRIPTION_NOT_FOUND,
                    f"No local subscription matches {type(event).__name__} {row.external_event_id}",
                    retryable=True,
                ),
            )

        async with self._core.exclusive(subscription.id):
            try:
                claimed = await self._claim(row.id)
            except SQLAlchemyError as exc:
                logger.exception("Could not claim event %s", row.external_event_id)
                return await self._fail(row.id, BillingError.transient(f"Claim failed: {exc}"))
            if not claimed:
                return HandlerResult.already_done()

            # The attempt is counted; only the apply itself runs under the timeout
            try:
                async with asyncio.timeout(self._processing_timeout):
                    result = await self._core.apply_remote_event(row.id, subscription.id, event)
            except TimeoutError:
                result = HandlerResult.failure(
                    BillingError(
                        ErrorKind.TIMEOUT,
                        f"Processing exceeded {self._processing_timeout:g}s",
                        retryable=True,
                    )
                )
            except SQLAlchemyError as exc:
                logger.exception("Persistence error while reconciling %s", row.external_event_id)
                result = HandlerResult.failure(BillingError.transient(f"Persistence error: {exc}"))
            except Exception as exc:
                logger.exception("Handler error while reconciling %s", row.external_event_id)
                result = HandlerResult.failure(BillingError.transient(f"{type(exc).__name__}: {exc}"))

        if result.error is not None:
            return await self._fail(row.id, result.error, claimed=True)
        return result

    # ------------------------------------------------------------------
    # Event row bookkeeping
    # ------------------------------------------------------------------

    async def _claim(self, event_id: uuid.UUID) -> bool:
        """Count an attempt; False if someone else already finished the event."""
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(RemoteEvent, event_id, with_for_update=True)
                if row is None or row.processing_status in _DONE:
                    return False
                row.attempts += 1
                row.last_attempted_at = utcnow()
                return True

    async def _finish_ignored(self, event_id: uuid.UUID) -> HandlerResult:
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(RemoteEvent, event_id, with_for_update=True)
                if row is None or row.processing_status in _DONE:
                    return HandlerResult.already_done()
                now = utcnow()
                row.attempts += 1
                row.last_attempted_at = now
                row.processing_status = ProcessingStatus.PROCESSED
                row.processed_at = now
                row.outcome = EventOutcome.IGNORED
                row.last_error = None
        return HandlerResult.success(EventOutcome.IGNORED)

    async def _fail(self, event_id: uuid.UUID, error: BillingError, claimed: bool = False) -> HandlerResult:
        """Record a failed attempt; quarantine when it cannot or may no longer be retried."""
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(RemoteEvent, event_id, with_for_update=True)
                if row is None or row.processing_status in _DONE:
                    return HandlerResult.failure(error)
                if not claimed:
                    row.attempts += 1
                    row.last_attempted_at = utcnow()

                if error.retryable and row.attempts >= self._max_attempts:
                    error = BillingError(
                        ErrorKind.EXHAUSTED_RETRIES,
                        f"Gave up after {row.attempts} attempts; last error: {error}",
                        retryable=False,
                    )

                row.last_error = str(error)
                if error.retryable:
                    row.processing_status = ProcessingStatus.FAILED
                    logger.warning(
                        "Event %s failed (attempt %d/%d): %s",
                        row.external_event_id,
                        row.attempts,
                        self._max_attempts,
                        error,
                    )
                else:
                    row.processing_status = ProcessingStatus.QUARANTINED
                    logger.error(
                        "Event %s quarantined after %d attempt(s): %s",
                        row.external_event_id,
                        row.attempts,
                        error,
                    )
        return HandlerResult.failure(error)


def _nothing_to_reconcile(event: BillingEvent) -> bool:
    """Events that legitimately concern no subscription (one-time payments)."""
    if isinstance(event, CheckoutCompleted):
        return event.subscription_ref is None
    if isinstance(event, InvoiceEvent):
        return event.subscription_ref is None
    return False
