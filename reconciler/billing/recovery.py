"""Recovery sweep — redrives pending and failed events, quarantines the hopeless.

Run periodically (cron endpoint or ``scripts/run_recovery_sweep.py``). Two
sweeps may overlap: every redrive goes through the dispatcher, which claims
the event row and holds the subscription lock, so an event is never
processed twice.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.dispatcher import EventDispatcher
from reconciler.billing.errors import ErrorKind
from reconciler.billing.timestamps import utcnow
from reconciler.models import ProcessingStatus, RemoteEvent

logger = logging.getLogger(__name__)

_RETRYABLE = (ProcessingStatus.PENDING, ProcessingStatus.FAILED)


@dataclass
class SweepReport:
    """What one sweep did."""

    attempted: int = 0
    processed: int = 0
    failed: int = 0
    quarantined: int = 0
    skipped: int = 0
    deferred: int = 0
    purged: int = 0

    def as_dict(self) -> dict[str, int]:
        return dict(self.__dict__)


class RecoverySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: EventDispatcher,
        max_attempts: int = 5,
        backoff_unit_seconds: int = 60,
        batch_size: int = 50,
        retention_days: int = 30,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._max_attempts = max_attempts
        self._backoff_unit = timedelta(seconds=backoff_unit_seconds)
        self._batch_size = batch_size
        self._retention = timedelta(days=retention_days)

    def is_due(self, event: RemoteEvent, now: datetime) -> bool:
        """Linear backoff: wait ``attempts * unit`` since the event was last touched."""
        last_touch = event.last_attempted_at or event.received_at
        return last_touch + event.attempts * self._backoff_unit <= now

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        report.quarantined += await self._quarantine_exhausted()

        for event_id in await self._due_events(now, report):
            result = await self._dispatcher.dispatch(event_id)
            report.attempted += 1
            if result.skipped:
                report.skipped += 1
            elif result.ok:
                report.processed += 1
            elif result.error is not None and not result.error.retryable:
                report.quarantined += 1
            else:
                report.failed += 1

        report.purged = await self._purge_processed(now)

        logger.info(
            "Recovery sweep: attempted=%d processed=%d failed=%d quarantined=%d deferred=%d purged=%d",
            report.attempted,
            report.processed,
            report.failed,
            report.quarantined,
            report.deferred,
            report.purged,
        )
        return report

    async def _due_events(self, now: datetime, report: SweepReport) -> list[uuid.UUID]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RemoteEvent)
                .where(
                    RemoteEvent.processing_status.in_(_RETRYABLE),
                    RemoteEvent.attempts < self._max_attempts,
                )
                .order_by(RemoteEvent.event_timestamp.asc(), RemoteEvent.received_at.asc())
            )
            due: list[uuid.UUID] = []
            for event in result.scalars():
                if not self.is_due(event, now):
                    report.deferred += 1
                    continue
                if len(due) < self._batch_size:
                    due.append(event.id)
        return due

    async def _quarantine_exhausted(self) -> int:
        """Quarantine rows that reached the attempt budget without a verdict."""
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(RemoteEvent)
                    .where(
                        RemoteEvent.processing_status.in_(_RETRYABLE),
                        RemoteEvent.attempts >= self._max_attempts,
                    )
                    .with_for_update()
                )
                rows = list(result.scalars())
                for row in rows:
                    row.processing_status = ProcessingStatus.QUARANTINED
                    row.last_error = (
                        f"{ErrorKind.EXHAUSTED_RETRIES.value}: gave up after {row.attempts} attempts; "
                        f"last error: {row.last_error or 'none'}"
                    )
                    logger.error(
                        "Event %s quarantined after %d attempts: %s",
                        row.external_event_id,
                        row.attempts,
                        row.last_error,
                    )
        return len(rows)

    async def _purge_processed(self, now: datetime) -> int:
        cutoff = now - self._retention
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RemoteEvent).where(
                        RemoteEvent.processing_status == ProcessingStatus.PROCESSED,
                        RemoteEvent.received_at < cutoff,
                    )
                )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Operator tools
    # ------------------------------------------------------------------

    async def list_quarantined(self, limit: int = 100) -> list[RemoteEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RemoteEvent)
                .where(RemoteEvent.processing_status == ProcessingStatus.QUARANTINED)
                .order_by(RemoteEvent.event_timestamp.desc())
                .limit(limit)
            )
            return list(result.scalars())

    async def requeue_event(self, event_id: uuid.UUID) -> RemoteEvent:
        """Give a quarantined event a fresh retry budget.

        Raises:
            LookupError: If the event does not exist.
            ValueError: If the event is not quarantined.
        """
        async with self._session_factory() as session:
            async with session.begin():
                row = await session.get(RemoteEvent, event_id, with_for_update=True)
                if row is None:
                    raise LookupError(f"Event {event_id} not found")
                if row.processing_status != ProcessingStatus.QUARANTINED:
                    raise ValueError(f"Event {row.external_event_id} is {row.processing_status}, not quarantined")
                row.processing_status = ProcessingStatus.PENDING
                row.attempts = 0
                row.last_attempted_at = None
        logger.warning("Event %s requeued by operator", row.external_event_id)
        return row
