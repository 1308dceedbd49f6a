"""Webhook ingestor — verifies, stores and dispatches inbound Stripe events.

An event is written to ``remote_events`` before anything else happens to it,
so a crash or a handler failure after this point can always be redriven by
the recovery sweep.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.dispatcher import EventDispatcher
from reconciler.billing.stripe_client import ProviderClient
from reconciler.billing.timestamps import ts_to_naive, utcnow
from reconciler.models import ProcessingStatus, RemoteEvent

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    RECEIVED = "received"
    ALREADY_RECEIVED = "duplicate"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_PAYLOAD = "invalid_payload"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    external_event_id: str | None = None
    event_id: uuid.UUID | None = None
    processing_status: str | None = None
    detail: str | None = None

    @property
    def accepted(self) -> bool:
        return self.status in (IngestStatus.RECEIVED, IngestStatus.ALREADY_RECEIVED)


@dataclass(frozen=True)
class Envelope:
    external_event_id: str
    type: str
    payload: dict[str, Any]
    event_timestamp: datetime


def parse_envelope(body: dict[str, Any]) -> Envelope:
    """Pull the fields we store out of a Stripe event body.

    Raises:
        ValueError: If the id or creation time is missing or malformed.
    """
    external_event_id = body.get("id")
    if not external_event_id or not isinstance(external_event_id, str):
        raise ValueError("Event has no id")
    created = body.get("created")
    if not isinstance(created, (int, float)):
        raise ValueError("Event has no creation timestamp")
    data = body.get("data") or {}
    payload = data.get("object") if isinstance(data, dict) else None
    event_type = body.get("type")
    return Envelope(
        external_event_id=external_event_id,
        type=event_type.strip() if isinstance(event_type, str) else "",
        payload=payload if isinstance(payload, dict) else {},
        event_timestamp=ts_to_naive(created),
    )


class WebhookIngestor:
    """Authenticate, persist-if-absent, then hand off to the dispatcher."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: ProviderClient,
        dispatcher: EventDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._dispatcher = dispatcher

    async def ingest(self, raw_body: bytes, signature_header: str | None) -> IngestResult:
        """Ingest one webhook delivery.

        Signature and payload problems are returned, not raised; nothing is
        stored for them. Persistence errors while storing the event propagate
        (the provider will redeliver). Dispatch errors never propagate.
        """
        if not signature_header:
            logger.warning("Webhook rejected: missing signature header")
            return IngestResult(IngestStatus.INVALID_SIGNATURE, detail="Missing signature header")

        try:
            self._provider.construct_event(raw_body, signature_header)
        except stripe.SignatureVerificationError:
            logger.warning("Webhook signature verification failed")
            return IngestResult(IngestStatus.INVALID_SIGNATURE, detail="Invalid signature")
        except ValueError:
            logger.warning("Invalid webhook payload")
            return IngestResult(IngestStatus.INVALID_PAYLOAD, detail="Invalid payload")

        try:
            body = json.loads(raw_body)
            if not isinstance(body, dict):
                raise ValueError("Event body is not an object")
            envelope = parse_envelope(body)
        except ValueError as exc:
            logger.warning("Invalid webhook envelope: %s", exc)
            return IngestResult(IngestStatus.INVALID_PAYLOAD, detail=str(exc))

        event_id, created = await self._store(envelope)
        if not created:
            logger.info("Duplicate delivery of event %s ignored", envelope.external_event_id)
            return IngestResult(
                IngestStatus.ALREADY_RECEIVED,
                external_event_id=envelope.external_event_id,
                event_id=event_id,
            )

        logger.info("Stored event %s (%s)", envelope.external_event_id, envelope.type or "<no type>")
        processing_status = ProcessingStatus.PENDING
        try:
            await self._dispatcher.dispatch(event_id)
            processing_status = await self._status_of(event_id)
        except Exception:
            # The row is durable; the recovery sweep picks it up.
            logger.exception("Dispatch of event %s failed, left for recovery", envelope.external_event_id)

        return IngestResult(
            IngestStatus.RECEIVED,
            external_event_id=envelope.external_event_id,
            event_id=event_id,
            processing_status=processing_status,
        )

    async def _store(self, envelope: Envelope) -> tuple[uuid.UUID, bool]:
        """Insert-if-absent keyed by the external event id."""
        async with self._session_factory() as session:
            existing = await _existing_id(session, envelope.external_event_id)
            if existing is not None:
                return existing, False

            row = RemoteEvent(
                external_event_id=envelope.external_event_id,
                type=envelope.type,
                payload=envelope.payload,
                event_timestamp=envelope.event_timestamp,
                received_at=utcnow(),
                processing_status=ProcessingStatus.PENDING,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Lost a race with a concurrent delivery of the same event
                await session.rollback()
                existing = await _existing_id(session, envelope.external_event_id)
                if existing is None:
                    raise
                return existing, False
            return row.id, True

    async def _status_of(self, event_id: uuid.UUID) -> str | None:
        async with self._session_factory() as session:
            row = await session.get(RemoteEvent, event_id)
            return row.processing_status if row is not None else None


async def _existing_id(session: AsyncSession, external_event_id: str) -> uuid.UUID | None:
    result = await session.execute(
        select(RemoteEvent.id).where(RemoteEvent.external_event_id == external_event_id)
    )
    return result.scalar_one_or_none()
