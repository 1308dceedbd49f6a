"""RemoteEvent model — the append-only store of inbound Stripe events.

The unique ``external_event_id`` is the idempotency ledger: a provider
redelivery of the same event never creates a second row.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.billing.timestamps import utcnow
from reconciler.database import Base, UUIDPrimaryKeyMixin


class ProcessingStatus:
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    QUARANTINED = "quarantined"


class EventOutcome:
    """What processing did with an event that reached ``processed``."""

    APPLIED = "applied"
    STALE = "stale"
    REJECTED = "rejected"
    IGNORED = "ignored"


class RemoteEvent(UUIDPrimaryKeyMixin, Base):
    """One row per distinct provider event id; retried in place, never duplicated."""

    __tablename__ = "remote_events"
    __table_args__ = (Index("ix_remote_events_status_event_ts", "processing_status", "event_timestamp"),)

    external_event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    event_timestamp: Mapped[datetime] = mapped_column(nullable=False)
    received_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default=ProcessingStatus.PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)

    # Resolved target, filled in once the handler locates the subscription
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<RemoteEvent(external_id={self.external_event_id}, type={self.type}, "
            f"status={self.processing_status}, attempts={self.attempts})>"
        )
