"""Audit models — admin actions and the human-readable subscription history."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from reconciler.billing.timestamps import utcnow
from reconciler.database import Base, UUIDPrimaryKeyMixin


class AdminAction(UUIDPrimaryKeyMixin, Base):
    """A privileged mutation requested by an administrator, successful or not."""

    __tablename__ = "admin_actions"

    actor_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    target_subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notify_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)
    resulting_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<AdminAction(type={self.action_type}, outcome={self.outcome}, version={self.resulting_version})>"


class SubscriptionEvent(UUIDPrimaryKeyMixin, Base):
    """History entry shown in the subscription event log and fed to analytics."""

    __tablename__ = "subscription_events"

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # provider, admin, system

    from_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    from_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    to_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # MRR bookkeeping: new, expansion, contraction, churn, reactivation
    mrr_movement: Mapped[str | None] = mapped_column(String(20), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    actor_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return f"<SubscriptionEvent(type={self.event_type}, {self.from_status}->{self.to_status})>"


class SubscriptionInvoice(UUIDPrimaryKeyMixin, Base):
    """Read-mostly mirror of provider invoices; never authoritative for status."""

    __tablename__ = "subscription_invoices"

    external_invoice_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="eur")
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # paid, failed
    period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    invoice_pdf_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    event_timestamp: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SubscriptionInvoice(id={self.external_invoice_id}, status={self.status})>"
