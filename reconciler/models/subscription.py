"""Subscription models — reconciled billing state per owner, plus add-ons."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Integer, String, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from reconciler.billing.plans import DEFAULT_PLAN
from reconciler.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class SubscriptionStatus:
    """Provider-facing status vocabulary."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"

    ALL = frozenset({INCOMPLETE, TRIALING, ACTIVE, PAST_DUE, PAUSED, CANCELED})


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks an owner's subscription as reconciled against Stripe.

    ``status``, ``version`` and ``last_event_timestamp`` are written only by
    :class:`reconciler.billing.reconciliation.ReconciliationCore`.
    """

    __tablename__ = "subscriptions"

    # Foreign key: one subscription per owner (UNIQUE enforces one-to-one)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )

    # Stripe identifiers
    external_customer_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    external_subscription_ref: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Plan & status
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False, default=DEFAULT_PLAN, server_default=DEFAULT_PLAN)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly", server_default="monthly")
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionStatus.INCOMPLETE, server_default=SubscriptionStatus.INCOMPLETE
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    pause_until: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Reconciliation bookkeeping
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    last_event_timestamp: Mapped[datetime | None] = mapped_column(nullable=True)

    # Admin-owned flags
    price_change_accepted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    suspended: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    # Relationships
    owner: Mapped["User"] = relationship(back_populates="subscription", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    addons: Mapped[list["AddonSubscription"]] = relationship(
        back_populates="subscription", lazy="selectin", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, owner_id={self.owner_id}, plan={self.plan_id}, "
            f"status={self.status}, version={self.version})>"
        )


class AddonSubscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """An add-on attached to a subscription, activated and cancelled on its own."""

    __tablename__ = "subscription_addons"
    __table_args__ = (UniqueConstraint("subscription_id", "addon_id", name="uq_subscription_addons_addon"),)

    subscription_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    addon_id: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    activated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    subscription: Mapped[Subscription] = relationship(back_populates="addons")

    def __repr__(self) -> str:
        return f"<AddonSubscription(addon={self.addon_id}, status={self.status})>"
