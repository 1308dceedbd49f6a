"""SQLAlchemy models for the billing reconciler.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from reconciler.models.audit import AdminAction, SubscriptionEvent, SubscriptionInvoice
from reconciler.models.remote_event import EventOutcome, ProcessingStatus, RemoteEvent
from reconciler.models.subscription import AddonSubscription, Subscription, SubscriptionStatus
from reconciler.models.user import User

__all__ = [
    "AddonSubscription",
    "AdminAction",
    "EventOutcome",
    "ProcessingStatus",
    "RemoteEvent",
    "Subscription",
    "SubscriptionEvent",
    "SubscriptionInvoice",
    "SubscriptionStatus",
    "User",
]
