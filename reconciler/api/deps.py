"""Shared API dependencies — single import point for all routers.

Re-exports database session and authentication dependencies so that router
modules can import everything they need from one place::

    from reconciler.api.deps import get_db, get_current_active_user, get_billing
"""

from fastapi import Request

from reconciler.auth.dependencies import (
    get_current_active_user,
    get_current_user,
    require_admin,
    verify_cron_secret,
)
from reconciler.billing.container import BillingContainer
from reconciler.database import get_db


def get_billing(request: Request) -> BillingContainer:
    """The billing components built at startup."""
    return request.app.state.billing


__all__ = [
    "get_db",
    "get_billing",
    "get_current_user",
    "get_current_active_user",
    "require_admin",
    "verify_cron_secret",
]
