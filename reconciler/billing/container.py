"""Billing component wiring.

Built once at startup (see ``reconciler.main``) and stored on
``app.state.billing``; tests build their own against an in-memory database.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reconciler.billing.admin import AdminOverrideService
from reconciler.billing.dispatcher import EventDispatcher
from reconciler.billing.ingestor import WebhookIngestor
from reconciler.billing.locks import SubscriptionLocks
from reconciler.billing.reconciliation import ReconciliationCore
from reconciler.billing.recovery import RecoverySweeper
from reconciler.billing.stripe_client import ProviderClient
from reconciler.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class BillingContainer:
    provider: ProviderClient
    core: ReconciliationCore
    dispatcher: EventDispatcher
    ingestor: WebhookIngestor
    admin: AdminOverrideService
    sweeper: RecoverySweeper


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    provider: ProviderClient | None = None,
) -> BillingContainer:
    provider = provider or ProviderClient.from_settings(settings)
    core = ReconciliationCore(
        session_factory,
        SubscriptionLocks(),
        provider_command_timeout=settings.provider_command_timeout_seconds,
    )
    dispatcher = EventDispatcher(
        session_factory,
        core,
        max_attempts=settings.retry_max_attempts,
        processing_timeout=settings.event_processing_timeout_seconds,
    )
    container = BillingContainer(
        provider=provider,
        core=core,
        dispatcher=dispatcher,
        ingestor=WebhookIngestor(session_factory, provider, dispatcher),
        admin=AdminOverrideService(session_factory, core, provider, settings),
        sweeper=RecoverySweeper(
            session_factory,
            dispatcher,
            max_attempts=settings.retry_max_attempts,
            backoff_unit_seconds=settings.retry_backoff_unit_seconds,
            batch_size=settings.retry_batch_size,
            retention_days=settings.event_retention_days,
        ),
    )
    logger.info("Billing components ready (max attempts %d)", settings.retry_max_attempts)
    return container
