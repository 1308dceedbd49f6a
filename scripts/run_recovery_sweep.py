"""Run one billing recovery sweep outside the web process.

For schedulers that prefer a command over the cron endpoint:
    python -m scripts.run_recovery_sweep
"""

import asyncio
import logging

from reconciler.billing.container import build_container
from reconciler.config import settings
from reconciler.database import async_session_factory, engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def main() -> None:
    billing = build_container(settings, async_session_factory)
    try:
        report = await billing.sweeper.sweep()
        print(report.as_dict())
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
