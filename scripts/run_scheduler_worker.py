#!/usr/bin/env python3
"""
Dedicated scheduler process for deployments that run the API with
RUN_SCHEDULER=false. Runs Hub sync, heartbeat and the retention sweep.
"""
import asyncio

from hub_connector.core.errors import init_sentry
from hub_connector.core.config import settings
from hub_connector.core.logging_config import get_logger
from hub_connector.core.scheduler import shutdown_scheduler, start_scheduler

logger = get_logger("scheduler_worker")


async def main():
    logger.info("Starting dedicated scheduler worker")
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    start_scheduler()
    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Scheduler worker shutting down")
    finally:
        shutdown_scheduler()


if __name__ == "__main__":
    asyncio.run(main())
