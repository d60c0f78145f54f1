"""
One queue tick per process, for running under cron or another external scheduler.

    python -m courtwatch.cron
"""

import asyncio
import logging
import sys

import structlog

from courtwatch.config import get_settings
from courtwatch.errors import AuthError, ConfigError
from courtwatch.observability.logfire_config import initialize_logfire
from courtwatch.runner import CourtWatch

logger = structlog.get_logger(__name__)


async def run_once() -> int:
    """Process the queue once; returns the process exit code."""
    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        return 1

    logging.basicConfig(level=settings.log_level)
    initialize_logfire()

    app = CourtWatch(settings)
    try:
        await app.initialize()
        summary = await app.process_queue()
        logger.info(
            "Queue tick complete",
            processed=summary.processed,
            booked=summary.booked,
            expired=summary.expired,
        )
        return 0
    except (ConfigError, AuthError) as e:
        logger.error("Queue tick aborted", error=str(e))
        return 1
    except Exception as e:
        logger.error("Queue tick failed", error=str(e), exc_info=True)
        return 1
    finally:
        await app.cleanup()


if __name__ == "__main__":
    sys.exit(asyncio.run(run_once()))
