"""Entry point: ``peptrack-worker``."""

import asyncio
import logging

from . import handlers  # noqa: F401  (registers job and projection handlers)
from .config import Config, adherence_window_days
from .health import start_health_server
from .logging import setup_logging
from .registry import get_projection_metadata, registered_event_types, registered_types
from .worker import Worker

logger = logging.getLogger(__name__)


async def _serve(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger.info(
        "PepTrack worker starting (log_format=%s, health_port=%d, window=%dd)",
        config.log_format, config.health_port, adherence_window_days(),
    )
    logger.info("Job types: %s", registered_types())
    logger.info("Event types: %s", registered_event_types())
    logger.info("Projections: %s", sorted(get_projection_metadata()))

    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
