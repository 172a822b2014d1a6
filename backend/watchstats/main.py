"""Entry point for the watch-stats worker (``watchstats`` console script)."""

import asyncio
import logging
import signal

from watchstats.core.config import get_settings
from watchstats.core.logging import setup_logging
from watchstats.worker import StatsWorker

LOGGER: logging.Logger = logging.getLogger("WatchStats")


async def runner() -> None:
    settings = get_settings()
    worker = StatsWorker(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await worker.start()
    try:
        await stop_event.wait()
        LOGGER.info("Shutdown signal received")
    finally:
        await worker.stop()


def run() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        asyncio.run(runner())
    except KeyboardInterrupt:
        LOGGER.warning("Shutting down due to KeyboardInterrupt...")


if __name__ == "__main__":
    run()
