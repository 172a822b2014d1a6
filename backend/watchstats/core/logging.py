import logging

from rich.console import Console
from rich.logging import RichHandler

DATE_FORMAT = "[%Y-%m-%d %H:%M:%S]"
PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that drown out the worker's own lines
QUIET_LOGGERS = {
    "asyncio": logging.ERROR,
    "asyncpg": logging.WARNING,
}


def _rich_handler(force_terminal: bool) -> RichHandler:
    handler = RichHandler(
        console=Console(force_terminal=force_terminal, width=120),
        show_path=False,
        markup=True,
        rich_tracebacks=True,
        tracebacks_width=120,
    )
    handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt=DATE_FORMAT))
    return handler


def setup_logging(log_level: str = "INFO", *, force_terminal: bool = True) -> None:
    """Route the root logger through Rich.

    Falls back to plain formatted lines if the console cannot be set up.
    ``force_terminal=False`` lets Rich drop colours when output is piped.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logger = logging.getLogger("watchstats")

    try:
        logging.basicConfig(level=level, handlers=[_rich_handler(force_terminal)], force=True)
    except Exception as e:
        logging.basicConfig(level=level, format=PLAIN_FORMAT, datefmt=DATE_FORMAT, force=True)
        logger.warning(f"Rich console unavailable ({e}), logging plain text")
    else:
        logger.debug(f"Logging at {logging.getLevelName(level)} through Rich")

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, level))
