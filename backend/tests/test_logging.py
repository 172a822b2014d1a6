import logging

import pytest
from rich.logging import RichHandler

from watchstats.core.logging import setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    quiet = {name: logging.getLogger(name).level for name in ("asyncio", "asyncpg")}
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    for name, value in quiet.items():
        logging.getLogger(name).setLevel(value)


class TestSetupLogging:
    def test_installs_rich_handler(self, root_logger):
        setup_logging("debug")

        assert root_logger.level == logging.DEBUG
        assert [type(h) for h in root_logger.handlers] == [RichHandler]

    def test_unknown_level_falls_back_to_info(self, root_logger):
        setup_logging("chatty", force_terminal=False)
        assert root_logger.level == logging.INFO

    def test_quiets_noisy_libraries(self, root_logger):
        setup_logging("INFO")

        assert logging.getLogger("asyncio").level == logging.ERROR
        assert logging.getLogger("asyncpg").level == logging.WARNING

    def test_library_levels_follow_a_stricter_root(self, root_logger):
        setup_logging("ERROR")
        assert logging.getLogger("asyncpg").level == logging.ERROR
