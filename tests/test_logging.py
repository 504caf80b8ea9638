from __future__ import annotations

import pytest
from loguru import logger

from kitescale.observability.logging import LogConfig, setup_logging

pytestmark = [pytest.mark.unit]


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    logger.remove()
    logger.configure(patcher=None)


class TestSetupLogging:
    def test_console_only(self):
        assert len(setup_logging(LogConfig(level="WARNING"))) == 1

    def test_file_sink_gets_context(self, tmp_path):
        path = tmp_path / "logs" / "kitescale.log"
        ids = setup_logging(LogConfig(level="ERROR", file=str(path)))

        logger.bind(component="inventory", zone="us-west1-b").debug("Counted {n}", n=3)
        logger.complete()

        assert len(ids) == 2
        text = path.read_text()
        assert "component=inventory zone=us-west1-b" in text
        assert "Counted 3" in text

    def test_records_without_context(self, tmp_path):
        path = tmp_path / "plain.log"
        setup_logging(LogConfig(file=str(path)))

        logger.info("hello")

        assert "- hello" in path.read_text()
