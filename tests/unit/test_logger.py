"""
Unit tests for marketplace logging setup.
"""

import logging

import pytest

from nftmarket.utils.logger import LOG_FILE, MarketLogger, get_logger, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    setup_logging(level=logging.INFO)


class TestLogging:
    """Tests for setup_logging and get_logger."""

    def test_component_logger_name(self):
        assert get_logger("auction").name == "nftmarket.auction"

    def test_setup_after_first_logger_takes_effect(self):
        """--debug must work even though components fetched loggers at import."""
        logger = get_logger("escrow")
        setup_logging(level=logging.DEBUG)

        assert logger.isEnabledFor(logging.DEBUG)
        assert len(logging.getLogger("nftmarket").handlers) == 1

    def test_level_by_name(self):
        setup_logging(level="warning")
        assert not get_logger("ledger").isEnabledFor(logging.INFO)

    def test_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging(level="loud")

    def test_file_handler(self, tmp_path):
        setup_logging(level=logging.INFO, log_dir=tmp_path / "logs", log_to_file=True)
        get_logger("marketplace").info("Item 1 sold")

        assert MarketLogger.log_file() == tmp_path / "logs" / LOG_FILE
        for handler in logging.getLogger("nftmarket").handlers:
            handler.flush()
        assert "Item 1 sold" in MarketLogger.log_file().read_text()
