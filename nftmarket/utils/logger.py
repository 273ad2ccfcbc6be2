"""
Logging for the marketplace.

All loggers hang off ``nftmarket``; each component asks for its own child
(``nftmarket.ledger``, ``nftmarket.auction``, ``nftmarket.offer``,
``nftmarket.escrow``, ``nftmarket.journal``, ``nftmarket.collections``,
``nftmarket.notify``, ``nftmarket.storage.*``, ``nftmarket.marketplace``,
``nftmarket.cli``).

Level conventions:
    INFO     listings, sales, bids, accepted offers, payouts
    DEBUG    individual holds, refunds, settlements and rollbacks
    WARNING  rejected operations and best-effort failures (mirror writes,
             notifications) that never undo a committed sale

Components obtain loggers at import time, before the CLI has parsed
``--debug``. The first ``get_logger`` call installs a default console
handler; an explicit ``setup_logging`` call replaces it.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

ROOT = "nftmarket"
LOG_FILE = "nftmarket.log"

_FORMAT = "%(asctime)s [%(name)s] %(levelname)-8s %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


class MarketLogger:
    """Owns the handlers on the ``nftmarket`` logger"""

    _initialized = False
    _log_file: Optional[Path] = None

    @classmethod
    def setup(
        cls,
        level: Union[int, str] = logging.INFO,
        log_dir: Optional[Union[str, Path]] = None,
        log_to_file: bool = False,
    ):
        """
        (Re)configure marketplace logging.

        Args:
            level: Logging level, as a number or a name such as "DEBUG"
            log_dir: Directory for nftmarket.log. If None, uses ./logs
            log_to_file: Also append to nftmarket.log
        """
        if isinstance(level, str):
            level = logging.getLevelName(level.upper())
            if not isinstance(level, int):
                raise ValueError(f"Unknown log level: {level}")

        root_logger = logging.getLogger(ROOT)
        root_logger.setLevel(level)
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        console_handler = colorlog.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            colorlog.ColoredFormatter(
                "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
                datefmt=_DATEFMT,
                log_colors={
                    "DEBUG": "cyan",
                    "INFO": "green",
                    "WARNING": "yellow",
                    "ERROR": "red",
                    "CRITICAL": "red,bg_white",
                },
            )
        )
        root_logger.addHandler(console_handler)

        cls._log_file = None
        if log_to_file:
            directory = Path(log_dir) if log_dir else Path("logs")
            directory.mkdir(parents=True, exist_ok=True)
            cls._log_file = directory / LOG_FILE
            file_handler = logging.FileHandler(cls._log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get the logger of one marketplace component.

        Args:
            name: Component name (e.g., 'ledger', 'auction', 'storage.sqlite')
        """
        if not cls._initialized:
            cls.setup()
        return logging.getLogger(f"{ROOT}.{name}")

    @classmethod
    def log_file(cls) -> Optional[Path]:
        return cls._log_file


def get_logger(name: str) -> logging.Logger:
    return MarketLogger.get_logger(name)


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
    log_to_file: bool = False,
):
    """Configure logging, replacing whatever the first get_logger call installed"""
    MarketLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file)
