"""
Marketplace configuration parameters.

Defines economic parameters (listing fee, auction duration), the
administrative and fee-recipient addresses, and storage paths.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values

from nftmarket.crypto import ZERO_ADDRESS, normalize_address

ENV_PREFIX = "NFTMARKET_"

DEFAULT_LISTING_FEE = 10**16  # 0.01 ETH
DEFAULT_AUCTION_DURATION = 24 * 60 * 60  # 1 day
DEFAULT_SALES_WINDOW = 24 * 60 * 60

DEFAULT_ADMIN = "0x" + "a0" * 20
DEFAULT_MARKETPLACE_ADDRESS = "0x" + "7e" * 20


@dataclass
class MarketConfig:
    """Marketplace-wide configuration parameters"""

    # Economics (wei / seconds)
    listing_fee: int = DEFAULT_LISTING_FEE
    auction_duration: int = DEFAULT_AUCTION_DURATION
    sales_window: int = DEFAULT_SALES_WINDOW  # Rolling window for sales_24h

    # Capabilities
    admin: str = DEFAULT_ADMIN  # Owns categories and the listing fee
    fee_recipient: str = DEFAULT_ADMIN
    marketplace_address: str = DEFAULT_MARKETPLACE_ADDRESS  # Only caller allowed to update stats

    # Paths
    data_dir: Path = field(default_factory=lambda: Path("data"))
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    db_name: str = "market.db"

    def __post_init__(self):
        self.admin = normalize_address(self.admin)
        self.fee_recipient = normalize_address(self.fee_recipient)
        self.marketplace_address = normalize_address(self.marketplace_address)
        if self.fee_recipient == ZERO_ADDRESS:
            raise ValueError("fee_recipient must not be the zero address")
        if self.listing_fee < 0:
            raise ValueError("listing_fee must be >= 0")
        if self.auction_duration <= 0:
            raise ValueError("auction_duration must be > 0")
        self.data_dir = Path(self.data_dir)
        self.log_dir = Path(self.log_dir)

    def ensure_dirs(self) -> None:
        """Create necessary directories"""
        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.log_dir.mkdir(exist_ok=True, parents=True)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


# Global config instance (can be overridden)
config = MarketConfig()


def load_config(env_file: Optional[str] = None) -> MarketConfig:
    """
    Load configuration from a .env file and the process environment.

    Variables are prefixed with ``NFTMARKET_`` (e.g. ``NFTMARKET_LISTING_FEE``).
    Process environment takes precedence over the file.

    Args:
        env_file: Optional path to a .env file

    Returns:
        MarketConfig instance
    """
    values = {}
    if env_file:
        values.update(dotenv_values(env_file))
    values.update(os.environ)

    def get(name: str) -> Optional[str]:
        value = values.get(ENV_PREFIX + name)
        return value if value not in (None, "") else None

    kwargs = {}
    for name, cast in (
        ("LISTING_FEE", int),
        ("AUCTION_DURATION", int),
        ("SALES_WINDOW", int),
        ("ADMIN", str),
        ("FEE_RECIPIENT", str),
        ("MARKETPLACE_ADDRESS", str),
        ("DATA_DIR", Path),
        ("LOG_DIR", Path),
        ("DB_NAME", str),
    ):
        raw = get(name)
        if raw is not None:
            kwargs[name.lower()] = cast(raw)

    # Fee recipient follows the admin unless set explicitly
    if "admin" in kwargs and "fee_recipient" not in kwargs:
        kwargs["fee_recipient"] = kwargs["admin"]

    return MarketConfig(**kwargs)
