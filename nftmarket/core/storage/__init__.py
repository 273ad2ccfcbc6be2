"""
Persistent Storage Module.

Provides the SQLite-backed document store for:
- Items, Bids and Offers
- Collections and Tokens
- Price History and Receipts
- Funds, Factory and Settings snapshots
"""

from nftmarket.core.storage.sqlite_adapter import SQLiteAdapter
from nftmarket.core.storage.storage_manager import StorageManager

__all__ = ["SQLiteAdapter", "StorageManager"]
