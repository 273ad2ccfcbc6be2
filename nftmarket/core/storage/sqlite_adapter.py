import json
import sqlite3
import threading
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

from nftmarket.utils.logger import get_logger

logger = get_logger("storage.sqlite")


class SQLiteAdapter:
    """
    SQLite backend for the marketplace document store.

    Provides:
    1. Document tables keyed by id (items, bids, offers, collections, tokens),
       each row holding the JSON form of one record.
    2. Append-only tables (price history, events).
    3. Key-value market state (funds ledger snapshot, counters, settings).
    """

    DOCUMENT_TABLES = ("items", "bids", "offers", "collections", "tokens")

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn_local = threading.local()

        # Ensure directory exists
        if not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            # 1. Documents: one JSON row per record
            for table in self.DOCUMENT_TABLES:
                conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        doc_id TEXT PRIMARY KEY,
                        item_id INTEGER,
                        data TEXT NOT NULL
                    )
                """)
                conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_item ON {table}(item_id);")

            # 2. Completed sales
            conn.execute("""
                CREATE TABLE IF NOT EXISTS price_history (
                    item_id INTEGER PRIMARY KEY,
                    data TEXT NOT NULL,
                    timestamp INTEGER NOT NULL
                )
            """)

            # 3. Operation receipts and notifications
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    sequence INTEGER PRIMARY KEY,
                    tx_hash TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    item_id INTEGER,
                    timestamp INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_item ON events(item_id);")

            # 4. Market state (settings, funds snapshot)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS market_state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)

    def _check_table(self, table: str) -> None:
        if table not in self.DOCUMENT_TABLES:
            raise ValueError(f"Unknown document table: {table}")

    # =========================================================================
    # Document Operations
    # =========================================================================

    def save_documents(self, table: str, docs: List[Tuple[str, Optional[int], Dict[str, Any]]]):
        """Upsert documents. docs = [(doc_id, item_id, data), ...]"""
        self._check_table(table)
        conn = self._get_conn()
        with conn:
            conn.executemany(
                f"INSERT OR REPLACE INTO {table} (doc_id, item_id, data) VALUES (?, ?, ?)",
                [(doc_id, item_id, json.dumps(data, sort_keys=True)) for doc_id, item_id, data in docs]
            )

    def get_document(self, table: str, doc_id: str) -> Optional[Dict[str, Any]]:
        self._check_table(table)
        conn = self._get_conn()
        cursor = conn.execute(f"SELECT data FROM {table} WHERE doc_id = ?", (doc_id,))
        row = cursor.fetchone()
        return json.loads(row['data']) if row else None

    def get_all_documents(self, table: str) -> List[Dict[str, Any]]:
        """Get every document of a table, ordered by item id."""
        self._check_table(table)
        conn = self._get_conn()
        cursor = conn.execute(f"SELECT data FROM {table} ORDER BY item_id ASC, doc_id ASC")
        return [json.loads(row['data']) for row in cursor]

    def count_documents(self, table: str) -> int:
        self._check_table(table)
        conn = self._get_conn()
        cursor = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
        return cursor.fetchone()['cnt']

    # =========================================================================
    # History & Events
    # =========================================================================

    def save_price_record(self, item_id: int, data: Dict[str, Any], timestamp: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO price_history (item_id, data, timestamp) VALUES (?, ?, ?)",
                (item_id, json.dumps(data, sort_keys=True), timestamp)
            )

    def get_price_history(self) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT data FROM price_history ORDER BY timestamp ASC, item_id ASC")
        return [json.loads(row['data']) for row in cursor]

    def save_event(self, sequence: int, tx_hash: str, operation: str, item_id: Optional[int], timestamp: int, data: Dict[str, Any]):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO events (sequence, tx_hash, operation, item_id, timestamp, data) VALUES (?, ?, ?, ?, ?, ?)",
                (sequence, tx_hash, operation, item_id, timestamp, json.dumps(data, sort_keys=True, default=str))
            )

    def get_events(self, item_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get events ordered by sequence, optionally for one item."""
        conn = self._get_conn()
        if item_id is None:
            cursor = conn.execute("SELECT * FROM events ORDER BY sequence ASC")
        else:
            cursor = conn.execute("SELECT * FROM events WHERE item_id = ? ORDER BY sequence ASC", (item_id,))
        return [
            {
                "sequence": row['sequence'],
                "tx_hash": row['tx_hash'],
                "operation": row['operation'],
                "item_id": row['item_id'],
                "timestamp": row['timestamp'],
                "details": json.loads(row['data']),
            }
            for row in cursor
        ]

    def get_last_sequence(self) -> int:
        conn = self._get_conn()
        cursor = conn.execute("SELECT MAX(sequence) as seq FROM events")
        return cursor.fetchone()['seq'] or 0

    # =========================================================================
    # Market State Operations
    # =========================================================================

    def set_state(self, key: str, value: Any):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO market_state (key, value) VALUES (?, ?)",
                (key, json.dumps(value, sort_keys=True))
            )

    def get_state(self, key: str) -> Optional[Any]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT value FROM market_state WHERE key = ?", (key,))
        row = cursor.fetchone()
        return json.loads(row['value']) if row else None

    def close(self):
        """Close the connection of the current thread."""
        conn = getattr(self._conn_local, "conn", None)
        if conn is not None:
            conn.close()
            del self._conn_local.conn
