from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable

from nftmarket.core.collection.models import Collection, Token
from nftmarket.core.market.item import Bid, MarketItem, Offer, PriceRecord, Receipt
from nftmarket.core.storage.sqlite_adapter import SQLiteAdapter
from nftmarket.utils.logger import get_logger

logger = get_logger("storage.manager")


class StorageManager:
    """
    Manages the marketplace document store.

    The store mirrors in-memory state after each committed operation. It is
    never read for live queries; ``load_*`` methods exist to restore a
    marketplace instance on restart.

    Handles:
    - Items, bids and offers
    - Collections and tokens
    - Price history and operation receipts
    - Funds ledger, factory and settings snapshots
    """

    def __init__(self, data_dir: Path, db_name: str = "market.db"):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path)

        logger.info(f"StorageManager initialized at {self.db_path}")

    # =========================================================================
    # Market Items
    # =========================================================================

    def save_items(self, items: Iterable[MarketItem]):
        self.adapter.save_documents(
            "items", [(str(i.item_id), i.item_id, i.to_dict()) for i in items]
        )

    def save_bids(self, bids: Iterable[Bid]):
        # Bids on one item strictly increase, so (item, amount) is unique
        self.adapter.save_documents(
            "bids", [(f"{b.item_id}:{b.amount}", b.item_id, b.to_dict()) for b in bids]
        )

    def save_offers(self, offers: Iterable[Offer]):
        self.adapter.save_documents(
            "offers", [(f"{o.item_id}:{o.offer_index}", o.item_id, o.to_dict()) for o in offers]
        )

    def save_price_record(self, record: PriceRecord):
        self.adapter.save_price_record(record.item_id, record.to_dict(), record.timestamp)

    def get_item(self, item_id: int) -> Optional[MarketItem]:
        data = self.adapter.get_document("items", str(item_id))
        return MarketItem.from_dict(data) if data else None

    def load_items(self) -> List[MarketItem]:
        return [MarketItem.from_dict(d) for d in self.adapter.get_all_documents("items")]

    def load_bids(self) -> List[Bid]:
        return [Bid.from_dict(d) for d in self.adapter.get_all_documents("bids")]

    def load_offers(self) -> List[Offer]:
        return [Offer.from_dict(d) for d in self.adapter.get_all_documents("offers")]

    def load_price_history(self) -> List[PriceRecord]:
        return [PriceRecord.from_dict(d) for d in self.adapter.get_price_history()]

    # =========================================================================
    # Collections & Tokens
    # =========================================================================

    def save_collections(self, collections: Iterable[Collection]):
        self.adapter.save_documents(
            "collections", [(c.address, None, c.to_dict()) for c in collections]
        )

    def save_tokens(self, tokens: Iterable[Token]):
        self.adapter.save_documents(
            "tokens", [(f"{t.collection}:{t.token_id}", None, t.to_dict()) for t in tokens]
        )

    def load_collections(self) -> List[Collection]:
        collections = [Collection.from_dict(d) for d in self.adapter.get_all_documents("collections")]
        return sorted(collections, key=lambda c: c.created_at)

    def load_tokens(self) -> List[Token]:
        return [Token.from_dict(d) for d in self.adapter.get_all_documents("tokens")]

    # =========================================================================
    # Receipts
    # =========================================================================

    def save_receipt(self, receipt: Receipt):
        self.adapter.save_event(
            receipt.sequence,
            receipt.tx_hash,
            receipt.operation,
            receipt.item_id,
            receipt.timestamp,
            receipt.details,
        )

    def load_events(self, item_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.adapter.get_events(item_id)

    def get_last_sequence(self) -> int:
        return self.adapter.get_last_sequence()

    # =========================================================================
    # Snapshots
    # =========================================================================

    def save_funds(self, funds_state: Dict[str, Any]):
        """Persist the funds ledger snapshot."""
        self.adapter.set_state("funds", funds_state)

    def load_funds(self) -> Optional[Dict[str, Any]]:
        return self.adapter.get_state("funds")

    def save_factory_state(self, factory_state: Dict[str, Any]):
        self.adapter.set_state("factory", factory_state)

    def load_factory_state(self) -> Optional[Dict[str, Any]]:
        return self.adapter.get_state("factory")

    def save_settings(self, settings: Dict[str, Any]):
        self.adapter.set_state("settings", settings)

    def load_settings(self) -> Optional[Dict[str, Any]]:
        return self.adapter.get_state("settings")

    def is_empty(self) -> bool:
        """True if nothing has been persisted yet."""
        return self.adapter.get_state("funds") is None and self.adapter.count_documents("items") == 0

    def close(self):
        self.adapter.close()
