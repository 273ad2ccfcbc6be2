"""
Unit tests for the document store.

Tests cover:
1. SQLite adapter documents, events and state
2. StorageManager round trips for market records
"""

import pytest

from nftmarket.core.market.item import Bid, MarketItem, Offer, OfferStatus, PriceRecord, make_receipt
from nftmarket.core.storage import SQLiteAdapter, StorageManager


SELLER = "0x" + "11" * 20
BOB = "0x" + "22" * 20
NFT = "0x" + "cc" * 20


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def adapter(tmp_path):
    db = SQLiteAdapter(tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def storage(tmp_path):
    manager = StorageManager(tmp_path / "data")
    yield manager
    manager.close()


# =============================================================================
# Adapter Tests
# =============================================================================


class TestSQLiteAdapter:
    """Tests for the raw SQLite backend."""

    def test_documents(self, adapter):
        adapter.save_documents("items", [("2", 2, {"v": "b"}), ("1", 1, {"v": "a"})])

        assert adapter.get_document("items", "1") == {"v": "a"}
        assert adapter.get_document("items", "9") is None
        assert adapter.get_all_documents("items") == [{"v": "a"}, {"v": "b"}]
        assert adapter.count_documents("items") == 2

    def test_upsert_replaces(self, adapter):
        adapter.save_documents("offers", [("1:0", 1, {"status": 0})])
        adapter.save_documents("offers", [("1:0", 1, {"status": 1})])

        assert adapter.get_all_documents("offers") == [{"status": 1}]

    def test_unknown_table(self, adapter):
        with pytest.raises(ValueError):
            adapter.save_documents("users", [])
        with pytest.raises(ValueError):
            adapter.get_document("users; DROP TABLE items", "1")

    def test_events_ordered_by_sequence(self, adapter):
        adapter.save_event(2, "0xb", "place_bid", 1, 20, {"amount": 5})
        adapter.save_event(1, "0xa", "create_auction", 1, 10, {})
        adapter.save_event(3, "0xc", "create_listing", 2, 30, {})

        events = adapter.get_events()
        assert [e["sequence"] for e in events] == [1, 2, 3]
        assert events[1]["details"] == {"amount": 5}
        assert [e["operation"] for e in adapter.get_events(item_id=1)] == ["create_auction", "place_bid"]
        assert adapter.get_last_sequence() == 3

    def test_empty_sequence(self, adapter):
        assert adapter.get_last_sequence() == 0

    def test_state(self, adapter):
        adapter.set_state("settings", {"listing_fee": 10})
        assert adapter.get_state("settings") == {"listing_fee": 10}
        assert adapter.get_state("missing") is None

    def test_large_integers(self, adapter):
        """Wei values beyond 64 bits survive the JSON encoding."""
        adapter.set_state("funds", {"balance": 2**200})
        assert adapter.get_state("funds")["balance"] == 2**200


# =============================================================================
# Manager Tests
# =============================================================================


class TestStorageManager:
    """Tests for StorageManager."""

    def test_starts_empty(self, storage):
        assert storage.is_empty()
        assert storage.load_items() == []

    def test_items(self, storage):
        item = MarketItem(1, NFT, 7, SELLER, 10**18, listing_fee=10**16, fee_hold_id=1, created_at=100)
        storage.save_items([item])

        assert storage.get_item(1) == item
        assert storage.get_item(2) is None
        assert storage.load_items() == [item]
        assert not storage.is_empty()

    def test_bids_keyed_by_amount(self, storage):
        storage.save_bids([Bid(1, BOB, 100, 10, hold_id=3)])
        storage.save_bids([Bid(1, BOB, 100, 10, hold_id=3, refunded=True), Bid(1, SELLER, 200, 11)])

        bids = storage.load_bids()
        assert [(b.amount, b.refunded) for b in bids] == [(100, True), (200, False)]

    def test_offers_keep_status(self, storage):
        offer = Offer(0, 1, BOB, 50, 1000, hold_id=4, status=OfferStatus.WITHDRAWN)
        storage.save_offers([offer])

        loaded = storage.load_offers()[0]
        assert loaded == offer
        assert loaded.status is OfferStatus.WITHDRAWN

    def test_price_history(self, storage):
        storage.save_price_record(PriceRecord(2, NFT, 8, 300, 50, BOB, SELLER))
        storage.save_price_record(PriceRecord(1, NFT, 7, 100, 40, BOB, SELLER))

        assert [r.item_id for r in storage.load_price_history()] == [1, 2]

    def test_receipts(self, storage):
        storage.save_receipt(make_receipt("create_listing", 1, 100, 1, price=10))
        storage.save_receipt(make_receipt("close_listing", 1, 120, 2, buyer=BOB))

        events = storage.load_events(1)
        assert [e["operation"] for e in events] == ["create_listing", "close_listing"]
        assert events[1]["details"] == {"buyer": BOB}
        assert storage.get_last_sequence() == 2

    def test_snapshots(self, storage):
        storage.save_funds({"balances": {SELLER: 5}})
        storage.save_settings({"listing_fee": 0})
        storage.save_factory_state({"nonce": 3})

        assert storage.load_funds() == {"balances": {SELLER: 5}}
        assert storage.load_settings() == {"listing_fee": 0}
        assert storage.load_factory_state() == {"nonce": 3}
        assert not storage.is_empty()

    def test_reopen(self, tmp_path):
        """Data written by one manager is visible to the next."""
        first = StorageManager(tmp_path)
        first.save_items([MarketItem(1, NFT, 7, SELLER, 10)])
        first.close()

        second = StorageManager(tmp_path)
        assert second.get_item(1).price == 10
        second.close()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
