"""
Unit tests for the Listing Ledger.

Tests cover:
1. Listing creation (fee, price, duplicate and ownership checks)
2. Fixed-price purchases and fund routing
3. Cancellation and fee forfeiture
4. Factory token custody and collection stats
5. Queries and rollback
"""

import pytest

from nftmarket.core.clock import ManualClock
from nftmarket.core.collection.factory import CollectionFactory
from nftmarket.core.errors import (
    AlreadyListed,
    InsufficientFee,
    InsufficientFunds,
    InvalidPrice,
    ItemAlreadySold,
    ItemIsAuction,
    ItemNotFound,
    ListingClosed,
    NotAuthorized,
    PriceMismatch,
    ValidationError,
)
from nftmarket.core.escrow import FundsLedger
from nftmarket.core.journal import Journal
from nftmarket.core.market.item import ItemState
from nftmarket.core.market.listing import ListingLedger


FEE = 10**16
ETH = 10**18

ADMIN = "0x" + "a0" * 20
MARKET = "0x" + "7e" * 20
SELLER = "0x" + "11" * 20
BUYER = "0x" + "22" * 20
NFT = "0x" + "cc" * 20


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def journal():
    return Journal()


@pytest.fixture
def funds(journal):
    """Funds ledger with seller and buyer funded."""
    ledger = FundsLedger(fee_recipient=ADMIN, journal=journal)
    ledger.deposit(SELLER, ETH)
    ledger.deposit(BUYER, 5 * ETH)
    return ledger


@pytest.fixture
def factory(clock, journal):
    return CollectionFactory(admin=ADMIN, marketplace_address=MARKET, clock=clock, journal=journal)


@pytest.fixture
def ledger(funds, clock, factory, journal):
    return ListingLedger(funds, FEE, clock, custody_address=MARKET, tokens=factory, journal=journal)


@pytest.fixture
def minted(factory):
    """A factory collection with token #1 owned by the seller."""
    collection = factory.create_collection(SELLER, {"name": "Apes", "symbol": "APE", "category": "art"})
    factory.mint(collection.address, SELLER, SELLER, "ipfs://apes/1")
    return collection.address


# =============================================================================
# Listing Creation Tests
# =============================================================================


class TestCreateListing:
    """Tests for createListing."""

    def test_create_listing(self, ledger, funds):
        """New listing is unsold with no owner and the fee escrowed."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)

        assert item.item_id == 1
        assert item.seller == SELLER
        assert item.owner is None
        assert not item.sold
        assert not item.is_auction
        assert item.auction_end_time == 0
        assert item.state == ItemState.LISTED
        assert funds.balance_of(SELLER) == ETH - FEE
        assert funds.escrowed_total() == FEE

    def test_item_ids_are_sequential(self, ledger):
        first = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        second = ledger.create_listing(SELLER, NFT, 2, ETH, FEE)
        assert (first.item_id, second.item_id) == (1, 2)

    def test_fee_must_match(self, ledger):
        """Only the exact listing fee is accepted."""
        with pytest.raises(InsufficientFee):
            ledger.create_listing(SELLER, NFT, 1, ETH, 0)
        with pytest.raises(InsufficientFee):
            ledger.create_listing(SELLER, NFT, 1, ETH, FEE + 1)
        assert ledger.items == {}

    def test_fee_error_is_validation_error(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create_listing(SELLER, NFT, 1, ETH, 0)

    def test_price_must_be_positive(self, ledger):
        with pytest.raises(InvalidPrice):
            ledger.create_listing(SELLER, NFT, 1, 0, FEE)
        with pytest.raises(InvalidPrice):
            ledger.create_listing(SELLER, NFT, 1, -1, FEE)

    def test_duplicate_listing(self, ledger):
        """A token cannot have two open listings."""
        ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        with pytest.raises(AlreadyListed):
            ledger.create_listing(SELLER, NFT, 1, 2 * ETH, FEE)

    def test_fee_requires_balance(self, ledger):
        poor = "0x" + "99" * 20
        with pytest.raises(InsufficientFunds):
            ledger.create_listing(poor, NFT, 1, ETH, FEE)

    def test_zero_fee_when_configured(self, funds, clock):
        ledger = ListingLedger(funds, 0, clock, custody_address=MARKET)
        item = ledger.create_listing(SELLER, NFT, 1, ETH, 0)
        assert item.fee_hold_id is None

    def test_unknown_item(self, ledger):
        with pytest.raises(ItemNotFound):
            ledger.get_item(42)


# =============================================================================
# Purchase Tests
# =============================================================================


class TestCloseListing:
    """Tests for closeListing."""

    def test_buy(self, ledger, funds):
        """Exact payment sells the item and routes the funds."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        record = ledger.close_listing(item.item_id, BUYER, ETH)

        assert item.sold
        assert item.owner == BUYER
        assert item.state == ItemState.SOLD
        assert record.price == ETH
        assert record.buyer == BUYER
        assert record.seller == SELLER
        assert funds.balance_of(BUYER) == 4 * ETH
        assert funds.pending_payout(SELLER) == ETH
        assert funds.fees_collected == FEE
        assert funds.escrowed_total() == 0
        assert funds.is_conserved()

    def test_price_mismatch(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        with pytest.raises(PriceMismatch):
            ledger.close_listing(item.item_id, BUYER, ETH - 1)
        with pytest.raises(PriceMismatch):
            ledger.close_listing(item.item_id, BUYER, ETH + 1)
        assert not item.sold

    def test_already_sold(self, ledger):
        """A sold item cannot be bought again; the owner never changes."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.close_listing(item.item_id, BUYER, ETH)

        other = "0x" + "33" * 20
        with pytest.raises(ItemAlreadySold):
            ledger.close_listing(item.item_id, other, ETH)
        assert item.owner == BUYER

    def test_cannot_buy_auction(self, ledger, clock):
        item = ledger.open_item(SELLER, NFT, 1, ETH, FEE, is_auction=True, auction_end_time=clock() + 100)
        with pytest.raises(ItemIsAuction):
            ledger.close_listing(item.item_id, BUYER, ETH)

    def test_seller_cannot_buy(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        with pytest.raises(NotAuthorized):
            ledger.close_listing(item.item_id, SELLER, ETH)

    def test_buyer_needs_funds(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, 10 * ETH, FEE)
        with pytest.raises(InsufficientFunds):
            ledger.close_listing(item.item_id, BUYER, 10 * ETH)

    def test_price_history(self, ledger, clock):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        clock.advance(60)
        ledger.close_listing(item.item_id, BUYER, ETH)

        history = ledger.get_price_history(item.item_id)
        assert len(history) == 1
        assert history[0].timestamp == clock()

    def test_token_can_be_relisted_after_sale(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.close_listing(item.item_id, BUYER, ETH)

        relisted = ledger.create_listing(BUYER, NFT, 1, 2 * ETH, FEE)
        assert relisted.item_id == 2


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancelListing:
    """Tests for cancelListing."""

    def test_cancel(self, ledger, funds):
        """Cancelling closes the item and forfeits the fee."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.cancel_listing(item.item_id, SELLER)

        assert item.closed
        assert item.state == ItemState.CLOSED
        assert funds.fees_collected == FEE
        assert ledger.fetch_market_items() == []

    def test_only_seller_cancels(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        with pytest.raises(NotAuthorized):
            ledger.cancel_listing(item.item_id, BUYER)

    def test_cannot_buy_cancelled(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.cancel_listing(item.item_id, SELLER)
        with pytest.raises(ListingClosed):
            ledger.close_listing(item.item_id, BUYER, ETH)

    def test_cannot_cancel_sold(self, ledger):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.close_listing(item.item_id, BUYER, ETH)
        with pytest.raises(ItemAlreadySold):
            ledger.cancel_listing(item.item_id, SELLER)


# =============================================================================
# Factory Token Tests
# =============================================================================


class TestFactoryTokens:
    """Tests for ownership checks and custody of factory tokens."""

    def test_listing_takes_custody(self, ledger, factory, minted):
        ledger.create_listing(SELLER, minted, 1, ETH, FEE)
        assert factory.owner_of(minted, 1) == MARKET

    def test_only_owner_can_list(self, ledger, minted):
        with pytest.raises(NotAuthorized):
            ledger.create_listing(BUYER, minted, 1, ETH, FEE)

    def test_sale_transfers_token(self, ledger, factory, minted):
        item = ledger.create_listing(SELLER, minted, 1, ETH, FEE)
        ledger.close_listing(item.item_id, BUYER, ETH)

        assert factory.owner_of(minted, 1) == BUYER
        collection = factory.get_collection(minted)
        assert collection.total_sales == 1
        assert collection.total_volume == ETH
        assert collection.floor_price == ETH

    def test_cancel_returns_token(self, ledger, factory, minted):
        item = ledger.create_listing(SELLER, minted, 1, ETH, FEE)
        ledger.cancel_listing(item.item_id, SELLER)
        assert factory.owner_of(minted, 1) == SELLER

    def test_listing_updates_floor(self, ledger, factory, minted):
        ledger.create_listing(SELLER, minted, 1, ETH // 2, FEE)
        assert factory.get_collection(minted).floor_price == ETH // 2


# =============================================================================
# Admin & Query Tests
# =============================================================================


class TestQueries:
    """Tests for fee changes and item queries."""

    def test_set_listing_fee(self, ledger):
        ledger.set_listing_fee(2 * FEE)
        with pytest.raises(InsufficientFee):
            ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        assert ledger.create_listing(SELLER, NFT, 1, ETH, 2 * FEE).listing_fee == 2 * FEE

    def test_negative_fee_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.set_listing_fee(-1)

    def test_fetch_queries(self, ledger):
        """Listed, owned and collection queries see the right items."""
        a = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.create_listing(SELLER, NFT, 2, ETH, FEE)
        ledger.close_listing(a.item_id, BUYER, ETH)

        assert [i.item_id for i in ledger.fetch_market_items()] == [2]
        assert len(ledger.fetch_items_listed(SELLER)) == 2
        assert [i.item_id for i in ledger.fetch_owned_items(BUYER)] == [1]
        assert len(ledger.fetch_collection_items(NFT)) == 2

    def test_stats(self, ledger):
        a = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
        ledger.close_listing(a.item_id, BUYER, ETH)
        stats = ledger.stats()
        assert stats["sold"] == 1
        assert stats["volume"] == ETH


# =============================================================================
# Rollback Tests
# =============================================================================


class TestRollback:
    """Tests for journal-driven rollback of ledger mutations."""

    def test_failed_sale_is_undone(self, ledger, funds, journal):
        """Every effect of a sale disappears when the transaction aborts."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)

        with pytest.raises(RuntimeError):
            with journal.atomic():
                ledger.close_listing(item.item_id, BUYER, ETH)
                raise RuntimeError("later step failed")

        assert not item.sold
        assert item.owner is None
        assert ledger.get_price_history() == []
        assert funds.balance_of(BUYER) == 5 * ETH
        assert funds.escrowed_total() == FEE
        assert funds.is_conserved()
        # Still purchasable
        ledger.close_listing(item.item_id, BUYER, ETH)

    def test_failed_create_releases_id(self, ledger, journal):
        with pytest.raises(RuntimeError):
            with journal.atomic():
                ledger.create_listing(SELLER, NFT, 1, ETH, FEE)
                raise RuntimeError("abort")

        assert ledger.items == {}
        assert ledger.create_listing(SELLER, NFT, 1, ETH, FEE).item_id == 1

    def test_token_slot_freed_on_commit(self, ledger, journal):
        """A sold token stays reserved until the sale commits."""
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)

        with journal.atomic():
            ledger.close_listing(item.item_id, BUYER, ETH)
            assert ledger.open_tokens[item.token_key] == item.item_id

        assert item.token_key not in ledger.open_tokens

    def test_failed_sale_keeps_token_slot(self, ledger, journal):
        item = ledger.create_listing(SELLER, NFT, 1, ETH, FEE)

        with pytest.raises(RuntimeError):
            with journal.atomic():
                ledger.close_listing(item.item_id, BUYER, ETH)
                raise RuntimeError("abort")

        assert ledger.open_tokens[item.token_key] == item.item_id
        with pytest.raises(AlreadyListed):
            ledger.create_listing(SELLER, NFT, 1, ETH, FEE)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
