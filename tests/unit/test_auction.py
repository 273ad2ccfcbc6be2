"""
Unit tests for the Auction Engine.

Tests cover:
1. Auction creation and end time
2. Bid admission (starting price, strictly increasing bids)
3. Outbid refunds and refund failure rollback
4. Lazy expiry and auction closing
5. Persistence reload
"""

import pytest

from nftmarket.core.clock import ManualClock
from nftmarket.core.errors import (
    AlreadyEnded,
    AuctionNotActive,
    AuctionNotExpired,
    BidTooLow,
    InsufficientFee,
    InsufficientFunds,
    NotAnAuction,
    NotAuthorized,
    RefundFailed,
)
from nftmarket.core.escrow import FundsLedger
from nftmarket.core.journal import Journal
from nftmarket.core.market.auction import AuctionEngine, DEFAULT_AUCTION_DURATION
from nftmarket.core.market.item import ItemState
from nftmarket.core.market.listing import ListingLedger


FEE = 10**16
ETH = 10**18

FEES = "0x" + "a0" * 20
MARKET = "0x" + "7e" * 20
SELLER = "0x" + "11" * 20
BOB = "0x" + "22" * 20
CAROL = "0x" + "33" * 20
DAVE = "0x" + "44" * 20
NFT = "0x" + "cc" * 20


# =============================================================================
# Fixtures
# =============================================================================


class SwitchableHook:
    """Transfer hook that can be told to reject one recipient."""

    def __init__(self):
        self.blocked = None

    def __call__(self, recipient, amount, memo):
        if recipient == self.blocked:
            raise ConnectionError("transfer rejected")


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def hook():
    return SwitchableHook()


@pytest.fixture
def journal():
    return Journal()


@pytest.fixture
def funds(hook, journal):
    ledger = FundsLedger(fee_recipient=FEES, transfer_hook=hook, journal=journal)
    ledger.deposit(SELLER, ETH)
    ledger.deposit(BOB, 5 * ETH)
    ledger.deposit(CAROL, 5 * ETH)
    return ledger


@pytest.fixture
def ledger(funds, clock, journal):
    return ListingLedger(funds, FEE, clock, custody_address=MARKET, journal=journal)


@pytest.fixture
def engine(ledger, funds, clock, journal):
    return AuctionEngine(ledger, funds, clock, journal=journal)


@pytest.fixture
def auction(engine):
    """An auction starting at 1 ETH."""
    return engine.create_auction(SELLER, NFT, 1, ETH, FEE)


def bid(engine, journal, item_id, bidder, amount):
    """Place a bid inside a transaction, like the marketplace does."""
    with journal.atomic():
        return engine.place_bid(item_id, bidder, amount)


# =============================================================================
# Creation Tests
# =============================================================================


class TestCreateAuction:
    """Tests for createAuction."""

    def test_create(self, engine, clock):
        """Auction ends one duration after creation."""
        item = engine.create_auction(SELLER, NFT, 1, ETH, FEE)

        assert item.is_auction
        assert item.price == ETH
        assert item.auction_end_time == clock() + DEFAULT_AUCTION_DURATION
        assert item.state == ItemState.AUCTION_ACTIVE
        assert engine.is_active(item)

    def test_fee_checked(self, engine):
        with pytest.raises(InsufficientFee):
            engine.create_auction(SELLER, NFT, 1, ETH, 0)

    def test_custom_duration(self, ledger, funds, clock):
        engine = AuctionEngine(ledger, funds, clock, duration=600)
        item = engine.create_auction(SELLER, NFT, 1, ETH, FEE)
        assert item.auction_end_time == clock() + 600


# =============================================================================
# Bidding Tests
# =============================================================================


class TestPlaceBid:
    """Tests for placeBid."""

    def test_opening_bid_at_starting_price(self, engine, journal, auction, funds):
        """The starting price itself is an acceptable opening bid."""
        placed = bid(engine, journal, auction.item_id, BOB, ETH)

        assert engine.highest_bid(auction.item_id) is placed
        assert funds.balance_of(BOB) == 4 * ETH

    def test_opening_bid_below_start(self, engine, journal, auction):
        with pytest.raises(BidTooLow):
            bid(engine, journal, auction.item_id, BOB, ETH - 1)

    def test_equal_bid_rejected(self, engine, journal, auction):
        """Later bids must be strictly higher."""
        bid(engine, journal, auction.item_id, BOB, ETH)
        with pytest.raises(BidTooLow):
            bid(engine, journal, auction.item_id, CAROL, ETH)

    def test_zero_bid_rejected(self, engine, journal, auction):
        with pytest.raises(BidTooLow):
            bid(engine, journal, auction.item_id, BOB, 0)

    def test_outbid_refund(self, engine, journal, auction, funds):
        """Bids 1.0, 1.1, 1.2: only the last stays escrowed, others refunded."""
        bid(engine, journal, auction.item_id, BOB, ETH)
        bid(engine, journal, auction.item_id, CAROL, 11 * ETH // 10)
        bid(engine, journal, auction.item_id, BOB, 12 * ETH // 10)

        assert engine.highest_bid(auction.item_id).bidder == BOB
        assert engine.highest_bid(auction.item_id).amount == 12 * ETH // 10
        assert funds.balance_of(CAROL) == 5 * ETH
        assert funds.balance_of(BOB) == 5 * ETH - 12 * ETH // 10
        assert funds.escrowed_total() == FEE + 12 * ETH // 10
        assert len(engine.bid_history(auction.item_id)) == 3
        assert funds.is_conserved()

    def test_highest_bidder_can_raise(self, engine, journal, auction, funds):
        bid(engine, journal, auction.item_id, BOB, ETH)
        bid(engine, journal, auction.item_id, BOB, 2 * ETH)
        assert funds.balance_of(BOB) == 3 * ETH

    def test_raise_reuses_refunded_funds(self, engine, journal, auction, funds):
        """A bidder with 2 ETH can go from 1.5 to 2.0: the old bid pays for the new one."""
        funds.deposit(DAVE, 2 * ETH)
        first = bid(engine, journal, auction.item_id, DAVE, 15 * ETH // 10)
        raised = bid(engine, journal, auction.item_id, DAVE, 2 * ETH)

        assert first.refunded
        assert engine.highest_bid(auction.item_id) is raised
        assert funds.balance_of(DAVE) == 0
        assert funds.escrowed_total() == FEE + 2 * ETH
        assert funds.is_conserved()

    def test_unaffordable_raise_keeps_previous_bid(self, engine, journal, auction, funds):
        funds.deposit(DAVE, 2 * ETH)
        first = bid(engine, journal, auction.item_id, DAVE, 15 * ETH // 10)

        with pytest.raises(InsufficientFunds):
            bid(engine, journal, auction.item_id, DAVE, 3 * ETH)

        assert engine.highest_bid(auction.item_id) is first
        assert not first.refunded
        assert funds.balance_of(DAVE) == ETH // 2
        assert funds.escrowed_total() == FEE + 15 * ETH // 10
        assert funds.is_conserved()

    def test_seller_cannot_bid(self, engine, journal, auction):
        with pytest.raises(NotAuthorized):
            bid(engine, journal, auction.item_id, SELLER, 2 * ETH)

    def test_bid_needs_funds(self, engine, journal, auction):
        with pytest.raises(InsufficientFunds):
            bid(engine, journal, auction.item_id, BOB, 50 * ETH)
        assert engine.highest_bid(auction.item_id) is None

    def test_bid_after_end_time(self, engine, journal, auction, clock):
        """Expiry is lazy: a bid at the end time is rejected."""
        clock.advance(DEFAULT_AUCTION_DURATION)
        with pytest.raises(AuctionNotActive):
            bid(engine, journal, auction.item_id, BOB, ETH)

    def test_bid_one_second_before_end(self, engine, journal, auction, clock):
        clock.advance(DEFAULT_AUCTION_DURATION - 1)
        bid(engine, journal, auction.item_id, BOB, ETH)

    def test_bid_on_fixed_price_listing(self, engine, journal, ledger):
        item = ledger.create_listing(SELLER, NFT, 5, ETH, FEE)
        with pytest.raises(NotAnAuction):
            bid(engine, journal, item.item_id, BOB, ETH)

    def test_refund_failure_rolls_back(self, engine, journal, auction, funds, hook):
        """If the previous bidder cannot be refunded, the new bid never happened."""
        first = bid(engine, journal, auction.item_id, BOB, ETH)
        hook.blocked = BOB

        with pytest.raises(RefundFailed):
            bid(engine, journal, auction.item_id, CAROL, 2 * ETH)

        assert engine.highest_bid(auction.item_id) is first
        assert not first.refunded
        assert funds.balance_of(CAROL) == 5 * ETH
        assert funds.balance_of(BOB) == 4 * ETH
        assert len(engine.bid_history(auction.item_id)) == 1
        assert funds.is_conserved()


# =============================================================================
# Closing Tests
# =============================================================================


class TestEndAuction:
    """Tests for endAuction."""

    def test_end_with_winner(self, engine, journal, auction, funds, clock):
        """Winner owns the item; seller is owed the bid; fee collected."""
        bid(engine, journal, auction.item_id, BOB, ETH)
        bid(engine, journal, auction.item_id, CAROL, 2 * ETH)
        clock.advance(DEFAULT_AUCTION_DURATION)

        with journal.atomic():
            record = engine.end_auction(auction.item_id)

        assert record.buyer == CAROL
        assert record.price == 2 * ETH
        assert auction.owner == CAROL
        assert auction.sold
        assert funds.pending_payout(SELLER) == 2 * ETH
        assert funds.fees_collected == FEE
        assert funds.escrowed_total() == 0
        assert funds.is_conserved()

    def test_end_without_bids(self, engine, auction, funds, clock):
        """No bids: item closes unsold; the fee is still collected."""
        clock.advance(DEFAULT_AUCTION_DURATION)

        assert engine.end_auction(auction.item_id) is None
        assert auction.closed
        assert not auction.sold
        assert auction.owner is None
        assert funds.fees_collected == FEE

    def test_end_before_expiry(self, engine, auction, clock):
        clock.advance(DEFAULT_AUCTION_DURATION - 1)
        with pytest.raises(AuctionNotExpired):
            engine.end_auction(auction.item_id)

    def test_end_twice(self, engine, auction, clock):
        clock.advance(DEFAULT_AUCTION_DURATION)
        engine.end_auction(auction.item_id)
        with pytest.raises(AlreadyEnded):
            engine.end_auction(auction.item_id)

    def test_no_bids_after_end(self, engine, journal, auction, clock):
        clock.advance(DEFAULT_AUCTION_DURATION)
        engine.end_auction(auction.item_id)
        with pytest.raises(AuctionNotActive):
            bid(engine, journal, auction.item_id, BOB, ETH)

    def test_refund_highest(self, engine, journal, auction, funds):
        bid(engine, journal, auction.item_id, BOB, ETH)
        refunded = engine.refund_highest(auction.item_id)

        assert refunded.bidder == BOB
        assert refunded.refunded
        assert not engine.has_bids(auction.item_id)
        assert funds.balance_of(BOB) == 5 * ETH


# =============================================================================
# Persistence Tests
# =============================================================================


class TestLoad:
    """Tests for rebuilding bid state."""

    def test_highest_is_latest_unrefunded(self, engine, journal, auction, ledger, funds, clock):
        bid(engine, journal, auction.item_id, BOB, ETH)
        bid(engine, journal, auction.item_id, CAROL, 2 * ETH)

        fresh = AuctionEngine(ledger, funds, clock)
        fresh.load(engine.bid_history(auction.item_id))

        assert fresh.highest_bid(auction.item_id).bidder == CAROL
        assert len(fresh.bid_history(auction.item_id)) == 2

    def test_fully_refunded_item_has_no_highest(self, engine, journal, auction, ledger, funds, clock):
        bid(engine, journal, auction.item_id, BOB, ETH)
        engine.refund_highest(auction.item_id)

        fresh = AuctionEngine(ledger, funds, clock)
        fresh.load(engine.bid_history(auction.item_id))
        assert fresh.highest_bid(auction.item_id) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
