"""
Auction Engine - English auctions over market items.

State machine per item:

    NotListed ── createAuction ──▶ Active(auction_end_time, highest bid)
    Active ── endAuction (now >= end) ──▶ Ended (sold to winner, or closed)

Bid admission:
1. The auction must be active: not ended and ``now < auction_end_time``
2. The opening bid must be at least the starting price
3. Every later bid must be strictly higher than the current highest
4. The new bid is escrowed, then the previous highest bid is refunded

If the refund fails the whole bid is rolled back by the enclosing journal and
the previous highest bid stays in place. Expiry is evaluated lazily on each
call; nothing runs in the background.
"""

import threading
from typing import Callable, Dict, List, Optional

from nftmarket.core.errors import (
    AlreadyEnded,
    AuctionNotActive,
    AuctionNotExpired,
    BidTooLow,
    NotAnAuction,
    NotAuthorized,
)
from nftmarket.core.escrow import FundsLedger, HoldReason
from nftmarket.core.journal import Journal
from nftmarket.core.market.item import Bid, MarketItem, PriceRecord
from nftmarket.core.market.listing import ListingLedger, _address
from nftmarket.utils.logger import get_logger
from nftmarket.utils.validation import validate_price

logger = get_logger("auction")


# =============================================================================
# Constants
# =============================================================================

# Default auction length (seconds)
DEFAULT_AUCTION_DURATION = 24 * 60 * 60


# =============================================================================
# Auction Engine
# =============================================================================


class AuctionEngine:
    """
    Bid admission and closing for auction items.

    Attributes:
        highest: item_id -> current highest (or winning) Bid
        history: item_id -> every accepted bid, in order
    """

    def __init__(
        self,
        ledger: ListingLedger,
        funds: FundsLedger,
        clock: Callable[[], int],
        duration: int = DEFAULT_AUCTION_DURATION,
        journal: Optional[Journal] = None,
    ):
        self.ledger = ledger
        self.funds = funds
        self.clock = clock
        self.duration = duration
        self.journal = journal or ledger.journal

        self.highest: Dict[int, Bid] = {}
        self.history: Dict[int, List[Bid]] = {}

        self._lock = threading.RLock()

    def _record(self, undo: Callable[[], None]) -> None:
        def locked_undo():
            with self._lock:
                undo()

        self.journal.record(locked_undo)

    def _get_auction(self, item_id: int) -> MarketItem:
        item = self.ledger.get_item(item_id)
        if not item.is_auction:
            raise NotAnAuction(f"Item {item_id} is a fixed-price listing")
        return item

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_auction(
        self,
        seller: str,
        nft_contract: str,
        token_id: int,
        starting_price: int,
        fee_paid: int,
    ) -> MarketItem:
        """
        List a token for auction, ending ``duration`` seconds from now.

        Same fee and price checks as a fixed-price listing.
        """
        end_time = self.clock() + self.duration
        item = self.ledger.open_item(
            seller,
            nft_contract,
            token_id,
            starting_price,
            fee_paid,
            is_auction=True,
            auction_end_time=end_time,
        )
        logger.info(f"Auction {item.item_id} open until {end_time}, starting at {starting_price}")
        return item

    def is_active(self, item: MarketItem) -> bool:
        return item.is_auction and item.is_open and self.clock() < item.auction_end_time

    def place_bid(self, item_id: int, bidder: str, amount: int) -> Bid:
        """
        Place a bid on an active auction.

        Raises:
            NotAnAuction: Item is a fixed-price listing
            AuctionNotActive: Auction ended or its end time passed
            NotAuthorized: Seller bidding on their own item
            BidTooLow: Below starting price, or not above the highest bid
            InsufficientFunds: Bidder balance does not cover the bid
            RefundFailed: Previous highest bidder could not be refunded
        """
        bidder = _address(bidder, "bidder")
        item = self._get_auction(item_id)
        if not self.is_active(item):
            raise AuctionNotActive(f"Auction {item_id} is not active")
        if bidder == item.seller:
            raise NotAuthorized("Seller cannot bid on their own auction")

        valid, err = validate_price(amount, "bid")
        if not valid:
            raise BidTooLow(err)

        with self._lock:
            previous = self.highest.get(item_id)
        if previous is None:
            if amount < item.price:
                raise BidTooLow(f"Bid {amount} below starting price {item.price}")
        elif amount <= previous.amount:
            raise BidTooLow(f"Bid {amount} must exceed highest bid {previous.amount}")

        # Refund first so a bidder raising their own bid can reuse those funds.
        if previous is not None:
            self._refund_bid(previous)

        held = self.funds.hold(bidder, amount, HoldReason.BID, item_id)
        bid = Bid(
            item_id=item_id,
            bidder=bidder,
            amount=amount,
            timestamp=self.clock(),
            hold_id=held.hold_id,
        )

        with self._lock:
            self.highest[item_id] = bid
            self.history.setdefault(item_id, []).append(bid)

            def undo():
                self.history[item_id].remove(bid)
                if previous is not None:
                    self.highest[item_id] = previous
                else:
                    self.highest.pop(item_id, None)

            self._record(undo)

        logger.info(f"Bid on auction {item_id}: {amount} from {bidder[:10]}")
        return bid

    def _refund_bid(self, bid: Bid) -> None:
        self.funds.refund(bid.hold_id)
        bid.refunded = True
        self._record(lambda: setattr(bid, "refunded", False))

    def end_auction(self, item_id: int) -> Optional[PriceRecord]:
        """
        Close an expired auction. Anyone may call it.

        The highest bidder receives the token and the bid is owed to the
        seller; without bids the item goes back to the seller unsold.

        Returns:
            PriceRecord of the sale, or None when there was no bid

        Raises:
            AlreadyEnded: Auction already resolved
            AuctionNotExpired: End time not reached
        """
        item = self._get_auction(item_id)
        if not item.is_open:
            raise AlreadyEnded(f"Auction {item_id} already ended")
        now = self.clock()
        if now < item.auction_end_time:
            raise AuctionNotExpired(f"Auction {item_id} ends in {item.auction_end_time - now}s")

        winner = self.highest_bid(item_id)
        if winner is None:
            self.ledger.close_unsold(item)
            logger.info(f"Auction {item_id} ended without bids")
            return None

        self.funds.settle(winner.hold_id, item.seller)
        record = self.ledger.complete_sale(item, winner.bidder, winner.amount)
        logger.info(f"Auction {item_id} won by {winner.bidder[:10]} for {winner.amount}")
        return record

    def refund_highest(self, item_id: int) -> Optional[Bid]:
        """
        Refund the outstanding highest bid, if any.

        Used when the item is sold through another path (an accepted offer).
        """
        bid = self.highest_bid(item_id)
        if bid is None:
            return None

        self._refund_bid(bid)
        with self._lock:
            self.highest.pop(item_id, None)
            self._record(lambda: self.highest.__setitem__(item_id, bid))

        logger.info(f"Highest bid on item {item_id} refunded to {bid.bidder[:10]}")
        return bid

    # =========================================================================
    # Queries
    # =========================================================================

    def highest_bid(self, item_id: int) -> Optional[Bid]:
        with self._lock:
            return self.highest.get(item_id)

    def has_bids(self, item_id: int) -> bool:
        """Whether the auction has an outstanding (unrefunded) highest bid."""
        bid = self.highest_bid(item_id)
        return bid is not None and not bid.refunded

    def bid_history(self, item_id: int) -> List[Bid]:
        with self._lock:
            return list(self.history.get(item_id, []))

    def active_auctions(self) -> List[MarketItem]:
        return [i for i in self.ledger.fetch_market_items() if self.is_active(i)]

    def stats(self) -> dict:
        with self._lock:
            return {
                "auctions_with_bids": len(self.highest),
                "total_bids": sum(len(b) for b in self.history.values()),
                "duration": self.duration,
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self, bids: List[Bid]) -> None:
        """
        Rebuild bid state from persisted bids.

        The highest bid of an item is its latest bid, unless that bid was
        refunded.
        """
        with self._lock:
            self.history = {}
            self.highest = {}
            for bid in sorted(bids, key=lambda b: (b.item_id, b.amount)):
                self.history.setdefault(bid.item_id, []).append(bid)
            for item_id, item_bids in self.history.items():
                latest = item_bids[-1]
                if not latest.refunded:
                    self.highest[item_id] = latest

        logger.info(f"Loaded {len(bids)} bids across {len(self.history)} auctions")
