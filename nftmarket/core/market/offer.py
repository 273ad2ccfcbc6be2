"""
Offer Engine - unsolicited offers against market items.

Any account except the seller can escrow an offer against an unsold item,
with an expiration time. The seller may accept one pending, unexpired offer;
acceptance sells the item to the offerer and refunds every other pending
offer (and any outstanding auction bid) in the same transaction.

Offer status transitions:

    PENDING ── accept ──▶ ACCEPTED
    PENDING ── item sold elsewhere ──▶ REFUNDED
    PENDING ── offerer withdraws ──▶ WITHDRAWN
    PENDING ── expiration passed (lazy sweep) ──▶ EXPIRED

Expired offers are only refunded when something looks at them: an explicit
``expire_offers`` call, or any sale of the item.
"""

import threading
from typing import Callable, Dict, List, Optional

from nftmarket.core.errors import (
    AuctionNotActive,
    InvalidExpiration,
    InvalidPrice,
    ItemAlreadySold,
    ListingClosed,
    NotAuthorized,
    OfferAlreadyResolved,
    OfferExpired,
    OfferNotFound,
)
from nftmarket.core.escrow import FundsLedger, HoldReason
from nftmarket.core.journal import Journal
from nftmarket.core.market.auction import AuctionEngine
from nftmarket.core.market.item import MarketItem, Offer, OfferStatus, PriceRecord
from nftmarket.core.market.listing import ListingLedger, _address
from nftmarket.utils.logger import get_logger
from nftmarket.utils.validation import validate_price, validate_timestamp

logger = get_logger("offer")


class OfferEngine:
    """
    Offers per item, indexed from 0 in creation order.

    Attributes:
        offers: item_id -> list of Offer
    """

    def __init__(
        self,
        ledger: ListingLedger,
        funds: FundsLedger,
        clock: Callable[[], int],
        auctions: Optional[AuctionEngine] = None,
        journal: Optional[Journal] = None,
    ):
        """
        Args:
            ledger: Item state
            funds: Escrow and payouts
            clock: Returns current unix seconds
            auctions: Engine whose outstanding bids are refunded on acceptance
            journal: Shared undo log
        """
        self.ledger = ledger
        self.funds = funds
        self.clock = clock
        self.auctions = auctions
        self.journal = journal or ledger.journal

        self.offers: Dict[int, List[Offer]] = {}
        self._lock = threading.RLock()

    def _record(self, undo: Callable[[], None]) -> None:
        def locked_undo():
            with self._lock:
                undo()

        self.journal.record(locked_undo)

    def _set_status(self, offer: Offer, status: OfferStatus) -> None:
        previous = offer.status
        offer.status = status
        self._record(lambda: setattr(offer, "status", previous))

    def get_offer(self, item_id: int, offer_index: int) -> Offer:
        with self._lock:
            item_offers = self.offers.get(item_id, [])
            if not isinstance(offer_index, int) or not 0 <= offer_index < len(item_offers):
                raise OfferNotFound(f"Offer {offer_index} on item {item_id} not found")
            return item_offers[offer_index]

    # =========================================================================
    # Making & Withdrawing
    # =========================================================================

    def make_offer(self, item_id: int, offerer: str, amount: int, expiration: int) -> Offer:
        """
        Escrow an offer against an unsold item.

        Raises:
            ItemAlreadySold: Item already sold
            ListingClosed: Item no longer listed
            NotAuthorized: Seller offering on their own item
            InvalidExpiration: expiration <= now
            InvalidPrice: amount <= 0
            InsufficientFunds: Offerer balance does not cover the amount
        """
        offerer = _address(offerer, "offerer")
        item = self.ledger.get_item(item_id)
        if item.sold:
            raise ItemAlreadySold(f"Item {item_id} already sold")
        if item.closed:
            raise ListingClosed(f"Item {item_id} is no longer listed")
        if offerer == item.seller:
            raise NotAuthorized("Seller cannot make an offer on their own item")

        valid, err = validate_timestamp(expiration, "expiration")
        if not valid:
            raise InvalidExpiration(err)
        now = self.clock()
        if expiration <= now:
            raise InvalidExpiration(f"Expiration {expiration} must be in the future (now {now})")

        valid, err = validate_price(amount, "offer")
        if not valid:
            raise InvalidPrice(err)

        held = self.funds.hold(offerer, amount, HoldReason.OFFER, item_id)
        with self._lock:
            item_offers = self.offers.setdefault(item_id, [])
            offer = Offer(
                offer_index=len(item_offers),
                item_id=item_id,
                offerer=offerer,
                amount=amount,
                expiration=expiration,
                hold_id=held.hold_id,
                created_at=now,
            )
            item_offers.append(offer)
            self._record(lambda: item_offers.remove(offer))

        logger.info(f"Offer {offer.offer_index} on item {item_id}: {amount} from {offerer[:10]}")
        return offer

    def withdraw_offer(self, item_id: int, offer_index: int, caller: str) -> Offer:
        """Refund a pending offer to its offerer (offerer only)."""
        caller = _address(caller, "caller")
        offer = self.get_offer(item_id, offer_index)
        if caller != offer.offerer:
            raise NotAuthorized("Only the offerer can withdraw an offer")
        if not offer.is_pending:
            raise OfferAlreadyResolved(f"Offer {offer_index} on item {item_id} is {offer.status.name}")

        self.funds.refund(offer.hold_id)
        self._set_status(offer, OfferStatus.WITHDRAWN)
        logger.info(f"Offer {offer_index} on item {item_id} withdrawn")
        return offer

    # =========================================================================
    # Acceptance
    # =========================================================================

    def accept_offer(self, item_id: int, offer_index: int, caller: str) -> PriceRecord:
        """
        Sell the item to an offerer (seller only).

        The offer amount is owed to the seller, the listing fee goes to the
        fee recipient, and all other pending offers plus any outstanding
        auction bid are refunded.

        Raises:
            NotAuthorized: Caller is not the seller
            ItemAlreadySold / ListingClosed: Item no longer for sale
            OfferNotFound: No such offer
            OfferAlreadyResolved: Offer accepted, refunded or withdrawn
            OfferExpired: now >= expiration
            AuctionNotActive: Auction past its end time with a winning bid
        """
        caller = _address(caller, "caller")
        item = self.ledger.get_item(item_id)
        if caller != item.seller:
            raise NotAuthorized("Only the seller can accept an offer")
        if item.sold:
            raise ItemAlreadySold(f"Item {item_id} already sold")
        if item.closed:
            raise ListingClosed(f"Item {item_id} is no longer listed")
        if (
            self.auctions is not None
            and item.is_auction
            and self.clock() >= item.auction_end_time
            and self.auctions.has_bids(item_id)
        ):
            raise AuctionNotActive(f"Auction {item_id} has a winner; end_auction settles it")

        offer = self.get_offer(item_id, offer_index)
        if not offer.is_pending:
            raise OfferAlreadyResolved(f"Offer {offer_index} on item {item_id} is {offer.status.name}")
        if offer.is_expired(self.clock()):
            raise OfferExpired(f"Offer {offer_index} on item {item_id} expired at {offer.expiration}")

        self.funds.settle(offer.hold_id, item.seller)
        self._set_status(offer, OfferStatus.ACCEPTED)
        record = self.ledger.complete_sale(item, offer.offerer, offer.amount)

        if self.auctions is not None and item.is_auction:
            self.auctions.refund_highest(item_id)
        self.refund_pending(item)

        logger.info(f"Offer {offer_index} on item {item_id} accepted: {offer.amount} from {offer.offerer[:10]}")
        return record

    # =========================================================================
    # Refunds
    # =========================================================================

    def refund_pending(self, item: MarketItem) -> List[Offer]:
        """
        Refund every pending offer on an item that is no longer for sale.

        Offers past their expiration are marked EXPIRED, the rest REFUNDED.
        """
        now = self.clock()
        refunded = []
        for offer in self.pending_offers(item.item_id):
            self.funds.refund(offer.hold_id)
            status = OfferStatus.EXPIRED if offer.is_expired(now) else OfferStatus.REFUNDED
            self._set_status(offer, status)
            refunded.append(offer)

        if refunded:
            logger.info(f"Refunded {len(refunded)} pending offer(s) on item {item.item_id}")
        return refunded

    def expire_offers(self, item_id: int) -> List[Offer]:
        """Refund pending offers whose expiration has passed."""
        self.ledger.get_item(item_id)
        now = self.clock()
        expired = []
        for offer in self.pending_offers(item_id):
            if offer.is_expired(now):
                self.funds.refund(offer.hold_id)
                self._set_status(offer, OfferStatus.EXPIRED)
                expired.append(offer)

        if expired:
            logger.info(f"Expired {len(expired)} offer(s) on item {item_id}")
        return expired

    # =========================================================================
    # Queries
    # =========================================================================

    def offers_for(self, item_id: int) -> List[Offer]:
        with self._lock:
            return list(self.offers.get(item_id, []))

    def pending_offers(self, item_id: int) -> List[Offer]:
        return [o for o in self.offers_for(item_id) if o.is_pending]

    def offers_by(self, offerer: str) -> List[Offer]:
        offerer = _address(offerer, "offerer")
        with self._lock:
            return [o for offers in self.offers.values() for o in offers if o.offerer == offerer]

    def stats(self) -> dict:
        with self._lock:
            all_offers = [o for offers in self.offers.values() for o in offers]
        counts = {status.name.lower(): 0 for status in OfferStatus}
        for offer in all_offers:
            counts[offer.status.name.lower()] += 1
        return {"total_offers": len(all_offers), **counts}

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self, offers: List[Offer]) -> None:
        with self._lock:
            self.offers = {}
            for offer in sorted(offers, key=lambda o: (o.item_id, o.offer_index)):
                self.offers.setdefault(offer.item_id, []).append(offer)

        logger.info(f"Loaded {len(offers)} offers")
