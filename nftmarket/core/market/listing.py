"""
Listing Ledger - canonical state of every market item.

The ledger is the only component that creates or mutates MarketItem records.
Auctions and offers drive sales through ``complete_sale`` and
``close_unsold``; they never copy item state.

Fund flow of a fixed-price sale:
1. createListing: seller's listing fee is held in escrow against the item
2. closeListing: buyer pays the exact price, which is owed to the seller
3. the held fee is released to the fee recipient
4. the token leaves marketplace custody for the buyer, a price record is written

Callers are expected to run each operation inside the shared journal while
holding the item lock (see ``Marketplace``); every mutation here records its
inverse so a failure later in the same operation rolls the item back.
"""

import threading
from typing import Callable, Dict, List, Optional, Tuple

from nftmarket.core.collection.factory import CollectionFactory
from nftmarket.core.errors import (
    AlreadyListed,
    InsufficientFee,
    InvalidAddress,
    InvalidPrice,
    ItemAlreadySold,
    ItemIsAuction,
    ItemNotFound,
    ListingClosed,
    NotAuthorized,
    PriceMismatch,
    ValidationError,
)
from nftmarket.core.escrow import FundsLedger, HoldReason
from nftmarket.core.journal import Journal
from nftmarket.core.market.item import MarketItem, PriceRecord
from nftmarket.crypto import normalize_address
from nftmarket.utils.logger import get_logger
from nftmarket.utils.validation import validate_amount, validate_price, validate_token_id

logger = get_logger("ledger")


def _address(value: str, name: str) -> str:
    try:
        return normalize_address(value)
    except ValueError:
        raise InvalidAddress(f"{name} is not a valid address: {value!r}")


class ListingLedger:
    """
    Market items keyed by item id.

    Attributes:
        items: item_id -> MarketItem
        open_tokens: (nft_contract, token_id) -> item_id of the open listing
        price_history: Completed sales, oldest first
        listing_fee: Fee required by createListing / createAuction
    """

    def __init__(
        self,
        funds: FundsLedger,
        listing_fee: int,
        clock: Callable[[], int],
        custody_address: str,
        tokens: Optional[CollectionFactory] = None,
        journal: Optional[Journal] = None,
    ):
        """
        Args:
            funds: Escrow and payouts
            listing_fee: Current listing fee (wei)
            clock: Returns current unix seconds
            custody_address: Account holding listed factory tokens
            tokens: Factory whose collections have enforced ownership
            journal: Shared undo log
        """
        self.funds = funds
        self.listing_fee = listing_fee
        self.clock = clock
        self.custody_address = normalize_address(custody_address)
        self.tokens = tokens
        self.journal = journal or funds.journal

        self.items: Dict[int, MarketItem] = {}
        self.open_tokens: Dict[Tuple[str, int], int] = {}
        self.price_history: List[PriceRecord] = []

        self._next_item_id = 1
        self._lock = threading.RLock()

    def _record(self, undo: Callable[[], None]) -> None:
        def locked_undo():
            with self._lock:
                undo()

        self.journal.record(locked_undo)

    def _is_factory_token(self, nft_contract: str) -> bool:
        return self.tokens is not None and self.tokens.is_collection(nft_contract)

    # =========================================================================
    # Item Access
    # =========================================================================

    def get_item(self, item_id: int) -> MarketItem:
        """Fetch an item or raise ItemNotFound."""
        with self._lock:
            item = self.items.get(item_id)
        if item is None:
            raise ItemNotFound(f"Market item {item_id} not found")
        return item

    def peek_next_item_id(self) -> int:
        """Id the next listing will receive."""
        with self._lock:
            return self._next_item_id

    # =========================================================================
    # Listing Creation
    # =========================================================================

    def validate_listing(self, seller: str, nft_contract: str, token_id: int, price: int, fee_paid: int) -> None:
        """
        Check every precondition of a new listing.

        Raises:
            InsufficientFee: fee_paid differs from the current listing fee
            InvalidPrice: price <= 0
            AlreadyListed: token already has an open listing
            NotAuthorized: seller does not own a factory token
        """
        valid, err = validate_amount(fee_paid, "fee_paid")
        if not valid:
            raise InsufficientFee(err)
        if fee_paid != self.listing_fee:
            raise InsufficientFee(f"Price must be equal to listing fee ({self.listing_fee}), got {fee_paid}")

        valid, err = validate_price(price)
        if not valid:
            raise InvalidPrice(f"Price must be at least 1 wei: {err}")

        valid, err = validate_token_id(token_id)
        if not valid:
            raise ValidationError(err)

        with self._lock:
            if (nft_contract, token_id) in self.open_tokens:
                existing = self.open_tokens[(nft_contract, token_id)]
                raise AlreadyListed(f"Token #{token_id} already listed as item {existing}")

        if self._is_factory_token(nft_contract):
            if self.tokens.owner_of(nft_contract, token_id) != seller:
                raise NotAuthorized(f"{seller} does not own token #{token_id}")

    def open_item(
        self,
        seller: str,
        nft_contract: str,
        token_id: int,
        price: int,
        fee_paid: int,
        is_auction: bool = False,
        auction_end_time: int = 0,
    ) -> MarketItem:
        """
        Validate and create a listing or auction item.

        The listing fee is held in escrow and factory tokens move into
        marketplace custody.
        """
        seller = _address(seller, "seller")
        nft_contract = _address(nft_contract, "nft_contract")
        self.validate_listing(seller, nft_contract, token_id, price, fee_paid)

        with self._lock:
            item_id = self._next_item_id
            self._next_item_id += 1

            item = MarketItem(
                item_id=item_id,
                nft_contract=nft_contract,
                token_id=token_id,
                seller=seller,
                price=price,
                listing_fee=fee_paid,
                is_auction=is_auction,
                auction_end_time=auction_end_time,
                created_at=self.clock(),
            )
            self.items[item_id] = item
            self.open_tokens[item.token_key] = item_id

            def undo():
                self.items.pop(item_id, None)
                if self.open_tokens.get(item.token_key) == item_id:
                    del self.open_tokens[item.token_key]
                if self._next_item_id == item_id + 1:
                    self._next_item_id = item_id

            self._record(undo)

        if fee_paid > 0:
            fee_hold = self.funds.hold(seller, fee_paid, HoldReason.LISTING_FEE, item_id)
            item.fee_hold_id = fee_hold.hold_id

        if self._is_factory_token(nft_contract):
            self.tokens.transfer_token(nft_contract, token_id, seller, self.custody_address)
            self.tokens.update_collection_stats(nft_contract, price, False, self.custody_address)

        kind = "Auction" if is_auction else "Listing"
        logger.info(f"{kind} created: item={item_id}, token={nft_contract[:10]}#{token_id}, price={price}")
        return item

    def create_listing(self, seller: str, nft_contract: str, token_id: int, price: int, fee_paid: int) -> MarketItem:
        """
        Create a fixed-price listing.

        Returns:
            MarketItem with owner None and sold False
        """
        return self.open_item(seller, nft_contract, token_id, price, fee_paid)

    # =========================================================================
    # Sales
    # =========================================================================

    def close_listing(self, item_id: int, buyer: str, amount_paid: int) -> PriceRecord:
        """
        Buy a fixed-price listing.

        Raises:
            ItemAlreadySold: Item already sold
            ListingClosed: Listing was cancelled
            ItemIsAuction: Item must be won through bidding
            PriceMismatch: amount_paid != price
            NotAuthorized: Seller tried to buy their own item
        """
        buyer = _address(buyer, "buyer")
        item = self.get_item(item_id)
        if item.sold:
            raise ItemAlreadySold(f"Item {item_id} already sold")
        if item.closed:
            raise ListingClosed(f"Item {item_id} is no longer listed")
        if item.is_auction:
            raise ItemIsAuction(f"Item {item_id} is an auction; place a bid instead")
        if amount_paid != item.price:
            raise PriceMismatch(f"Please submit asking price ({item.price}), got {amount_paid}")
        if buyer == item.seller:
            raise NotAuthorized("Seller cannot buy their own item")

        payment = self.funds.hold(buyer, amount_paid, HoldReason.PURCHASE, item_id)
        self.funds.settle(payment.hold_id, item.seller)
        return self.complete_sale(item, buyer, amount_paid)

    def complete_sale(self, item: MarketItem, buyer: str, price: int) -> PriceRecord:
        """
        Record a sale whose proceeds the caller has already routed to the seller.

        Releases the listing fee, transfers ownership and writes history.
        """
        if item.fee_hold_id is not None:
            self.funds.collect_fee(item.fee_hold_id)

        item.mark_sold(buyer)
        record = PriceRecord(
            item_id=item.item_id,
            nft_contract=item.nft_contract,
            token_id=item.token_id,
            price=price,
            timestamp=self.clock(),
            buyer=buyer,
            seller=item.seller,
        )
        with self._lock:
            self.price_history.append(record)

            def undo():
                item.owner = None
                item.sold = False
                self.price_history.remove(record)

            self._record(undo)
        self._release_token(item)

        if self._is_factory_token(item.nft_contract):
            self.tokens.transfer_token(item.nft_contract, item.token_id, self.custody_address, buyer)
            self.tokens.update_collection_stats(item.nft_contract, price, True, self.custody_address)

        logger.info(f"Item {item.item_id} sold to {buyer[:10]} for {price}")
        return record

    def _release_token(self, item: MarketItem) -> None:
        """Free the token for relisting once the current transaction commits."""

        def release():
            with self._lock:
                if self.open_tokens.get(item.token_key) == item.item_id:
                    del self.open_tokens[item.token_key]

        self.journal.on_commit(release)

    def close_unsold(self, item: MarketItem) -> None:
        """
        Close an item without a sale and return the token to the seller.

        The listing fee is not refunded.
        """
        if item.fee_hold_id is not None:
            self.funds.collect_fee(item.fee_hold_id)

        with self._lock:
            item.closed = True
            self._record(lambda: setattr(item, "closed", False))
        self._release_token(item)

        if self._is_factory_token(item.nft_contract):
            self.tokens.transfer_token(item.nft_contract, item.token_id, self.custody_address, item.seller)

        logger.info(f"Item {item.item_id} closed unsold")

    def cancel_listing(self, item_id: int, caller: str) -> MarketItem:
        """
        Withdraw an unsold item from the market (seller only).

        The caller must ensure an auction has no outstanding bid.
        """
        caller = _address(caller, "caller")
        item = self.get_item(item_id)
        if caller != item.seller:
            raise NotAuthorized("Only the seller can cancel a listing")
        if item.sold:
            raise ItemAlreadySold(f"Item {item_id} already sold")
        if item.closed:
            raise ListingClosed(f"Item {item_id} is no longer listed")

        self.close_unsold(item)
        return item

    # =========================================================================
    # Administration
    # =========================================================================

    def set_listing_fee(self, fee: int) -> None:
        valid, err = validate_amount(fee, "listing_fee")
        if not valid:
            raise ValidationError(err)

        with self._lock:
            previous = self.listing_fee
            self.listing_fee = fee
            self._record(lambda: setattr(self, "listing_fee", previous))

        logger.info(f"Listing fee changed: {previous} -> {fee}")

    # =========================================================================
    # Queries
    # =========================================================================

    def fetch_market_items(self) -> List[MarketItem]:
        """All open (unsold, not closed) items."""
        with self._lock:
            return [i for i in self.items.values() if i.is_open]

    def fetch_items_listed(self, seller: str) -> List[MarketItem]:
        seller = normalize_address(seller)
        with self._lock:
            return [i for i in self.items.values() if i.seller == seller]

    def fetch_owned_items(self, owner: str) -> List[MarketItem]:
        """Items bought by ``owner``."""
        owner = normalize_address(owner)
        with self._lock:
            return [i for i in self.items.values() if i.owner == owner]

    def fetch_collection_items(self, nft_contract: str) -> List[MarketItem]:
        nft_contract = normalize_address(nft_contract)
        with self._lock:
            return [i for i in self.items.values() if i.nft_contract == nft_contract]

    def get_price_history(self, item_id: Optional[int] = None) -> List[PriceRecord]:
        with self._lock:
            if item_id is None:
                return list(self.price_history)
            return [r for r in self.price_history if r.item_id == item_id]

    def stats(self) -> dict:
        with self._lock:
            return {
                "items": len(self.items),
                "open": sum(1 for i in self.items.values() if i.is_open),
                "sold": sum(1 for i in self.items.values() if i.sold),
                "volume": sum(r.price for r in self.price_history),
                "listing_fee": self.listing_fee,
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self, items: List[MarketItem], history: List[PriceRecord], listing_fee: Optional[int] = None) -> None:
        """Replace ledger contents with persisted state."""
        with self._lock:
            self.items = {i.item_id: i for i in items}
            self.open_tokens = {i.token_key: i.item_id for i in items if i.is_open}
            self.price_history = sorted(history, key=lambda r: (r.timestamp, r.item_id))
            self._next_item_id = max(self.items, default=0) + 1
            if listing_fee is not None:
                self.listing_fee = listing_fee

        logger.info(f"Loaded ledger: {len(self.items)} items, {len(self.price_history)} sales")

    def __repr__(self) -> str:
        return f"ListingLedger(items={len(self.items)}, fee={self.listing_fee})"
