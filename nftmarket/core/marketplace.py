"""
Marketplace - single entry point for every market operation.

Each mutation runs as one logical transaction:
1. Take the per-item lock (or the token lock for new listings)
2. Open the shared journal; engines and the funds ledger record undo actions
3. On any error, replay the undo actions and re-raise
4. On success, issue a Receipt, mirror state to the document store and
   dispatch notifications

State and funds roll back together. Mirror writes and notifications are
best-effort and never undo a committed operation.
"""

import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from nftmarket.core.clock import SystemClock
from nftmarket.core.collection.factory import CollectionFactory
from nftmarket.core.collection.models import Collection, CollectionMetadata, Token
from nftmarket.core.config import MarketConfig
from nftmarket.core.errors import AuctionHasBids, InvalidAddress, MarketError, NotAuthorized
from nftmarket.core.escrow import FundsLedger, TransferHook
from nftmarket.core.journal import Journal
from nftmarket.core.locks import ItemLockManager
from nftmarket.core.market.auction import AuctionEngine
from nftmarket.core.market.item import Bid, MarketItem, Offer, PriceRecord, Receipt, make_receipt
from nftmarket.core.market.listing import ListingLedger
from nftmarket.core.market.offer import OfferEngine
from nftmarket.core.notify import EventType, LoggingNotifier, MarketEvent, Notifier, dispatch
from nftmarket.core.storage.storage_manager import StorageManager
from nftmarket.crypto import normalize_address
from nftmarket.utils.logger import get_logger

logger = get_logger("marketplace")


def _address(value: str, name: str = "address") -> str:
    try:
        return normalize_address(value)
    except ValueError:
        raise InvalidAddress(f"{name} is not a valid address: {value!r}")


@dataclass
class _Outcome:
    """What a committed operation produced."""
    item_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    events: List[MarketEvent] = field(default_factory=list)
    collection: Optional[str] = None


class Marketplace:
    """
    Listings, auctions, offers, escrow and collections behind one API.

    Every mutating method returns a Receipt; queries return model objects.
    """

    def __init__(
        self,
        config: Optional[MarketConfig] = None,
        clock: Optional[Callable[[], int]] = None,
        storage: Optional[StorageManager] = None,
        notifier: Optional[Notifier] = None,
        transfer_hook: Optional[TransferHook] = None,
    ):
        """
        Args:
            config: Market parameters (defaults to MarketConfig())
            clock: Returns current unix seconds (defaults to the wall clock)
            storage: Document store mirror; restored from if it holds state
            notifier: Event sink (defaults to LoggingNotifier)
            transfer_hook: Outbound transfer check standing in for the chain
        """
        self.config = config or MarketConfig()
        self.clock = clock or SystemClock()
        self.storage = storage
        self.notifier = notifier if notifier is not None else LoggingNotifier()

        self.journal = Journal()
        self.locks = ItemLockManager()

        self.funds = FundsLedger(self.config.fee_recipient, transfer_hook, self.journal)
        self.factory = CollectionFactory(
            admin=self.config.admin,
            marketplace_address=self.config.marketplace_address,
            clock=self.clock,
            sales_window=self.config.sales_window,
            journal=self.journal,
        )
        self.ledger = ListingLedger(
            self.funds,
            self.config.listing_fee,
            self.clock,
            custody_address=self.config.marketplace_address,
            tokens=self.factory,
            journal=self.journal,
        )
        self.auctions = AuctionEngine(
            self.ledger, self.funds, self.clock, self.config.auction_duration, self.journal
        )
        self.offers = OfferEngine(
            self.ledger, self.funds, self.clock, auctions=self.auctions, journal=self.journal
        )

        self._sequence = 0
        self._seq_lock = threading.Lock()

        if self.storage is not None and not self.storage.is_empty():
            self.restore()

        logger.info(
            f"Marketplace ready: fee={self.ledger.listing_fee}, "
            f"auction_duration={self.auctions.duration}s"
        )

    # =========================================================================
    # Transactions
    # =========================================================================

    def _run(self, lock_key: Any, operation: str, action: Callable[[], _Outcome]) -> Receipt:
        lock = self.locks.hold(lock_key) if lock_key is not None else nullcontext()
        with lock:
            try:
                with self.journal.atomic():
                    outcome = action()
            except MarketError as e:
                logger.warning(f"{operation} rejected: {type(e).__name__}: {e}")
                raise
            receipt = self._commit(operation, outcome)

        dispatch(self.notifier, outcome.events)
        return receipt

    def _commit(self, operation: str, outcome: _Outcome) -> Receipt:
        with self._seq_lock:
            self._sequence += 1
            sequence = self._sequence
        receipt = make_receipt(operation, outcome.item_id, self.clock(), sequence, **outcome.details)
        self._mirror(receipt, outcome)
        return receipt

    def _mirror(self, receipt: Receipt, outcome: _Outcome) -> None:
        """Copy committed state to the document store, best-effort."""
        if self.storage is None:
            return
        try:
            collection = outcome.collection
            if outcome.item_id is not None:
                item = self.ledger.get_item(outcome.item_id)
                self.storage.save_items([item])
                self.storage.save_bids(self.auctions.bid_history(item.item_id))
                self.storage.save_offers(self.offers.offers_for(item.item_id))
                for record in self.ledger.get_price_history(item.item_id):
                    self.storage.save_price_record(record)
                collection = collection or item.nft_contract

            if collection is not None and self.factory.is_collection(collection):
                self.storage.save_collections([self.factory.get_collection(collection)])
                self.storage.save_tokens(self.factory.collection_tokens(collection))

            self.storage.save_funds(self.funds.to_dict())
            self.storage.save_factory_state(self.factory.to_dict())
            self.storage.save_settings({"listing_fee": self.ledger.listing_fee})
            self.storage.save_receipt(receipt)
        except Exception as e:
            logger.warning(f"Mirror write for {receipt.operation} #{receipt.sequence} failed: {e}")

    def _event(self, event_type: EventType, item_id: Optional[int], recipients: List[str], **data) -> MarketEvent:
        return MarketEvent(
            event_type=event_type,
            item_id=item_id,
            recipients=[r for r in recipients if r],
            timestamp=self.clock(),
            data=data,
        )

    def _refund_events(self, item_id: int, offers: List[Offer]) -> List[MarketEvent]:
        return [
            self._event(EventType.OFFER_REFUNDED, item_id, [o.offerer], offer_index=o.offer_index, amount=o.amount)
            for o in offers
        ]

    # =========================================================================
    # Accounts
    # =========================================================================

    def deposit(self, address: str, amount: int) -> Receipt:
        """Credit external funds to an account balance."""
        address = _address(address)

        def action():
            balance = self.funds.deposit(address, amount)
            return _Outcome(details={"address": address, "amount": amount, "balance": balance})

        return self._run(None, "deposit", action)

    def cash_out(self, address: str, amount: int) -> Receipt:
        """Move funds from an account balance out of the marketplace."""
        address = _address(address)

        def action():
            balance = self.funds.cash_out(address, amount)
            return _Outcome(details={"address": address, "amount": amount, "balance": balance})

        return self._run(None, "cash_out", action)

    def withdraw(self, address: str) -> Receipt:
        """Move an account's pending payout (sale proceeds, fees) into its balance."""
        address = _address(address)

        def action():
            amount = self.funds.withdraw_payout(address)
            return _Outcome(details={"address": address, "amount": amount})

        return self._run(None, "withdraw", action)

    def balance_of(self, address: str) -> int:
        return self.funds.balance_of(_address(address))

    def pending_payout(self, address: str) -> int:
        return self.funds.pending_payout(_address(address))

    # =========================================================================
    # Listings
    # =========================================================================

    def _token_lock(self, nft_contract: str, token_id: int) -> tuple:
        return ("token", str(nft_contract).lower(), token_id)

    def create_listing(self, seller: str, nft_contract: str, token_id: int, price: int, fee_paid: int) -> Receipt:
        """
        List a token at a fixed price.

        ``fee_paid`` must equal the current listing fee.
        """
        def action():
            item = self.ledger.create_listing(seller, nft_contract, token_id, price, fee_paid)
            return _Outcome(
                item_id=item.item_id,
                details={"seller": item.seller, "price": price, "fee": fee_paid},
                events=[self._event(EventType.ITEM_LISTED, item.item_id, [item.seller], price=price)],
            )

        return self._run(self._token_lock(nft_contract, token_id), "create_listing", action)

    def close_listing(self, item_id: int, buyer: str, amount_paid: int) -> Receipt:
        """Buy a fixed-price listing for exactly its asking price."""
        def action():
            record = self.ledger.close_listing(item_id, buyer, amount_paid)
            item = self.ledger.get_item(item_id)
            refunded = self.offers.refund_pending(item)
            return _Outcome(
                item_id=item_id,
                details={"buyer": record.buyer, "seller": record.seller, "price": record.price},
                events=[
                    self._event(EventType.ITEM_SOLD, item_id, [record.seller, record.buyer], price=record.price)
                ] + self._refund_events(item_id, refunded),
            )

        return self._run(item_id, "close_listing", action)

    def cancel_listing(self, item_id: int, caller: str) -> Receipt:
        """
        Withdraw an unsold item (seller only). The listing fee is forfeited.

        Auctions can only be cancelled while they have no bid.
        """
        def action():
            item = self.ledger.get_item(item_id)
            if item.is_auction and self.auctions.has_bids(item_id):
                raise AuctionHasBids(f"Auction {item_id} has bids and cannot be cancelled")
            self.ledger.cancel_listing(item_id, caller)
            refunded = self.offers.refund_pending(item)
            return _Outcome(
                item_id=item_id,
                details={"seller": item.seller},
                events=[self._event(EventType.LISTING_CANCELLED, item_id, [item.seller])]
                + self._refund_events(item_id, refunded),
            )

        return self._run(item_id, "cancel_listing", action)

    def set_listing_fee(self, fee: int, caller: str) -> Receipt:
        """Change the listing fee for future listings (admin only)."""
        def action():
            if _address(caller, "caller") != self.config.admin:
                raise NotAuthorized("Only the marketplace owner can change the listing fee")
            previous = self.ledger.listing_fee
            self.ledger.set_listing_fee(fee)
            return _Outcome(details={"previous": previous, "fee": fee})

        return self._run(None, "set_listing_fee", action)

    @property
    def listing_fee(self) -> int:
        return self.ledger.listing_fee

    # =========================================================================
    # Auctions
    # =========================================================================

    def create_auction(self, seller: str, nft_contract: str, token_id: int, starting_price: int, fee_paid: int) -> Receipt:
        """List a token for auction over the configured duration."""
        def action():
            item = self.auctions.create_auction(seller, nft_contract, token_id, starting_price, fee_paid)
            return _Outcome(
                item_id=item.item_id,
                details={
                    "seller": item.seller,
                    "starting_price": starting_price,
                    "auction_end_time": item.auction_end_time,
                    "fee": fee_paid,
                },
                events=[
                    self._event(
                        EventType.AUCTION_CREATED,
                        item.item_id,
                        [item.seller],
                        starting_price=starting_price,
                        auction_end_time=item.auction_end_time,
                    )
                ],
            )

        return self._run(self._token_lock(nft_contract, token_id), "create_auction", action)

    def place_bid(self, item_id: int, bidder: str, amount: int) -> Receipt:
        """Bid on an active auction; the previous highest bidder is refunded."""
        def action():
            previous = self.auctions.highest_bid(item_id)
            bid = self.auctions.place_bid(item_id, bidder, amount)
            item = self.ledger.get_item(item_id)
            events = [self._event(EventType.BID_PLACED, item_id, [item.seller, bid.bidder], amount=amount)]
            if previous is not None:
                events.append(
                    self._event(EventType.OUTBID, item_id, [previous.bidder], amount=previous.amount, new_bid=amount)
                )
            return _Outcome(
                item_id=item_id,
                details={
                    "bidder": bid.bidder,
                    "amount": amount,
                    "refunded": previous.bidder if previous else None,
                },
                events=events,
            )

        return self._run(item_id, "place_bid", action)

    def end_auction(self, item_id: int) -> Receipt:
        """Close an expired auction. Anyone may call this."""
        def action():
            record = self.auctions.end_auction(item_id)
            item = self.ledger.get_item(item_id)
            refunded = self.offers.refund_pending(item)
            winner = record.buyer if record else None
            events = [
                self._event(
                    EventType.AUCTION_ENDED,
                    item_id,
                    [item.seller, winner],
                    winner=winner,
                    price=record.price if record else None,
                )
            ]
            if record is not None:
                events.append(self._event(EventType.ITEM_SOLD, item_id, [record.seller, record.buyer], price=record.price))
            return _Outcome(
                item_id=item_id,
                details={"winner": winner, "price": record.price if record else None},
                events=events + self._refund_events(item_id, refunded),
            )

        return self._run(item_id, "end_auction", action)

    def highest_bid(self, item_id: int) -> Optional[Bid]:
        self.ledger.get_item(item_id)
        return self.auctions.highest_bid(item_id)

    def bid_history(self, item_id: int) -> List[Bid]:
        return self.auctions.bid_history(item_id)

    # =========================================================================
    # Offers
    # =========================================================================

    def make_offer(self, item_id: int, offerer: str, amount: int, expiration: int) -> Receipt:
        """Escrow an offer against an unsold item."""
        def action():
            offer = self.offers.make_offer(item_id, offerer, amount, expiration)
            item = self.ledger.get_item(item_id)
            return _Outcome(
                item_id=item_id,
                details={
                    "offer_index": offer.offer_index,
                    "offerer": offer.offerer,
                    "amount": amount,
                    "expiration": expiration,
                },
                events=[
                    self._event(
                        EventType.OFFER_MADE,
                        item_id,
                        [item.seller, offer.offerer],
                        offer_index=offer.offer_index,
                        amount=amount,
                    )
                ],
            )

        return self._run(item_id, "make_offer", action)

    def accept_offer(self, item_id: int, offer_index: int, caller: str) -> Receipt:
        """Sell the item to an offerer (seller only)."""
        def action():
            outstanding_bid = self.auctions.highest_bid(item_id)
            others = [o for o in self.offers.pending_offers(item_id) if o.offer_index != offer_index]
            record = self.offers.accept_offer(item_id, offer_index, caller)

            events = [
                self._event(
                    EventType.OFFER_ACCEPTED,
                    item_id,
                    [record.seller, record.buyer],
                    offer_index=offer_index,
                    amount=record.price,
                ),
                self._event(EventType.ITEM_SOLD, item_id, [record.seller, record.buyer], price=record.price),
            ]
            if outstanding_bid is not None and outstanding_bid.refunded:
                events.append(
                    self._event(EventType.OUTBID, item_id, [outstanding_bid.bidder], amount=outstanding_bid.amount)
                )
            events += self._refund_events(item_id, others)
            return _Outcome(
                item_id=item_id,
                details={"offer_index": offer_index, "buyer": record.buyer, "price": record.price},
                events=events,
            )

        return self._run(item_id, "accept_offer", action)

    def withdraw_offer(self, item_id: int, offer_index: int, caller: str) -> Receipt:
        """Take back a pending offer (offerer only)."""
        def action():
            offer = self.offers.withdraw_offer(item_id, offer_index, caller)
            return _Outcome(
                item_id=item_id,
                details={"offer_index": offer_index, "offerer": offer.offerer, "amount": offer.amount},
            )

        return self._run(item_id, "withdraw_offer", action)

    def expire_offers(self, item_id: int) -> Receipt:
        """Refund every pending offer past its expiration. Anyone may call this."""
        def action():
            expired = self.offers.expire_offers(item_id)
            return _Outcome(
                item_id=item_id,
                details={"expired": [o.offer_index for o in expired]},
                events=self._refund_events(item_id, expired),
            )

        return self._run(item_id, "expire_offers", action)

    def offers_for(self, item_id: int) -> List[Offer]:
        self.ledger.get_item(item_id)
        return self.offers.offers_for(item_id)

    # =========================================================================
    # Collections
    # =========================================================================

    def add_category(self, category: str, caller: str) -> Receipt:
        def action():
            self.factory.add_category(category, caller)
            return _Outcome(details={"category": category})

        return self._run(None, "add_category", action)

    def remove_category(self, category: str, caller: str) -> Receipt:
        def action():
            self.factory.remove_category(category, caller)
            return _Outcome(details={"category": category})

        return self._run(None, "remove_category", action)

    def create_collection(self, creator: str, metadata: Union[CollectionMetadata, dict]) -> Receipt:
        """
        Deploy a new collection.

        The receipt's ``details["address"]`` holds the collection address.
        """
        def action():
            collection = self.factory.create_collection(creator, metadata)
            return _Outcome(
                details={
                    "address": collection.address,
                    "name": collection.name,
                    "symbol": collection.symbol,
                    "category": collection.category,
                    "creator": collection.creator,
                },
                collection=collection.address,
            )

        return self._run(None, "create_collection", action)

    def mint(self, collection_address: str, caller: str, to: str, token_uri: str) -> Receipt:
        """Mint the next token of a collection (creator only)."""
        collection_address = _address(collection_address, "collection")

        def action():
            token = self.factory.mint(collection_address, caller, to, token_uri)
            return _Outcome(
                details={"collection": token.collection, "token_id": token.token_id, "owner": token.owner},
                collection=token.collection,
            )

        return self._run(("collection", collection_address), "mint", action)

    def get_collection(self, address: str) -> Collection:
        return self.factory.get_collection(address)

    def get_token(self, collection_address: str, token_id: int) -> Token:
        return self.factory.get_token(_address(collection_address, "collection"), token_id)

    def owner_of(self, collection_address: str, token_id: int) -> str:
        return self.get_token(collection_address, token_id).owner

    def sales_24h(self, collection_address: str) -> int:
        return self.factory.sales_24h(collection_address)

    def get_all_collections(self) -> List[Collection]:
        return self.factory.get_all_collections()

    def get_collections_by_category(self, category: str) -> List[Collection]:
        return self.factory.get_collections_by_category(category)

    def get_creator_collections(self, creator: str) -> List[Collection]:
        return self.factory.get_creator_collections(creator)

    def get_trending_collections(self, category: str, limit: int = 10) -> List[Collection]:
        return self.factory.get_trending_collections_by_category(category, limit)

    # =========================================================================
    # Item Queries
    # =========================================================================

    def fetch_market_item(self, item_id: int) -> MarketItem:
        return self.ledger.get_item(item_id)

    def fetch_market_items(self) -> List[MarketItem]:
        return self.ledger.fetch_market_items()

    def fetch_items_listed(self, seller: str) -> List[MarketItem]:
        return self.ledger.fetch_items_listed(seller)

    def fetch_owned_items(self, owner: str) -> List[MarketItem]:
        return self.ledger.fetch_owned_items(owner)

    def fetch_collection_items(self, nft_contract: str) -> List[MarketItem]:
        return self.ledger.fetch_collection_items(nft_contract)

    def price_history(self, item_id: Optional[int] = None) -> List[PriceRecord]:
        return self.ledger.get_price_history(item_id)

    def events(self, item_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Receipts mirrored to the document store."""
        if self.storage is None:
            return []
        return self.storage.load_events(item_id)

    # =========================================================================
    # Persistence & Stats
    # =========================================================================

    def restore(self) -> None:
        """Rebuild in-memory state from the document store."""
        if self.storage is None:
            return

        settings = self.storage.load_settings() or {}
        self.funds.load_dict(self.storage.load_funds() or {})
        self.factory.load(
            self.storage.load_factory_state() or {},
            self.storage.load_collections(),
            self.storage.load_tokens(),
        )
        self.ledger.load(
            self.storage.load_items(),
            self.storage.load_price_history(),
            listing_fee=settings.get("listing_fee"),
        )
        self.auctions.load(self.storage.load_bids())
        self.offers.load(self.storage.load_offers())
        with self._seq_lock:
            self._sequence = self.storage.get_last_sequence()

        logger.info(f"Marketplace restored: {len(self.ledger.items)} items, sequence={self._sequence}")

    def is_conserved(self) -> bool:
        return self.funds.is_conserved()

    def stats(self) -> dict:
        """Get marketplace statistics."""
        return {
            "sequence": self._sequence,
            "ledger": self.ledger.stats(),
            "auctions": self.auctions.stats(),
            "offers": self.offers.stats(),
            "funds": self.funds.stats(),
            "collections": self.factory.stats(),
        }

    def close(self) -> None:
        if self.storage is not None:
            self.storage.close()

    def __repr__(self) -> str:
        return f"Marketplace(items={len(self.ledger.items)}, sequence={self._sequence})"
