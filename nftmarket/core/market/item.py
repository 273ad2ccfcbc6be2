"""
Market data model - items, bids, offers, price history and receipts.

A MarketItem is the canonical record of one listing (fixed price or
auction). Only the ListingLedger creates and mutates items; the auction and
offer engines refer to items by ``item_id`` and keep their own bid/offer
records.

Item lifecycle:

    LISTED ─────────────── close / accept offer ──────────▶ SOLD
    AUCTION_ACTIVE ─ end auction (winner) / accept offer ──▶ SOLD
    LISTED / AUCTION_ACTIVE ─ cancel / end auction (no bids) ▶ CLOSED
"""

import json
from dataclasses import dataclass, field, asdict
from enum import IntEnum
from typing import Any, Dict, Optional

from nftmarket.core.errors import ItemAlreadySold
from nftmarket.crypto import keccak256, bytes_to_hex


# =============================================================================
# Enums
# =============================================================================


class ItemState(IntEnum):
    """Lifecycle state of a market item."""
    LISTED = 0          # Fixed-price listing, open
    AUCTION_ACTIVE = 1  # Auction accepting bids (until auction_end_time)
    SOLD = 2            # Ownership transferred to buyer
    CLOSED = 3          # Cancelled, or auction ended without bids


class OfferStatus(IntEnum):
    """Resolution state of an offer."""
    PENDING = 0     # Funds in escrow, may be accepted
    ACCEPTED = 1    # Funds paid to seller
    REFUNDED = 2    # Item sold to someone else, funds returned
    WITHDRAWN = 3   # Offerer took the funds back
    EXPIRED = 4     # Expiration passed, funds returned


# =============================================================================
# Market Item
# =============================================================================


@dataclass
class MarketItem:
    """
    A token listed on the marketplace.

    Attributes:
        item_id: Sequential identifier (from 1)
        nft_contract: Collection contract address
        token_id: Token within the collection
        seller: Account that listed the token
        price: Asking price, or starting price for auctions (wei)
        listing_fee: Fee paid at listing time (wei)
        fee_hold_id: Escrow hold carrying the listing fee until resolution
        owner: Buyer, None until sold
        sold: Whether ownership has moved to a buyer
        is_auction: Auction rather than fixed-price listing
        auction_end_time: Unix seconds, 0 for fixed-price listings
        closed: Cancelled or ended without a sale
        created_at: Unix seconds
    """
    item_id: int
    nft_contract: str
    token_id: int
    seller: str
    price: int
    listing_fee: int = 0
    fee_hold_id: Optional[int] = None
    owner: Optional[str] = None
    sold: bool = False
    is_auction: bool = False
    auction_end_time: int = 0
    closed: bool = False
    created_at: int = 0

    @property
    def state(self) -> ItemState:
        if self.sold:
            return ItemState.SOLD
        if self.closed:
            return ItemState.CLOSED
        if self.is_auction:
            return ItemState.AUCTION_ACTIVE
        return ItemState.LISTED

    @property
    def is_open(self) -> bool:
        """Listed and neither sold nor closed."""
        return not self.sold and not self.closed

    @property
    def token_key(self) -> tuple:
        return (self.nft_contract, self.token_id)

    def mark_sold(self, buyer: str) -> None:
        """Record the sale. Owner is set exactly once."""
        if self.sold or self.owner is not None:
            raise ItemAlreadySold(f"Item {self.item_id} already sold")
        self.owner = buyer
        self.sold = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MarketItem":
        return cls(**data)

    def __repr__(self) -> str:
        kind = "auction" if self.is_auction else "listing"
        return f"MarketItem(id={self.item_id}, {kind}, price={self.price}, state={self.state.name})"


# =============================================================================
# Bids & Offers
# =============================================================================


@dataclass
class Bid:
    """A bid on an auction. Funds stay in escrow while it is the highest."""
    item_id: int
    bidder: str
    amount: int
    timestamp: int
    hold_id: Optional[int] = None
    refunded: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Bid":
        return cls(**data)


@dataclass
class Offer:
    """
    An unsolicited offer against an item.

    Attributes:
        offer_index: Position in the item's offer list (from 0)
        item_id: Target item
        offerer: Account making the offer
        amount: Wei held in escrow
        expiration: Unix seconds; the offer cannot be accepted at or after it
        hold_id: Escrow hold backing the offer
        status: Resolution state
        created_at: Unix seconds
    """
    offer_index: int
    item_id: int
    offerer: str
    amount: int
    expiration: int
    hold_id: Optional[int] = None
    status: OfferStatus = OfferStatus.PENDING
    created_at: int = 0

    @property
    def accepted(self) -> bool:
        return self.status == OfferStatus.ACCEPTED

    @property
    def is_pending(self) -> bool:
        return self.status == OfferStatus.PENDING

    def is_expired(self, now: int) -> bool:
        return now >= self.expiration

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = int(self.status)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Offer":
        data = dict(data)
        data["status"] = OfferStatus(data.get("status", 0))
        return cls(**data)


# =============================================================================
# History & Receipts
# =============================================================================


@dataclass
class PriceRecord:
    """One completed sale."""
    item_id: int
    nft_contract: str
    token_id: int
    price: int
    timestamp: int
    buyer: str
    seller: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PriceRecord":
        return cls(**data)


@dataclass
class Receipt:
    """
    Result handle of a state-changing operation.

    ``tx_hash`` is Keccak-256 over the canonical JSON of the operation, so
    receipts look and behave like on-chain transaction receipts.
    """
    tx_hash: str
    operation: str
    item_id: Optional[int]
    timestamp: int
    sequence: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def make_receipt(
    operation: str,
    item_id: Optional[int],
    timestamp: int,
    sequence: int,
    **details: Any,
) -> Receipt:
    """Build a receipt with a deterministic transaction hash."""
    payload = json.dumps(
        {
            "operation": operation,
            "item_id": item_id,
            "timestamp": timestamp,
            "sequence": sequence,
            "details": details,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    ).encode()
    return Receipt(
        tx_hash=bytes_to_hex(keccak256(payload)),
        operation=operation,
        item_id=item_id,
        timestamp=timestamp,
        sequence=sequence,
        details=details,
    )
