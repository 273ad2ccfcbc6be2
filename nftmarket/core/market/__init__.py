"""
Market Module.

Provides the trading engines over market items:
- Listing Ledger (fixed-price listings, sales, price history)
- Auction Engine (bids, outbid refunds, closing)
- Offer Engine (escrowed offers, acceptance, expiry)
"""

from nftmarket.core.market.item import (
    ItemState,
    OfferStatus,
    MarketItem,
    Bid,
    Offer,
    PriceRecord,
    Receipt,
    make_receipt,
)
from nftmarket.core.market.listing import ListingLedger
from nftmarket.core.market.auction import AuctionEngine, DEFAULT_AUCTION_DURATION
from nftmarket.core.market.offer import OfferEngine

__all__ = [
    "ItemState",
    "OfferStatus",
    "MarketItem",
    "Bid",
    "Offer",
    "PriceRecord",
    "Receipt",
    "make_receipt",
    "ListingLedger",
    "AuctionEngine",
    "DEFAULT_AUCTION_DURATION",
    "OfferEngine",
]
