"""
Error taxonomy for marketplace operations.

Four families, each surfaced synchronously to the caller:

- ValidationError: bad input (price, fee, expiration). No state change.
- StateConflict: item/offer/collection is in the wrong lifecycle state.
- FundsTransferError: escrow, refund or payout failed. The whole
  operation is rolled back.
- NotAuthorized: caller lacks the seller/owner/creator/admin capability.
"""


class MarketError(Exception):
    """Base class for all marketplace errors."""


# =============================================================================
# Validation
# =============================================================================


class ValidationError(MarketError):
    """Caller supplied invalid input."""


class InsufficientFee(ValidationError):
    """Listing fee paid does not match the current listing fee."""


class InvalidPrice(ValidationError):
    """Price or amount is not strictly positive."""


class InvalidExpiration(ValidationError):
    """Offer expiration is not in the future."""


class BidTooLow(ValidationError):
    """Bid does not beat the current highest bid or starting price."""


class PriceMismatch(ValidationError):
    """Amount paid differs from the asking price."""


class InvalidCategory(ValidationError):
    """Category is not registered with the factory."""


class InvalidAddress(ValidationError):
    """Address is malformed."""


# =============================================================================
# State conflicts
# =============================================================================


class StateConflict(MarketError):
    """Operation not allowed in the current lifecycle state."""


class ItemNotFound(StateConflict):
    """No market item with this id."""


class ItemAlreadySold(StateConflict):
    """Item has already been sold."""


class AlreadyListed(StateConflict):
    """Token already has an open listing."""


class ItemIsAuction(StateConflict):
    """Fixed-price operation attempted on an auction."""


class NotAnAuction(StateConflict):
    """Auction operation attempted on a fixed-price listing."""


class ListingClosed(StateConflict):
    """Listing was cancelled or its auction ended unsold."""


class AuctionNotActive(StateConflict):
    """Auction has expired or already ended."""


class AuctionNotExpired(StateConflict):
    """Auction end time has not been reached yet."""


class AlreadyEnded(StateConflict):
    """Auction was already ended."""


class AuctionHasBids(StateConflict):
    """Auction with an outstanding bid cannot be cancelled."""


class OfferNotFound(StateConflict):
    """No offer at this index for the item."""


class OfferExpired(StateConflict):
    """Offer expiration has passed."""


class OfferAlreadyResolved(StateConflict):
    """Offer was already accepted, refunded, withdrawn or expired."""


class CategoryExists(StateConflict):
    """Category already registered."""


class CategoryNotFound(StateConflict):
    """Category not registered."""


class CollectionNotFound(StateConflict):
    """No collection at this address."""


class TokenNotFound(StateConflict):
    """Token was never minted in this collection."""


# =============================================================================
# Funds
# =============================================================================


class FundsTransferError(MarketError):
    """Escrow, refund or payout failed; prior state is left intact."""


class InsufficientFunds(FundsTransferError):
    """Account balance does not cover the requested hold."""


class RefundFailed(FundsTransferError):
    """Outbound refund transfer failed."""


class PayoutFailed(FundsTransferError):
    """Outbound payout transfer failed."""


# =============================================================================
# Authorization
# =============================================================================


class NotAuthorized(MarketError):
    """Caller is not permitted to perform this action."""
