"""
Collection Factory - categories, collections and token ownership.

This module provides:
- A category registry owned by the marketplace admin
- Collection creation with deterministic addresses
- Creator-only minting and token ownership tracking
- Sale statistics (floor price, volume, rolling 24h sales)

Stats can only be written by the marketplace itself; every other caller is
rejected with NotAuthorized.
"""

import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from nftmarket.core.collection.models import Collection, CollectionMetadata, Token
from nftmarket.core.errors import (
    CategoryExists,
    CategoryNotFound,
    CollectionNotFound,
    InvalidAddress,
    InvalidCategory,
    NotAuthorized,
    TokenNotFound,
    ValidationError,
)
from nftmarket.core.journal import Journal
from nftmarket.crypto import derive_contract_address, normalize_address
from nftmarket.utils.logger import get_logger
from nftmarket.utils.validation import validate_category, validate_price, validate_token_uri

logger = get_logger("collections")


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CATEGORIES = ("art", "gaming", "music", "sports", "photography")

DEFAULT_FACTORY_ADDRESS = "0x" + "fa" * 20

SALES_WINDOW = 24 * 60 * 60


def _address(value: str, name: str) -> str:
    try:
        return normalize_address(value)
    except ValueError:
        raise InvalidAddress(f"{name} is not a valid address: {value!r}")


# =============================================================================
# Collection Factory
# =============================================================================


class CollectionFactory:
    """
    Registry of categories, collections and minted tokens.

    Attributes:
        categories: Registered category slugs
        collections: Collection address -> Collection
        tokens: (collection address, token_id) -> Token
    """

    def __init__(
        self,
        admin: str,
        marketplace_address: str,
        clock: Callable[[], int],
        factory_address: str = DEFAULT_FACTORY_ADDRESS,
        sales_window: int = SALES_WINDOW,
        categories: Iterable[str] = DEFAULT_CATEGORIES,
        journal: Optional[Journal] = None,
    ):
        """
        Initialize the factory.

        Args:
            admin: Account allowed to manage categories
            marketplace_address: Only caller allowed to update stats
            clock: Returns current unix seconds
            factory_address: Deployer address used to derive collection addresses
            sales_window: Seconds counted by the rolling sales stat
            categories: Initial categories
            journal: Shared undo log
        """
        self.admin = normalize_address(admin)
        self.marketplace_address = normalize_address(marketplace_address)
        self.factory_address = normalize_address(factory_address)
        self.clock = clock
        self.sales_window = sales_window
        self.journal = journal or Journal()

        self.categories: Set[str] = set(categories)
        self.collections: Dict[str, Collection] = {}
        self.tokens: Dict[Tuple[str, int], Token] = {}

        # Deployment nonce for address derivation
        self.nonce: int = 0

        self._lock = threading.RLock()

        logger.info(f"CollectionFactory initialized with {len(self.categories)} categories")

    def _record(self, undo: Callable[[], None]) -> None:
        def locked_undo():
            with self._lock:
                undo()

        self.journal.record(locked_undo)

    def _require_admin(self, caller: str) -> None:
        if normalize_address(caller) != self.admin:
            raise NotAuthorized(f"{caller} is not the factory owner")

    # =========================================================================
    # Categories
    # =========================================================================

    def is_valid_category(self, category: str) -> bool:
        with self._lock:
            return category in self.categories

    def add_category(self, category: str, caller: str) -> None:
        """Register a new category (admin only)."""
        self._require_admin(caller)
        valid, err = validate_category(category)
        if not valid:
            raise InvalidCategory(err)

        with self._lock:
            if category in self.categories:
                raise CategoryExists("Category already exists")
            self.categories.add(category)
            self._record(lambda: self.categories.discard(category))

        logger.info(f"Category added: {category}")

    def remove_category(self, category: str, caller: str) -> None:
        """
        Unregister a category (admin only).

        Existing collections keep their category.
        """
        self._require_admin(caller)
        with self._lock:
            if category not in self.categories:
                raise CategoryNotFound(f"Category does not exist: {category}")
            self.categories.discard(category)
            self._record(lambda: self.categories.add(category))

        logger.info(f"Category removed: {category}")

    # =========================================================================
    # Collections
    # =========================================================================

    def create_collection(
        self,
        creator: str,
        metadata: Union[CollectionMetadata, dict],
    ) -> Collection:
        """
        Create a new collection owned by ``creator``.

        Args:
            creator: Creator account
            metadata: Name, symbol, category and optional descriptive fields

        Returns:
            The new Collection

        Raises:
            ValidationError: Malformed metadata
            InvalidCategory: Category not registered
        """
        creator = _address(creator, "creator")
        if not isinstance(metadata, CollectionMetadata):
            try:
                metadata = CollectionMetadata(**metadata)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid collection metadata: {e.errors()[0]['msg']}")

        with self._lock:
            if metadata.category not in self.categories:
                raise InvalidCategory(f"Invalid category: {metadata.category}")

            address = derive_contract_address(self.factory_address, self.nonce)
            self.nonce += 1

            collection = Collection(
                address=address,
                creator=creator,
                created_at=self.clock(),
                **metadata.model_dump(),
            )
            self.collections[address] = collection

            def undo():
                del self.collections[address]
                self.nonce -= 1

            self._record(undo)

        logger.info(f"Collection created: {collection.name} ({collection.symbol}) at {address[:10]}")
        return collection

    def get_collection(self, address: str) -> Collection:
        with self._lock:
            collection = self.collections.get(_address(address, "collection"))
        if collection is None:
            raise CollectionNotFound(f"Collection not found: {address}")
        return collection

    def is_collection(self, address: str) -> bool:
        with self._lock:
            return address in self.collections

    # =========================================================================
    # Tokens
    # =========================================================================

    def mint(self, collection_address: str, caller: str, to: str, token_uri: str) -> Token:
        """
        Mint the next token of a collection (creator only).

        Returns:
            The minted Token; ids start at 1
        """
        collection = self.get_collection(collection_address)
        caller = _address(caller, "caller")
        to = _address(to, "to")
        if caller != collection.creator:
            raise NotAuthorized("Only collection creator can mint NFTs")

        valid, err = validate_token_uri(token_uri)
        if not valid:
            raise ValidationError(err)

        with self._lock:
            token_id = collection.next_token_id
            collection.next_token_id += 1
            token = Token(
                collection=collection.address,
                token_id=token_id,
                owner=to,
                token_uri=token_uri,
                minted_at=self.clock(),
            )
            key = (collection.address, token_id)
            self.tokens[key] = token

            def undo():
                del self.tokens[key]
                collection.next_token_id -= 1

            self._record(undo)

        logger.info(f"Minted {collection.symbol} #{token_id} to {to[:10]}")
        return token

    def get_token(self, collection_address: str, token_id: int) -> Token:
        with self._lock:
            token = self.tokens.get((collection_address, token_id))
        if token is None:
            raise TokenNotFound(f"Token {collection_address[:10]}#{token_id} not minted")
        return token

    def owner_of(self, collection_address: str, token_id: int) -> str:
        return self.get_token(collection_address, token_id).owner

    def transfer_token(self, collection_address: str, token_id: int, sender: str, recipient: str) -> None:
        """Move a token between accounts."""
        token = self.get_token(collection_address, token_id)
        with self._lock:
            if token.owner != sender:
                raise NotAuthorized(f"{sender} does not own token #{token_id}")
            token.owner = recipient
            self._record(lambda: setattr(token, "owner", sender))

        logger.debug(f"Token {collection_address[:10]}#{token_id}: {sender[:10]} -> {recipient[:10]}")

    def tokens_of(self, owner: str) -> List[Token]:
        owner = normalize_address(owner)
        with self._lock:
            return [t for t in self.tokens.values() if t.owner == owner]

    def collection_tokens(self, collection_address: str) -> List[Token]:
        with self._lock:
            return sorted(
                (t for t in self.tokens.values() if t.collection == collection_address),
                key=lambda t: t.token_id,
            )

    # =========================================================================
    # Stats
    # =========================================================================

    def update_collection_stats(self, collection_address: str, price: int, is_sale: bool, caller: str) -> None:
        """
        Fold a listing or sale price into the collection stats.

        Raises:
            NotAuthorized: Caller is not the marketplace
        """
        if normalize_address(caller) != self.marketplace_address:
            raise NotAuthorized("Only marketplace can update stats")
        valid, err = validate_price(price)
        if not valid:
            raise ValidationError(err)

        collection = self.get_collection(collection_address)
        now = self.clock()
        with self._lock:
            previous_floor = collection.floor_price
            floor_changed = previous_floor == 0 or price < previous_floor
            if floor_changed:
                collection.floor_price = price
            if is_sale:
                collection.total_sales += 1
                collection.total_volume += price
                collection.sale_times.append(now)
                # Drop timestamps that can no longer count towards the window
                cutoff = now - self.sales_window
                collection.sale_times = [t for t in collection.sale_times if t > cutoff]

            def undo():
                if floor_changed and collection.floor_price == price:
                    collection.floor_price = previous_floor
                if is_sale:
                    collection.total_sales -= 1
                    collection.total_volume -= price
                    if now in collection.sale_times:
                        collection.sale_times.remove(now)

            self._record(undo)

    def sales_24h(self, collection_address: str) -> int:
        collection = self.get_collection(collection_address)
        return collection.sales_in_window(self.clock(), self.sales_window)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_all_collections(self) -> List[Collection]:
        with self._lock:
            return sorted(self.collections.values(), key=lambda c: c.created_at)

    def get_collections_by_category(self, category: str) -> List[Collection]:
        return [c for c in self.get_all_collections() if c.category == category]

    def get_creator_collections(self, creator: str) -> List[Collection]:
        creator = normalize_address(creator)
        return [c for c in self.get_all_collections() if c.creator == creator]

    def get_trending_collections_by_category(self, category: str, limit: int) -> List[Collection]:
        """Collections of a category ranked by recent sales, then volume."""
        now = self.clock()
        ranked = sorted(
            self.get_collections_by_category(category),
            key=lambda c: (c.sales_in_window(now, self.sales_window), c.total_volume),
            reverse=True,
        )
        return ranked[:max(limit, 0)]

    def stats(self) -> dict:
        with self._lock:
            return {
                "categories": len(self.categories),
                "collections": len(self.collections),
                "tokens": len(self.tokens),
                "total_volume": sum(c.total_volume for c in self.collections.values()),
            }

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "categories": sorted(self.categories),
                "nonce": self.nonce,
            }

    def load(self, state: dict, collections: List[Collection], tokens: List[Token]) -> None:
        """Replace registry contents with persisted state."""
        with self._lock:
            if state:
                self.categories = set(state.get("categories", self.categories))
                self.nonce = state.get("nonce", 0)
            self.collections = {c.address: c for c in collections}
            self.tokens = {(t.collection, t.token_id): t for t in tokens}
