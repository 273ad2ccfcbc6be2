"""Collection and token models."""

from dataclasses import dataclass, field, asdict
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from nftmarket.utils.validation import MAX_NAME_LENGTH, MAX_SYMBOL_LENGTH, MAX_URI_LENGTH


class CollectionMetadata(BaseModel):
    """Creator-supplied collection metadata."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH, description="Collection name")
    symbol: str = Field(..., min_length=1, max_length=MAX_SYMBOL_LENGTH, description="Ticker symbol")
    category: str = Field(..., min_length=1, description="Registered category")
    description: Optional[str] = Field(None, max_length=4096)
    website_url: Optional[str] = Field(None, max_length=MAX_URI_LENGTH)
    discord_url: Optional[str] = Field(None, max_length=MAX_URI_LENGTH)
    twitter_url: Optional[str] = Field(None, max_length=MAX_URI_LENGTH)
    profile_image: Optional[str] = Field(None, max_length=MAX_URI_LENGTH, description="Image URI")
    banner_image: Optional[str] = Field(None, max_length=MAX_URI_LENGTH, description="Image URI")

    @field_validator("category")
    @classmethod
    def lowercase_category(cls, value: str) -> str:
        return value.lower()

    @field_validator("symbol")
    @classmethod
    def uppercase_symbol(cls, value: str) -> str:
        return value.upper()


@dataclass
class Collection:
    """
    A factory-issued NFT collection.

    Created once; afterwards only the sale stats change.
    """
    address: str
    name: str
    symbol: str
    category: str
    creator: str
    description: Optional[str] = None
    website_url: Optional[str] = None
    discord_url: Optional[str] = None
    twitter_url: Optional[str] = None
    profile_image: Optional[str] = None
    banner_image: Optional[str] = None
    floor_price: int = 0
    total_sales: int = 0
    total_volume: int = 0
    sale_times: List[int] = field(default_factory=list)
    next_token_id: int = 1
    created_at: int = 0

    def sales_in_window(self, now: int, window: int) -> int:
        """Number of sales in the ``window`` seconds before ``now``."""
        cutoff = now - window
        return sum(1 for t in self.sale_times if t > cutoff)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Collection":
        return cls(**data)


@dataclass
class Token:
    """A minted token. The URI is stored verbatim and never interpreted."""
    collection: str
    token_id: int
    owner: str
    token_uri: str
    minted_at: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Token":
        return cls(**data)
