"""Collection factory, categories and token ownership"""
from nftmarket.core.collection.models import CollectionMetadata, Collection, Token
from nftmarket.core.collection.factory import CollectionFactory, DEFAULT_CATEGORIES

__all__ = [
    "CollectionMetadata",
    "Collection",
    "Token",
    "CollectionFactory",
    "DEFAULT_CATEGORIES",
]
