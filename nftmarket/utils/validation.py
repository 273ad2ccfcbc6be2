"""
Input Validation - sanitization of every externally supplied value.

Provides validation for:
- Addresses (0x-prefixed, 20 bytes)
- Wei amounts and prices
- Token ids and timestamps
- Free-text fields (names, symbols, URIs)

All validators return ``(is_valid, error_message)``; the engines turn a
failed check into the matching exception.
"""

import re
from typing import Any, Optional, Tuple

from nftmarket.crypto import is_valid_address

# =============================================================================
# Constants
# =============================================================================

MAX_STRING_LENGTH = 1024
MAX_URI_LENGTH = 2048
MAX_NAME_LENGTH = 128
MAX_SYMBOL_LENGTH = 16

# Field bounds (uint256 on chain)
MIN_AMOUNT = 0
MAX_AMOUNT = 2**256 - 1
MAX_TOKEN_ID = 2**256 - 1
MAX_TIMESTAMP = 2**64 - 1

CATEGORY_PATTERN = r"^[a-z0-9][a-z0-9_-]{0,31}$"


# =============================================================================
# Validation Functions
# =============================================================================


def validate_integer(
    value: Any,
    name: str,
    min_val: int = MIN_AMOUNT,
    max_val: int = MAX_AMOUNT,
) -> Tuple[bool, str]:
    """
    Validate integer within bounds.

    Args:
        value: Value to validate
        name: Field name for errors
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        (is_valid, error_message)
    """
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        return False, f"{name} must be int, got {type(value).__name__}"

    if value < min_val:
        return False, f"{name} must be >= {min_val}, got {value}"

    if value > max_val:
        return False, f"{name} must be <= {max_val}, got {value}"

    return True, ""


def validate_amount(amount: Any, name: str = "amount") -> Tuple[bool, str]:
    """Validate a wei amount (zero allowed)."""
    return validate_integer(amount, name, MIN_AMOUNT, MAX_AMOUNT)


def validate_price(price: Any, name: str = "price") -> Tuple[bool, str]:
    """Validate a strictly positive wei amount."""
    return validate_integer(price, name, 1, MAX_AMOUNT)


def validate_token_id(token_id: Any) -> Tuple[bool, str]:
    """Validate a token id."""
    return validate_integer(token_id, "token_id", 0, MAX_TOKEN_ID)


def validate_timestamp(value: Any, name: str = "timestamp") -> Tuple[bool, str]:
    """Validate a unix timestamp in seconds."""
    return validate_integer(value, name, 0, MAX_TIMESTAMP)


def validate_address(address: Any, name: str = "address") -> Tuple[bool, str]:
    """Validate a 0x-prefixed 20-byte hex address."""
    if not isinstance(address, str):
        return False, f"{name} must be str, got {type(address).__name__}"
    if not is_valid_address(address):
        return False, f"{name} is not a valid address: {address!r}"
    return True, ""


def validate_string(
    value: Any,
    name: str,
    max_length: int = MAX_STRING_LENGTH,
    pattern: Optional[str] = None,
    allow_empty: bool = False,
) -> Tuple[bool, str]:
    """
    Validate string input.

    Args:
        value: Value to validate
        name: Field name for errors
        max_length: Maximum string length
        pattern: Optional regex pattern
        allow_empty: Whether a blank string is acceptable

    Returns:
        (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, f"{name} must be str, got {type(value).__name__}"

    if not allow_empty and not value.strip():
        return False, f"{name} must not be empty"

    if len(value) > max_length:
        return False, f"{name} exceeds max length {max_length}"

    if pattern and not re.match(pattern, value):
        return False, f"{name} does not match required pattern"

    return True, ""


def validate_category(category: Any) -> Tuple[bool, str]:
    """Validate a category slug (lowercase, short)."""
    return validate_string(category, "category", max_length=32, pattern=CATEGORY_PATTERN)


def validate_token_uri(uri: Any) -> Tuple[bool, str]:
    """Validate a token URI. Content is never interpreted."""
    return validate_string(uri, "token_uri", max_length=MAX_URI_LENGTH)


__all__ = [
    "validate_integer",
    "validate_amount",
    "validate_price",
    "validate_token_id",
    "validate_timestamp",
    "validate_address",
    "validate_string",
    "validate_category",
    "validate_token_uri",
    "MAX_NAME_LENGTH",
    "MAX_SYMBOL_LENGTH",
    "MAX_URI_LENGTH",
]
