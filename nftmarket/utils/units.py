"""Ether / wei conversion helpers."""

from decimal import Decimal, InvalidOperation
from typing import Union

WEI_PER_ETHER = 10**18


def to_wei(value: Union[str, int, Decimal]) -> int:
    """
    Convert an ether amount to wei.

    Raises:
        ValueError: If the amount is malformed, negative or finer than 1 wei
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid ether amount: {value!r}")

    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Invalid ether amount: {value!r}")

    wei = amount * WEI_PER_ETHER
    if wei != wei.to_integral_value():
        raise ValueError(f"Amount {value!r} has more than 18 decimals")
    return int(wei)


def from_wei(wei: int) -> Decimal:
    """Convert wei to an ether Decimal."""
    return Decimal(wei) / WEI_PER_ETHER


def format_ether(wei: int) -> str:
    """Human readable ether string, e.g. ``1.2 ETH``."""
    text = format(from_wei(wei).normalize(), "f")
    return f"{text} ETH"
