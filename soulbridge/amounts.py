"""
SoulBridge Token Amounts
Conversion between human-entered decimal strings and integer base units.
Amounts stay integers everywhere except at this boundary.
"""

from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

from soulbridge.errors import InvalidAmountError


def to_base_units(amount: Union[str, int, Decimal], decimals: int) -> int:
    """
    Convert a human amount ("10.5") into base units using ``decimals``.

    Floats are refused: their binary representation is already lossy.
    Raises InvalidAmountError for non-numeric, non-positive values, or
    values with more fractional digits than the token supports.
    """
    if isinstance(amount, float):
        raise InvalidAmountError("Amounts must be given as strings, not floats")
    if decimals < 0:
        raise InvalidAmountError(f"Invalid token decimals: {decimals}")

    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise InvalidAmountError(f"Not a number: {amount!r}") from None

    if not value.is_finite():
        raise InvalidAmountError(f"Not a finite amount: {amount!r}")
    if value <= 0:
        raise InvalidAmountError("Amount must be greater than zero")

    with localcontext() as ctx:
        ctx.prec = 100
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise InvalidAmountError(
                f"{amount} has more than {decimals} decimal places"
            )
        return int(scaled)


def from_base_units(base_units: int, decimals: int) -> str:
    """Render base units as a plain decimal string without trailing zeros."""
    with localcontext() as ctx:
        ctx.prec = 100
        text = format(Decimal(int(base_units)).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text
