"""Exact currency arithmetic.

All amounts are ``Decimal`` values in the single billing currency. Rounding
to the cent is always half-up, and conversion to minor units happens once,
when a line item is handed to the invoicing provider.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Tuple, Union

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Number | None) -> Decimal:
    """Coerce provider or user supplied values without inheriting float noise."""

    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def round_cents(amount: Number) -> Decimal:
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Number) -> int:
    """Return the amount in integer cents, rounding half-up.

    ``19.995`` becomes ``2000``.
    """

    cents = (to_decimal(amount) * HUNDRED).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def sum_amounts(amounts: Iterable[Number]) -> Decimal:
    total = ZERO
    for amount in amounts:
        total += to_decimal(amount)
    return total


def apply_markup(subtotal: Number, markup_percent: Number) -> Tuple[Decimal, Decimal]:
    """Return ``(markup_amount, total)`` for a subtotal.

    ``markup_amount = round(subtotal * markup_percent / 100, 2)`` (half-up) and
    ``total = subtotal + markup_amount``. The percentage is expected in
    ``[0, 10000]``; it is validated where customers are created or edited,
    not here.
    """

    base = to_decimal(subtotal)
    markup_amount = round_cents(base * to_decimal(markup_percent) / HUNDRED)
    return markup_amount, base + markup_amount
