from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, List, Tuple

CENT = Decimal("0.01")
DEFAULT_TAX_RATE = Decimal("0.23")


def to_money(amount) -> Decimal:
    """
    Quantize an amount to cents.
    """
    return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)


def tax_percent(tax_rate: Decimal) -> str:
    """
    Tax rate as an integer percentage string, e.g. 0.23 -> "23".
    """
    return str((tax_rate * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Quote:
    subtotal: Decimal
    tax: Decimal
    line_taxes: Tuple[Decimal, ...]

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax


def calculate_subtotal(prices: Iterable[Decimal]) -> Decimal:
    total = Decimal("0.00")
    for price in prices:
        total += price
    return to_money(total)


def split_tax(prices: List[Decimal], tax: Decimal) -> List[Decimal]:
    """
    Allocate a total tax amount across lines in proportion to their prices.

    Each share is rounded down to the cent and the leftover cents go to the
    lines with the largest remainders, so the shares always add up to `tax`.
    """
    subtotal = sum(prices, Decimal("0"))
    if subtotal == 0:
        return [Decimal("0.00") for _ in prices]

    exact = [tax * price / subtotal for price in prices]
    shares = [share.quantize(CENT, rounding=ROUND_FLOOR) for share in exact]

    leftover = int((tax - sum(shares, Decimal("0"))) / CENT)
    by_remainder = sorted(
        range(len(prices)), key=lambda i: (exact[i] - shares[i], -i), reverse=True
    )
    for i in by_remainder[:leftover]:
        shares[i] += CENT

    return shares


def quote_cart(prices: List[Decimal], tax_rate: Decimal) -> Quote:
    """
    Price a cart: subtotal, total tax and each line's share of it.

    Tax is rounded half-up to the cent once, on the subtotal, so the total is
    subtotal + round(subtotal * tax_rate) rather than the unrounded
    subtotal * (1 + tax_rate). Three 0.10 games at 0.23 cost 0.37, not 0.369.
    """
    subtotal = calculate_subtotal(prices)
    tax = to_money(subtotal * tax_rate)
    return Quote(subtotal=subtotal, tax=tax, line_taxes=tuple(split_tax(prices, tax)))
