from decimal import Decimal

from .pricing import to_money


def format_eur(amount: Decimal) -> str:
    """
    Format an amount as Euro currency.
    """
    return f"€{to_money(amount):.2f}"
