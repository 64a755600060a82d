"""
Domain models for catalog, accounts and commerce.

Plain frozen dataclasses; the ledger builds them from rows and the services
pass them around. Nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Generic, List, Optional, Tuple, TypeVar

from .errors import InvalidFilterValue

T = TypeVar("T")

PAGINATION_LIMIT_MIN = 1
PAGINATION_LIMIT_MAX = 100
PAGINATION_LIMIT_DEFAULT = 10


@dataclass(frozen=True)
class Publisher:
    id: int
    email: str
    name: str
    country: str
    vatin: str


@dataclass(frozen=True)
class Game:
    id: int
    publisher: Publisher
    title: str
    price: Decimal
    is_active: bool
    release_date: Optional[datetime]
    age_rating: str
    created_at: Optional[datetime] = None

    @property
    def min_age(self) -> int:
        """Age rating as an integer; anything non-numeric means no restriction."""
        try:
            return int(self.age_rating)
        except (TypeError, ValueError):
            return 0


@dataclass(frozen=True)
class User:
    id: int
    email: str
    username: str
    display_name: str
    date_of_birth: date
    country: str
    vatin: str
    balance: Decimal


@dataclass(frozen=True)
class InvoiceLine:
    game_id: int
    game_title: str
    price: Decimal
    tax: Decimal
    publisher_name: str
    publisher_country: str
    publisher_vatin: str

    @property
    def price_with_tax(self) -> Decimal:
        return self.price + self.tax


@dataclass(frozen=True)
class Invoice:
    """
    Immutable purchase record.

    User and publisher fields are snapshots taken at purchase time, so later
    catalog or profile edits never alter an issued invoice.
    """

    id: int
    user_id: int
    user_display_name: str
    user_email: str
    user_country: str
    user_vatin: str
    tax_rate: Decimal
    created_at: datetime
    lines: Tuple[InvoiceLine, ...] = field(default_factory=tuple)

    @property
    def subtotal(self) -> Decimal:
        return sum((line.price for line in self.lines), Decimal("0.00"))

    @property
    def tax(self) -> Decimal:
        return sum((line.tax for line in self.lines), Decimal("0.00"))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax


# Pagination

class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class CartSort(str, Enum):
    CREATED_AT = "createdAt"
    GAME_TITLE = "gameTitle"


class LibrarySort(str, Enum):
    GAME_TITLE = "gameTitle"
    GAME_PRICE = "gamePrice"
    GAME_RELEASE_DATE = "gameReleaseDate"


class InvoiceSort(str, Enum):
    CREATED_AT = "createdAt"


@dataclass(frozen=True)
class PageRequest:
    sort: Optional[Enum] = None
    order: SortOrder = SortOrder.ASC
    limit: int = PAGINATION_LIMIT_DEFAULT
    offset: int = 0

    @classmethod
    def parse(
        cls,
        sort_type: type,
        sort: Optional[str] = None,
        order: Optional[str] = None,
        limit: Optional[str] = None,
        offset: Optional[str] = None,
    ) -> "PageRequest":
        """Build a request from raw query values, raising on the first bad one."""
        try:
            parsed_sort = sort_type(sort) if sort else None
        except ValueError:
            raise InvalidFilterValue("sort") from None

        try:
            parsed_order = SortOrder(order) if order else SortOrder.ASC
        except ValueError:
            raise InvalidFilterValue("order") from None

        try:
            parsed_limit = int(limit) if limit is not None else PAGINATION_LIMIT_DEFAULT
        except ValueError:
            raise InvalidFilterValue("limit") from None

        try:
            parsed_offset = int(offset) if offset is not None else 0
        except ValueError:
            raise InvalidFilterValue("offset") from None

        request = cls(sort=parsed_sort, order=parsed_order, limit=parsed_limit, offset=parsed_offset)
        request.validate(sort_type)
        return request

    def validate(self, sort_type: type) -> None:
        if self.sort is not None and not isinstance(self.sort, sort_type):
            raise InvalidFilterValue("sort")
        if not isinstance(self.order, SortOrder):
            raise InvalidFilterValue("order")
        if not PAGINATION_LIMIT_MIN <= self.limit <= PAGINATION_LIMIT_MAX:
            raise InvalidFilterValue("limit")
        if self.offset < 0:
            raise InvalidFilterValue("offset")


@dataclass(frozen=True)
class Page(Generic[T]):
    total: int
    results: List[T]
