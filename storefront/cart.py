"""
Cart and library service.

Cart-add goes through the eligibility checks and the insert inside a single
read-write transaction, so the facts it checked are still true when the row
lands. Listings use read-only transactions.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .eligibility import EligibilityChecker
from .errors import is_expected
from .ledger import LedgerStore
from .models import CartSort, Game, Invoice, InvoiceSort, LibrarySort, Page, PageRequest

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def log_failure(operation: str, error: Exception, **ids) -> None:
    """Business outcomes at INFO, anything unexpected at ERROR with the traceback."""
    context = " ".join(f"{key}={value}" for key, value in ids.items())
    if is_expected(error):
        logger.info("service: failed to %s (%s): %s", operation, context, error)
    else:
        logger.error("service: failed to %s (%s)", operation, context, exc_info=error)


class CartService:
    def __init__(
        self,
        store: LedgerStore,
        checker: Optional[EligibilityChecker] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.checker = checker or EligibilityChecker()
        self.clock = clock

    def add_game(self, user_id: int, game_id: int) -> None:
        """
        Put a game in the user's cart.

        Raises:
            GameNotFound, GameNotActive, GameNotReleased, UserNotFound,
            UserNotOldEnough, UserLibraryGameAlreadyExists,
            UserCartGameAlreadyExists
        """
        now = self.clock()
        try:
            with self.store.read_write() as session:
                self.checker.check(session, user_id, game_id, now)
                session.create_cart_game(user_id, game_id, now)
        except Exception as e:
            log_failure("create user cart game", e, user_id=user_id, game_id=game_id)
            raise

        logger.info("service: added game %s to cart of user %s", game_id, user_id)

    def remove_game(self, user_id: int, game_id: int) -> None:
        try:
            with self.store.read_write() as session:
                session.delete_cart_game(user_id, game_id)
        except Exception as e:
            log_failure("delete user cart game", e, user_id=user_id, game_id=game_id)
            raise

    def list_cart(self, user_id: int, request: PageRequest) -> Page[Game]:
        try:
            request.validate(CartSort)
            with self.store.read_only() as session:
                return session.list_cart(user_id, request)
        except Exception as e:
            log_failure("list user cart", e, user_id=user_id)
            raise

    def list_library(self, user_id: int, request: PageRequest) -> Page[Game]:
        try:
            request.validate(LibrarySort)
            with self.store.read_only() as session:
                return session.list_library(user_id, request)
        except Exception as e:
            log_failure("list user library", e, user_id=user_id)
            raise

    def list_invoices(self, user_id: int, request: PageRequest) -> Page[Invoice]:
        try:
            request.validate(InvoiceSort)
            with self.store.read_only() as session:
                return session.list_invoices(user_id, request)
        except Exception as e:
            log_failure("list user invoices", e, user_id=user_id)
            raise
