"""
Purchase orchestration.

Turns a user's whole cart into library ownership in one read-write
transaction:

1. load the user
2. drain the cart page by page
3. re-check that every drained game can still be sold
4. price the cart and check the balance
5. debit the balance
6. migrate cart -> library and write the invoice (one atomic ledger call)
7. render and send the invoice email
8. commit

Any failure before the commit rolls everything back. The email is sent
before the commit, so a mail outage blocks purchases and a failed commit
after a successful send leaves the customer with an email for a purchase
that did not happen.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from .cart import log_failure, utc_now
from .eligibility import ensure_game_available
from .errors import (
    CartGameNotPurchasable,
    ConflictError,
    StorefrontError,
    UserBalanceInsufficient,
    UserCartEmpty,
)
from .ledger import LedgerSession, LedgerStore
from .models import (
    PAGINATION_LIMIT_MAX,
    PAGINATION_LIMIT_MIN,
    CartSort,
    Game,
    Invoice,
    PageRequest,
    SortOrder,
)
from .notifications import INVOICE_EMAIL_SUBJECT, NotificationSender, render_invoice_email
from .pricing import DEFAULT_TAX_RATE, quote_cart

DRAIN_BATCH_SIZE = 100

logger = logging.getLogger(__name__)


def drain_cart(session: LedgerSession, user_id: int, batch_size: int = DRAIN_BATCH_SIZE) -> List[Game]:
    """
    Read every game in the user's cart, batch_size rows at a time.

    Stops at the first short page. Must run inside the purchase transaction
    so the cart cannot change between pages.
    """
    games: List[Game] = []
    while True:
        page = session.list_cart(
            user_id,
            PageRequest(
                sort=CartSort.CREATED_AT,
                order=SortOrder.DESC,
                limit=batch_size,
                offset=len(games),
            ),
        )
        games.extend(page.results)
        if len(page.results) < batch_size:
            return games


class PurchaseOrchestrator:
    def __init__(
        self,
        store: LedgerStore,
        notifier: NotificationSender,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        batch_size: int = DRAIN_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
        timeout: Optional[float] = None,
    ):
        if not Decimal("0") < tax_rate < Decimal("1"):
            raise ValueError(f"tax rate must be between 0 and 1, got {tax_rate}")
        if not PAGINATION_LIMIT_MIN <= batch_size <= PAGINATION_LIMIT_MAX:
            raise ValueError(
                f"batch size must be between {PAGINATION_LIMIT_MIN} and {PAGINATION_LIMIT_MAX}, got {batch_size}"
            )

        self.store = store
        self.notifier = notifier
        self.tax_rate = tax_rate
        self.batch_size = batch_size
        self.clock = clock
        self.timeout = timeout

    def purchase(self, user_id: int, timeout: Optional[float] = None) -> Invoice:
        """
        Purchase the user's whole cart.

        Args:
            user_id: buyer
            timeout: seconds the transaction may run; defaults to the
                orchestrator's timeout. Past it the purchase rolls back with
                OperationCancelled.

        Returns:
            The invoice written for this purchase.

        Raises:
            UserNotFound, UserCartEmpty, UserBalanceInsufficient,
            CartGameNotPurchasable, UserLibraryGameAlreadyExists;
            StorefrontError for anything opaque (storage, email).
        """
        if timeout is None:
            timeout = self.timeout

        try:
            with self.store.read_write(timeout) as session:
                invoice = self._purchase(session, user_id)
        except StorefrontError as e:
            log_failure("purchase user cart", e, user_id=user_id)
            raise
        except Exception as e:
            log_failure("purchase user cart", e, user_id=user_id)
            raise StorefrontError("service: failed to purchase user cart") from e

        logger.info(
            "service: user %s purchased %d games, invoice %s, total %s",
            user_id, len(invoice.lines), invoice.id, invoice.total,
        )
        return invoice

    def _purchase(self, session: LedgerSession, user_id: int) -> Invoice:
        user = session.get_user(user_id)

        games = drain_cart(session, user_id, self.batch_size)
        if not games:
            raise UserCartEmpty()

        now = self.clock()

        for game in games:
            try:
                ensure_game_available(game, now)
            except ConflictError as e:
                raise CartGameNotPurchasable(game.id) from e

        quote = quote_cart([game.price for game in games], self.tax_rate)

        new_balance = user.balance - quote.total
        if new_balance < 0:
            raise UserBalanceInsufficient()

        session.set_user_balance(user.id, new_balance)

        invoice = session.purchase_cart(user, games, quote.line_taxes, self.tax_rate, now)

        body = render_invoice_email(user, games, quote, self.tax_rate, now)
        self.notifier.send_invoice_email(user.email, INVOICE_EMAIL_SUBJECT, body)

        return invoice


__all__ = [
    "DRAIN_BATCH_SIZE",
    "PurchaseOrchestrator",
    "drain_cart",
]
