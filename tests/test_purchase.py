"""
Tests for `storefront/purchase.py`.

Covers:
- the happy path: debit, cart -> library, invoice, email
- business failures leave every table exactly as it was
- draining a cart larger than one batch
- failures after the migration (email, deadline) roll the migration back
- overlapping purchases by the same user debit the balance once
"""

import logging
import threading
from decimal import Decimal

import pytest

from conftest import fixed_clock, snapshot
from storefront.errors import (
    CartGameNotPurchasable,
    NotificationError,
    OperationCancelled,
    UserBalanceInsufficient,
    UserCartEmpty,
    UserLibraryGameAlreadyExists,
    UserNotFound,
)
from storefront.models import PageRequest
from storefront.notifications import INVOICE_EMAIL_SUBJECT
from storefront.purchase import PurchaseOrchestrator, drain_cart


def _orchestrator(store, notifier, **kwargs):
    kwargs.setdefault("tax_rate", Decimal("0.23"))
    return PurchaseOrchestrator(store, notifier, clock=fixed_clock, **kwargs)


def test_purchase_moves_cart_to_library_and_bills_with_tax(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    cheap = catalog.game(price="5.00", title="Cheap Thrills")
    dear = catalog.game(price="15.00", title="Dear Diary")
    catalog.put_in_cart(user_id, cheap, dear)

    invoice = _orchestrator(store, notifier).purchase(user_id)

    after = snapshot(store, user_id)
    assert after["balance"] == Decimal("5.40")
    assert after["cart"] == []
    assert [row[1] for row in after["library"]] == [cheap, dear]
    assert after["invoices"] == 1
    assert after["invoice_lines"] == 2

    assert invoice.subtotal == Decimal("20.00")
    assert invoice.tax == Decimal("4.60")
    assert invoice.total == Decimal("24.60")
    assert {line.game_id for line in invoice.lines} == {cheap, dear}


def test_purchase_sends_invoice_email(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))

    _orchestrator(store, notifier).purchase(user_id)

    assert len(notifier.sent) == 1
    to_address, subject, body = notifier.sent[0]
    assert to_address == "user1@email.com"
    assert subject == INVOICE_EMAIL_SUBJECT
    assert "Tax (23%)" in body
    assert "€24.60" in body
    assert "€6.15" in body
    assert "€18.45" in body
    assert "2025-06-15" in body


def test_insufficient_balance_changes_nothing(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="10.00")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))
    before = snapshot(store, user_id)

    with pytest.raises(UserBalanceInsufficient):
        _orchestrator(store, notifier).purchase(user_id)

    assert snapshot(store, user_id) == before
    assert before["balance"] == Decimal("10.00")
    assert len(before["cart"]) == 2
    assert notifier.sent == []


def test_exact_balance_is_enough(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="24.60")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))

    _orchestrator(store, notifier).purchase(user_id)

    assert snapshot(store, user_id)["balance"] == Decimal("0.00")


def test_empty_cart_changes_nothing(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    before = snapshot(store, user_id)

    with pytest.raises(UserCartEmpty):
        _orchestrator(store, notifier).purchase(user_id)

    assert snapshot(store, user_id) == before
    assert notifier.sent == []


def test_unknown_user(store, notifier) -> None:
    with pytest.raises(UserNotFound):
        _orchestrator(store, notifier).purchase(999)


@pytest.mark.parametrize("batch_size", [1, 7, 100])
def test_drain_reads_every_cart_entry_once(store, catalog, batch_size) -> None:
    user_id = catalog.user()
    game_ids = catalog.games(250)
    catalog.put_in_cart(user_id, *game_ids)

    with store.read_only() as session:
        games = drain_cart(session, user_id, batch_size)

    assert len(games) == 250
    assert sorted(game.id for game in games) == sorted(game_ids)


def test_drain_of_250_with_batches_of_100_takes_three_pages(store, catalog) -> None:
    user_id = catalog.user()
    catalog.put_in_cart(user_id, *catalog.games(250))
    page_sizes = []

    class CountingSession:
        def __init__(self, session):
            self.session = session

        def list_cart(self, user_id, request):
            page = self.session.list_cart(user_id, request)
            page_sizes.append(len(page.results))
            return page

    with store.read_only() as session:
        drain_cart(CountingSession(session), user_id, 100)

    assert page_sizes == [100, 100, 50]


def test_purchase_of_a_cart_larger_than_one_batch(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="400.00")
    catalog.put_in_cart(user_id, *catalog.games(250, price="1.00"))

    invoice = _orchestrator(store, notifier, batch_size=100).purchase(user_id)

    after = snapshot(store, user_id)
    assert len(invoice.lines) == 250
    assert invoice.total == Decimal("307.50")
    assert after["balance"] == Decimal("92.50")
    assert after["cart"] == []
    assert len(after["library"]) == 250


def test_notification_failure_rolls_back_the_purchase(store, catalog, failing_notifier) -> None:
    user_id = catalog.user(balance="30.00")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))
    before = snapshot(store, user_id)

    with pytest.raises(NotificationError):
        _orchestrator(store, failing_notifier).purchase(user_id)

    assert snapshot(store, user_id) == before


def test_expired_deadline_rolls_back_the_purchase(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))
    before = snapshot(store, user_id)

    with pytest.raises(OperationCancelled):
        _orchestrator(store, notifier).purchase(user_id, timeout=0)

    assert snapshot(store, user_id) == before


def test_game_deactivated_after_cart_add_is_not_purchasable(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    kept = catalog.game(price="5.00")
    pulled = catalog.game(price="15.00")
    catalog.put_in_cart(user_id, kept, pulled)
    with store.read_write() as session:
        session.set_game_active(pulled, False)
    before = snapshot(store, user_id)

    with pytest.raises(CartGameNotPurchasable) as exc_info:
        _orchestrator(store, notifier).purchase(user_id)

    assert exc_info.value.game_id == pulled
    assert snapshot(store, user_id) == before


def test_game_owned_since_cart_add_aborts_the_purchase(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="30.00")
    fresh = catalog.game(price="5.00")
    raced = catalog.game(price="15.00")
    catalog.put_in_cart(user_id, fresh, raced)
    catalog.put_in_library(user_id, raced)
    before = snapshot(store, user_id)

    with pytest.raises(UserLibraryGameAlreadyExists):
        _orchestrator(store, notifier).purchase(user_id)

    assert snapshot(store, user_id) == before
    assert notifier.sent == []


def test_money_is_conserved_across_purchases(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="100.00")
    owned = catalog.game(price="20.00")
    catalog.put_in_library(user_id, owned)
    orchestrator = _orchestrator(store, notifier)

    catalog.put_in_cart(user_id, catalog.game(price="0.10"), catalog.game(price="0.10"), catalog.game(price="0.10"))
    first = orchestrator.purchase(user_id)
    catalog.put_in_cart(user_id, catalog.game(price="19.99"))
    second = orchestrator.purchase(user_id)

    after = snapshot(store, user_id)
    assert after["balance"] + first.total + second.total == Decimal("100.00")
    assert len(after["library"]) == 5
    for invoice in (first, second):
        assert sum(line.tax for line in invoice.lines) == invoice.tax

    with store.read_only() as session:
        assert session.list_invoices(user_id, PageRequest()).total == 2


def test_business_failures_log_at_info_and_faults_at_error(store, catalog, notifier, failing_notifier, caplog) -> None:
    user_id = catalog.user(balance="30.00")

    with caplog.at_level(logging.INFO, logger="storefront"):
        with pytest.raises(UserCartEmpty):
            _orchestrator(store, notifier).purchase(user_id)

        catalog.put_in_cart(user_id, catalog.game(price="5.00"))
        with pytest.raises(NotificationError):
            _orchestrator(store, failing_notifier).purchase(user_id)

    failures = [r for r in caplog.records if "failed to purchase user cart" in r.getMessage()]
    assert [r.levelno for r in failures] == [logging.INFO, logging.ERROR]
    assert failures[1].exc_info is not None


@pytest.mark.parametrize(
    "kwargs",
    [{"tax_rate": Decimal("0")}, {"tax_rate": Decimal("1")}, {"batch_size": 0}, {"batch_size": 101}],
)
def test_orchestrator_rejects_invalid_settings(store, notifier, kwargs) -> None:
    with pytest.raises(ValueError):
        _orchestrator(store, notifier, **kwargs)


def test_concurrent_purchases_debit_the_balance_once(store, catalog, notifier) -> None:
    user_id = catalog.user(balance="100.00")
    catalog.put_in_cart(user_id, catalog.game(price="5.00"), catalog.game(price="15.00"))
    orchestrator = _orchestrator(store, notifier)
    workers = 4
    barrier = threading.Barrier(workers)
    outcomes = []

    def buy():
        barrier.wait()
        try:
            orchestrator.purchase(user_id)
            outcomes.append("ok")
        except UserCartEmpty:
            outcomes.append("empty")

    threads = [threading.Thread(target=buy) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["empty"] * (workers - 1) + ["ok"]
    after = snapshot(store, user_id)
    assert after["balance"] == Decimal("75.40")
    assert after["invoices"] == 1
    assert len(after["library"]) == 2
    assert len(notifier.sent) == 1
