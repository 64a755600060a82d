"""
Pytest configuration and shared fixtures.

Adds the project root to the Python path so tests can import app, db and
storefront without installing the project, and provides a file-backed
SQLite ledger per test plus helpers to seed catalog and accounts.
"""

import sys
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from storefront.errors import NotificationError  # noqa: E402
from storefront.ledger import SQLiteLedgerStore  # noqa: E402

NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)
RELEASED = NOW - timedelta(days=30)


def fixed_clock():
    return NOW


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.error = None

    def send_invoice_email(self, to_address, subject, html_body):
        if self.error is not None:
            raise self.error
        self.sent.append((to_address, subject, html_body))


class Catalog:
    """Seeds publishers, games and users through the ledger."""

    def __init__(self, store):
        self.store = store
        with store.read_write() as session:
            self.publisher_id = session.create_publisher(
                email="publisher@email.com", name="Nova Studios", country="PT", vatin="PT500000000"
            )
        self._users = 0

    def game(self, price="10.00", title=None, is_active=True, release_date=RELEASED, age_rating="0"):
        with self.store.read_write() as session:
            return session.create_game(
                publisher_id=self.publisher_id,
                title=title or f"Game {price}",
                price=Decimal(price),
                is_active=is_active,
                release_date=release_date,
                age_rating=age_rating,
            )

    def games(self, count, price="1.00"):
        with self.store.read_write() as session:
            return [
                session.create_game(
                    publisher_id=self.publisher_id,
                    title=f"Game {i:04d}",
                    price=Decimal(price),
                    release_date=RELEASED,
                )
                for i in range(count)
            ]

    def user(self, balance="0.00", date_of_birth=date(2000, 2, 1)):
        self._users += 1
        n = self._users
        with self.store.read_write() as session:
            return session.create_user(
                email=f"user{n}@email.com",
                username=f"user{n}",
                display_name=f"User {n}",
                date_of_birth=date_of_birth,
                country="PT",
                vatin=f"PT1000000{n:02d}",
                balance=Decimal(balance),
            )

    def put_in_cart(self, user_id, *game_ids):
        with self.store.read_write() as session:
            for i, game_id in enumerate(game_ids):
                session.create_cart_game(user_id, game_id, NOW + timedelta(microseconds=i))

    def put_in_library(self, user_id, game_id):
        with self.store.read_write() as session:
            session._conn.execute(
                "INSERT INTO users_libraries (user_id, game_id, created_at) VALUES (?, ?, ?)",
                (user_id, game_id, NOW.isoformat()),
            )


@pytest.fixture
def store(tmp_path):
    ledger = SQLiteLedgerStore(str(tmp_path / "game_store.db"))
    ledger.init_schema()
    return ledger


@pytest.fixture
def catalog(store):
    return Catalog(store)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def failing_notifier():
    fake = FakeNotifier()
    fake.error = NotificationError("smtp relay unavailable")
    return fake


def snapshot(store, user_id):
    """Everything a purchase may touch for one user."""
    with store.read_only() as session:
        conn = session._conn
        return {
            "balance": session.get_user(user_id).balance,
            "cart": [tuple(r) for r in conn.execute(
                "SELECT user_id, game_id, created_at FROM users_carts WHERE user_id = ? ORDER BY game_id", (user_id,)
            )],
            "library": [tuple(r) for r in conn.execute(
                "SELECT user_id, game_id, created_at FROM users_libraries WHERE user_id = ? ORDER BY game_id", (user_id,)
            )],
            "invoices": conn.execute("SELECT count(*) FROM invoices").fetchone()[0],
            "invoice_lines": conn.execute("SELECT count(*) FROM invoice_lines").fetchone()[0],
        }
