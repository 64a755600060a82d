"""
Ledger store (persistence).

SQLite-backed storage for users, games, carts, libraries and invoices. Every
operation runs on a LedgerSession bound to one open transaction; the store
hands out sessions through read_only() / read_write() scopes.

Constraint failures are translated here into domain errors. No sqlite3
exception ever leaves this module.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, ContextManager, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from db import TransactionCancelled, get_connection, init_db, read_only_tx, read_write_tx

from .errors import (
    GameNotFound,
    InvariantViolation,
    OperationCancelled,
    StorageError,
    StorefrontError,
    UserCartGameAlreadyExists,
    UserCartGameNotFound,
    UserLibraryGameAlreadyExists,
    UserNotFound,
)
from .models import (
    CartSort,
    Game,
    Invoice,
    InvoiceLine,
    InvoiceSort,
    LibrarySort,
    Page,
    PageRequest,
    Publisher,
    SortOrder,
    User,
)
from .pricing import to_money

logger = logging.getLogger(__name__)

_CART_SORT_FIELDS: Dict[Optional[CartSort], str] = {
    None: "uc.created_at",
    CartSort.CREATED_AT: "uc.created_at",
    CartSort.GAME_TITLE: "g.title",
}

_LIBRARY_SORT_FIELDS: Dict[Optional[LibrarySort], str] = {
    None: "g.title",
    LibrarySort.GAME_TITLE: "g.title",
    LibrarySort.GAME_PRICE: "g.price",
    LibrarySort.GAME_RELEASE_DATE: "g.release_date",
}

_INVOICE_SORT_FIELDS: Dict[Optional[InvoiceSort], str] = {
    None: "i.created_at",
    InvoiceSort.CREATED_AT: "i.created_at",
}

_GAME_COLUMNS = """
    g.id, g.title, g.price, g.is_active, g.release_date, g.age_rating, g.created_at,
    p.id AS publisher_id, p.email AS publisher_email, p.name AS publisher_name,
    p.country AS publisher_country, p.vatin AS publisher_vatin
"""


# Row mapping

def to_iso_utc(dt: datetime) -> str:
    """Serialize a timezone-aware datetime with a fixed width so text order is time order."""

    if dt.tzinfo is None or dt.utcoffset() is None:
        raise ValueError("timestamp must be timezone-aware")
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_utc_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None or dt.utcoffset() is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _row_to_game(row: Mapping[str, Any]) -> Game:
    return Game(
        id=row["id"],
        publisher=Publisher(
            id=row["publisher_id"],
            email=row["publisher_email"],
            name=row["publisher_name"],
            country=row["publisher_country"],
            vatin=row["publisher_vatin"],
        ),
        title=row["title"],
        price=to_money(row["price"]),
        is_active=bool(row["is_active"]),
        release_date=_parse_utc_datetime(row["release_date"]),
        age_rating=row["age_rating"],
        created_at=_parse_utc_datetime(row["created_at"]),
    )


def _row_to_user(row: Mapping[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        username=row["username"],
        display_name=row["display_name"],
        date_of_birth=date.fromisoformat(row["date_of_birth"]),
        country=row["country"],
        vatin=row["vatin"],
        balance=to_money(row["balance"]),
    )


def _row_to_invoice_line(row: Mapping[str, Any]) -> InvoiceLine:
    return InvoiceLine(
        game_id=row["game_id"],
        game_title=row["game_title"],
        price=to_money(row["price"]),
        tax=to_money(row["tax"]),
        publisher_name=row["publisher_name"],
        publisher_country=row["publisher_country"],
        publisher_vatin=row["publisher_vatin"],
    )


def _order_by(field: str, order: SortOrder, tiebreaker: str) -> str:
    direction = "DESC" if order == SortOrder.DESC else "ASC"
    return f" ORDER BY {field} {direction}, {tiebreaker} {direction}"


@contextmanager
def _sqlite_errors(description: str) -> Iterator[None]:
    try:
        yield
    except StorefrontError:
        raise
    except sqlite3.OperationalError as e:
        if "interrupted" in str(e):
            raise OperationCancelled() from e
        raise StorageError(description) from e
    except sqlite3.Error as e:
        raise StorageError(description) from e


def _is_unique_violation(e: sqlite3.IntegrityError, table: str) -> bool:
    message = str(e)
    return message.startswith("UNIQUE constraint failed") and f"{table}." in message


def _is_foreign_key_violation(e: sqlite3.IntegrityError) -> bool:
    return "FOREIGN KEY constraint failed" in str(e)


class LedgerSession:
    """Storage operations bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def _exists(self, table: str, row_id: int) -> bool:
        row = self._conn.execute(
            f"SELECT EXISTS (SELECT 1 FROM {table} WHERE id = ?)", (row_id,)
        ).fetchone()
        return bool(row[0])

    def _raise_missing_reference(self, e: sqlite3.IntegrityError, user_id: int, game_id: Optional[int]) -> None:
        """Turn an unnamed foreign-key failure into the entity that is actually missing."""
        if not self._exists("users", user_id):
            raise UserNotFound() from e
        if game_id is not None and not self._exists("games", game_id):
            raise GameNotFound() from e
        raise StorageError("store: failed to exec") from e

    # Users

    def create_user(
        self,
        email: str,
        username: str,
        display_name: str,
        date_of_birth: date,
        country: str,
        vatin: str,
        balance: Decimal = Decimal("0.00"),
        created_at: Optional[datetime] = None,
    ) -> int:
        created_at = created_at or datetime.now(timezone.utc)
        with _sqlite_errors("store: failed to create user"):
            cur = self._conn.execute(
                """
                INSERT INTO users (email, username, display_name, date_of_birth, country, vatin, balance, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (email, username, display_name, date_of_birth.isoformat(), country, vatin,
                 to_money(balance), to_iso_utc(created_at)),
            )
            return cur.lastrowid

    def get_user(self, user_id: int) -> User:
        with _sqlite_errors("store: failed to get user"):
            row = self._conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if row is None:
            raise UserNotFound()
        return _row_to_user(row)

    def set_user_balance(self, user_id: int, balance: Decimal) -> None:
        with _sqlite_errors("store: failed to update user balance"):
            cur = self._conn.execute(
                "UPDATE users SET balance = ? WHERE id = ?", (to_money(balance), user_id)
            )
        if cur.rowcount == 0:
            raise UserNotFound()

    # Catalog

    def create_publisher(self, email: str, name: str, country: str, vatin: str) -> int:
        with _sqlite_errors("store: failed to create publisher"):
            cur = self._conn.execute(
                """
                INSERT INTO publishers (email, name, country, vatin, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (email, name, country, vatin, to_iso_utc(datetime.now(timezone.utc))),
            )
            return cur.lastrowid

    def create_game(
        self,
        publisher_id: int,
        title: str,
        price: Decimal,
        is_active: bool = True,
        release_date: Optional[datetime] = None,
        age_rating: str = "0",
    ) -> int:
        with _sqlite_errors("store: failed to create game"):
            cur = self._conn.execute(
                """
                INSERT INTO games (publisher_id, title, price, is_active, release_date, age_rating, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    publisher_id,
                    title,
                    to_money(price),
                    int(is_active),
                    to_iso_utc(release_date) if release_date else None,
                    age_rating,
                    to_iso_utc(datetime.now(timezone.utc)),
                ),
            )
            return cur.lastrowid

    def set_game_active(self, game_id: int, is_active: bool) -> None:
        with _sqlite_errors("store: failed to update game"):
            cur = self._conn.execute(
                "UPDATE games SET is_active = ? WHERE id = ?", (int(is_active), game_id)
            )
        if cur.rowcount == 0:
            raise GameNotFound()

    def get_game(self, game_id: int) -> Game:
        with _sqlite_errors("store: failed to get game"):
            row = self._conn.execute(
                f"""
                SELECT {_GAME_COLUMNS}
                FROM games g
                INNER JOIN publishers p ON p.id = g.publisher_id
                WHERE g.id = ?
                """,
                (game_id,),
            ).fetchone()
        if row is None:
            raise GameNotFound()
        return _row_to_game(row)

    # Cart

    def create_cart_game(self, user_id: int, game_id: int, created_at: Optional[datetime] = None) -> None:
        created_at = created_at or datetime.now(timezone.utc)
        with _sqlite_errors("store: failed to create user cart game"):
            try:
                self._conn.execute(
                    "INSERT INTO users_carts (user_id, game_id, created_at) VALUES (?, ?, ?)",
                    (user_id, game_id, to_iso_utc(created_at)),
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e, "users_carts"):
                    raise UserCartGameAlreadyExists() from e
                if _is_foreign_key_violation(e):
                    self._raise_missing_reference(e, user_id, game_id)
                raise

    def delete_cart_game(self, user_id: int, game_id: int) -> None:
        with _sqlite_errors("store: failed to delete user cart game"):
            cur = self._conn.execute(
                "DELETE FROM users_carts WHERE user_id = ? AND game_id = ?", (user_id, game_id)
            )
        if cur.rowcount == 0:
            raise UserCartGameNotFound()

    def list_cart(self, user_id: int, request: PageRequest) -> Page[Game]:
        request.validate(CartSort)
        sort_field = _CART_SORT_FIELDS[request.sort]

        with _sqlite_errors("store: failed to list user cart"):
            total = self._conn.execute(
                "SELECT count(*) FROM users_carts WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

            rows = self._conn.execute(
                f"""
                SELECT {_GAME_COLUMNS}
                FROM users_carts uc
                INNER JOIN games g ON g.id = uc.game_id
                INNER JOIN publishers p ON p.id = g.publisher_id
                WHERE uc.user_id = ?
                """
                + _order_by(sort_field, request.order, "g.id")
                + " LIMIT ? OFFSET ?",
                (user_id, request.limit, request.offset),
            ).fetchall()

        return Page(total=total, results=[_row_to_game(row) for row in rows])

    # Library

    def exists_library_game(self, user_id: int, game_id: int) -> bool:
        with _sqlite_errors("store: failed to check user library game"):
            row = self._conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM users_libraries WHERE user_id = ? AND game_id = ?
                )
                """,
                (user_id, game_id),
            ).fetchone()
        return bool(row[0])

    def list_library(self, user_id: int, request: PageRequest) -> Page[Game]:
        request.validate(LibrarySort)
        sort_field = _LIBRARY_SORT_FIELDS[request.sort]

        with _sqlite_errors("store: failed to list user library"):
            total = self._conn.execute(
                "SELECT count(*) FROM users_libraries WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

            rows = self._conn.execute(
                f"""
                SELECT {_GAME_COLUMNS}
                FROM users_libraries ul
                INNER JOIN games g ON g.id = ul.game_id
                INNER JOIN publishers p ON p.id = g.publisher_id
                WHERE ul.user_id = ?
                """
                + _order_by(sort_field, request.order, "g.id")
                + " LIMIT ? OFFSET ?",
                (user_id, request.limit, request.offset),
            ).fetchall()

        return Page(total=total, results=[_row_to_game(row) for row in rows])

    # Invoices

    def _invoice_lines(self, invoice_id: int) -> List[InvoiceLine]:
        rows = self._conn.execute(
            "SELECT * FROM invoice_lines WHERE invoice_id = ? ORDER BY id", (invoice_id,)
        ).fetchall()
        return [_row_to_invoice_line(row) for row in rows]

    def _row_to_invoice(self, row: Mapping[str, Any]) -> Invoice:
        return Invoice(
            id=row["id"],
            user_id=row["user_id"],
            user_display_name=row["user_display_name"],
            user_email=row["user_email"],
            user_country=row["user_country"],
            user_vatin=row["user_vatin"],
            tax_rate=Decimal(row["tax_rate"]),
            created_at=_parse_utc_datetime(row["created_at"]),
            lines=tuple(self._invoice_lines(row["id"])),
        )

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        with _sqlite_errors("store: failed to get invoice"):
            row = self._conn.execute("SELECT * FROM invoices WHERE id = ?", (invoice_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_invoice(row)

    def list_invoices(self, user_id: int, request: PageRequest) -> Page[Invoice]:
        request.validate(InvoiceSort)
        sort_field = _INVOICE_SORT_FIELDS[request.sort]

        with _sqlite_errors("store: failed to list invoices"):
            total = self._conn.execute(
                "SELECT count(*) FROM invoices WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

            rows = self._conn.execute(
                "SELECT * FROM invoices i WHERE i.user_id = ?"
                + _order_by(sort_field, request.order, "i.id")
                + " LIMIT ? OFFSET ?",
                (user_id, request.limit, request.offset),
            ).fetchall()

            return Page(total=total, results=[self._row_to_invoice(row) for row in rows])

    def count_invoices(self, user_id: int) -> int:
        with _sqlite_errors("store: failed to count invoices"):
            return self._conn.execute(
                "SELECT count(*) FROM invoices WHERE user_id = ?", (user_id,)
            ).fetchone()[0]

    # Purchase

    def purchase_cart(
        self,
        user: User,
        games: Sequence[Game],
        line_taxes: Sequence[Decimal],
        tax_rate: Decimal,
        created_at: datetime,
    ) -> Invoice:
        """
        Move the user's whole cart into the library and issue the invoice.

        Runs inside a savepoint: cart deletion, library inserts, invoice header
        and lines either all land in the enclosing transaction or none do.

        Raises:
            UserLibraryGameAlreadyExists: a drained game is already owned
            UserNotFound / GameNotFound: a referenced row vanished
            InvariantViolation: the cart no longer matches the drained set
        """
        if len(games) != len(line_taxes):
            raise InvariantViolation("one tax share is required per game")

        created = to_iso_utc(created_at)

        with _sqlite_errors("store: failed to purchase user cart"):
            self._conn.execute("SAVEPOINT purchase_cart")
            try:
                invoice = self._migrate_cart(user, games, line_taxes, tax_rate, created)
            except BaseException:
                # An interrupted statement may already have ended the transaction.
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK TO purchase_cart")
                    self._conn.execute("RELEASE purchase_cart")
                raise
            self._conn.execute("RELEASE purchase_cart")

        return invoice

    def _migrate_cart(
        self,
        user: User,
        games: Sequence[Game],
        line_taxes: Sequence[Decimal],
        tax_rate: Decimal,
        created: str,
    ) -> Invoice:
        cur = self._conn.execute("DELETE FROM users_carts WHERE user_id = ?", (user.id,))
        if cur.rowcount != len(games):
            raise InvariantViolation(
                f"user cart changed during purchase: drained {len(games)}, deleted {cur.rowcount}"
            )

        for game in games:
            try:
                self._conn.execute(
                    "INSERT INTO users_libraries (user_id, game_id, created_at) VALUES (?, ?, ?)",
                    (user.id, game.id, created),
                )
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e, "users_libraries"):
                    raise UserLibraryGameAlreadyExists() from e
                if _is_foreign_key_violation(e):
                    self._raise_missing_reference(e, user.id, game.id)
                raise

        cur = self._conn.execute(
            """
            INSERT INTO invoices (user_id, user_display_name, user_email, user_country, user_vatin, tax_rate, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (user.id, user.display_name, user.email, user.country, user.vatin, tax_rate, created),
        )
        invoice_id = cur.lastrowid

        lines = [
            InvoiceLine(
                game_id=game.id,
                game_title=game.title,
                price=game.price,
                tax=tax,
                publisher_name=game.publisher.name,
                publisher_country=game.publisher.country,
                publisher_vatin=game.publisher.vatin,
            )
            for game, tax in zip(games, line_taxes)
        ]

        self._conn.executemany(
            """
            INSERT INTO invoice_lines (invoice_id, game_id, game_title, price, tax,
                                       publisher_name, publisher_country, publisher_vatin)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (invoice_id, line.game_id, line.game_title, line.price, line.tax,
                 line.publisher_name, line.publisher_country, line.publisher_vatin)
                for line in lines
            ],
        )

        return Invoice(
            id=invoice_id,
            user_id=user.id,
            user_display_name=user.display_name,
            user_email=user.email,
            user_country=user.country,
            user_vatin=user.vatin,
            tax_rate=tax_rate,
            created_at=_parse_utc_datetime(created),
            lines=tuple(lines),
        )


class LedgerStore(Protocol):
    def read_only(self, timeout: Optional[float] = None) -> ContextManager[LedgerSession]: ...

    def read_write(self, timeout: Optional[float] = None) -> ContextManager[LedgerSession]: ...


class SQLiteLedgerStore:
    """Hands out transaction-scoped sessions on a fresh connection each time."""

    def __init__(self, db_name: str):
        self.db_name = db_name

    def init_schema(self) -> None:
        init_db(self.db_name)

    @contextmanager
    def _scope(self, tx_factory, timeout: Optional[float]) -> Iterator[LedgerSession]:
        conn = None
        try:
            conn = get_connection(self.db_name)
            with tx_factory(conn, timeout):
                yield LedgerSession(conn)
        except TransactionCancelled as e:
            raise OperationCancelled() from e
        except sqlite3.Error as e:
            raise StorageError("store: failed to run transaction") from e
        finally:
            if conn is not None:
                conn.close()

    def read_only(self, timeout: Optional[float] = None) -> ContextManager[LedgerSession]:
        """Read-committed style scope for listings and lookups."""
        return self._scope(read_only_tx, timeout)

    def read_write(self, timeout: Optional[float] = None) -> ContextManager[LedgerSession]:
        """Scope holding the write lock for read-then-write workflows."""
        return self._scope(read_write_tx, timeout)


__all__ = [
    "LedgerSession",
    "LedgerStore",
    "SQLiteLedgerStore",
    "to_iso_utc",
]
