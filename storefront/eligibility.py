"""
Cart eligibility rules.

Decides whether a (user, game) pair may enter the cart. The checks run in a
fixed order and the first failure wins, so a caller always sees the same
error for the same state:

1. game exists
2. game is active
3. game is released (no release date means unreleased)
4. user exists
5. user is old enough for the game's age rating
6. game is not already in the user's library
"""

from __future__ import annotations

from datetime import date, datetime

from .errors import GameNotActive, GameNotReleased, UserLibraryGameAlreadyExists, UserNotOldEnough
from .ledger import LedgerSession
from .models import Game, User


def age_on(date_of_birth: date, now: datetime) -> int:
    """
    Whole years between date_of_birth and now.

    Uses ordinal day-of-year to decide whether this year's birthday has
    happened. Around Feb 29 in leap years this can be off by one day.
    """
    age = now.year - date_of_birth.year
    if now.timetuple().tm_yday < date_of_birth.timetuple().tm_yday:
        age -= 1
    return age


def ensure_game_available(game: Game, now: datetime) -> None:
    if not game.is_active:
        raise GameNotActive()

    if game.release_date is None or game.release_date > now:
        raise GameNotReleased()


def ensure_user_old_enough(user: User, game: Game, now: datetime) -> None:
    if age_on(user.date_of_birth, now) < game.min_age:
        raise UserNotOldEnough()


class EligibilityChecker:
    """Runs the ordered cart-add checks against an open ledger session."""

    def check(self, session: LedgerSession, user_id: int, game_id: int, now: datetime) -> None:
        game = session.get_game(game_id)
        ensure_game_available(game, now)

        user = session.get_user(user_id)
        ensure_user_old_enough(user, game, now)

        if session.exists_library_game(user_id, game_id):
            raise UserLibraryGameAlreadyExists()


__all__ = [
    "EligibilityChecker",
    "age_on",
    "ensure_game_available",
    "ensure_user_old_enough",
]
