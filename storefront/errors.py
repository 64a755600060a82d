"""
Domain errors for the commerce engine.

Every workflow maps storage and network failures onto exactly one of these
before returning, so callers never see a raw sqlite3 or botocore error.
"""


class StorefrontError(Exception):
    """Base class for every error raised by the storefront package."""

    code = "internal_server_error"
    message = "internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


# Not found

class NotFoundError(StorefrontError):
    pass


class UserNotFound(NotFoundError):
    code = "user_not_found"
    message = "user not found"


class GameNotFound(NotFoundError):
    code = "game_not_found"
    message = "game not found"


class UserCartGameNotFound(NotFoundError):
    code = "user_cart_game_not_found"
    message = "user cart game association does not exist"


# Conflicts: valid business states, not bugs

class ConflictError(StorefrontError):
    pass


class GameNotActive(ConflictError):
    code = "game_not_active"
    message = "game not active"


class GameNotReleased(ConflictError):
    code = "game_not_released"
    message = "game not released"


class UserNotOldEnough(ConflictError):
    code = "user_not_old_enough"
    message = "user not old enough"


class UserCartGameAlreadyExists(ConflictError):
    code = "user_cart_game_already_exists"
    message = "user cart game already exists"


class UserLibraryGameAlreadyExists(ConflictError):
    code = "user_library_game_already_exists"
    message = "user library game already exists"


class UserCartEmpty(ConflictError):
    code = "user_cart_empty"
    message = "user cart empty"


class UserBalanceInsufficient(ConflictError):
    code = "user_balance_insufficient"
    message = "user balance insufficient"


class CartGameNotPurchasable(ConflictError):
    code = "cart_game_not_purchasable"
    message = "cart game is no longer purchasable"

    def __init__(self, game_id: int):
        self.game_id = game_id
        super().__init__(f"{self.message}: {game_id}")


# Caller errors

class InvalidFilterValue(StorefrontError):
    code = "filter_value_invalid"
    message = "invalid filter value"

    def __init__(self, filter_name: str):
        self.filter_name = filter_name
        super().__init__(f"{self.message}: {filter_name}")


class InvariantViolation(StorefrontError):
    """Internal inconsistency; points at a caller or programmer error."""


# Opaque failures, retried by the caller

class StorageError(StorefrontError):
    pass


class OperationCancelled(StorageError):
    message = "operation cancelled"


class NotificationError(StorageError):
    message = "failed to send notification"


def is_expected(error: Exception) -> bool:
    """True for outcomes that describe the request, not a fault in the system."""
    return isinstance(error, (NotFoundError, ConflictError, InvalidFilterValue))
