"""Exceptions raised by the booking services."""


class ServiceError(Exception):
    """An error whose message can be shown to the caller.

    ``detail`` carries extra context for logs and is kept out of ``message``.
    """

    default_message = "service error"

    def __init__(self, message: str | None = None, detail: str = "") -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(f"{self.message}: {detail}" if detail else self.message)


class NotFoundError(ServiceError):
    """The requested record does not exist or has been deleted."""

    default_message = "record not found"


class DbError(ServiceError):
    """A storage operation failed."""

    default_message = "database error"


class TokenExpiredError(ServiceError):
    """An access token is missing, invalid or no longer current."""

    default_message = "token expired"