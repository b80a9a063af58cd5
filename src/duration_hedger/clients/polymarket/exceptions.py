"""Exception hierarchy for Polymarket client errors.

A base exception class with a specialised API error that carries status
code and message attributes.  Order rejections are split out because they
are a definitive answer from the venue, while other API errors may leave
the outcome of a request unknown.
"""

from duration_hedger.clients.polymarket._constants import (
    HTTP_INTERNAL_ERROR,
    HTTP_TOO_MANY_REQUESTS,
)


class PolymarketError(Exception):
    """Base exception for all Polymarket client errors."""


class PolymarketAPIError(PolymarketError):
    """Error returned by a Polymarket API call.

    Carry a human-readable message and an HTTP status code so callers
    can distinguish transient failures from client errors.

    Args:
        msg: Human-readable description of the error.
        status_code: HTTP status code from the API response, or ``0`` when
            the request never produced a response.

    """

    def __init__(self, msg: str, status_code: int) -> None:
        """Initialize Polymarket API error.

        Args:
            msg: Human-readable description of the error.
            status_code: HTTP status code from the API response.

        """
        super().__init__(f"[{status_code}] {msg}")
        self.msg = msg
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Return whether retrying the same call later may succeed."""
        return (
            self.status_code == 0
            or self.status_code == HTTP_TOO_MANY_REQUESTS
            or self.status_code >= HTTP_INTERNAL_ERROR
        )


class OrderRejectedError(PolymarketAPIError):
    """The CLOB answered a placement with ``success: false``.

    The order definitely does not exist on the book, so callers need not
    correlate against open orders before retrying.
    """
