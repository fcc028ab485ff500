"""Error taxonomy for oauthlink.

Every failure surfaced to callers is an ``OAuthLinkError`` subclass whose
message names the operation that failed. The underlying cause is chained with
``raise ... from`` so the provider's or the store's own error stays available
as ``__cause__``.
"""


class OAuthLinkError(Exception):
    """Base class for all oauthlink errors."""

    error = "unknown_error"

    def __init__(self, description: str):
        super().__init__(description)
        self.description = description


class PersistenceError(OAuthLinkError):
    """The store failed to insert, read or update a record."""

    error = "persistence_error"


class NotFoundError(OAuthLinkError):
    """The requested record does not exist, has expired or was consumed."""

    error = "not_found"


class UnknownApiError(OAuthLinkError):
    """An HTTP exchange with the provider failed."""

    error = "unknown_api_error"


class UnknownTokenError(OAuthLinkError):
    """The token source could not produce a token."""

    error = "unknown_token_error"


class UnknownParseError(OAuthLinkError):
    """A provider response body could not be read or decoded."""

    error = "unknown_parse_error"


class ProviderError(Exception):
    """Standardized provider error with HTTP-style status information."""

    def __init__(self, error: str, description: str | None = None, status_code: int = 400):
        super().__init__(description or error)
        self.error = error
        self.description = description
        self.status_code = status_code


__all__ = [
    "NotFoundError",
    "OAuthLinkError",
    "PersistenceError",
    "ProviderError",
    "UnknownApiError",
    "UnknownParseError",
    "UnknownTokenError",
]
