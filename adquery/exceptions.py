from typing import Optional


class DirectoryQueryError(Exception):
    """Base exception for directory query errors."""
    pass


class ConfigurationError(DirectoryQueryError, ValueError):
    """Raised when required configuration keys are missing or invalid."""
    pass


class PreconditionError(DirectoryQueryError, ValueError):
    """Raised when a required identity argument is missing. No search is issued."""
    pass


class InvalidRangeSpecifierError(DirectoryQueryError, ValueError):
    """Raised when an attribute name is not a `name;range=low-high` specifier."""
    pass


class RangeRetrievalError(DirectoryQueryError):
    """Raised when a follow-up range query fails. Recovered locally by the searcher."""
    pass


class ProtocolError(DirectoryQueryError):
    """
    Raised when the connection, bind or search fails at the protocol layer.

    Wraps the underlying ldap3 exception (available as ``__cause__``) and
    keeps the LDAP result code and description when the server sent one.
    """

    def __init__(
        self,
        message: str,
        result_code: Optional[int] = None,
        description: Optional[str] = None,
    ):
        super().__init__(message)
        self.result_code = result_code
        self.description = description
