"""Custom exceptions for split-ledger."""


class SplitLedgerError(Exception):
    """Base exception for all split-ledger errors."""

    pass


class ValidationError(SplitLedgerError):
    """Raised when input is invalid (non-positive amount, unknown member, ...)."""

    pass


class AuthorizationError(SplitLedgerError):
    """Raised when the acting member is not allowed to perform an operation."""

    pass


class NotFoundError(SplitLedgerError):
    """Raised when a group, transaction or budget does not exist."""

    def __init__(self, kind: str, key: object, message: str | None = None):
        self.kind = kind
        self.key = key
        super().__init__(message or f"{kind} {key} not found")


class ConflictError(SplitLedgerError):
    """Raised when an operation conflicts with existing state."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


class UnsupportedGroupSizeError(ConfigurationError):
    """Raised when an operation does not support the group's member count."""

    def __init__(self, member_count: int, message: str | None = None):
        self.member_count = member_count
        super().__init__(
            message
            or f"Unsupported group size: {member_count} members "
            f"(settlement requires exactly 2)"
        )


class StateInconsistencyError(SplitLedgerError):
    """Raised when ledger state cannot be explained by valid transactions.

    Usually the result of an earlier partial failure. Never recovered silently.
    """

    pass


class TransportError(SplitLedgerError):
    """Raised when a notification cannot be delivered."""

    pass
