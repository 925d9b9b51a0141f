class DomainError(Exception):
    """Base class for domain-specific errors."""

    pass


class InvalidStreamKeyError(DomainError):
    """Exception raised when a caller-supplied stream key cannot be used as a storage key."""

    pass
