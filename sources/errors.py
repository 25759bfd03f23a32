"""Exception types shared by the content store layer and the indexers."""


class CitizenError(Exception):
    """Base class for all indexer errors."""
    pass


class MalformedRecordError(CitizenError):
    """Raised when a record cannot be parsed as JSON at the root level."""
    pass


class NotFoundError(CitizenError):
    """Raised by a content store when a path does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Not found: {path}")
        self.path = path


class NameResolutionError(CitizenError):
    """Raised when a domain cannot be resolved to a stable content address."""

    def __init__(self, domain: str, reason: str = ""):
        message = f"Failed to resolve {domain}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.domain = domain
        self.reason = reason


class NotOwnerError(CitizenError):
    """Raised when a write-requiring operation runs against a store we do not own."""
    pass


class InvalidDomainError(CitizenError, ValueError):
    """Raised when a URL or name does not contain a usable domain."""
    pass
