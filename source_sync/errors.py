"""Exception types shared across Source Sync."""


class SourceSyncError(Exception):
    """Base class for all Source Sync errors."""


class ValidationError(SourceSyncError):
    """Raised when a caller supplies an invalid source definition or import file."""


class TransientError(SourceSyncError):
    """Raised for network failures and timeouts that may succeed on retry."""


class CircuitOpenError(SourceSyncError):
    """Raised when a circuit breaker short-circuits a call without doing I/O."""

    def __init__(self, name: str, remaining: float = 0.0):
        self.name = name
        self.remaining = remaining
        super().__init__(
            f"Circuit breaker open for {name}; retrying in {remaining:.0f}s"
        )


class PersistenceError(SourceSyncError):
    """Raised when an atomic write could not be completed after all retries."""
