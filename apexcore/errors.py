"""
Exceptions

Programming and configuration errors. Runtime task failures are never
raised; they are returned as typed TaskResult errors.
"""


class ApexError(Exception):
    """Base exception for apex-core."""
    pass


class ConfigError(ApexError):
    """Raised when a ladder or config file is malformed."""
    pass


class TransportError(ApexError):
    """
    Raised by provider adapters when a call fails on the wire.

    Attributes:
        provider_id: The provider that failed
        status_code: HTTP status code when one is known
    """

    def __init__(self, message: str, provider_id: str = "", status_code: int = None):
        self.provider_id = provider_id
        self.status_code = status_code
        super().__init__(message)


class ProviderTimeoutError(TransportError):
    """Raised by adapters that enforce their own deadline."""
    pass


class SaturatedError(ApexError):
    """Raised by scoped slot acquisition when every worker slot is taken."""

    def __init__(self, category: str = None):
        self.category = category
        super().__init__(f"No worker slot available for '{category}'")
