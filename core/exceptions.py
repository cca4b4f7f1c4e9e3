"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class ConfigError(ValueError):
    """Raised when configuration files fail validation."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")


class AdvisorError(RuntimeError):
    """Base class for advisor call failures (timeouts, transport, API errors)."""

    def __init__(self, provider: str, message: str, original: Optional[Exception] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.original = original


class AdvisorResponseError(AdvisorError):
    """Advisor answered but the payload could not be parsed into an opinion."""


class ProviderExhausted(AdvisorError):
    """Advisor reported billing/credit exhaustion; it should be disabled for a cool-down."""
