"""Shared exception types for the fund daemon."""

from typing import Optional


class FundConfigError(RuntimeError):
    """Raised when fund or global configuration is missing or invalid."""

    def __init__(self, message: str, fund_name: Optional[str] = None):
        super().__init__(message)
        self.fund_name = fund_name


class StateValidationError(RuntimeError):
    """Raised when a persisted state document exists but cannot be parsed."""

    def __init__(self, path: str, original: Optional[Exception] = None):
        super().__init__(f"Invalid state document {path}: {original}")
        self.path = path
        self.original = original


class BrokerError(RuntimeError):
    """Raised when the broker rejects a request or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(f"{source} unavailable: {original}" if original else f"{source} unavailable")
        self.source = source
        self.original = original
