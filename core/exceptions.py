"""Shared exception types for the risk and monitoring core."""

from typing import Optional


class RiskCoreError(RuntimeError):
    """Base class for errors raised by the risk core."""


class ConfigurationError(RiskCoreError):
    """Raised once at startup when required configuration is missing or invalid."""


class PositionStoreError(RiskCoreError):
    """Base class for position lifecycle errors."""

    def __init__(self, asset: str, message: Optional[str] = None):
        super().__init__(message or asset)
        self.asset = asset


class DuplicateOpenPosition(PositionStoreError):
    """An open record already exists for the asset."""

    def __init__(self, asset: str):
        super().__init__(asset, f"open position already exists for {asset}")


class PositionNotFound(PositionStoreError):
    """No open record exists for the asset."""

    def __init__(self, asset: str):
        super().__init__(asset, f"no open position for {asset}")


class InvalidReserveData(RiskCoreError):
    """Reserve data failed validation; never cached."""

    def __init__(self, asset: str, reason: str):
        super().__init__(f"invalid reserve data for {asset}: {reason}")
        self.asset = asset
        self.reason = reason


class LedgerReadError(RiskCoreError):
    """Raised when the ledger read endpoint cannot serve a request."""

    def __init__(self, endpoint: str, original: Optional[Exception] = None):
        super().__init__(f"ledger read failed at {endpoint}: {original}")
        self.endpoint = endpoint
        self.original = original
