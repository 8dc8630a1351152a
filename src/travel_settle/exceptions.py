"""Custom exceptions for Travel Settle."""


class TravelSettleError(Exception):
    """Base exception for all Travel Settle errors."""

    pass


class ConfigurationError(TravelSettleError):
    """Raised when configuration is invalid or missing."""

    pass


class ProjectNotFoundError(TravelSettleError):
    """Raised when a project does not exist in the ledger store."""

    def __init__(self, project_id: str, message: str | None = None):
        self.project_id = project_id
        super().__init__(message or f"Project {project_id} not found")


class ValidationError(TravelSettleError):
    """Raised when ledger input breaks an integrity rule.

    The offending record is named so the caller can skip or reject it.
    """

    def __init__(self, message: str, record_id: str | None = None):
        self.record_id = record_id
        super().__init__(message)


class APIError(TravelSettleError):
    """Base class for API-related errors."""

    pass


class ExchangeRateAPIError(APIError):
    """Raised when the exchange rate source fails or returns bad data."""

    pass


class InternalInvariantViolation(TravelSettleError):
    """Raised when the settlement computation detects an upstream defect."""

    pass
