"""Custom exceptions for the portfolio core."""


class PortfolioError(Exception):
    """Base exception for all portfolio-core errors."""
    pass


class VendorValidationError(PortfolioError):
    """Raised when a vendor mutation is rejected.

    Carries the offending request field so callers can report it the same
    way form validation errors are reported.
    """

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message

    def to_dict(self) -> dict:
        return {"errors": {self.field: [self.message]}}


class VendorNotFoundError(PortfolioError):
    """Raised when a vendor cannot be found."""
    pass


class AnalysisInProgressError(PortfolioError):
    """Raised when a duplicate analysis is requested while another is pending or processing."""
    pass


class AnalysisStateError(PortfolioError):
    """Raised when an analysis is not in a state the requested operation allows."""
    pass


class AnalysisTimeoutError(PortfolioError):
    """Raised when the pairwise duplicate scan exceeds its time limit."""
    pass


class InvalidMetricError(PortfolioError, ValueError):
    """Raised for an unknown ranking metric or trend granularity."""
    pass
