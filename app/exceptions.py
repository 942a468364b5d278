"""
Monitoring Error Taxonomy
Each error maps 1:1 to an HTTP status code and renders as {error, message, details}
"""

from typing import Any, Dict, Optional


class MonitoringError(Exception):
    """Base class for errors surfaced by the monitoring core."""

    status_code = 500
    error = "Internal server error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(MonitoringError):
    """Bad caller input."""

    status_code = 400
    error = "Invalid request"


class NotFoundError(MonitoringError):
    """Referenced record does not exist."""

    status_code = 404
    error = "Not found"


class ConflictError(MonitoringError):
    """An overlapping operation is already in progress, or the record is in a terminal state."""

    status_code = 409
    error = "Conflict"


class PersistenceError(MonitoringError):
    """Write to the monitoring tables failed."""

    status_code = 500
    error = "Persistence failure"


class QueryError(MonitoringError):
    """Read from the monitoring tables failed."""

    status_code = 500
    error = "Query failure"


class UpstreamUnavailable(MonitoringError):
    """
    A monitored store (sheets or supabase) is unreachable.

    Caught inside health checks and reconciliation runs; only reaches
    the HTTP layer if a caller lets it through.
    """

    status_code = 503
    error = "Upstream unavailable"

    def __init__(self, store: str, message: str, details: Optional[Any] = None):
        super().__init__(message, details)
        self.store = store
