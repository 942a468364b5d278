"""
Correlation ID Middleware
Provides automatic correlation ID injection for request tracing
"""

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

# Re-export CorrelationIdMiddleware for convenience
__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Stored in each dual-write log entry so a failed write can be traced back
    to the request that reported it. Scheduler jobs and the CLI run outside
    a request and get 'none'.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'
