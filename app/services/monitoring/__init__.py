"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from app.services.monitoring.logging import setup_logging, CorrelationJsonFormatter
from app.services.monitoring.circuit_breakers import (
    get_breaker,
    get_sheets_breaker,
    get_supabase_breaker,
    reset_breakers,
    CircuitBreakerError,
    CircuitBreakerEmailListener,
)
from app.services.monitoring.error_tracking import init_sentry, capture_reconciliation_failure

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "get_breaker",
    "get_sheets_breaker",
    "get_supabase_breaker",
    "reset_breakers",
    "CircuitBreakerError",
    "CircuitBreakerEmailListener",
    "init_sentry",
    "capture_reconciliation_failure",
]
