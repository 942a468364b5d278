"""
Circuit Breakers for the Dual-Write Stores

Protects against cascading failures by opening circuits after consecutive failures
and automatically attempting recovery after a timeout period.

Services protected:
- Google Sheets (legacy store, via the Apps Script web app)
- Supabase (Postgres migration target)
"""

import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Optional

import pybreaker

from app.config import settings

logger = logging.getLogger(__name__)

BREAKER_NAMES = {
    "sheets": "google_sheets",
    "supabase": "supabase",
}


class CircuitBreakerEmailListener(pybreaker.CircuitBreakerListener):
    """
    Email notification listener for circuit breaker state changes.

    Sends alert emails when a circuit breaker opens, indicating that one of
    the dual-write stores is failing and has been isolated.
    """

    def __init__(self, admin_email: Optional[str]):
        """
        Initialize the email listener.

        Args:
            admin_email: Email address to receive circuit breaker alerts (None disables email)
        """
        self.admin_email = admin_email

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        logger.warning(
            f"Circuit breaker state change: {cb.name} transitioned from {old_state.name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_state.name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter
            }
        )

        if new_state.name == pybreaker.STATE_OPEN:
            self._send_alert_email(cb)

    def _send_alert_email(self, cb: pybreaker.CircuitBreaker):
        """
        Send email alert for opened circuit breaker.

        Args:
            cb: The circuit breaker that opened
        """
        try:
            if not settings.smtp_host or not self.admin_email:
                logger.warning(
                    f"Cannot send circuit breaker alert: SMTP not configured (circuit: {cb.name})"
                )
                return

            subject = f"ALERT: Dual-write store isolated - {cb.name}"
            body = f"""
CIRCUIT BREAKER ALERT

Store: {cb.name}
Status: OPEN (store is now isolated)
Failure Count: {cb.fail_counter}
Reset Timeout: {cb.reset_timeout} seconds

Calls to this store are blocked until the circuit attempts recovery after
{cb.reset_timeout} seconds. Dual writes reported during this window will show
up as partial failures on the monitoring dashboard; run a comparison once the
store is back.

Environment: {settings.environment}
            """.strip()

            msg = MIMEMultipart()
            msg["From"] = settings.smtp_username or settings.admin_email
            msg["To"] = self.admin_email
            msg["Subject"] = subject
            msg.attach(MIMEText(body, "plain"))

            with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
                if settings.smtp_username and settings.smtp_password:
                    server.starttls()
                    server.login(settings.smtp_username, settings.smtp_password)
                server.send_message(msg)

            logger.info(
                f"Circuit breaker alert email sent to {self.admin_email}",
                extra={"circuit_breaker": cb.name, "recipient": self.admin_email}
            )

        except Exception as e:
            # Alerting must not break the call that tripped the breaker
            logger.error(
                f"Failed to send circuit breaker alert email: {e}",
                extra={"circuit_breaker": cb.name, "error": str(e)},
                exc_info=True
            )


# Module-level instances (lazy initialization)
_email_listener: Optional[CircuitBreakerEmailListener] = None
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for a store.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: "sheets" or "supabase"

    Returns:
        Circuit breaker instance for the store

    Raises:
        ValueError: If service_name is not recognized
    """
    global _email_listener

    if service_name not in BREAKER_NAMES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {sorted(BREAKER_NAMES)}")

    if _email_listener is None:
        admin_email = settings.circuit_breaker_alert_email or settings.admin_email
        if not admin_email:
            logger.warning("Circuit breaker email alerts disabled: no admin email configured")
        _email_listener = CircuitBreakerEmailListener(admin_email)

    if service_name not in _breakers:
        _breakers[service_name] = pybreaker.CircuitBreaker(
            name=BREAKER_NAMES[service_name],
            fail_max=settings.circuit_breaker_fail_max,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            listeners=[_email_listener]
        )
        logger.info(f"Initialized {BREAKER_NAMES[service_name]} circuit breaker")

    return _breakers[service_name]


def get_sheets_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("sheets")


def get_supabase_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("supabase")


def reset_breakers() -> None:
    """Drop all breaker instances (tests and config reloads)."""
    global _email_listener
    _breakers.clear()
    _email_listener = None


# Re-export exception for caller handling
from pybreaker import CircuitBreakerError

__all__ = [
    "CircuitBreakerEmailListener",
    "get_breaker",
    "get_sheets_breaker",
    "get_supabase_breaker",
    "reset_breakers",
    "CircuitBreakerError",
]
