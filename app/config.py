"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Dict, List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database (Supabase Postgres: dual-write target and monitoring tables)
    database_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Google Sheets (legacy store, reached through the Apps Script web app)
    sheets_api_url: Optional[str] = None
    sheets_api_token: Optional[str] = None
    sheets_timeout_seconds: float = 30.0

    # Reconciliation
    # Tables compared when compare-now is called without a table
    reconciliation_tables: List[str] = ["reports", "sessions", "entrepreneurs", "mentor_assignments"]
    # Natural key per table, defaults to reconciliation_default_key_field
    reconciliation_key_fields: Dict[str, str] = {}
    reconciliation_default_key_field: str = "id"
    reconciliation_ignored_fields: List[str] = ["created_at", "updated_at", "row_number"]
    reconciliation_batch_column: str = "batch_name"
    reconciliation_program_column: str = "program"
    reconciliation_stale_after_minutes: int = 30  # running runs older than this are abandoned
    reconciliation_schedule_enabled: bool = False
    reconciliation_interval_hours: int = 6

    # Discrepancy listing
    discrepancy_list_max: int = 200
    recent_operations_max: int = 200

    # Health Check
    health_check_timeout_seconds: float = 5.0
    health_success_rate_threshold: float = 99.5  # percent, both stores

    # Email Notifications (circuit breaker alerts)
    admin_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 60  # Seconds before auto-recovery attempt
    circuit_breaker_alert_email: Optional[str] = None  # Falls back to admin_email

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
