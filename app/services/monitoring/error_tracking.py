"""
Sentry Error Tracking
Reports reconciliation failures with their scope for production debugging
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns False (disabled).
    This allows graceful degradation in development environments.
    """
    from app.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return False

    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            traces_sample_rate=0.1,  # 10% of requests traced
            integrations=[
                FastApiIntegration(),
            ],
        )

        logger.info(
            "Sentry initialized",
            extra={"environment": settings.sentry_environment or settings.environment}
        )
        return True
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")
        return False


def capture_reconciliation_failure(
    run_id: int,
    error: BaseException,
    table: Optional[str] = None,
    batch: Optional[str] = None,
    program: Optional[str] = None
) -> None:
    """
    Send a failed reconciliation run to Sentry.

    The run itself is already marked failed in reconciliation_runs; this only
    adds the scope as context/tags so runs can be grouped by table.

    Args:
        run_id: ReconciliationRun ID
        error: Exception that ended the run
        table, batch, program: Run scope (None = all)
    """
    import sentry_sdk

    with sentry_sdk.new_scope() as scope:
        scope.set_context("reconciliation", {
            "run_id": run_id,
            "table": table or "all",
            "batch": batch or "all",
            "program": program or "all",
        })
        scope.set_tag("reconciliation_table", table or "all")
        sentry_sdk.capture_exception(error)
