"""
APScheduler Background Jobs

Scheduled metrics snapshots and optional periodic reconciliation.
Jobs run via BackgroundScheduler in FastAPI process.
"""

from datetime import timedelta

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger

from app.config import settings

logger = structlog.get_logger(__name__)


def run_hourly_metrics_refresh():
    """
    Snapshot the previous and the current hour.

    The previous hour is refreshed again so entries logged right at the
    boundary end up in its final snapshot.
    """
    try:
        from app.database import SessionLocal
        from app.services.clock import utcnow
        from app.services.metrics_aggregator import MetricsAggregator, floor_window

        if SessionLocal is None:
            logger.warning("metrics_refresh_skipped", reason="database_not_configured")
            return

        current = floor_window(utcnow(), "hourly")
        written = MetricsAggregator(SessionLocal).refresh(
            current - timedelta(hours=1),
            current + timedelta(hours=1),
            "hourly"
        )
        logger.info("hourly_metrics_refreshed", snapshots=written)

    except Exception as e:
        logger.error("hourly_metrics_refresh_crashed", error=str(e), exc_info=True)


def run_daily_metrics_refresh():
    """Snapshot yesterday (UTC) once the day is complete."""
    try:
        from app.database import SessionLocal
        from app.services.clock import utcnow
        from app.services.metrics_aggregator import MetricsAggregator, floor_window

        if SessionLocal is None:
            logger.warning("metrics_refresh_skipped", reason="database_not_configured")
            return

        today = floor_window(utcnow(), "daily")
        written = MetricsAggregator(SessionLocal).refresh(today - timedelta(days=1), today, "daily")
        logger.info("daily_metrics_refreshed", snapshots=written)

    except Exception as e:
        logger.error("daily_metrics_refresh_crashed", error=str(e), exc_info=True)


def run_scheduled_reconciliation():
    """
    Wrapper function for scheduled reconciliation job.

    Compares every configured table between Google Sheets and Supabase.
    Skipped (not failed) if a manual comparison is still running.
    """
    try:
        from app import database
        from app.exceptions import ConflictError
        from app.services.reconciliation import ReconciliationEngine
        from app.services.stores import SheetsClient, SupabaseStore

        if database.SessionLocal is None:
            logger.warning("reconciliation_skipped", reason="database_not_configured")
            return

        engine = ReconciliationEngine(
            session_factory=database.SessionLocal,
            sheets_store=SheetsClient(),
            supabase_store=SupabaseStore(database.engine)
        )
        try:
            result = engine.compare(triggered_by="scheduler")
        except ConflictError as e:
            logger.info("reconciliation_skipped", reason="run_in_progress", details=e.details)
            return

        logger.info("scheduled_reconciliation_completed", **result)

    except Exception as e:
        logger.error("reconciliation_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    # Metrics windows are UTC-aligned, so the cron triggers are too
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    # Job 1: Hourly metrics snapshot (5 minutes past the hour)
    scheduler.add_job(
        run_hourly_metrics_refresh,
        trigger=CronTrigger(minute=5),
        id="hourly_metrics_refresh",
        name="Hourly Dual-Write Metrics Snapshot",
        replace_existing=True
    )
    logger.info("job_registered", job="hourly_metrics_refresh", schedule="hourly_xx:05")

    # Job 2: Daily metrics snapshot (at 00:15 UTC)
    scheduler.add_job(
        run_daily_metrics_refresh,
        trigger=CronTrigger(hour=0, minute=15),
        id="daily_metrics_refresh",
        name="Daily Dual-Write Metrics Snapshot",
        replace_existing=True
    )
    logger.info("job_registered", job="daily_metrics_refresh", schedule="daily_00:15")

    jobs = ["hourly_metrics_refresh", "daily_metrics_refresh"]

    # Job 3: Periodic reconciliation (opt-in)
    if settings.reconciliation_schedule_enabled:
        scheduler.add_job(
            run_scheduled_reconciliation,
            trigger=IntervalTrigger(hours=settings.reconciliation_interval_hours),
            id="scheduled_reconciliation",
            name="Google Sheets-Supabase Reconciliation",
            replace_existing=True
        )
        logger.info("job_registered", job="reconciliation", schedule=f"every_{settings.reconciliation_interval_hours}h")
        jobs.append("reconciliation")

    scheduler.start()
    logger.info("scheduler_started", jobs=jobs)

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_hourly_metrics_refresh",
    "run_daily_metrics_refresh",
    "run_scheduled_reconciliation"
]
