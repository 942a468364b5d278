"""
Dual-Write Monitoring API Router
Logging, metrics, discrepancy and health endpoints for the Sheets/Supabase migration
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker
import structlog

from app import database
from app.config import settings
from app.exceptions import PersistenceError, QueryError, ValidationError
from app.services.discrepancy_tracker import DiscrepancyTracker
from app.services.dual_write_logger import DualWriteLogger
from app.services.health import HealthCheckAggregator, build_health_aggregator
from app.services.metrics_aggregator import MetricsAggregator
from app.services.reconciliation import ReconciliationEngine
from app.services.stores import SheetsClient, SupabaseStore

logger = structlog.get_logger()

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


class LogDualWriteRequest(BaseModel):
    """
    Request body for log-dual-write.

    Everything is optional here so missing fields are reported by the
    logger's own validation with the standard error body.
    """
    operation: Optional[str] = None
    table: Optional[str] = None
    recordId: Optional[Any] = None
    sheetsResult: Optional[Any] = None
    supabaseResult: Optional[Any] = None
    user: Optional[str] = None
    batch: Optional[str] = None
    program: Optional[str] = None
    metadata: Optional[Any] = None


class ResolveDiscrepancyRequest(BaseModel):
    """Request body for resolving a discrepancy"""
    id: Optional[int] = None
    resolved: Optional[bool] = None
    resolvedBy: Optional[str] = None
    notes: Optional[str] = None


class CompareRequest(BaseModel):
    """Request body for compare-now (all filters optional, None = all)"""
    table: Optional[str] = None
    batch: Optional[str] = None
    program: Optional[str] = None


# Dependencies (overridden in tests)

def get_session_factory(request: Request) -> sessionmaker:
    if database.SessionLocal is None:
        # POST endpoints write to the monitoring tables, GET endpoints read
        error = PersistenceError if request.method == "POST" else QueryError
        raise error("Database not configured")
    return database.SessionLocal


def get_sheets_store() -> SheetsClient:
    return SheetsClient()


def get_supabase_store() -> SupabaseStore:
    return SupabaseStore(database.engine)


def get_dual_write_logger(session_factory: sessionmaker = Depends(get_session_factory)) -> DualWriteLogger:
    return DualWriteLogger(session_factory)


def get_metrics_aggregator(session_factory: sessionmaker = Depends(get_session_factory)) -> MetricsAggregator:
    return MetricsAggregator(session_factory)


def get_discrepancy_tracker(session_factory: sessionmaker = Depends(get_session_factory)) -> DiscrepancyTracker:
    return DiscrepancyTracker(session_factory)


def get_reconciliation_engine(
    session_factory: sessionmaker = Depends(get_session_factory),
    sheets_store: SheetsClient = Depends(get_sheets_store),
    supabase_store: SupabaseStore = Depends(get_supabase_store)
) -> ReconciliationEngine:
    return ReconciliationEngine(session_factory, sheets_store, supabase_store)


def get_health_aggregator(
    sheets_store: SheetsClient = Depends(get_sheets_store),
    supabase_store: SupabaseStore = Depends(get_supabase_store)
) -> HealthCheckAggregator:
    # No get_session_factory here: health must answer even without a database
    return build_health_aggregator(database.SessionLocal, sheets_store, supabase_store)


@router.post("/log-dual-write")
def log_dual_write(
    body: LogDualWriteRequest,
    dual_write_logger: DualWriteLogger = Depends(get_dual_write_logger)
):
    """
    Record the outcome of one dual write.

    Called by the portal after every write that goes to both stores.

    Returns:
        dict with success flag and the new log entry id
    """
    result = dual_write_logger.record(
        operation=body.operation,
        table=body.table,
        sheets_result=body.sheetsResult,
        supabase_result=body.supabaseResult,
        record_id=body.recordId,
        user=body.user,
        batch=body.batch,
        program=body.program,
        metadata=body.metadata
    )

    return {
        "success": True,
        "logId": result["log_id"],
        "message": "Dual-write operation logged successfully"
    }


@router.get("/recent-operations")
def recent_operations(
    limit: int = Query(50, description="Page size (clamped to 1-200)"),
    offset: int = Query(0, ge=0),
    table: Optional[str] = Query(None),
    user: Optional[str] = Query(None),
    batch: Optional[str] = Query(None),
    operation: Optional[str] = Query(None),
    failures_only: bool = Query(False, alias="failuresOnly"),
    dual_write_logger: DualWriteLogger = Depends(get_dual_write_logger)
):
    """
    Recent dual-write log entries, newest first.

    Returns:
        dict with operations, total, effective limit/offset and hasMore
    """
    effective_limit = max(1, min(limit, settings.recent_operations_max))
    operations, total = dual_write_logger.recent(
        limit=effective_limit,
        offset=offset,
        table=table,
        user=user,
        batch=batch,
        operation=operation,
        failures_only=failures_only
    )

    return {
        "operations": operations,
        "total": total,
        "limit": effective_limit,
        "offset": offset,
        "hasMore": offset + len(operations) < total
    }


@router.get("/stats")
def stats(
    period: str = Query("today", description="today, week or month"),
    granularity: str = Query("hourly", alias="type", description="hourly or daily"),
    aggregator: MetricsAggregator = Depends(get_metrics_aggregator)
):
    """
    Success-rate statistics for a period, computed from the log.

    Returns:
        dict with period, type, summary and per-bucket metrics
    """
    return aggregator.period_stats(period, granularity)


@router.get("/discrepancies")
def list_discrepancies(
    resolved: str = Query("false", description="true, false or all"),
    table: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    discrepancy_type: Optional[str] = Query(None),
    limit: int = Query(50, description="Maximum items (clamped to 1-200)"),
    tracker: DiscrepancyTracker = Depends(get_discrepancy_tracker)
):
    """
    List discrepancies found by reconciliation runs.

    Returns:
        dict with discrepancies, total and open severityCounts
    """
    resolved_filters = {"true": True, "false": False, "all": None}
    if resolved.lower() not in resolved_filters:
        raise ValidationError("Invalid resolved filter", details={"validValues": list(resolved_filters)})

    return tracker.list(
        resolved=resolved_filters[resolved.lower()],
        table=table,
        severity=severity,
        discrepancy_type=discrepancy_type,
        limit=limit
    )


@router.post("/discrepancies")
def resolve_discrepancy(
    body: ResolveDiscrepancyRequest,
    tracker: DiscrepancyTracker = Depends(get_discrepancy_tracker)
):
    """
    Mark a discrepancy as resolved.

    Resolution is one-way; re-opening is rejected.

    Returns:
        dict with the updated discrepancy
    """
    if body.id is None:
        raise ValidationError("Missing required field: id", details={"field": "id"})
    if body.resolved is False:
        raise ValidationError("Re-opening a discrepancy is not supported", details={"field": "resolved"})

    discrepancy = tracker.resolve(body.id, body.resolvedBy or "unknown", body.notes)

    return {
        "success": True,
        "discrepancy": discrepancy,
        "message": "Discrepancy resolved"
    }


@router.post("/compare-now")
def compare_now(
    body: Optional[CompareRequest] = None,
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """
    Run a comparison between Google Sheets and Supabase now.

    Returns 409 if an overlapping comparison is still running. A run that
    fails midway is reported with status "failed"; discrepancies found
    before the failure are kept.
    """
    body = body or CompareRequest()
    result = engine.compare(table=body.table, batch=body.batch, program=body.program, triggered_by="manual")

    completed = result["status"] == "completed"
    return {
        "success": completed,
        "result": result,
        "message": "Comparison completed successfully" if completed else f"Comparison failed: {result['error']}"
    }


@router.get("/reconciliation-runs")
def reconciliation_runs(
    limit: int = Query(20, description="Maximum runs (clamped to 1-100)"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Most recent reconciliation runs, newest first."""
    runs = engine.recent_runs(limit)
    return {"runs": runs, "total": len(runs)}


@router.get("/health")
def health(aggregator: HealthCheckAggregator = Depends(get_health_aggregator)):
    """
    Composite health of both stores and the dual-write success rates.

    Returns 200 when every check is healthy, 503 otherwise.
    """
    result = aggregator.check()
    return JSONResponse(
        content=result,
        status_code=200 if result["status"] == "healthy" else 503
    )
