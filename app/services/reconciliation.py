"""
Reconciliation Engine
Compares Google Sheets (legacy) with Supabase (migration target) and records drift
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import re
import threading
import time
import structlog
from babel.numbers import NumberFormatError, parse_decimal
from dateutil import parser as date_parser
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.exceptions import ConflictError, MonitoringError, PersistenceError, QueryError, UpstreamUnavailable
from app.models.monitoring_lock import MonitoringLock
from app.models.reconciliation_run import ReconciliationRun
from app.services.clock import utcnow
from app.services.discrepancy_tracker import DiscrepancyFinding, DiscrepancyTracker
from app.services.dual_write_logger import DualWriteLogger
from app.services.monitoring.error_tracking import capture_reconciliation_failure
from app.services.severity import SeverityPolicy, default_policy, is_blank, max_severity

logger = structlog.get_logger(__name__)

CLAIM_LOCK_NAME = "reconciliation_claim"
NUMERIC_TOLERANCE = 0.01
FINISH_ATTEMPTS = 2

AMOUNT_LOCALES = ("ms_MY", "en_US")
CURRENCY_MARKER = re.compile(r"^\s*(RM|MYR)\s*|\s*(RM|MYR)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ReconciliationScope:
    """Run scope; None in a dimension means "all"."""

    table: Optional[str] = None
    batch: Optional[str] = None
    program: Optional[str] = None

    @classmethod
    def from_run(cls, run: ReconciliationRun) -> "ReconciliationScope":
        return cls(table=run.table_name, batch=run.batch_name, program=run.program)

    def overlaps(self, other: "ReconciliationScope") -> bool:
        """Two scopes overlap unless some dimension pins them to different values."""
        for mine, theirs in ((self.table, other.table), (self.batch, other.batch), (self.program, other.program)):
            if mine is not None and theirs is not None and mine != theirs:
                return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"table": self.table, "batch": self.batch, "program": self.program}


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        return _parse_amount(value)
    return None


def _parse_amount(text: str) -> Optional[float]:
    """
    Parse a Sheets cell like "RM 1,200.00", "1200" or "-35.5".

    Malay (Malaysia) format first, US format as fallback.
    """
    cleaned = CURRENCY_MARKER.sub("", text).strip()
    if not cleaned:
        return None

    for locale in AMOUNT_LOCALES:
        try:
            return float(parse_decimal(cleaned, locale=locale))
        except NumberFormatError:
            continue
    return None


def _as_utc(value: datetime) -> datetime:
    # Supabase timestamps without a zone are already UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _as_temporal(value: Any) -> Optional[date]:
    """Naive-UTC datetime or date from a typed value or a date string."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        parsed = date_parser.isoparse(text)
    except ValueError:
        try:
            parsed = date_parser.parse(text, dayfirst=True)
        except (ValueError, OverflowError):
            return None
    return _as_utc(parsed)


def _temporal_match(sheets_value: Any, supabase_value: Any) -> Optional[bool]:
    """
    None unless one side is a typed date/datetime and the other parses as one.

    A plain date on either side compares by calendar day.
    """
    if not isinstance(sheets_value, date) and not isinstance(supabase_value, date):
        return None

    left = _as_temporal(sheets_value)
    right = _as_temporal(supabase_value)
    if left is None or right is None:
        return None

    if not isinstance(left, datetime) or not isinstance(right, datetime):
        left = left.date() if isinstance(left, datetime) else left
        right = right.date() if isinstance(right, datetime) else right
    return left == right


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


def values_match(sheets_value: Any, supabase_value: Any) -> bool:
    """
    Compare a Sheets cell with a Supabase column value.

    Sheets hands back strings, Supabase typed values: blanks are equal to
    NULL, dates compare as UTC instants (or calendar days), amounts compare
    numerically within NUMERIC_TOLERANCE, everything else as trimmed text.
    """
    if is_blank(sheets_value) and is_blank(supabase_value):
        return True

    temporal = _temporal_match(sheets_value, supabase_value)
    if temporal is not None:
        return temporal

    sheets_number = _as_number(sheets_value)
    supabase_number = _as_number(supabase_value)
    if sheets_number is not None and supabase_number is not None:
        return abs(sheets_number - supabase_number) <= NUMERIC_TOLERANCE

    return _as_text(sheets_value) == _as_text(supabase_value)


class _StoreOutcome:
    """Accumulated fetch outcome for one store across a run."""

    def __init__(self):
        self.success = True
        self.duration_ms = 0
        self.error: Optional[str] = None

    def as_result(self) -> Dict[str, Any]:
        return {"success": self.success, "duration": self.duration_ms, "error": self.error}


class ReconciliationEngine:
    """
    Runs comparison passes between the two stores.

    Per run:
    1. Claim: refuse if a running run overlaps the scope
    2. For each table: fetch both stores, diff, persist findings
    3. Mark the run completed (or failed, keeping findings already stored)
    4. Log the pass as a COMPARE entry with both stores' fetch outcomes
    """

    # Serializes claims between threads of this process; the lock row
    # serializes them between processes.
    _claim_mutex = threading.Lock()

    def __init__(
        self,
        session_factory: sessionmaker,
        sheets_store,
        supabase_store,
        tracker: Optional[DiscrepancyTracker] = None,
        dual_write_logger: Optional[DualWriteLogger] = None,
        policy: Optional[SeverityPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        tables: Optional[Sequence[str]] = None
    ):
        """
        Initialize ReconciliationEngine.

        Args:
            session_factory: SQLAlchemy sessionmaker for run bookkeeping
            sheets_store: Object with fetch_records(table, batch, program) for Google Sheets
            supabase_store: Same interface for Supabase
            tracker: DiscrepancyTracker (defaults to one on session_factory)
            dual_write_logger: DualWriteLogger for the COMPARE entry
            policy: SeverityPolicy for classifying findings
            clock: Time source
            tables: Tables compared by unscoped runs (defaults to settings)
        """
        self.session_factory = session_factory
        self.sheets_store = sheets_store
        self.supabase_store = supabase_store
        self.clock = clock
        self.tracker = tracker or DiscrepancyTracker(session_factory, clock=clock)
        self.dual_write_logger = dual_write_logger or DualWriteLogger(session_factory, clock=clock)
        self.policy = policy or default_policy
        self.tables = list(tables) if tables is not None else list(settings.reconciliation_tables)

    def compare(
        self,
        table: Optional[str] = None,
        batch: Optional[str] = None,
        program: Optional[str] = None,
        triggered_by: str = "manual"
    ) -> Dict[str, Any]:
        """
        Run one comparison pass.

        Returns:
            {run_id, duration_ms, tables_compared, records_compared,
             discrepancies_found, status, error}

        Raises:
            ConflictError: An overlapping run is in progress
            PersistenceError: The run record itself could not be written
        """
        scope = ReconciliationScope(table or None, batch or None, program or None)
        tables = [scope.table] if scope.table else list(self.tables)

        run_id = self._claim_run(scope, triggered_by)
        run_logger = logger.bind(run_id=run_id, **scope.to_dict())
        run_logger.info("reconciliation_started", tables=tables, triggered_by=triggered_by)

        started = time.monotonic()
        outcomes = {"sheets": _StoreOutcome(), "supabase": _StoreOutcome()}
        tables_compared: List[str] = []
        records_compared = 0
        discrepancies_found = 0
        error_message = None

        try:
            for table_name in tables:
                sheets_rows, supabase_rows = self._fetch_both(table_name, scope, outcomes)
                findings, checked = self.diff_table(table_name, sheets_rows, supabase_rows)

                discrepancies_found += self.tracker.record_findings(run_id, findings, scope.batch, scope.program)
                records_compared += checked
                tables_compared.append(table_name)

                run_logger.info("table_compared", table_name=table_name, records=checked, discrepancies=len(findings))

            status = "completed"

        except Exception as e:
            status = "failed"
            error_message = str(e) or type(e).__name__
            run_logger.error("reconciliation_failed", error=error_message, exc_info=True)
            capture_reconciliation_failure(run_id, e, scope.table, scope.batch, scope.program)

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self._finish_run(run_id, status, duration_ms, tables_compared, records_compared, discrepancies_found, error_message)
        finally:
            self._log_compare(run_id, scope, triggered_by, outcomes, status, discrepancies_found)

        summary = {
            "run_id": run_id,
            "duration_ms": duration_ms,
            "tables_compared": tables_compared,
            "records_compared": records_compared,
            "discrepancies_found": discrepancies_found,
            "status": status,
            "error": error_message,
        }
        run_logger.info("reconciliation_finished", **{k: v for k, v in summary.items() if k != "run_id"})
        return summary

    def diff_table(
        self,
        table: str,
        sheets_rows: Sequence[Dict[str, Any]],
        supabase_rows: Sequence[Dict[str, Any]]
    ) -> Tuple[List[DiscrepancyFinding], int]:
        """
        Key-match two record sets and describe every mismatch.

        Args:
            table: Table name (selects key field and severity classifier)
            sheets_rows: Rows from Google Sheets
            supabase_rows: Rows from Supabase

        Returns:
            (findings ordered by record key, number of distinct keys compared)
        """
        key_field = settings.reconciliation_key_fields.get(table, settings.reconciliation_default_key_field)
        ignored = set(settings.reconciliation_ignored_fields) | {key_field}

        sheets_by_key = self._index(table, "sheets", sheets_rows, key_field)
        supabase_by_key = self._index(table, "supabase", supabase_rows, key_field)
        keys = sorted(set(sheets_by_key) | set(supabase_by_key))

        findings = []
        for key in keys:
            sheets_row = sheets_by_key.get(key)
            supabase_row = supabase_by_key.get(key)

            if supabase_row is None:
                findings.append(DiscrepancyFinding(
                    table_name=table,
                    record_id=key,
                    discrepancy_type="missing_in_supabase",
                    severity=self.policy.classify_absence(table, "missing_in_supabase"),
                    description=f"{table} {key_field}={key} exists in Google Sheets but not in Supabase"
                ))
                continue

            if sheets_row is None:
                findings.append(DiscrepancyFinding(
                    table_name=table,
                    record_id=key,
                    discrepancy_type="missing_in_sheets",
                    severity=self.policy.classify_absence(table, "missing_in_sheets"),
                    description=f"{table} {key_field}={key} exists in Supabase but not in Google Sheets"
                ))
                continue

            diffs = []
            for field_name in sorted((set(sheets_row) & set(supabase_row)) - ignored):
                sheets_value = sheets_row[field_name]
                supabase_value = supabase_row[field_name]
                if values_match(sheets_value, supabase_value):
                    continue
                diffs.append({
                    "field": field_name,
                    "sheets_value": _as_text(sheets_value),
                    "supabase_value": _as_text(supabase_value),
                    "severity": self.policy.classify_field(table, field_name, sheets_value, supabase_value),
                })

            if diffs:
                findings.append(DiscrepancyFinding(
                    table_name=table,
                    record_id=key,
                    discrepancy_type="field_mismatch",
                    severity=max_severity(d["severity"] for d in diffs),
                    description=f"{len(diffs)} field(s) differ: " + ", ".join(d["field"] for d in diffs),
                    field_diffs=diffs
                ))

        return findings, len(keys)

    def recent_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Latest runs, newest first."""
        limit = max(1, min(int(limit), 100))
        session = self.session_factory()
        try:
            runs = session.query(ReconciliationRun).order_by(
                ReconciliationRun.started_at.desc(),
                ReconciliationRun.id.desc()
            ).limit(limit).all()
            return [run.to_dict() for run in runs]
        except SQLAlchemyError as e:
            logger.error("reconciliation_runs_query_failed", error=str(e))
            raise QueryError("Failed to fetch reconciliation runs", details=str(e)) from e
        finally:
            session.close()

    def _index(self, table: str, store: str, rows: Sequence[Dict[str, Any]], key_field: str) -> Dict[str, Dict[str, Any]]:
        indexed: Dict[str, Dict[str, Any]] = {}
        skipped = 0
        for row in rows:
            key = _as_text(row.get(key_field))
            if not key:
                skipped += 1
                continue
            if key in indexed:
                logger.warning("duplicate_record_key", table_name=table, store=store, key=key)
            indexed[key] = row
        if skipped:
            logger.warning("records_without_key", table_name=table, store=store, key_field=key_field, count=skipped)
        return indexed

    def _fetch_both(
        self,
        table: str,
        scope: ReconciliationScope,
        outcomes: Dict[str, _StoreOutcome]
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Fetch a table from both stores.

        Both stores are always queried, even if the first fails, so the run
        records each store's outcome independently.
        """
        results = {}
        failures = []

        for name, store in (("sheets", self.sheets_store), ("supabase", self.supabase_store)):
            started = time.monotonic()
            try:
                results[name] = store.fetch_records(table, batch=scope.batch, program=scope.program)
            except Exception as e:
                outcome = outcomes[name]
                outcome.success = False
                outcome.error = outcome.error or str(e)
                failures.append(e if isinstance(e, UpstreamUnavailable) else UpstreamUnavailable(name, str(e)))
            finally:
                outcomes[name].duration_ms += int((time.monotonic() - started) * 1000)

        if failures:
            raise failures[0]

        return results["sheets"], results["supabase"]

    def _claim_run(self, scope: ReconciliationScope, triggered_by: str) -> int:
        """
        Atomically check for overlapping running runs and insert ours.

        Runs still "running" after reconciliation_stale_after_minutes are
        treated as crashed and marked failed.
        """
        with self._claim_mutex:
            session = self.session_factory()
            try:
                now = self.clock()
                self._lock_claims(session, now)

                stale_cutoff = now - timedelta(minutes=settings.reconciliation_stale_after_minutes)
                running = session.query(ReconciliationRun).filter(
                    ReconciliationRun.status == "running"
                ).all()

                for other in running:
                    if other.started_at < stale_cutoff:
                        other.status = "failed"
                        other.completed_at = now
                        other.error_message = (
                            f"Abandoned: still running after {settings.reconciliation_stale_after_minutes} minutes"
                        )
                        logger.warning("reconciliation_run_abandoned", run_id=other.id, started_at=other.started_at.isoformat())
                        continue

                    other_scope = ReconciliationScope.from_run(other)
                    if scope.overlaps(other_scope):
                        raise ConflictError(
                            "Comparison already running",
                            details={"run_id": other.id, "scope": other_scope.to_dict()}
                        )

                run = ReconciliationRun(
                    table_name=scope.table,
                    batch_name=scope.batch,
                    program=scope.program,
                    status="running",
                    triggered_by=triggered_by,
                    started_at=now
                )
                session.add(run)
                session.commit()
                return run.id

            except ConflictError:
                session.rollback()
                logger.info("reconciliation_conflict", **scope.to_dict())
                raise
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("reconciliation_claim_failed", error=str(e))
                raise PersistenceError("Failed to start reconciliation run", details=str(e)) from e
            finally:
                session.close()

    def _lock_claims(self, session: Session, now: datetime) -> None:
        # Lock row is seeded by the migration; created here for fresh databases
        lock = session.query(MonitoringLock).filter(
            MonitoringLock.name == CLAIM_LOCK_NAME
        ).with_for_update().first()

        if lock is None:
            lock = MonitoringLock(name=CLAIM_LOCK_NAME)
            session.add(lock)

        lock.acquired_at = now
        session.flush()

    def _finish_run(
        self,
        run_id: int,
        status: str,
        duration_ms: int,
        tables_compared: List[str],
        records_compared: int,
        discrepancies_found: int,
        error_message: Optional[str]
    ) -> None:
        """
        Write the terminal state, retrying once in a fresh session.

        A run left "running" would block overlapping compares until the
        stale cutoff.
        """
        last_error = None
        for attempt in range(1, FINISH_ATTEMPTS + 1):
            session = self.session_factory()
            try:
                run = session.get(ReconciliationRun, run_id)
                run.status = status
                run.completed_at = self.clock()
                run.duration_ms = duration_ms
                run.tables_compared = tables_compared
                run.records_compared = records_compared
                run.discrepancies_found = discrepancies_found
                run.error_message = error_message
                session.commit()
                return
            except SQLAlchemyError as e:
                session.rollback()
                last_error = e
                logger.warning("reconciliation_finish_failed", run_id=run_id, attempt=attempt, error=str(e))
            finally:
                session.close()

        logger.error("reconciliation_run_left_running", run_id=run_id, error=str(last_error))
        raise PersistenceError("Failed to update reconciliation run", details=str(last_error)) from last_error

    def _log_compare(
        self,
        run_id: int,
        scope: ReconciliationScope,
        triggered_by: str,
        outcomes: Dict[str, _StoreOutcome],
        status: str,
        discrepancies_found: int
    ) -> None:
        try:
            self.dual_write_logger.record(
                operation="COMPARE",
                table=scope.table or "all",
                sheets_result=outcomes["sheets"].as_result(),
                supabase_result=outcomes["supabase"].as_result(),
                user=triggered_by,
                batch=scope.batch,
                program=scope.program,
                metadata={"run_id": run_id, "status": status, "discrepancies_found": discrepancies_found}
            )
        except MonitoringError as e:
            # The run record is authoritative; the COMPARE entry only feeds metrics
            logger.error("compare_log_failed", run_id=run_id, error=e.message)
