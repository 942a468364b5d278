"""
Dual-Write Logger
Records the outcome of every write performed against Google Sheets and Supabase
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from datetime import datetime
import structlog
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.exceptions import PersistenceError, QueryError, ValidationError
from app.middleware.correlation_id import get_correlation_id
from app.models.dual_write_log import DualWriteLog
from app.services.clock import utcnow
from app.services.error_formatter import format_error

logger = structlog.get_logger(__name__)

OPERATION_TYPES = ("INSERT", "UPDATE", "DELETE", "UPSERT", "COMPARE")


def _parse_store_result(name: str, result: Any) -> Dict[str, Any]:
    """
    Validate one store outcome and normalize it to column values.

    Args:
        name: "sheets" or "supabase" (used as column prefix and in errors)
        result: Caller supplied mapping {success, duration?, error?}

    Returns:
        dict with {name}_success, {name}_duration_ms, {name}_error

    Raises:
        ValidationError: Missing mapping or non-boolean success flag
    """
    if not isinstance(result, Mapping):
        raise ValidationError(
            "Missing result objects",
            details={"required": ["sheetsResult", "supabaseResult"], "invalid": f"{name}Result"}
        )

    success = result.get("success")
    if not isinstance(success, bool):
        raise ValidationError(
            f"{name}Result.success must be a boolean",
            details={"field": f"{name}Result.success"}
        )

    duration = result.get("duration", result.get("duration_ms"))
    if duration is not None:
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            raise ValidationError(
                f"{name}Result.duration must be a non-negative number of milliseconds",
                details={"field": f"{name}Result.duration"}
            )
        duration = int(round(duration))

    return {
        f"{name}_success": success,
        f"{name}_duration_ms": duration,
        f"{name}_error": format_error(result.get("error")),
    }


class DualWriteLogger:
    """
    Writes one DualWriteLog row per reported dual write.

    Health counters are not kept here: MetricsAggregator derives them from
    the log, so the log is the only source of truth.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        """
        Initialize DualWriteLogger.

        Args:
            session_factory: SQLAlchemy sessionmaker (each call runs its own transaction)
            clock: Time source for entry timestamps
        """
        self.session_factory = session_factory
        self.clock = clock
        self.logger = logger.bind(service="dual_write_logger")

    def record(
        self,
        operation: str,
        table: str,
        sheets_result: Mapping[str, Any],
        supabase_result: Mapping[str, Any],
        record_id: Optional[Any] = None,
        user: Optional[str] = None,
        batch: Optional[str] = None,
        program: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, int]:
        """
        Append one log entry for a dual write.

        Args:
            operation: INSERT, UPDATE, DELETE, UPSERT or COMPARE (any case)
            table: Logical table name written to
            sheets_result: {success: bool, duration?: ms, error?: any}
            supabase_result: {success: bool, duration?: ms, error?: any}
            record_id: Identifier of the written record (optional)
            user: Acting user identity as given by the auth layer
            batch: Batch name (e.g. "Batch 5 Bangkit")
            program: Program name (Bangkit, Maju, iTEKAD)
            metadata: Extra context stored with the entry

        Returns:
            {"log_id": id of the new entry}

        Raises:
            ValidationError: Missing/invalid operation, table or results
            PersistenceError: The insert failed; nothing was written
        """
        if not isinstance(operation, str) or not operation.strip() or not isinstance(table, str) or not table.strip():
            raise ValidationError("Missing required fields", details={"required": ["operation", "table"]})

        operation_type = operation.strip().upper()
        if operation_type not in OPERATION_TYPES:
            raise ValidationError(
                f"Unknown operation '{operation}'",
                details={"allowed": list(OPERATION_TYPES)}
            )

        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("metadata must be an object", details={"field": "metadata"})

        columns = {}
        columns.update(_parse_store_result("sheets", sheets_result))
        columns.update(_parse_store_result("supabase", supabase_result))

        entry_metadata = dict(metadata or {})
        entry_metadata.setdefault("environment", settings.environment)
        entry_metadata.setdefault("correlation_id", get_correlation_id())

        entry = DualWriteLog(
            operation_type=operation_type,
            table_name=table.strip(),
            record_id=str(record_id) if record_id is not None and record_id != "" else None,
            user_email=user,
            batch_name=batch,
            program=program,
            metadata_=entry_metadata,
            timestamp=self.clock(),
            **columns
        )

        session = self.session_factory()
        try:
            session.add(entry)
            session.commit()
            log_id = entry.id
        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("dual_write_log_failed", operation=operation_type, table=table, error=str(e))
            raise PersistenceError("Failed to log dual-write", details=str(e)) from e
        finally:
            session.close()

        event = "dual_write_logged" if columns["sheets_success"] and columns["supabase_success"] else "dual_write_partial_failure"
        self.logger.info(
            event,
            log_id=log_id,
            operation=operation_type,
            table=table,
            sheets_success=columns["sheets_success"],
            supabase_success=columns["supabase_success"]
        )

        return {"log_id": log_id}

    def recent(
        self,
        limit: int = 50,
        offset: int = 0,
        table: Optional[str] = None,
        user: Optional[str] = None,
        batch: Optional[str] = None,
        operation: Optional[str] = None,
        failures_only: bool = False
    ) -> Tuple[List[dict], int]:
        """
        Recent log entries, newest first.

        Args:
            limit: Page size, clamped to 1..recent_operations_max
            offset: Rows to skip
            table, user, batch, operation: Exact-match filters
            failures_only: Only entries where at least one store failed

        Returns:
            (entries as dicts, total matching entries)

        Raises:
            QueryError: The log could not be read
        """
        limit = max(1, min(int(limit), settings.recent_operations_max))
        offset = max(0, int(offset))

        session = self.session_factory()
        try:
            query = session.query(DualWriteLog)

            if table:
                query = query.filter(DualWriteLog.table_name == table)
            if user:
                query = query.filter(DualWriteLog.user_email == user)
            if batch:
                query = query.filter(DualWriteLog.batch_name == batch)
            if operation:
                query = query.filter(DualWriteLog.operation_type == operation.upper())
            if failures_only:
                query = query.filter(or_(
                    DualWriteLog.sheets_success.is_(False),
                    DualWriteLog.supabase_success.is_(False)
                ))

            total = query.count()
            rows = query.order_by(
                DualWriteLog.timestamp.desc(),
                DualWriteLog.id.desc()
            ).offset(offset).limit(limit).all()

            return [row.to_dict() for row in rows], total

        except SQLAlchemyError as e:
            self.logger.error("recent_operations_failed", error=str(e))
            raise QueryError("Failed to fetch operations", details=str(e)) from e
        finally:
            session.close()
