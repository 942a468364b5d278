"""
Discrepancy Tracker
Records, lists and resolves Sheets/Supabase mismatches
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.exceptions import ConflictError, NotFoundError, PersistenceError, QueryError, ValidationError
from app.models.data_discrepancy import DataDiscrepancy
from app.services.clock import utcnow
from app.services.severity import SEVERITIES

logger = structlog.get_logger(__name__)

DISCREPANCY_TYPES = ("missing_in_sheets", "missing_in_supabase", "field_mismatch")


@dataclass
class DiscrepancyFinding:
    """A mismatch found by a comparison pass, not yet persisted."""

    table_name: str
    record_id: str
    discrepancy_type: str
    severity: str
    description: str
    field_diffs: List[Dict[str, Any]] = field(default_factory=list)


class DiscrepancyTracker:
    """
    Persistence and resolution workflow for DataDiscrepancy rows.

    State machine: open -> resolved. Reopening is not supported.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        """
        Initialize DiscrepancyTracker.

        Args:
            session_factory: SQLAlchemy sessionmaker
            clock: Time source for detection and resolution timestamps
        """
        self.session_factory = session_factory
        self.clock = clock

    def record_findings(
        self,
        run_id: Optional[int],
        findings: Sequence[DiscrepancyFinding],
        batch: Optional[str] = None,
        program: Optional[str] = None
    ) -> int:
        """
        Persist findings in one transaction.

        Returns:
            Number of rows written

        Raises:
            PersistenceError: Nothing from this call was written
        """
        if not findings:
            return 0

        detected_at = self.clock()
        session = self.session_factory()
        try:
            for finding in findings:
                session.add(DataDiscrepancy(
                    run_id=run_id,
                    table_name=finding.table_name,
                    record_id=finding.record_id,
                    batch_name=batch,
                    program=program,
                    discrepancy_type=finding.discrepancy_type,
                    severity=finding.severity,
                    field_diffs=finding.field_diffs,
                    description=finding.description,
                    detected_at=detected_at,
                    resolved=False
                ))
            session.commit()

        except SQLAlchemyError as e:
            session.rollback()
            logger.error("discrepancy_record_failed", run_id=run_id, count=len(findings), error=str(e))
            raise PersistenceError("Failed to record discrepancies", details=str(e)) from e
        finally:
            session.close()

        logger.info("discrepancies_recorded", run_id=run_id, table=findings[0].table_name, count=len(findings))
        return len(findings)

    def list(
        self,
        resolved: Optional[bool] = False,
        table: Optional[str] = None,
        severity: Optional[str] = None,
        discrepancy_type: Optional[str] = None,
        limit: int = 50
    ) -> Dict[str, Any]:
        """
        List discrepancies, newest detection first.

        Args:
            resolved: False (default) open only, True resolved only, None all
            table: Filter by table name
            severity: Filter by severity
            discrepancy_type: Filter by discrepancy type
            limit: Maximum rows, clamped to 1..discrepancy_list_max

        Returns:
            {discrepancies, total, severityCounts}; severityCounts counts
            unresolved rows (for `table` when given) and always has all
            four severities.

        Raises:
            ValidationError: Unknown severity or discrepancy type
            QueryError: The table could not be read
        """
        if severity is not None and severity not in SEVERITIES:
            raise ValidationError("Invalid severity", details={"validSeverities": list(SEVERITIES)})
        if discrepancy_type is not None and discrepancy_type not in DISCREPANCY_TYPES:
            raise ValidationError("Invalid discrepancy_type", details={"validTypes": list(DISCREPANCY_TYPES)})

        limit = max(1, min(int(limit), settings.discrepancy_list_max))

        session = self.session_factory()
        try:
            query = session.query(DataDiscrepancy)
            if resolved is not None:
                query = query.filter(DataDiscrepancy.resolved.is_(resolved))
            if table:
                query = query.filter(DataDiscrepancy.table_name == table)
            if severity:
                query = query.filter(DataDiscrepancy.severity == severity)
            if discrepancy_type:
                query = query.filter(DataDiscrepancy.discrepancy_type == discrepancy_type)

            total = query.count()
            rows = query.order_by(
                DataDiscrepancy.detected_at.desc(),
                DataDiscrepancy.id.desc()
            ).limit(limit).all()

            counts_query = session.query(
                DataDiscrepancy.severity,
                func.count(DataDiscrepancy.id)
            ).filter(DataDiscrepancy.resolved.is_(False))
            if table:
                counts_query = counts_query.filter(DataDiscrepancy.table_name == table)

            severity_counts = {name: 0 for name in SEVERITIES}
            for name, count in counts_query.group_by(DataDiscrepancy.severity).all():
                severity_counts[name] = count

            return {
                "discrepancies": [row.to_dict() for row in rows],
                "total": total,
                "severityCounts": severity_counts,
            }

        except SQLAlchemyError as e:
            logger.error("discrepancy_list_failed", error=str(e))
            raise QueryError("Failed to fetch discrepancies", details=str(e)) from e
        finally:
            session.close()

    def resolve(self, discrepancy_id: int, resolved_by: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Mark a discrepancy resolved.

        Args:
            discrepancy_id: DataDiscrepancy ID
            resolved_by: Operator identity
            notes: Free-form resolution notes

        Returns:
            Updated record

        Raises:
            ValidationError: resolved_by is blank
            NotFoundError: No such discrepancy
            ConflictError: Already resolved (nothing changes)
            PersistenceError: The update failed
        """
        if not isinstance(resolved_by, str) or not resolved_by.strip():
            raise ValidationError("resolvedBy is required", details={"field": "resolvedBy"})

        session = self.session_factory()
        try:
            item = session.query(DataDiscrepancy).filter(
                DataDiscrepancy.id == discrepancy_id
            ).with_for_update().first()

            if not item:
                raise NotFoundError(f"Discrepancy {discrepancy_id} not found")

            if item.resolved:
                raise ConflictError(
                    f"Discrepancy already resolved by {item.resolved_by} at {item.resolved_at.isoformat()}",
                    details=item.to_dict()
                )

            item.resolved = True
            item.resolved_by = resolved_by.strip()
            item.resolution_notes = notes
            item.resolved_at = self.clock()
            session.commit()
            session.refresh(item)
            result = item.to_dict()

        except SQLAlchemyError as e:
            session.rollback()
            logger.error("discrepancy_resolve_failed", discrepancy_id=discrepancy_id, error=str(e))
            raise PersistenceError("Failed to resolve discrepancy", details=str(e)) from e
        finally:
            session.close()

        logger.info(
            "discrepancy_resolved",
            discrepancy_id=discrepancy_id,
            resolved_by=result["resolved_by"],
            severity=result["severity"],
            table=result["table_name"]
        )
        return result
