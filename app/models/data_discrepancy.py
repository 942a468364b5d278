"""
DataDiscrepancy Model
Divergences between Google Sheets and Supabase found by reconciliation runs
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, ForeignKey, Index, event, inspect

from app.database import Base


class DataDiscrepancy(Base):
    """
    One detected mismatch for one logical record.

    Severity is fixed at detection time. Resolution is one-way
    (open -> resolved); rows are never deleted so the table doubles as the
    audit trail for the migration.
    """
    __tablename__ = "data_discrepancies"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Run that found it
    run_id = Column(Integer, ForeignKey("reconciliation_runs.id"), nullable=True, index=True)

    # Affected record
    table_name = Column(String(100), nullable=False)
    record_id = Column(String(255), nullable=False)
    batch_name = Column(String(255), nullable=True)
    program = Column(String(100), nullable=True)

    # Classification
    discrepancy_type = Column(String(50), nullable=False)
    # missing_in_sheets, missing_in_supabase, field_mismatch

    severity = Column(String(20), nullable=False)
    # low, medium, high, critical

    field_diffs = Column(JSON, nullable=True)
    # [{"field": "amount", "sheets_value": "120", "supabase_value": "100", "severity": "critical"}]

    description = Column(Text, nullable=True)

    detected_at = Column(DateTime, nullable=False)

    # Resolution
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(255), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_discrepancies_open", "resolved", "detected_at"),
        Index("ix_discrepancies_table", "table_name", "record_id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "batch_name": self.batch_name,
            "program": self.program,
            "discrepancy_type": self.discrepancy_type,
            "severity": self.severity,
            "field_diffs": self.field_diffs or [],
            "description": self.description,
            "detected_at": self.detected_at.isoformat() if self.detected_at else None,
            "resolved": self.resolved,
            "resolved_by": self.resolved_by,
            "resolution_notes": self.resolution_notes,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self):
        return (
            f"<DataDiscrepancy(id={self.id}, table='{self.table_name}', record='{self.record_id}', "
            f"type='{self.discrepancy_type}', severity='{self.severity}', resolved={self.resolved})>"
        )


@event.listens_for(DataDiscrepancy, "before_update")
def _freeze_severity(mapper, connection, target):
    if inspect(target).attrs.severity.history.has_changes():
        raise ValueError(f"Discrepancy severity is immutable (id={target.id})")
