"""
ReconciliationRun Model
Tracks comparison passes between Google Sheets and Supabase
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index

from app.database import Base


class ReconciliationRun(Base):
    """
    Audit trail for one reconciliation run.

    A null scope column means "all" for that dimension. At most one running
    run may exist per overlapping scope; ReconciliationEngine enforces this
    while holding the reconciliation_claim lock row.
    """
    __tablename__ = "reconciliation_runs"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Scope
    table_name = Column(String(100), nullable=True)
    batch_name = Column(String(255), nullable=True)
    program = Column(String(100), nullable=True)

    # Status
    status = Column(String(20), default="running", nullable=False)
    # Statuses: running, completed, failed

    triggered_by = Column(String(255), nullable=True)
    # "manual", "scheduler", "cli" or an operator email

    # Run Timestamps
    started_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Results
    tables_compared = Column(JSON, nullable=True)
    records_compared = Column(Integer, default=0, nullable=False)
    discrepancies_found = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_reconciliation_runs_status", "status", "started_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": {"table": self.table_name, "batch": self.batch_name, "program": self.program},
            "status": self.status,
            "triggered_by": self.triggered_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "tables_compared": self.tables_compared or [],
            "records_compared": self.records_compared,
            "discrepancies_found": self.discrepancies_found,
            "error_message": self.error_message,
        }

    def __repr__(self):
        return f"<ReconciliationRun(id={self.id}, status='{self.status}', discrepancies={self.discrepancies_found})>"
