"""
DualWriteLog Model
Append-only record of every write attempted against Google Sheets and Supabase
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, Boolean, JSON, Index, event

from app.database import Base


class DualWriteLog(Base):
    """
    One entry per dual-write attempt.

    Both store outcomes are stored side by side and never coalesced into a
    single flag: a write can succeed in Sheets and fail in Supabase (or the
    other way round) and the metrics need to see that asymmetry.

    Entries are immutable once flushed (see _refuse_update below).
    """
    __tablename__ = "dual_write_logs"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Operation
    operation_type = Column(String(20), nullable=False)
    # INSERT, UPDATE, DELETE, UPSERT, COMPARE

    table_name = Column(String(100), nullable=False)
    record_id = Column(String(255), nullable=True)

    # Google Sheets outcome
    sheets_success = Column(Boolean, nullable=False)
    sheets_duration_ms = Column(Integer, nullable=True)
    sheets_error = Column(Text, nullable=True)

    # Supabase outcome
    supabase_success = Column(Boolean, nullable=False)
    supabase_duration_ms = Column(Integer, nullable=True)
    supabase_error = Column(Text, nullable=True)

    # Context
    user_email = Column(String(255), nullable=True)
    batch_name = Column(String(255), nullable=True)
    program = Column(String(100), nullable=True)

    metadata_ = Column("metadata", JSON, nullable=True)
    # {"environment": "production", "correlation_id": "...", ...caller supplied keys}

    timestamp = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_dual_write_logs_timestamp", "timestamp"),
        Index("ix_dual_write_logs_table_timestamp", "table_name", "timestamp"),
    )

    @property
    def both_success(self) -> bool:
        return bool(self.sheets_success and self.supabase_success)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_type": self.operation_type,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "sheets_success": self.sheets_success,
            "sheets_duration_ms": self.sheets_duration_ms,
            "sheets_error": self.sheets_error,
            "supabase_success": self.supabase_success,
            "supabase_duration_ms": self.supabase_duration_ms,
            "supabase_error": self.supabase_error,
            "user_email": self.user_email,
            "batch_name": self.batch_name,
            "program": self.program,
            "metadata": self.metadata_ or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return (
            f"<DualWriteLog(id={self.id}, op='{self.operation_type}', table='{self.table_name}', "
            f"sheets={self.sheets_success}, supabase={self.supabase_success})>"
        )


@event.listens_for(DualWriteLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError(f"dual_write_logs is append-only (id={target.id})")
