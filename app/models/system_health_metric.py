"""
SystemHealthMetric Model
Persisted snapshots of hourly/daily dual-write metrics buckets
"""

from sqlalchemy import Column, Integer, Float, String, DateTime, Index

from app.database import Base


class SystemHealthMetric(Base):
    """
    Snapshot of one metrics bucket.

    Always derived from dual_write_logs by MetricsAggregator.refresh(), which
    replaces the rows for a window wholesale. Never edited in place.
    """
    __tablename__ = "system_health_metrics"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Window
    period_type = Column(String(10), nullable=False)  # hourly, daily
    window_start = Column(DateTime, nullable=False)
    window_end = Column(DateTime, nullable=False)
    scope_key = Column(String(255), nullable=False, default="all")
    # "all" or "table=reports;batch=Batch 5 Bangkit"

    # Counts
    total_operations = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    sheets_success_count = Column(Integer, nullable=False, default=0)
    supabase_success_count = Column(Integer, nullable=False, default=0)
    both_success_count = Column(Integer, nullable=False, default=0)
    sheets_only_success_count = Column(Integer, nullable=False, default=0)
    supabase_only_success_count = Column(Integer, nullable=False, default=0)
    both_failed_count = Column(Integer, nullable=False, default=0)
    discrepancy_count = Column(Integer, nullable=False, default=0)
    sheets_error_count = Column(Integer, nullable=False, default=0)
    supabase_error_count = Column(Integer, nullable=False, default=0)

    # Durations (ms)
    avg_sheets_duration_ms = Column(Integer, nullable=True)
    avg_supabase_duration_ms = Column(Integer, nullable=True)
    min_sheets_duration_ms = Column(Integer, nullable=True)
    min_supabase_duration_ms = Column(Integer, nullable=True)
    max_sheets_duration_ms = Column(Integer, nullable=True)
    max_supabase_duration_ms = Column(Integer, nullable=True)

    # Rates (percent, 2 decimals)
    sheets_success_rate = Column(Float, nullable=False, default=0.0)
    supabase_success_rate = Column(Float, nullable=False, default=0.0)
    both_success_rate = Column(Float, nullable=False, default=0.0)

    computed_at = Column(DateTime, nullable=False)

    __table_args__ = (
        # One snapshot per (period_type, window_start, scope_key)
        Index("idx_health_metrics_window", "period_type", "window_start", "scope_key", unique=True),
    )

    def __repr__(self):
        return (
            f"<SystemHealthMetric(period={self.period_type}, start={self.window_start}, "
            f"ops={self.total_operations}, errors={self.error_count})>"
        )
