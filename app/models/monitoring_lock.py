"""
MonitoringLock Model
Named lock rows used to serialize claims across workers
"""

from sqlalchemy import Column, String, DateTime

from app.database import Base


class MonitoringLock(Base):
    """
    A row that is locked with SELECT ... FOR UPDATE for the duration of a
    claim transaction. The row itself carries no state besides when it was
    last taken.
    """
    __tablename__ = "monitoring_locks"

    name = Column(String(100), primary_key=True)
    acquired_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<MonitoringLock(name='{self.name}', acquired_at={self.acquired_at})>"
