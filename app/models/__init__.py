"""
Database Models
"""

from app.models.dual_write_log import DualWriteLog
from app.models.system_health_metric import SystemHealthMetric
from app.models.reconciliation_run import ReconciliationRun
from app.models.data_discrepancy import DataDiscrepancy
from app.models.monitoring_lock import MonitoringLock

__all__ = [
    "DualWriteLog",
    "SystemHealthMetric",
    "ReconciliationRun",
    "DataDiscrepancy",
    "MonitoringLock",
]
