"""
Health Check Aggregator
Composite health verdict over Supabase, Google Sheets and the dual-write metrics
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
import time
import structlog

from app.config import settings
from app.exceptions import QueryError
from app.services.clock import utcnow
from app.services.metrics_aggregator import MetricsAggregator

logger = structlog.get_logger(__name__)

# (good_below_ms, acceptable_below_ms)
LATENCY_THRESHOLDS = {
    "supabase": (1000, 3000),
    "sheets": (2000, 5000),
}

LABELS = {
    "supabase": "Supabase",
    "sheets": "Google Sheets",
    "metrics": "Metrics",
}

Probe = Callable[[], Optional[Dict[str, Any]]]


def classify_latency(duration_ms: int, thresholds: Tuple[int, int]) -> str:
    good, acceptable = thresholds
    if duration_ms < good:
        return "good"
    if duration_ms < acceptable:
        return "acceptable"
    return "slow"


def metrics_probe(aggregator: MetricsAggregator, threshold: Optional[float] = None) -> Probe:
    """
    Probe over today's daily bucket.

    Healthy when nothing was written yet today, or both store success rates
    are at or above the threshold.
    """
    threshold = settings.health_success_rate_threshold if threshold is None else threshold

    def probe() -> Dict[str, Any]:
        bucket = aggregator.latest("daily", 1)[0]
        if bucket.total_operations == 0:
            return {
                "healthy": True,
                "totalOperations": 0,
                "message": "No dual writes recorded today",
            }

        healthy = bucket.sheets_success_rate >= threshold and bucket.supabase_success_rate >= threshold
        return {
            "healthy": healthy,
            "sheetsSuccessRate": bucket.sheets_success_rate,
            "supabaseSuccessRate": bucket.supabase_success_rate,
            "totalOperations": bucket.total_operations,
            "message": "System healthy" if healthy else "Success rate below threshold",
        }

    return probe


class HealthCheckAggregator:
    """
    Runs all probes concurrently, each bounded by its own timeout.

    A probe is a zero-argument callable returning a dict of details (or None).
    It may set "healthy": False to report a soft failure; raising reports a
    hard failure. Neither ever escapes check().
    """

    def __init__(
        self,
        probes: Dict[str, Probe],
        timeout: Optional[float] = None,
        timeouts: Optional[Dict[str, float]] = None,
        thresholds: Optional[Dict[str, Tuple[int, int]]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.probes = probes
        self.timeout = timeout or settings.health_check_timeout_seconds
        self.timeouts = timeouts or {}
        self.thresholds = LATENCY_THRESHOLDS if thresholds is None else thresholds
        self.clock = clock

    def check(self) -> Dict[str, Any]:
        """
        Returns:
            {status, timestamp, duration_ms, checks, summary}
        """
        started = time.monotonic()
        checks: Dict[str, Dict[str, Any]] = {}

        executor = ThreadPoolExecutor(max_workers=max(len(self.probes), 1), thread_name_prefix="health")
        try:
            futures = {
                name: executor.submit(self._run_probe, name, probe)
                for name, probe in self.probes.items()
            }
            for name, future in futures.items():
                timeout = self.timeouts.get(name, self.timeout)
                remaining = max(0.0, started + timeout - time.monotonic())
                try:
                    checks[name] = future.result(timeout=remaining)
                except FutureTimeout:
                    checks[name] = {
                        "healthy": False,
                        "duration_ms": int(timeout * 1000),
                        "error": f"Timed out after {timeout}s",
                        "message": f"{LABELS.get(name, name)} check timed out",
                    }
        finally:
            # A hung probe keeps its worker thread; do not wait for it
            executor.shutdown(wait=False)

        healthy = all(check["healthy"] for check in checks.values())
        result = {
            "status": "healthy" if healthy else "degraded",
            "timestamp": self.clock().isoformat(),
            "duration_ms": int((time.monotonic() - started) * 1000),
            "checks": checks,
            "summary": {
                "healthy": healthy,
                "message": "All systems operational" if healthy else "One or more systems are experiencing issues",
            },
        }

        if not healthy:
            logger.warning(
                "health_degraded",
                failing=[name for name, check in checks.items() if not check["healthy"]]
            )
        return result

    def _run_probe(self, name: str, probe: Probe) -> Dict[str, Any]:
        label = LABELS.get(name, name)
        started = time.monotonic()
        try:
            details = dict(probe() or {})
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning("health_probe_failed", probe=name, error=str(e))
            return {
                "healthy": False,
                "duration_ms": duration_ms,
                "error": getattr(e, "message", None) or str(e) or type(e).__name__,
                "message": f"{label} connection failed" if name in self.thresholds else f"{label} check failed",
            }

        duration_ms = int((time.monotonic() - started) * 1000)
        healthy = bool(details.pop("healthy", True))
        default_message = f"{label} connection successful" if name in self.thresholds else f"{label} check passed"
        result = {
            "healthy": healthy,
            "duration_ms": duration_ms,
            "message": details.pop("message", default_message),
        }
        if healthy and name in self.thresholds:
            result["performance"] = classify_latency(duration_ms, self.thresholds[name])
        result.update(details)
        return result


def build_health_aggregator(session_factory, sheets_store, supabase_store, clock: Callable[[], datetime] = utcnow) -> HealthCheckAggregator:
    """
    Standard probes: supabase ping, sheets ping, today's metrics.

    session_factory may be None (database not configured); the metrics probe
    then reports unhealthy instead of the endpoint failing.
    """
    if session_factory is not None:
        metrics = metrics_probe(MetricsAggregator(session_factory, clock=clock))
    else:
        def metrics():
            raise QueryError("Database not configured")

    return HealthCheckAggregator(
        probes={
            "supabase": supabase_store.ping,
            "sheets": sheets_store.ping,
            "metrics": metrics,
        },
        clock=clock
    )
