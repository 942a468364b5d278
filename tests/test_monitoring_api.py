"""
Tests for the /api/monitoring endpoints

Uses FastAPI dependency overrides: in-memory database, fake stores and a
fixed clock. The startup hook (database, scheduler) is not triggered.
"""

import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.routers import monitoring
from app.services.discrepancy_tracker import DiscrepancyFinding, DiscrepancyTracker
from app.services.dual_write_logger import DualWriteLogger
from app.services.health import build_health_aggregator
from app.services.metrics_aggregator import MetricsAggregator
from app.services.reconciliation import ReconciliationEngine


@pytest.fixture
def client(session_factory, sheets_store, supabase_store, clock):
    app.dependency_overrides[monitoring.get_session_factory] = lambda: session_factory
    app.dependency_overrides[monitoring.get_dual_write_logger] = lambda: DualWriteLogger(session_factory, clock=clock)
    app.dependency_overrides[monitoring.get_metrics_aggregator] = lambda: MetricsAggregator(session_factory, clock=clock)
    app.dependency_overrides[monitoring.get_discrepancy_tracker] = lambda: DiscrepancyTracker(session_factory, clock=clock)
    app.dependency_overrides[monitoring.get_reconciliation_engine] = lambda: ReconciliationEngine(
        session_factory, sheets_store, supabase_store, clock=clock, tables=["reports"]
    )
    app.dependency_overrides[monitoring.get_health_aggregator] = lambda: build_health_aggregator(
        session_factory, sheets_store, supabase_store, clock=clock
    )
    yield TestClient(app)
    app.dependency_overrides.clear()


def _log_body(**overrides):
    body = {
        "operation": "INSERT",
        "table": "reports",
        "recordId": "R1",
        "sheetsResult": {"success": True, "duration": 1200},
        "supabaseResult": {"success": True, "duration": 90},
        "user": "mentor@example.com",
        "batch": "Batch 5 Bangkit",
        "program": "Bangkit",
    }
    body.update(overrides)
    return body


def _seed_discrepancies(session_factory, clock, count, severity="high"):
    DiscrepancyTracker(session_factory, clock=clock).record_findings(None, [
        DiscrepancyFinding(
            table_name="reports",
            record_id=str(i),
            discrepancy_type="missing_in_supabase",
            severity=severity,
            description="missing"
        )
        for i in range(count)
    ])


class TestLogDualWrite:

    def test_logs_operation(self, client):
        response = client.post("/api/monitoring/log-dual-write", json=_log_body())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert isinstance(body["logId"], int)

    def test_missing_fields_return_400(self, client):
        response = client.post("/api/monitoring/log-dual-write", json={"operation": "INSERT"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_missing_result_objects_return_400(self, client):
        body = _log_body()
        del body["supabaseResult"]

        response = client.post("/api/monitoring/log-dual-write", json=body)

        assert response.status_code == 400
        assert "message" in response.json()

    def test_malformed_json_returns_400(self, client):
        response = client.post(
            "/api/monitoring/log-dual-write",
            content="{not json",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_partial_failure_shows_in_today_stats(self, client):
        """Scenario: supabase timeout raises today's error count by one."""
        client.post("/api/monitoring/log-dual-write", json=_log_body())
        before = client.get("/api/monitoring/stats?period=today").json()["summary"]

        client.post("/api/monitoring/log-dual-write", json=_log_body(
            supabaseResult={"success": False, "error": "timeout"}
        ))
        after = client.get("/api/monitoring/stats?period=today").json()["summary"]

        assert after["totalErrors"] == before["totalErrors"] + 1
        assert after["avgSupabaseSuccessRate"] < before["avgSupabaseSuccessRate"]
        assert after["avgSheetsSuccessRate"] == 100.0


class TestRecentOperations:

    def test_paging_envelope(self, client):
        for i in range(3):
            client.post("/api/monitoring/log-dual-write", json=_log_body(recordId=str(i)))

        body = client.get("/api/monitoring/recent-operations?limit=2").json()

        assert body["total"] == 3
        assert body["limit"] == 2
        assert body["offset"] == 0
        assert body["hasMore"] is True
        assert len(body["operations"]) == 2

    def test_limit_clamped(self, client):
        body = client.get("/api/monitoring/recent-operations?limit=1000").json()

        assert body["limit"] == 200
        assert body["hasMore"] is False

    def test_failures_only(self, client):
        client.post("/api/monitoring/log-dual-write", json=_log_body())
        client.post("/api/monitoring/log-dual-write", json=_log_body(
            sheetsResult={"success": False, "error": "quota"}
        ))

        body = client.get("/api/monitoring/recent-operations?failuresOnly=true").json()

        assert body["total"] == 1
        assert body["operations"][0]["sheets_error"] == "quota"


class TestStats:

    def test_invalid_period_returns_400(self, client):
        response = client.get("/api/monitoring/stats?period=decade")

        assert response.status_code == 400
        assert "validPeriods" in response.json()["details"]

    def test_invalid_type_returns_400(self, client):
        assert client.get("/api/monitoring/stats?period=week&type=minutely").status_code == 400

    def test_week_daily(self, client):
        body = client.get("/api/monitoring/stats?period=week&type=daily").json()

        assert body["type"] == "daily"
        assert len(body["metrics"]) == 7


class TestDiscrepancies:

    def test_list_clamps_limit(self, client, session_factory, clock):
        _seed_discrepancies(session_factory, clock, 205)

        body = client.get("/api/monitoring/discrepancies?limit=500").json()

        assert len(body["discrepancies"]) == 200
        assert body["total"] == 205
        assert body["severityCounts"] == {"low": 0, "medium": 0, "high": 205, "critical": 0}

    def test_invalid_resolved_filter(self, client):
        assert client.get("/api/monitoring/discrepancies?resolved=maybe").status_code == 400

    def test_resolve_flow(self, client, session_factory, clock):
        _seed_discrepancies(session_factory, clock, 1, severity="critical")
        discrepancy_id = client.get("/api/monitoring/discrepancies").json()["discrepancies"][0]["id"]

        response = client.post("/api/monitoring/discrepancies", json={
            "id": discrepancy_id, "resolved": True, "resolvedBy": "ops@example.com", "notes": "re-synced"
        })

        assert response.status_code == 200
        resolved = response.json()["discrepancy"]
        assert resolved["resolved"] is True
        assert resolved["resolved_by"] == "ops@example.com"

        again = client.post("/api/monitoring/discrepancies", json={
            "id": discrepancy_id, "resolved": True, "resolvedBy": "someone@example.com"
        })
        assert again.status_code == 409

        current = client.get("/api/monitoring/discrepancies?resolved=all").json()["discrepancies"][0]
        assert current["resolved_by"] == "ops@example.com"
        assert current["severity"] == "critical"

    def test_resolve_without_id_returns_400(self, client):
        response = client.post("/api/monitoring/discrepancies", json={"resolved": True})

        assert response.status_code == 400

    def test_reopen_returns_400(self, client, session_factory, clock):
        _seed_discrepancies(session_factory, clock, 1)

        response = client.post("/api/monitoring/discrepancies", json={"id": 1, "resolved": False})

        assert response.status_code == 400

    def test_resolve_unknown_returns_404(self, client):
        response = client.post("/api/monitoring/discrepancies", json={"id": 12345, "resolved": True, "resolvedBy": "x"})

        assert response.status_code == 404


class TestCompareNow:

    def test_compare_reports(self, client, sheets_store, supabase_store):
        sheets_store.tables["reports"] = [{"id": "1"}, {"id": "2"}]
        supabase_store.tables["reports"] = [{"id": "1"}]

        response = client.post("/api/monitoring/compare-now", json={"table": "reports"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["result"]["status"] == "completed"
        assert body["result"]["discrepancies_found"] == 1
        assert body["result"]["tables_compared"] == ["reports"]
        assert "duration_ms" in body["result"]

    def test_compare_without_body(self, client):
        response = client.post("/api/monitoring/compare-now")

        assert response.status_code == 200
        assert response.json()["result"]["tables_compared"] == ["reports"]

    def test_overlapping_compare_returns_409(self, client, session_factory, clock):
        from app.models.reconciliation_run import ReconciliationRun

        session = session_factory()
        session.add(ReconciliationRun(status="running", triggered_by="manual", started_at=clock.now))
        session.commit()
        session.close()

        response = client.post("/api/monitoring/compare-now", json={"table": "reports"})

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

    def test_failed_compare_reported(self, client, supabase_store):
        supabase_store.error = "connection refused"

        body = client.post("/api/monitoring/compare-now", json={}).json()

        assert body["success"] is False
        assert body["result"]["status"] == "failed"

    def test_runs_listed(self, client):
        client.post("/api/monitoring/compare-now", json={"table": "reports"})

        body = client.get("/api/monitoring/reconciliation-runs").json()

        assert body["total"] == 1
        assert body["runs"][0]["status"] == "completed"


class TestHealth:

    def test_healthy_returns_200(self, client):
        response = client.get("/api/monitoring/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"supabase", "sheets", "metrics"}

    def test_supabase_down_returns_503(self, client, supabase_store):
        """Scenario: Supabase unreachable."""
        supabase_store.error = "could not connect to server"

        response = client.get("/api/monitoring/health")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["supabase"]["healthy"] is False
        assert body["checks"]["supabase"]["error"] == "could not connect to server"
        assert body["checks"]["sheets"]["healthy"] is True


class TestDatabaseNotConfigured:

    def test_read_returns_query_error(self, monkeypatch):
        from app import database

        monkeypatch.setattr(database, "SessionLocal", None)
        client = TestClient(app)

        response = client.get("/api/monitoring/recent-operations")

        assert response.status_code == 500
        assert response.json()["error"] == "Query failure"
        assert response.json()["message"] == "Database not configured"

    def test_write_returns_persistence_error(self, monkeypatch):
        from app import database

        monkeypatch.setattr(database, "SessionLocal", None)
        client = TestClient(app)

        response = client.post("/api/monitoring/log-dual-write", json=_log_body())

        assert response.status_code == 500
        assert response.json()["error"] == "Persistence failure"
