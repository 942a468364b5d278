"""
Tests for DiscrepancyTracker

Tests cover:
- Listing filters, limit clamping and severity counts
- One-way resolution
- Severity immutability
"""

import pytest

from app.exceptions import ConflictError, NotFoundError, ValidationError
from app.models.data_discrepancy import DataDiscrepancy
from app.services.discrepancy_tracker import DiscrepancyFinding, DiscrepancyTracker


@pytest.fixture
def tracker(session_factory, clock):
    return DiscrepancyTracker(session_factory, clock=clock)


def _finding(record_id="1", table="reports", severity="medium", discrepancy_type="field_mismatch"):
    return DiscrepancyFinding(
        table_name=table,
        record_id=record_id,
        discrepancy_type=discrepancy_type,
        severity=severity,
        description=f"{table} {record_id} differs",
        field_diffs=[{"field": "notes", "sheets_value": "a", "supabase_value": "b", "severity": severity}]
    )


class TestRecordFindings:

    def test_persists_findings(self, tracker, session_factory, clock):
        written = tracker.record_findings(None, [_finding("1"), _finding("2")], batch="Batch 5", program="Bangkit")

        assert written == 2
        session = session_factory()
        rows = session.query(DataDiscrepancy).all()
        assert {r.record_id for r in rows} == {"1", "2"}
        assert all(r.resolved is False and r.resolved_by is None and r.resolved_at is None for r in rows)
        assert all(r.batch_name == "Batch 5" and r.detected_at == clock.now for r in rows)
        session.close()

    def test_no_findings_writes_nothing(self, tracker):
        assert tracker.record_findings(None, []) == 0


class TestList:

    def test_defaults_to_open_newest_first(self, tracker, clock):
        tracker.record_findings(None, [_finding("old")])
        clock.advance(hours=1)
        tracker.record_findings(None, [_finding("new")])

        result = tracker.list()

        assert [d["record_id"] for d in result["discrepancies"]] == ["new", "old"]
        assert result["total"] == 2

    def test_limit_clamped_to_200(self, tracker):
        tracker.record_findings(None, [_finding(str(i)) for i in range(205)])

        result = tracker.list(limit=500)

        assert len(result["discrepancies"]) == 200
        assert result["total"] == 205

    def test_severity_counts_cover_open_rows_per_table(self, tracker):
        tracker.record_findings(None, [
            _finding("1", severity="critical"),
            _finding("2", severity="critical"),
            _finding("3", severity="low"),
            _finding("4", table="sessions", severity="high"),
        ])
        resolved_id = tracker.list(severity="low")["discrepancies"][0]["id"]
        tracker.resolve(resolved_id, "ops@example.com")

        counts = tracker.list(table="reports")["severityCounts"]

        assert counts == {"low": 0, "medium": 0, "high": 0, "critical": 2}

    def test_resolved_filter(self, tracker):
        tracker.record_findings(None, [_finding("1"), _finding("2")])
        first_id = tracker.list()["discrepancies"][0]["id"]
        tracker.resolve(first_id, "ops@example.com")

        assert tracker.list(resolved=True)["total"] == 1
        assert tracker.list(resolved=False)["total"] == 1
        assert tracker.list(resolved=None)["total"] == 2

    def test_type_filter(self, tracker):
        tracker.record_findings(None, [_finding("1", discrepancy_type="missing_in_supabase"), _finding("2")])

        result = tracker.list(discrepancy_type="missing_in_supabase")

        assert [d["record_id"] for d in result["discrepancies"]] == ["1"]

    @pytest.mark.parametrize("kwargs", [{"severity": "urgent"}, {"discrepancy_type": "typo"}])
    def test_invalid_filters_rejected(self, tracker, kwargs):
        with pytest.raises(ValidationError):
            tracker.list(**kwargs)


class TestResolve:

    def test_resolve_sets_resolution_fields(self, tracker, clock):
        tracker.record_findings(None, [_finding("1", severity="high")])
        discrepancy_id = tracker.list()["discrepancies"][0]["id"]
        clock.advance(minutes=10)

        result = tracker.resolve(discrepancy_id, "ops@example.com", "fixed in Supabase")

        assert result["resolved"] is True
        assert result["resolved_by"] == "ops@example.com"
        assert result["resolution_notes"] == "fixed in Supabase"
        assert result["resolved_at"] == clock.now.isoformat()
        assert result["severity"] == "high"

    def test_second_resolve_conflicts_and_changes_nothing(self, tracker, clock):
        tracker.record_findings(None, [_finding("1", severity="critical")])
        discrepancy_id = tracker.list()["discrepancies"][0]["id"]
        first = tracker.resolve(discrepancy_id, "first@example.com")
        clock.advance(hours=1)

        with pytest.raises(ConflictError):
            tracker.resolve(discrepancy_id, "second@example.com")

        current = tracker.list(resolved=True)["discrepancies"][0]
        assert current["resolved_by"] == "first@example.com"
        assert current["resolved_at"] == first["resolved_at"]
        assert current["severity"] == "critical"

    def test_missing_discrepancy(self, tracker):
        with pytest.raises(NotFoundError):
            tracker.resolve(999, "ops@example.com")

    def test_blank_resolver_rejected(self, tracker):
        tracker.record_findings(None, [_finding("1")])
        discrepancy_id = tracker.list()["discrepancies"][0]["id"]

        with pytest.raises(ValidationError):
            tracker.resolve(discrepancy_id, "   ")


class TestSeverityImmutable:

    def test_severity_update_refused(self, tracker, session_factory):
        tracker.record_findings(None, [_finding("1", severity="low")])

        session = session_factory()
        row = session.query(DataDiscrepancy).one()
        row.severity = "critical"
        with pytest.raises(ValueError):
            session.commit()
        session.rollback()
        session.close()
