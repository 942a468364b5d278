"""
Tests for ReconciliationEngine

Tests cover:
- Absence and field-level diffs with value normalization
- Run bookkeeping (completed / failed, discrepancy counts)
- Overlapping-scope claims and stale run takeover
- COMPARE log entry with independent store outcomes
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import threading

import pytest
from sqlalchemy.exc import OperationalError

from app.exceptions import ConflictError, PersistenceError
from app.models.data_discrepancy import DataDiscrepancy
from app.models.dual_write_log import DualWriteLog
from app.models.reconciliation_run import ReconciliationRun
from app.services.reconciliation import ReconciliationEngine, ReconciliationScope, values_match
from app.services.severity import SeverityPolicy


@pytest.fixture
def engine(session_factory, sheets_store, supabase_store, clock):
    return ReconciliationEngine(
        session_factory,
        sheets_store,
        supabase_store,
        clock=clock,
        tables=["reports", "sessions"]
    )


def _running_run(session_factory, started_at, table=None, batch=None, program=None):
    session = session_factory()
    run = ReconciliationRun(
        table_name=table, batch_name=batch, program=program,
        status="running", triggered_by="manual", started_at=started_at
    )
    session.add(run)
    session.commit()
    run_id = run.id
    session.close()
    return run_id



class _FailingFinishSessions:
    """Session factory whose commits of a finished run fail a set number of times."""

    def __init__(self, session_factory, failures):
        self.session_factory = session_factory
        self.failures = failures

    def __call__(self):
        session = self.session_factory()
        commit = session.commit

        def failing_commit():
            finishing = any(
                isinstance(obj, ReconciliationRun) and obj.status != "running"
                for obj in session.dirty
            )
            if finishing and self.failures > 0:
                self.failures -= 1
                raise OperationalError("UPDATE reconciliation_runs", {}, Exception("connection reset"))
            commit()

        session.commit = failing_commit
        return session


class _BlockingStore:
    """Store whose fetches wait until released."""

    def __init__(self, release):
        self.release = release

    def fetch_records(self, table, batch=None, program=None):
        self.release.wait(5)
        return []


class TestValuesMatch:

    @pytest.mark.parametrize("a, b", [
        ("  Ahmad ", "Ahmad"),
        ("", None),
        ("100", 100),
        ("1,200.00", 1200),
        ("99.999", 100.0),
        (True, "true"),
    ])
    def test_equivalent_values(self, a, b):
        assert values_match(a, b)

    @pytest.mark.parametrize("a, b", [
        ("Ahmad", "ahmad"),
        ("100", 101),
        ("", "x"),
        ("abc", 0),
    ])
    def test_different_values(self, a, b):
        assert not values_match(a, b)

    @pytest.mark.parametrize("a, b", [
        ("2026-03-10T00:00:00.000Z", date(2026, 3, 10)),
        ("2026-03-10", date(2026, 3, 10)),
        ("10/03/2026", date(2026, 3, 10)),
        ("2026-03-10T14:30:00.000Z", datetime(2026, 3, 10, 14, 30)),
        ("2026-03-10T22:30:00+08:00", datetime(2026, 3, 10, 14, 30)),
        ("2026-03-10T14:30:00.000Z", datetime(2026, 3, 10, 14, 30, tzinfo=timezone.utc)),
    ])
    def test_date_strings_match_typed_dates(self, a, b):
        assert values_match(a, b)

    @pytest.mark.parametrize("a, b", [
        ("2026-03-11T00:00:00.000Z", date(2026, 3, 10)),
        ("2026-03-10T14:31:00.000Z", datetime(2026, 3, 10, 14, 30)),
        ("not a date", date(2026, 3, 10)),
    ])
    def test_different_dates(self, a, b):
        assert not values_match(a, b)

    @pytest.mark.parametrize("a, b", [
        ("RM 1,200.00", Decimal("1200")),
        ("RM1,200.00", 1200),
        ("1,200.00 MYR", Decimal("1200.00")),
        ("rm 35.50", Decimal("35.5")),
    ])
    def test_currency_amounts_match(self, a, b):
        assert values_match(a, b)

    def test_currency_amount_mismatch(self):
        assert not values_match("RM 1,250.00", Decimal("1200"))


class TestScope:

    def test_overlap_rules(self):
        everything = ReconciliationScope()
        reports = ReconciliationScope(table="reports")
        sessions = ReconciliationScope(table="sessions")
        reports_b5 = ReconciliationScope(table="reports", batch="Batch 5")
        reports_b6 = ReconciliationScope(table="reports", batch="Batch 6")

        assert everything.overlaps(reports)
        assert reports.overlaps(reports_b5)
        assert not reports.overlaps(sessions)
        assert not reports_b5.overlaps(reports_b6)


class TestDiffTable:

    def test_missing_and_mismatched_records(self, engine):
        sheets_rows = [
            {"id": "1", "amount": "120", "notes": "ok"},
            {"id": "2", "amount": "50", "notes": "x"},
            {"id": "", "amount": "1"},  # no key, skipped
        ]
        supabase_rows = [
            {"id": 1, "amount": 100, "notes": "OK", "updated_at": "2026-03-10"},
            {"id": 3, "amount": 10, "notes": ""},
        ]

        findings, compared = engine.diff_table("reports", sheets_rows, supabase_rows)

        assert compared == 3
        by_record = {f.record_id: f for f in findings}
        assert by_record["1"].discrepancy_type == "field_mismatch"
        assert by_record["1"].severity == "critical"
        assert {d["field"]: d["severity"] for d in by_record["1"].field_diffs} == {"amount": "critical", "notes": "low"}
        assert by_record["2"].discrepancy_type == "missing_in_supabase"
        assert by_record["2"].severity == "high"
        assert by_record["3"].discrepancy_type == "missing_in_sheets"
        assert by_record["3"].severity == "medium"

    def test_identical_records_produce_nothing(self, engine):
        rows = [{"id": "7", "mentor_name": "Siti", "sessions": "3"}]
        findings, compared = engine.diff_table("reports", rows, [{"id": 7, "mentor_name": "Siti", "sessions": 3}])

        assert findings == []
        assert compared == 1

    def test_table_policy_override(self, session_factory, sheets_store, supabase_store, clock):
        policy = SeverityPolicy()
        policy.register("sessions", lambda field, a, b: "critical")
        engine = ReconciliationEngine(session_factory, sheets_store, supabase_store, policy=policy, clock=clock)

        findings, _ = engine.diff_table("sessions", [{"id": "1", "notes": "a"}], [{"id": "1", "notes": "b"}])

        assert findings[0].severity == "critical"


class TestCompare:

    def test_record_only_in_sheets(self, engine, sheets_store, supabase_store, session_factory):
        """Scenario: one record present only in Google Sheets."""
        sheets_store.tables["reports"] = [{"id": "R1", "notes": "a"}, {"id": "R2", "notes": "b"}]
        supabase_store.tables["reports"] = [{"id": "R1", "notes": "a"}]

        result = engine.compare(table="reports")

        assert result["status"] == "completed"
        assert result["discrepancies_found"] == 1
        assert result["tables_compared"] == ["reports"]
        assert result["records_compared"] == 2
        assert result["error"] is None

        session = session_factory()
        discrepancy = session.query(DataDiscrepancy).one()
        assert discrepancy.run_id == result["run_id"]
        assert discrepancy.record_id == "R2"
        assert discrepancy.discrepancy_type == "missing_in_supabase"
        run = session.get(ReconciliationRun, result["run_id"])
        assert run.status == "completed"
        assert run.discrepancies_found == 1
        session.close()

    def test_unscoped_run_compares_configured_tables(self, engine, sheets_store):
        result = engine.compare()

        assert result["tables_compared"] == ["reports", "sessions"]
        assert [call[0] for call in sheets_store.calls] == ["reports", "sessions"]

    def test_scope_filters_passed_to_stores(self, engine, sheets_store, supabase_store):
        engine.compare(table="reports", batch="Batch 5", program="Bangkit")

        assert sheets_store.calls == [("reports", "Batch 5", "Bangkit")]
        assert supabase_store.calls == [("reports", "Batch 5", "Bangkit")]

    def test_store_failure_marks_run_failed_and_keeps_findings(self, engine, sheets_store, supabase_store, session_factory):
        sheets_store.tables["reports"] = [{"id": "1"}]
        supabase_store.tables["reports"] = []

        # Second table fails in Supabase only
        original_fetch = supabase_store.fetch_records

        def flaky_fetch(table, batch=None, program=None):
            if table == "sessions":
                raise RuntimeError("connection refused")
            return original_fetch(table, batch, program)

        supabase_store.fetch_records = flaky_fetch

        result = engine.compare()

        assert result["status"] == "failed"
        assert "connection refused" in result["error"]
        assert result["tables_compared"] == ["reports"]
        assert result["discrepancies_found"] == 1

        session = session_factory()
        assert session.query(DataDiscrepancy).filter(DataDiscrepancy.run_id == result["run_id"]).count() == 1
        run = session.get(ReconciliationRun, result["run_id"])
        assert run.status == "failed"
        assert run.completed_at is not None
        session.close()

    def test_compare_entry_records_store_outcomes_independently(self, engine, sheets_store, session_factory):
        sheets_store.error = "quota exceeded"

        result = engine.compare(table="reports")

        assert result["status"] == "failed"
        session = session_factory()
        entry = session.query(DualWriteLog).filter(DualWriteLog.operation_type == "COMPARE").one()
        assert entry.sheets_success is False
        assert entry.sheets_error == "quota exceeded"
        assert entry.supabase_success is True
        assert entry.table_name == "reports"
        assert entry.metadata_["run_id"] == result["run_id"]
        session.close()


class TestClaim:

    def test_overlapping_run_conflicts(self, engine, session_factory, clock):
        running_id = _running_run(session_factory, clock.now, table="reports")

        with pytest.raises(ConflictError) as exc_info:
            engine.compare(table="reports")

        assert exc_info.value.details["run_id"] == running_id

        session = session_factory()
        assert session.query(ReconciliationRun).count() == 1
        session.close()

    def test_unscoped_run_conflicts_with_any_running_run(self, engine, session_factory, clock):
        _running_run(session_factory, clock.now, table="sessions", batch="Batch 5")

        with pytest.raises(ConflictError):
            engine.compare()

    def test_disjoint_scopes_run_concurrently(self, engine, session_factory, clock):
        _running_run(session_factory, clock.now, table="sessions")

        assert engine.compare(table="reports")["status"] == "completed"

    def test_stale_running_run_is_abandoned(self, engine, session_factory, clock):
        stale_id = _running_run(session_factory, clock.now - timedelta(minutes=31), table="reports")

        result = engine.compare(table="reports")

        assert result["status"] == "completed"
        session = session_factory()
        stale = session.get(ReconciliationRun, stale_id)
        assert stale.status == "failed"
        assert "Abandoned" in stale.error_message
        session.close()

    def test_finished_run_releases_scope(self, engine):
        engine.compare(table="reports")

        assert engine.compare(table="reports")["status"] == "completed"

    def test_concurrent_claims_admit_one_run(self, session_factory, supabase_store, clock):
        release = threading.Event()
        engine = ReconciliationEngine(session_factory, _BlockingStore(release), supabase_store, clock=clock)
        barrier = threading.Barrier(2)
        conflicted = threading.Event()
        outcomes = []

        def run_compare():
            barrier.wait(5)
            try:
                outcomes.append(engine.compare(table="reports")["status"])
            except ConflictError:
                outcomes.append("conflict")
                conflicted.set()

        threads = [threading.Thread(target=run_compare) for _ in range(2)]
        for thread in threads:
            thread.start()
        try:
            assert conflicted.wait(5)
        finally:
            release.set()
            for thread in threads:
                thread.join(5)

        assert sorted(outcomes) == ["completed", "conflict"]
        session = session_factory()
        assert session.query(ReconciliationRun).count() == 1
        session.close()


class TestFinishRun:

    def test_failed_finish_is_retried_and_scope_released(self, session_factory, sheets_store, supabase_store, clock):
        sessions = _FailingFinishSessions(session_factory, failures=1)
        engine = ReconciliationEngine(sessions, sheets_store, supabase_store, clock=clock)

        result = engine.compare(table="reports")

        assert result["status"] == "completed"
        session = session_factory()
        assert session.get(ReconciliationRun, result["run_id"]).status == "completed"
        session.close()

        assert engine.compare(table="reports")["status"] == "completed"

    def test_compare_entry_written_when_finish_fails(self, session_factory, sheets_store, supabase_store, clock):
        sessions = _FailingFinishSessions(session_factory, failures=2)
        engine = ReconciliationEngine(sessions, sheets_store, supabase_store, clock=clock)

        with pytest.raises(PersistenceError):
            engine.compare(table="reports")

        session = session_factory()
        assert session.query(DualWriteLog).filter(DualWriteLog.operation_type == "COMPARE").count() == 1
        session.close()


class TestRecentRuns:

    def test_newest_first(self, engine, clock):
        first = engine.compare(table="reports")
        clock.advance(minutes=1)
        second = engine.compare(table="sessions")

        runs = engine.recent_runs()

        assert [r["id"] for r in runs] == [second["run_id"], first["run_id"]]
        assert runs[0]["scope"] == {"table": "sessions", "batch": None, "program": None}
