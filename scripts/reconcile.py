#!/usr/bin/env python3
"""
Run a Google Sheets / Supabase reconciliation from the command line.

Run: python scripts/reconcile.py [--table reports] [--batch "Batch 5 Bangkit"] [--program Bangkit]

Prints a human-readable run summary plus the open discrepancies in scope,
optionally saving the full result as JSON.

Exit codes:
  0 - Run completed, no discrepancies found
  1 - Run completed, discrepancies found
  2 - Run failed, conflicted with a running comparison, or setup error
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app import database
from app.exceptions import MonitoringError
from app.services.discrepancy_tracker import DiscrepancyTracker
from app.services.reconciliation import ReconciliationEngine
from app.services.stores import SheetsClient, SupabaseStore


def format_report(result: dict, open_discrepancies: dict) -> str:
    """
    Format run result and open discrepancies as text

    Args:
        result: ReconciliationEngine.compare() result
        open_discrepancies: DiscrepancyTracker.list() result for the same scope

    Returns:
        Formatted report string
    """
    lines = []
    lines.append("=" * 80)
    lines.append("GOOGLE SHEETS - SUPABASE RECONCILIATION")
    lines.append("=" * 80)
    lines.append("")

    lines.append("RUN")
    lines.append("-" * 80)
    lines.append(f"Run ID:                    {result['run_id']}")
    lines.append(f"Status:                    {result['status'].upper()}")
    lines.append(f"Duration:                  {result['duration_ms']} ms")
    lines.append(f"Tables Compared:           {', '.join(result['tables_compared']) or '-'}")
    lines.append(f"Records Compared:          {result['records_compared']}")
    lines.append(f"Discrepancies Found:       {result['discrepancies_found']}")
    if result["error"]:
        lines.append(f"Error:                     {result['error']}")
    lines.append("")

    counts = open_discrepancies["severityCounts"]
    lines.append("OPEN DISCREPANCIES")
    lines.append("-" * 80)
    lines.append(
        f"Critical: {counts['critical']}   High: {counts['high']}   "
        f"Medium: {counts['medium']}   Low: {counts['low']}"
    )
    lines.append("")

    for item in open_discrepancies["discrepancies"]:
        lines.append(f"  [{item['severity'].upper():8}] {item['table_name']} #{item['record_id']} ({item['discrepancy_type']})")
        lines.append(f"             {item['description']}")
        for diff in item["field_diffs"]:
            lines.append(f"             - {diff['field']}: sheets={diff['sheets_value']!r} supabase={diff['supabase_value']!r}")

    remaining = open_discrepancies["total"] - len(open_discrepancies["discrepancies"])
    if remaining > 0:
        lines.append(f"  ... and {remaining} more")

    lines.append("")
    lines.append("=" * 80)

    return "\n".join(lines)


def main():
    """Reconciliation script entry point"""
    parser = argparse.ArgumentParser(
        description="Compare Google Sheets with Supabase and record discrepancies"
    )
    parser.add_argument("--table", help="Only this table (default: all configured tables)")
    parser.add_argument("--batch", help="Only records of this batch")
    parser.add_argument("--program", help="Only records of this program")
    parser.add_argument(
        "--show",
        type=int,
        default=20,
        help="Number of open discrepancies to print (default: 20)"
    )
    parser.add_argument("--json", dest="json_path", help="Also write the result to this JSON file")
    args = parser.parse_args()

    print("Initializing database connection...")
    database.init_db()
    if database.SessionLocal is None:
        print("ERROR: Database not configured. Set DATABASE_URL environment variable.")
        sys.exit(2)

    sheets_store = SheetsClient()
    if not sheets_store.configured:
        print("ERROR: Google Sheets web app not configured. Set SHEETS_API_URL environment variable.")
        sys.exit(2)

    engine = ReconciliationEngine(
        session_factory=database.SessionLocal,
        sheets_store=sheets_store,
        supabase_store=SupabaseStore(database.engine)
    )

    print("Running reconciliation...")
    print("")

    try:
        result = engine.compare(table=args.table, batch=args.batch, program=args.program, triggered_by="cli")
        open_discrepancies = DiscrepancyTracker(database.SessionLocal).list(
            resolved=False,
            table=args.table,
            limit=args.show
        )
    except MonitoringError as e:
        print(f"ERROR: {e.error}: {e.message}")
        if e.details:
            print(f"       {e.details}")
        sys.exit(2)

    print(format_report(result, open_discrepancies))

    if args.json_path:
        with open(args.json_path, "w") as f:
            json.dump({"result": result, "open_discrepancies": open_discrepancies}, f, indent=2, default=str)
        print(f"\nJSON report saved to: {args.json_path}")

    if result["status"] != "completed":
        print("\n✗ RECONCILIATION FAILED")
        sys.exit(2)
    if result["discrepancies_found"] > 0:
        print(f"\n✗ {result['discrepancies_found']} discrepancies found")
        sys.exit(1)

    print("\n✓ Stores are consistent")
    sys.exit(0)


if __name__ == "__main__":
    main()
