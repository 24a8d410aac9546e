#!/usr/bin/env python3
"""Run a vendor duplicate analysis outside the web process.

Creates a pending analysis, runs the pairwise scan in this process and
prints the reported pairs. Refuses to start while another analysis is
pending or processing.

Usage:
    # Scan with the default threshold (0.6) and limit (50)
    uv run python scripts/run_duplicate_analysis.py

    # Stricter threshold, more results
    uv run python scripts/run_duplicate_analysis.py --threshold 0.8 --limit 200

    # Show the latest analysis without running a new one
    uv run python scripts/run_duplicate_analysis.py --show-latest
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError

from portfolio_core.config import DEDUP_DEFAULT_LIMIT, DEDUP_DEFAULT_THRESHOLD
from portfolio_core.database import SessionLocal, init_db
from portfolio_core.exceptions import AnalysisInProgressError
from portfolio_core.jobs import get_latest_analysis, run_analysis, start_duplicate_analysis


def print_analysis(analysis) -> None:
    print()
    print("=" * 60)
    print(f"DUPLICATE ANALYSIS {analysis.id}")
    print("=" * 60)
    print(f"Status:      {analysis.status}")
    print(f"Threshold:   {analysis.threshold}")
    print(f"Limit:       {analysis.limit}")
    print(f"Requested:   {analysis.created_at} by {analysis.requested_by or 'system'}")

    if analysis.status == "failed":
        print(f"\nFailed: {analysis.error_message}")
        return

    if analysis.status != "completed":
        return

    print(f"\nVendors scanned:  {analysis.total_vendors:,}")
    print(f"Comparisons:      {analysis.comparisons_made:,}")
    print(f"Duplicates found: {analysis.duplicates_found:,}")

    if not analysis.results:
        print("\nNo potential duplicates above the threshold.")
        return

    print("\n--- Potential Duplicates ---")
    for match in analysis.results:
        print(
            f"  {match['similarity']:.3f}  {match['vendor1']['company_name']}"
            f"  <->  {match['vendor2']['company_name']}"
        )
        for reason in match["match_reasons"]:
            print(f"           - {reason}")


def main():
    parser = argparse.ArgumentParser(
        description="Scan canonical vendors for likely duplicates",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=DEDUP_DEFAULT_THRESHOLD,
        help="Minimum similarity for a pair to be reported (0.1 - 1.0)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=DEDUP_DEFAULT_LIMIT,
        help="Maximum number of pairs to keep (1 - 500)",
    )
    parser.add_argument(
        "--show-latest",
        action="store_true",
        help="Print the latest analysis and exit",
    )
    parser.add_argument(
        "--requested-by",
        default="cli",
        help="Recorded on the analysis record",
    )

    args = parser.parse_args()

    init_db()
    db = SessionLocal()
    try:
        if args.show_latest:
            analysis = get_latest_analysis(db)
            if not analysis:
                print("No duplicate analysis found.")
                sys.exit(1)
            print_analysis(analysis)
            return

        try:
            analysis = start_duplicate_analysis(
                db, threshold=args.threshold, limit=args.limit, requested_by=args.requested_by
            )
        except ValidationError as e:
            print(f"Invalid arguments:\n{e}")
            sys.exit(2)
        except AnalysisInProgressError as e:
            print(str(e))
            sys.exit(1)

        print(f"Running duplicate analysis {analysis.id}...")
        analysis = run_analysis(db, analysis.id)
        print_analysis(analysis)
    finally:
        db.close()


if __name__ == "__main__":
    main()
