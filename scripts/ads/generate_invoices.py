"""Monthly ad billing run.

Generates the month's invoices for ACTIVE auto-invoiced contracts, flags
unpaid invoices past their due date as OVERDUE and prints the dashboard.

Usage:
    uv run python scripts/ads/generate_invoices.py                  # Current month
    uv run python scripts/ads/generate_invoices.py --month 2025-03  # Specific month
    uv run python scripts/ads/generate_invoices.py --overdue-only   # Just flag overdue invoices
"""

import argparse
import sys
from datetime import date
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sqlalchemy.orm import Session

from johapon.ads import ads_dashboard, generate_invoices, mark_overdue
from johapon.database import engine, init_db


def print_dashboard(session: Session) -> None:
    dashboard = ads_dashboard(session)
    m = dashboard.monthly
    print("\n=== This month ===")
    print(f"Paid:    {m.paid_amount:>12,} KRW")
    print(f"Due:     {m.due_amount:>12,} KRW")
    print(f"Overdue: {m.overdue_amount:>12,} KRW ({m.overdue_partner_count} partners)")

    c = dashboard.contracts
    print("\n=== Contracts ===")
    print(f"Active: {c.active}  Pending: {c.pending}  Expired: {c.expired}  Cancelled: {c.cancelled}")
    print(f"Expiring within 30 days: {c.expiring_soon}")

    if dashboard.overdue_partners:
        print("\n  Overdue:")
        for p in dashboard.overdue_partners:
            print(f"    {p.partner_name:<20} {p.amount:>10,} KRW  {p.overdue_days} days late")
    if dashboard.expiring_contracts:
        print("\n  Expiring:")
        for e in dashboard.expiring_contracts:
            print(f"    {e.partner_name:<20} ends {e.end_date} ({e.days_until_expiry} days)")


def main():
    parser = argparse.ArgumentParser(description="Generate monthly ad invoices")
    parser.add_argument("--month", default=date.today().strftime("%Y-%m"), help="YYYY-MM (default: this month)")
    parser.add_argument("--overdue-only", action="store_true", help="Only flag overdue invoices")
    parser.add_argument("--no-dashboard", action="store_true", help="Skip the summary")
    args = parser.parse_args()

    init_db()

    with Session(engine) as session:
        if not args.overdue_only:
            result = generate_invoices(session, args.month)
            print(f"Invoices for {result.month}: {result.created} created, {result.skipped} already existed")

        flagged = mark_overdue(session)
        print(f"Flagged {flagged} invoices as overdue")

        if not args.no_dashboard:
            print_dashboard(session)


if __name__ == "__main__":
    main()
