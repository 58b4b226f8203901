"""Import a union's member roster from an Excel spreadsheet.

Two modes:
1. Pre-registration: match each row's property address to the union's land
   lots and store members as PRE_REGISTERED (unmatched rows are kept for
   manual matching)
2. Invite sync: make the union's member invites match the roster

Usage:
    uv run python scripts/members/import_members.py --union my-union --file roster.xlsx --match-only
    uv run python scripts/members/import_members.py --union my-union --file roster.xlsx --pre-register
    uv run python scripts/members/import_members.py --union my-union --file roster.xlsx --invites --expires-hours 72
"""

import argparse
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from sqlalchemy import select
from sqlalchemy.orm import Session

from johapon.database import engine, init_db
from johapon.invites import sync_member_invites
from johapon.matching import match_members, save_pre_registered_members
from johapon.models import Union
from johapon.schemas import InviteSyncRequest
from johapon.spreadsheets import read_invite_rows, read_member_rows


def find_union(session: Session, slug: str) -> Union | None:
    return session.execute(select(Union).where(Union.slug == slug)).scalar_one_or_none()


def print_parse_errors(errors: list[str]) -> None:
    if errors:
        print(f"Skipped {len(errors)} invalid rows:")
        for err in errors[:10]:
            print(f"  - {err}")


def run_pre_registration(session: Session, union: Union, path: Path, sheet: str | None, save: bool) -> None:
    rows, errors = read_member_rows(path, sheet)
    print(f"Read {len(rows)} rows from {path.name}")
    print_parse_errors(errors)

    results = match_members(session, union.id, rows)
    matched = sum(1 for r in results if r.matched)
    print(f"\n=== Matching against {union.name} land lots ===")
    print(f"Matched: {matched}/{len(results)}")
    for r in results:
        if not r.matched:
            print(f"  No match: {r.row.name} - {r.row.property_address}" + (f" ({r.error})" if r.error else ""))

    if not save:
        return

    print("\n=== Saving pre-registered members ===")
    outcome = save_pre_registered_members(session, union.id, results)
    print(f"Saved: {outcome.saved_count}/{outcome.total_count}")
    print(f"Match rate: {outcome.match_rate * 100:.1f}%")
    if outcome.errors:
        print(f"Errors ({len(outcome.errors)}):")
        for err in outcome.errors[:10]:
            print(f"  - {err}")


def run_invite_sync(session: Session, union: Union, path: Path, sheet: str | None, expires_hours: int) -> None:
    rows, errors = read_invite_rows(path, sheet)
    print(f"Read {len(rows)} invite rows from {path.name}")
    print_parse_errors(errors)

    result = sync_member_invites(session, InviteSyncRequest(
        union_id=union.id,
        expires_hours=expires_hours,
        members=rows,
    ))
    print("\n=== Invite sync ===")
    print(f"Inserted: {result.inserted}")
    print(f"Deleted pending: {result.deleted_pending}")
    print(f"Deleted used (accounts removed): {result.deleted_used}")


def main():
    parser = argparse.ArgumentParser(description="Import a union member roster from Excel")
    parser.add_argument("--union", required=True, help="Union slug")
    parser.add_argument("--file", required=True, type=Path, help=".xlsx roster")
    parser.add_argument("--sheet", help="Worksheet name (default: first sheet)")
    parser.add_argument("--match-only", action="store_true", help="Report matches without saving")
    parser.add_argument("--pre-register", action="store_true", help="Save members as PRE_REGISTERED")
    parser.add_argument("--invites", action="store_true", help="Sync member invites with the roster")
    parser.add_argument("--expires-hours", type=int, default=24, help="Invite lifetime")
    args = parser.parse_args()

    if not (args.match_only or args.pre_register or args.invites):
        parser.print_help()
        return

    if not args.file.exists():
        print(f"Error: {args.file} not found")
        sys.exit(1)

    init_db()

    with Session(engine) as session:
        union = find_union(session, args.union)
        if not union:
            print(f"Error: union '{args.union}' not found")
            sys.exit(1)

        if args.match_only or args.pre_register:
            run_pre_registration(session, union, args.file, args.sheet, save=args.pre_register)

        if args.invites:
            run_invite_sync(session, union, args.file, args.sheet, args.expires_hours)


if __name__ == "__main__":
    main()
