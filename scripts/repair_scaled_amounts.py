"""
Repair Journal Entries Stored at 100x Their Amount
==================================================
Divides every line of the given journal entries by 100 and recomputes the
affected account balances. Without --apply nothing is written.

Usage:
    python scripts/repair_scaled_amounts.py --list-candidates [--min-amount AMOUNT]
    python scripts/repair_scaled_amounts.py --entry-ref REF [--entry-ref REF ...] [--apply] [--allow-locked-periods]

Options:
    --entry-ref REF       Entry to repair (repeatable)
    --apply               Write the repair (default is a dry run)
    --allow-locked-periods
                          Also repair entries dated in LOCKED or CLOSED periods
    --list-candidates     Print lines that look scaled and exit
    --min-amount AMOUNT   Smallest amount reported by --list-candidates,
                          e.g. "100,000.00" (default)
    --actor-id ID         Actor recorded in the audit log
"""

import asyncio
import sys
import argparse

# Add project root to path
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import settings
from app.database import Database
from app.services.amount_repair_service import AmountRepairService
from app.utils.money import format_cents, to_cents


async def list_candidates(service: AmountRepairService, min_amount: int):
    candidates = await service.find_candidates(min_amount)
    print(f"Found {len(candidates)} candidate lines (>= {format_cents(min_amount)})")
    for line in candidates:
        amount = line.debit_amount or line.credit_amount
        side = "Dr" if line.debit_amount else "Cr"
        print(f"  {line.entry_ref} #{line.line_number} {line.account_code} {side} {format_cents(amount)}")


async def repair(service: AmountRepairService, entry_refs, actor_id: int, apply: bool, allow_locked_periods: bool):
    print("=" * 60)
    print("Scaled Amount Repair")
    print("=" * 60)
    if not apply:
        print("\n*** DRY RUN MODE - No data will be changed ***\n")
    if allow_locked_periods:
        print("*** Entries in LOCKED and CLOSED periods will be repaired ***\n")
    
    report = await service.repair(
        entry_refs, actor_id=actor_id, dry_run=not apply, allow_locked_periods=allow_locked_periods,
    )
    
    for entry in report.entries:
        if entry.repaired:
            print(f"  {entry.entry_ref}: {format_cents(entry.old_total)} -> {format_cents(entry.new_total)}")
        else:
            print(f"  {entry.entry_ref}: skipped ({entry.skipped_reason})")
    
    print("\n" + "=" * 60)
    print("SUMMARY")
    print("=" * 60)
    print(f"Entries repaired:      {report.repaired_count}")
    print(f"Entries skipped:       {len(report.entries) - report.repaired_count}")
    print(f"Accounts recalculated: {', '.join(report.accounts_recalculated) or '-'}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Repair journal entries stored at 100x their amount")
    parser.add_argument("--entry-ref", action="append", default=[], help="Entry to repair (repeatable)")
    parser.add_argument("--apply", action="store_true", help="Write the repair instead of a dry run")
    parser.add_argument("--list-candidates", action="store_true", help="List lines that look scaled")
    parser.add_argument(
        "--allow-locked-periods", action="store_true", help="Also repair entries in LOCKED or CLOSED periods",
    )
    parser.add_argument("--min-amount", type=to_cents, default="100,000.00", help="Smallest candidate amount")
    parser.add_argument("--actor-id", type=int, default=0, help="Actor recorded in the audit log")
    return parser


async def main():
    parser = build_parser()
    args = parser.parse_args()
    
    if not args.list_candidates and not args.entry_ref:
        parser.error("give --entry-ref at least once, or --list-candidates")
    
    database = Database.from_settings(settings).connect()
    try:
        async with database.session() as session:
            service = AmountRepairService(session)
            if args.list_candidates:
                await list_candidates(service, args.min_amount)
            else:
                await repair(service, args.entry_ref, args.actor_id, args.apply, args.allow_locked_periods)
    finally:
        await database.dispose()


if __name__ == "__main__":
    asyncio.run(main())
