#!/usr/bin/env python3
"""
Due Payments Sync Script
Recomputes every outstanding balance and rewrites the "Due Payments" tab.

Use after a sink outage, or to check the ledger without touching the sheet.

Usage:
    python -m scripts.sync_due_payments            # rewrite the sheet
    python -m scripts.sync_due_payments --dry-run  # print the ledger only
"""
import argparse
import asyncio
import json
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from regsync.config import PropagationConfig
from regsync.database import SessionLocal, engine, Base
from regsync.models.ledger import PropagationTrigger, TriggerType
from regsync.services.propagation import PropagationDispatcher
from regsync.services.reconciliation import DuePaymentsLedgerView


def print_ledger(config: PropagationConfig) -> int:
    db = SessionLocal()
    try:
        ledger = DuePaymentsLedgerView(db, per_player_rate=config.per_player_rate, tz=config.timezone)
        rows = ledger.all_due_payments()
    finally:
        db.close()

    for row in rows:
        print(json.dumps(row.to_dict(), ensure_ascii=False))
    print(f"{len(rows)} users with outstanding balance")
    return 0


def run_sync(config: PropagationConfig) -> int:
    dispatcher = PropagationDispatcher.from_config(config, SessionLocal)
    outcome = asyncio.run(dispatcher.run(PropagationTrigger(type=TriggerType.FULL_REFRESH)))

    print(json.dumps(outcome.to_dict(), indent=2, ensure_ascii=False))
    if outcome.skipped:
        print("Sync is disabled (SYNC_ENABLED=false); nothing written.")
        return 1
    return 0 if outcome.success else 1


def main():
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--dry-run", action="store_true", help="print the ledger without writing the sheet")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    config = PropagationConfig.from_env()

    if args.dry_run:
        sys.exit(print_ledger(config))
    sys.exit(run_sync(config))


if __name__ == "__main__":
    main()
