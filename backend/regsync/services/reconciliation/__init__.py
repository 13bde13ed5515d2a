"""
Due-Payments Reconciliation

- RosterSnapshotReader: live player counts per sport
- PaymentBaselineResolver: paid-for counts from the payment snapshot
- ReconciliationEngine: per-user baseline vs. current delta
- DuePaymentsLedgerView: all outstanding balances
"""

from .roster_reader import RosterSnapshotReader, StorageError, player_count
from .baseline_resolver import PaymentBaselineResolver, parse_baseline_snapshot, build_baseline_snapshot
from .engine import ReconciliationEngine, UserNotFoundError
from .ledger_view import DuePaymentsLedgerView

__all__ = [
    'RosterSnapshotReader',
    'StorageError',
    'player_count',
    'PaymentBaselineResolver',
    'parse_baseline_snapshot',
    'build_baseline_snapshot',
    'ReconciliationEngine',
    'UserNotFoundError',
    'DuePaymentsLedgerView',
]
