"""
Downstream Propagation

- PropagationDispatcher: background fan-out after a committed mutation
- GoogleSheetsSink: spreadsheet mirror (full replace + record upsert)
- DmzClient: external allow-list, idempotent upsert/remove
"""

from .allowlist import AllowListIdentity, AllowListResult, DmzClient, PlayerSyncReport
from .sheets import GoogleSheetsSink, SpreadsheetSink
from .dispatcher import DUE_PAYMENTS_SHEET, PropagationDispatcher, get_dispatcher

__all__ = [
    'AllowListIdentity',
    'AllowListResult',
    'DmzClient',
    'PlayerSyncReport',
    'GoogleSheetsSink',
    'SpreadsheetSink',
    'DUE_PAYMENTS_SHEET',
    'PropagationDispatcher',
    'get_dispatcher',
]
