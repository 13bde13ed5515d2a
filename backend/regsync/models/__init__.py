"""Registration Sync - Data Models"""
from .db_models import UserDB, FormDB, PaymentDB, FormStatus, PaymentStatus
from .ledger import (
    SportDelta, ReconciliationResult, LedgerRow, DUE_PAYMENTS_HEADER,
    TriggerType, PropagationTrigger, SinkOutcome, PropagationOutcome,
)

__all__ = [
    "UserDB", "FormDB", "PaymentDB", "FormStatus", "PaymentStatus",
    "SportDelta", "ReconciliationResult", "LedgerRow", "DUE_PAYMENTS_HEADER",
    "TriggerType", "PropagationTrigger", "SinkOutcome", "PropagationOutcome",
]
