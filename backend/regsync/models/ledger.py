"""
Registration Sync - Derived Reconciliation Models

Results of comparing a verified payment's baseline snapshot against the
user's live rosters. Recomputed on demand, never persisted.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


LEDGER_STATUS_PENDING = "pending"
NOT_AVAILABLE = "N/A"


# =============================================================================
# RECONCILIATION
# =============================================================================

@dataclass(frozen=True)
class SportDelta:
    """Per-sport change between what was paid for and the current roster."""
    form_id: str
    sport: str
    baseline: int
    current: int

    @property
    def delta(self) -> int:
        return self.current - self.baseline

    def label(self) -> str:
        """Human-readable form used in the sheet, e.g. 'Football (+2)'."""
        sign = "+" if self.delta > 0 else ""
        return f"{self.sport} ({sign}{self.delta})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "form_id": self.form_id,
            "sport": self.sport,
            "original_players": self.baseline,
            "current_players": self.current,
            "difference": self.delta,
        }


@dataclass(frozen=True)
class ReconciliationResult:
    """Baseline vs. current player counts for one user and payment."""
    user_id: str
    payment_id: str
    transaction_id: Optional[str]
    total_baseline: int
    total_current: int
    per_player_rate: int
    sports: List[SportDelta] = field(default_factory=list)

    @property
    def total_delta(self) -> int:
        return self.total_current - self.total_baseline

    @property
    def is_due(self) -> bool:
        # A negative delta is informational only, never negative debt
        return self.total_delta > 0

    @property
    def amount_due(self) -> int:
        return self.total_delta * self.per_player_rate if self.is_due else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "original_player_count": self.total_baseline,
            "current_player_count": self.total_current,
            "player_difference": self.total_delta,
            "amount_due": self.amount_due,
            "is_due": self.is_due,
            "forms": [s.to_dict() for s in self.sports],
        }


# =============================================================================
# DUE-PAYMENTS LEDGER
# =============================================================================

DUE_PAYMENTS_HEADER = [
    "Date",
    "Time",
    "User Name",
    "Email",
    "University",
    "Original Transaction ID",
    "Sports Modified",
    "Original Players",
    "Current Players",
    "Additional Players",
    "Amount Due (₹)",
    "Status",
]


@dataclass(frozen=True)
class LedgerRow:
    """One outstanding balance, formatted for display and the sheet mirror."""
    timestamp: datetime
    user_id: str
    user_name: str
    user_email: str
    university_name: str
    payment_id: str
    transaction_id: str
    result: ReconciliationResult
    status: str = LEDGER_STATUS_PENDING

    @property
    def sports_modified(self) -> str:
        return ", ".join(s.label() for s in self.result.sports)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.payment_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "university_name": self.university_name,
            "payment_id": self.payment_id,
            "transaction_id": self.transaction_id,
            "original_player_count": self.result.total_baseline,
            "current_player_count": self.result.total_current,
            "player_difference": self.result.total_delta,
            "amount_due": self.result.amount_due,
            "status": self.status,
            "last_updated": self.timestamp.isoformat(),
            "forms": [s.to_dict() for s in self.result.sports],
        }

    def to_sheet_row(self) -> List[str]:
        """Twelve columns matching DUE_PAYMENTS_HEADER."""
        return [
            self.timestamp.strftime("%d/%m/%Y"),
            self.timestamp.strftime("%I:%M %p").lower(),
            self.user_name,
            self.user_email,
            self.university_name,
            self.transaction_id,
            self.sports_modified,
            str(self.result.total_baseline),
            str(self.result.total_current),
            str(self.result.total_delta),
            str(self.result.amount_due),
            self.status.capitalize(),
        ]


# =============================================================================
# PROPAGATION
# =============================================================================

class TriggerType(str, Enum):
    """Mutations that start a propagation run."""
    FORM_SAVED = "form_saved"
    FORM_SUBMITTED = "form_submitted"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    PAYMENT_VERIFIED = "payment_verified"
    FULL_REFRESH = "full_refresh"


@dataclass(frozen=True)
class PropagationTrigger:
    """What changed. record_id is the form/payment/user id for record sync."""
    type: TriggerType
    user_id: Optional[str] = None
    record_id: Optional[str] = None
    previous_email: Optional[str] = None


@dataclass
class SinkOutcome:
    """Result of pushing one trigger to one downstream sink."""
    sink: str
    success: bool
    detail: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1


@dataclass
class PropagationOutcome:
    """Observable record of one background propagation run."""
    trigger: PropagationTrigger
    started_at: datetime
    completed_at: Optional[datetime] = None
    reconciliation: Optional[ReconciliationResult] = None
    due_payment_count: Optional[int] = None
    sinks: List[SinkOutcome] = field(default_factory=list)
    skipped: bool = False

    @property
    def success(self) -> bool:
        return all(s.success for s in self.sinks)

    @property
    def errors(self) -> List[SinkOutcome]:
        return [s for s in self.sinks if not s.success]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger.type.value,
            "user_id": self.trigger.user_id,
            "record_id": self.trigger.record_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "skipped": self.skipped,
            "success": self.success,
            "due_payment_count": self.due_payment_count,
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
            "sinks": [
                {
                    "sink": s.sink,
                    "success": s.success,
                    "detail": s.detail,
                    "error": s.error,
                    "attempts": s.attempts,
                }
                for s in self.sinks
            ],
        }
