"""
Reconciliation Engine

Compares what a user paid for (baseline snapshot on their verified payment)
against what their rosters hold now, and derives the amount still due.

The engine is a pure read-then-compute step: no writes, no counters, no
ambient configuration. Running it twice over the same database state yields
the same result.
"""
from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import DEFAULT_PER_PLAYER_RATE
from ...models.db_models import UserDB, PaymentDB, PaymentStatus
from ...models.ledger import ReconciliationResult, SportDelta
from .roster_reader import RosterSnapshotReader, StorageError, player_count
from .baseline_resolver import PaymentBaselineResolver


logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)


class UserNotFoundError(LookupError):
    """Reconciliation was requested for a user that does not exist."""


class ReconciliationEngine:
    """
    Per-user reconciliation.

    Usage:
        engine = ReconciliationEngine(db, per_player_rate=800)
        result = engine.reconcile(user_id)
    """

    def __init__(
        self,
        db: Session,
        per_player_rate: int = DEFAULT_PER_PLAYER_RATE,
        reader: Optional[RosterSnapshotReader] = None,
        resolver: Optional[PaymentBaselineResolver] = None,
    ):
        self.db = db
        self.per_player_rate = per_player_rate
        self.reader = reader or RosterSnapshotReader(db)
        self.resolver = resolver or PaymentBaselineResolver()

    # -------------------------------------------------------------------------
    # Storage lookups
    # -------------------------------------------------------------------------

    def _get_user(self, user_id: str) -> Optional[UserDB]:
        try:
            return self.db.query(UserDB).filter(UserDB.id == user_id).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not read user {user_id}") from e

    def latest_verified_payment(self, user_id: str) -> Optional[PaymentDB]:
        """Most recently verified payment for the user, if any."""
        try:
            payments = (
                self.db.query(PaymentDB)
                .filter(
                    PaymentDB.owner_id == user_id,
                    PaymentDB.status == PaymentStatus.VERIFIED,
                )
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Could not read payments for user {user_id}") from e
        return latest_payment(payments)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(self, user_id: str) -> Optional[ReconciliationResult]:
        """
        Reconcile a user against their latest verified payment.

        Returns None when the user has no verified payment: users who never
        paid are outside the scope of payment-relative deltas.

        Raises:
            UserNotFoundError: no such user
            StorageError: the store could not be read
        """
        user = self._get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        payment = self.latest_verified_payment(user_id)
        if payment is None:
            logger.info(f"User {user_id} has no verified payment; skipping reconciliation")
            return None

        return self.reconcile_payment(payment)

    def reconcile_payment(self, payment: PaymentDB) -> ReconciliationResult:
        """Run the baseline vs. current comparison for one payment's owner."""
        forms = self.reader.forms_for(payment.owner_id)
        current = {form.title: player_count(form.fields) for form in forms}
        baseline = self.resolver.baseline_counts(payment, current)

        total_baseline = 0
        total_current = 0
        changed: List[SportDelta] = []

        for form in forms:
            current_players = player_count(form.fields)
            original_players = baseline.get(form.title, current_players)

            if current_players != original_players:
                changed.append(SportDelta(
                    form_id=form.id,
                    sport=form.title,
                    baseline=original_players,
                    current=current_players,
                ))

            total_baseline += original_players
            total_current += current_players

        result = ReconciliationResult(
            user_id=payment.owner_id,
            payment_id=payment.id,
            transaction_id=payment.transaction_id,
            total_baseline=total_baseline,
            total_current=total_current,
            per_player_rate=self.per_player_rate,
            sports=changed,
        )

        if result.total_delta != 0:
            logger.info(
                f"User {payment.owner_id}: baseline={total_baseline} current={total_current} "
                f"delta={result.total_delta} amount_due={result.amount_due}"
            )
        return result


def latest_payment(payments: List[PaymentDB]) -> Optional[PaymentDB]:
    """Pick the payment verified (or created) last."""
    if not payments:
        return None
    return max(
        payments,
        key=lambda p: (p.verified_at or p.created_at or _EPOCH, p.id),
    )
