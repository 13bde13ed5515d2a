"""
Due-Payments Ledger View

Materializes every outstanding balance across all users: the reconciliation
engine run once per user with a verified payment, filtered to positive
deltas. Feeds the admin view and the full-replace sheet sync.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import DEFAULT_PER_PLAYER_RATE, DEFAULT_TIMEZONE
from ...models.db_models import UserDB, PaymentDB, PaymentStatus
from ...models.ledger import LedgerRow, NOT_AVAILABLE
from .engine import ReconciliationEngine, latest_payment
from .roster_reader import StorageError


logger = logging.getLogger(__name__)


class DuePaymentsLedgerView:
    """
    All users whose current rosters exceed what they paid for.

    Users are reached through verified payments only; a user with rosters
    but no verified payment never appears here.
    """

    def __init__(
        self,
        db: Session,
        per_player_rate: int = DEFAULT_PER_PLAYER_RATE,
        tz: str = DEFAULT_TIMEZONE,
        engine: Optional[ReconciliationEngine] = None,
    ):
        self.db = db
        self.tz = ZoneInfo(tz)
        self.engine = engine or ReconciliationEngine(db, per_player_rate=per_player_rate)

    def _verified_payments_by_owner(self) -> Dict[str, PaymentDB]:
        try:
            payments = (
                self.db.query(PaymentDB)
                .filter(PaymentDB.status == PaymentStatus.VERIFIED)
                .order_by(PaymentDB.created_at, PaymentDB.id)
                .all()
            )
        except SQLAlchemyError as e:
            raise StorageError("Could not read verified payments") from e

        grouped: Dict[str, List[PaymentDB]] = OrderedDict()
        for payment in payments:
            if not payment.owner_id:
                continue
            grouped.setdefault(payment.owner_id, []).append(payment)

        return OrderedDict(
            (owner_id, latest_payment(owner_payments))
            for owner_id, owner_payments in grouped.items()
        )

    def _get_user(self, user_id: str) -> Optional[UserDB]:
        try:
            return self.db.query(UserDB).filter(UserDB.id == user_id).first()
        except SQLAlchemyError as e:
            raise StorageError(f"Could not read user {user_id}") from e

    def all_due_payments(self, now: Optional[datetime] = None) -> List[LedgerRow]:
        """Ledger rows for every user with a positive player difference."""
        timestamp = (now or datetime.now(timezone.utc)).astimezone(self.tz)
        rows: List[LedgerRow] = []

        for owner_id, payment in self._verified_payments_by_owner().items():
            user = self._get_user(owner_id)
            if user is None or user.deleted:
                continue

            result = self.engine.reconcile_payment(payment)
            if not result.is_due:
                continue

            rows.append(LedgerRow(
                timestamp=timestamp,
                user_id=user.id,
                user_name=user.name or NOT_AVAILABLE,
                user_email=user.email or NOT_AVAILABLE,
                university_name=user.university_name or NOT_AVAILABLE,
                payment_id=payment.id,
                transaction_id=payment.transaction_id or NOT_AVAILABLE,
                result=result,
            ))

        logger.info(f"Due payments computed: {len(rows)} users with outstanding balance")
        return rows

    def sheet_rows(self, now: Optional[datetime] = None) -> List[List[str]]:
        """Row payload for the due-payments tab (header excluded)."""
        return [row.to_sheet_row() for row in self.all_due_payments(now=now)]
