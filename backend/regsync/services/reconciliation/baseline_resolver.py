"""
Payment Baseline Resolver

Recovers the "originally paid for" player counts from the snapshot frozen
into a payment when it was verified.

Snapshot shape:
    {"submittedForms": {"Football": {"Players": 11}, ...}}

Older payments carry the same structure serialized as JSON text. Both
shapes are normalized here, once, and anything unreadable fails closed to
an empty baseline so that every sport falls back to a zero delta.
"""
import json
from typing import Any, Dict, Iterable, Mapping
import logging

from ...models.db_models import FormDB, PaymentDB
from .roster_reader import player_count


logger = logging.getLogger(__name__)

SUBMITTED_FORMS_KEY = "submittedForms"
PLAYERS_KEY = "Players"


def _to_count(value: Any) -> int:
    """Coerce a snapshot count to int; 0 for anything unusable."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def parse_baseline_snapshot(raw: Any) -> Dict[str, int]:
    """
    Normalize a payment snapshot into {sport title: paid-for player count}.

    Accepts a dict, JSON text/bytes, or None. Sports whose recorded count is
    missing, unreadable or zero are left out, which the resolver treats as
    "no known change".
    """
    if raw is None:
        return {}

    data = raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Unreadable payment snapshot, using zero-delta baseline: {e}")
            return {}

    if not isinstance(data, Mapping):
        logger.warning(f"Payment snapshot is {type(data).__name__}, expected an object")
        return {}

    submitted = data.get(SUBMITTED_FORMS_KEY)
    if not isinstance(submitted, Mapping):
        return {}

    baseline = {}
    for title, entry in submitted.items():
        if not isinstance(entry, Mapping):
            continue
        count = _to_count(entry.get(PLAYERS_KEY))
        if count > 0:
            baseline[str(title)] = count
    return baseline


def build_baseline_snapshot(forms: Iterable[FormDB]) -> Dict[str, Any]:
    """Snapshot written into a payment at verification time."""
    return {
        SUBMITTED_FORMS_KEY: {
            form.title: {PLAYERS_KEY: player_count(form.fields)}
            for form in forms
        }
    }


class PaymentBaselineResolver:
    """Resolves per-sport baseline counts for a verified payment."""

    def snapshot_for(self, payment: PaymentDB) -> Dict[str, int]:
        baseline = parse_baseline_snapshot(payment.payment_data)
        if payment.payment_data is not None and not baseline:
            logger.info(f"Payment {payment.id} has no usable baseline; all sports treated as unchanged")
        return baseline

    def baseline_counts(
        self,
        payment: PaymentDB,
        current: Mapping[str, int],
    ) -> Dict[str, int]:
        """
        Baseline for each sport in `current`.

        A sport the snapshot does not mention defaults to its current
        count, so legacy payments are never flagged as fully due.
        """
        snapshot = self.snapshot_for(payment)
        return {
            title: snapshot.get(title, count)
            for title, count in current.items()
        }
