"""
Propagation Dispatcher

Fans a mutation out to the downstream mirrors after the primary write has
committed:

1. Recompute reconciliation for the affected user and the full
   due-payments ledger (fresh session, worker thread)
2. Due-payments tab: full replace
3. Record tab: incremental upsert of the changed user/form/payment
4. Allow-list: player fan-out, owner upsert, or swap

Every sink runs on its own, under a timeout and bounded retry. A sink
failure is logged and recorded in the PropagationOutcome; it never reaches
the request that triggered it and never rolls back the primary write.
"""
import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
import logging

from sqlalchemy.orm import Session

from ...config import PropagationConfig, get_config
from ...database import SessionLocal
from ...models.db_models import UserDB, FormDB, PaymentDB
from ...models.ledger import (
    DUE_PAYMENTS_HEADER,
    PropagationOutcome,
    PropagationTrigger,
    ReconciliationResult,
    SinkOutcome,
    TriggerType,
)
from ..reconciliation import DuePaymentsLedgerView, ReconciliationEngine, UserNotFoundError
from .allowlist import AllowListIdentity, DmzClient
from .records import (
    FORMS_HEADER, FORMS_SHEET, PAYMENTS_HEADER, PAYMENTS_SHEET, USERS_HEADER, USERS_SHEET,
    form_row, payment_row, user_row,
)
from .sheets import GoogleSheetsSink, SpreadsheetSink, data_range


logger = logging.getLogger(__name__)

DUE_PAYMENTS_SHEET = "Due Payments"

SINK_DUE_PAYMENTS = "sheets:due_payments"
SINK_RECORD = "sheets:record"
SINK_ALLOWLIST = "allowlist"
SINK_STORAGE = "storage"


class SinkError(Exception):
    """A sink reported failure without raising."""


@dataclass
class _RecordWork:
    sheet: str
    header: List[str]
    key: str
    row: List[str]


@dataclass
class _AllowListWork:
    identity: Optional[AllowListIdentity] = None
    previous_email: Optional[str] = None
    players: List[Dict[str, Any]] = field(default_factory=list)
    university: str = ""
    fan_out: bool = False


@dataclass
class _Snapshot:
    """Everything the sinks need, read in one pass from the store."""
    reconciliation: Optional[ReconciliationResult]
    due_rows: List[List[str]]
    record: Optional[_RecordWork]
    allowlist: Optional[_AllowListWork]


def _identity(user: UserDB) -> Optional[AllowListIdentity]:
    if not user.email:
        return None
    return AllowListIdentity(
        email=user.email,
        name=user.name or "",
        university=user.university_name or "",
        phone=user.phone or "",
    )


class PropagationDispatcher:
    """
    Best-effort, non-blocking downstream sync.

    Usage (inside a request handler, after commit):
        dispatcher.submit(PropagationTrigger(TriggerType.FORM_SAVED, user_id, form_id))

    Usage (CLI / tests):
        outcome = await dispatcher.run(trigger)
    """

    HISTORY_SIZE = 100

    def __init__(
        self,
        config: PropagationConfig,
        session_factory: Callable[[], Session],
        sheets: Optional[SpreadsheetSink] = None,
        allowlist: Optional[DmzClient] = None,
        history_size: int = HISTORY_SIZE,
    ):
        self.config = config
        self.session_factory = session_factory
        self.sheets = sheets
        self.allowlist = allowlist
        self._outcomes: Deque[PropagationOutcome] = deque(maxlen=history_size)
        self._tasks: Set[asyncio.Task] = set()
        # One writer at a time per spreadsheet; a full replace is clear + write
        self._sheet_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: PropagationConfig,
        session_factory: Callable[[], Session],
    ) -> "PropagationDispatcher":
        """Wire the real sinks that the configuration enables."""
        sheets = None
        if config.sheets_configured:
            sheets = GoogleSheetsSink(config.sheet_id, config.service_credential, timeout=config.sink_timeout_seconds)
        else:
            logger.warning("Google Sheets sync disabled: GOOGLE_SHEET_ID or credentials not configured")

        allowlist = None
        if config.allowlist_configured:
            allowlist = DmzClient(config.dmz_api_url, config.dmz_api_key, timeout=config.sink_timeout_seconds)
        else:
            logger.warning("DMZ sync disabled: DMZ_API_KEY not configured")

        return cls(config, session_factory, sheets=sheets, allowlist=allowlist)

    # -------------------------------------------------------------------------
    # Public interface
    # -------------------------------------------------------------------------

    @property
    def recent_outcomes(self) -> List[PropagationOutcome]:
        """Most recent outcomes, oldest first."""
        return list(self._outcomes)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, trigger: PropagationTrigger) -> asyncio.Task:
        """
        Start propagation in the background and return immediately.

        Must be called from a running event loop. The returned task always
        completes with a PropagationOutcome; it never raises.
        """
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_guarded(trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Propagation scheduled: {trigger.type.value} user={trigger.user_id} record={trigger.record_id}")
        return task

    async def drain(self) -> None:
        """Wait for every in-flight propagation to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, trigger: PropagationTrigger) -> PropagationOutcome:
        """Propagate one trigger inline. Failures are recorded, not raised."""
        outcome = PropagationOutcome(trigger=trigger, started_at=datetime.now(timezone.utc))

        if not self.config.sync_enabled:
            logger.info(f"Sync disabled; skipping propagation for {trigger.type.value}")
            outcome.skipped = True
            return self._finish(outcome)

        try:
            snapshot = await asyncio.to_thread(self._load_snapshot, trigger)
        except Exception as e:
            logger.error(
                f"Propagation aborted for {trigger.type.value} user={trigger.user_id}: "
                f"could not read store: {e}"
            )
            outcome.sinks.append(SinkOutcome(sink=SINK_STORAGE, success=False, error=str(e) or type(e).__name__))
            return self._finish(outcome)

        outcome.reconciliation = snapshot.reconciliation
        outcome.due_payment_count = len(snapshot.due_rows)

        context = f"trigger={trigger.type.value} user={trigger.user_id} record={trigger.record_id}"
        steps: List[Tuple[str, Callable[[], Awaitable[str]], bool]] = []

        if self.sheets is not None:
            steps.append((SINK_DUE_PAYMENTS, lambda: self._sync_due_payments(snapshot.due_rows), True))
            if snapshot.record is not None:
                steps.append((SINK_RECORD, lambda: self._sync_record(snapshot.record), True))

        if self.allowlist is not None and snapshot.allowlist is not None:
            steps.append((SINK_ALLOWLIST, lambda: self._sync_allowlist(snapshot.allowlist), False))

        results = await asyncio.gather(
            *(
                self._call_sheet_sink(name, step, context) if on_sheet else self._call_sink(name, step, context)
                for name, step, on_sheet in steps
            ),
            return_exceptions=True,
        )
        for (name, _, _), result in zip(steps, results):
            if isinstance(result, BaseException):
                logger.error(f"Propagation to {name} crashed ({context}): {result}")
                result = SinkOutcome(sink=name, success=False, error=str(result) or type(result).__name__)
            outcome.sinks.append(result)

        return self._finish(outcome)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run_guarded(self, trigger: PropagationTrigger) -> PropagationOutcome:
        try:
            return await self.run(trigger)
        except Exception as e:
            logger.exception(f"Background propagation failed for {trigger.type.value}: {e}")
            outcome = PropagationOutcome(trigger=trigger, started_at=datetime.now(timezone.utc))
            outcome.sinks.append(SinkOutcome(sink="dispatcher", success=False, error=str(e)))
            return self._finish(outcome)

    def _finish(self, outcome: PropagationOutcome) -> PropagationOutcome:
        outcome.completed_at = datetime.now(timezone.utc)
        self._outcomes.append(outcome)
        if outcome.errors:
            logger.error(
                f"Propagation {outcome.trigger.type.value} user={outcome.trigger.user_id} finished with "
                f"{len(outcome.errors)} failed sink(s): {[s.sink for s in outcome.errors]}"
            )
        else:
            logger.info(f"Propagation {outcome.trigger.type.value} user={outcome.trigger.user_id} complete")
        return outcome

    async def _call_sheet_sink(
        self,
        name: str,
        step: Callable[[], Awaitable[str]],
        context: str,
    ) -> SinkOutcome:
        """
        Sheet steps run one at a time, and never while a call from a
        timed-out attempt is still in flight: a late clear landing after
        the retry wrote its rows would empty the tab.
        """
        async with self._sheet_lock:
            return await self._call_sink(name, step, context, settle=self.sheets.settle)

    async def _call_sink(
        self,
        name: str,
        step: Callable[[], Awaitable[str]],
        context: str,
        settle: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> SinkOutcome:
        attempts = max(1, self.config.sink_retry_attempts)
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            if settle is not None:
                await settle()
            try:
                detail = await asyncio.wait_for(step(), timeout=self.config.sink_timeout_seconds)
                return SinkOutcome(sink=name, success=True, detail=detail, attempts=attempt)
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    delay = self.config.sink_retry_backoff_seconds * (2 ** (attempt - 1))
                    logger.warning(f"Sink {name} attempt {attempt} failed ({context}): {e!r}; retrying in {delay}s")
                    await asyncio.sleep(delay)

        error = str(last_error) or type(last_error).__name__
        logger.error(f"Sink {name} failed after {attempts} attempt(s) ({context}): {error}")
        return SinkOutcome(sink=name, success=False, error=error, attempts=attempts)

    def _load_snapshot(self, trigger: PropagationTrigger) -> _Snapshot:
        db = self.session_factory()
        try:
            reconciliation = None
            if trigger.user_id:
                engine = ReconciliationEngine(db, per_player_rate=self.config.per_player_rate)
                try:
                    reconciliation = engine.reconcile(trigger.user_id)
                except UserNotFoundError:
                    logger.warning(f"Propagation for unknown user {trigger.user_id}")

            ledger = DuePaymentsLedgerView(db, per_player_rate=self.config.per_player_rate, tz=self.config.timezone)
            due_rows = ledger.sheet_rows()

            return _Snapshot(
                reconciliation=reconciliation,
                due_rows=due_rows,
                record=self._record_work(db, trigger),
                allowlist=self._allowlist_work(db, trigger),
            )
        finally:
            db.close()

    def _record_work(self, db: Session, trigger: PropagationTrigger) -> Optional[_RecordWork]:
        if trigger.type in (TriggerType.FORM_SAVED, TriggerType.FORM_SUBMITTED) and trigger.record_id:
            form = db.get(FormDB, trigger.record_id)
            if form is None:
                return None
            return _RecordWork(FORMS_SHEET, FORMS_HEADER, form.id, form_row(form, form.owner))

        if trigger.type in (TriggerType.USER_UPDATED, TriggerType.USER_DELETED):
            user = db.get(UserDB, trigger.record_id or trigger.user_id)
            if user is None:
                return None
            return _RecordWork(USERS_SHEET, USERS_HEADER, user.id, user_row(user))

        if trigger.type == TriggerType.PAYMENT_VERIFIED and trigger.record_id:
            payment = db.get(PaymentDB, trigger.record_id)
            if payment is None:
                return None
            return _RecordWork(PAYMENTS_SHEET, PAYMENTS_HEADER, payment.id, payment_row(payment, payment.owner))

        return None

    def _allowlist_work(self, db: Session, trigger: PropagationTrigger) -> Optional[_AllowListWork]:
        if trigger.type == TriggerType.FORM_SUBMITTED and trigger.record_id:
            form = db.get(FormDB, trigger.record_id)
            if form is None:
                return None
            fields = form.fields if isinstance(form.fields, dict) else {}
            players = fields.get("playerFields")
            university = form.owner.university_name if form.owner else ""
            return _AllowListWork(
                players=[dict(p) for p in players if isinstance(p, dict)] if isinstance(players, list) else [],
                university=university or "",
                fan_out=True,
            )

        if trigger.type == TriggerType.PAYMENT_VERIFIED and trigger.user_id:
            user = db.get(UserDB, trigger.user_id)
            identity = _identity(user) if user else None
            return _AllowListWork(identity=identity) if identity else None

        if trigger.type == TriggerType.USER_UPDATED and trigger.user_id:
            user = db.get(UserDB, trigger.user_id)
            identity = _identity(user) if user else None
            if identity is None:
                return None
            # previous_email set: swap the old entry out; otherwise refresh in place
            return _AllowListWork(identity=identity, previous_email=trigger.previous_email)

        return None

    # -------------------------------------------------------------------------
    # Sink steps
    # -------------------------------------------------------------------------

    async def _sync_due_payments(self, rows: List[List[str]]) -> str:
        await self.sheets.ensure_sheet(DUE_PAYMENTS_SHEET, DUE_PAYMENTS_HEADER)
        await self.sheets.clear_rows(DUE_PAYMENTS_SHEET, data_range(DUE_PAYMENTS_SHEET, len(DUE_PAYMENTS_HEADER)))
        if rows:
            await self.sheets.write_rows(DUE_PAYMENTS_SHEET, rows)
        return f"Synced {len(rows)} due payment records"

    async def _sync_record(self, work: _RecordWork) -> str:
        await self.sheets.ensure_sheet(work.sheet, work.header)
        await self.sheets.upsert_row(work.sheet, work.key, work.row)
        return f"Upserted {work.key} into {work.sheet}"

    async def _sync_allowlist(self, work: _AllowListWork) -> str:
        if work.fan_out:
            report = await self.allowlist.sync_players(work.players, work.university)
            if report.failed:
                raise SinkError(f"{report.failed} of {report.total} players failed: {', '.join(report.failures)}")
            return f"Synced {report.synced} players ({report.skipped} skipped)"

        if work.previous_email:
            result = await self.allowlist.swap(work.previous_email, work.identity)
        else:
            result = await self.allowlist.upsert(work.identity)
        if not result.success:
            raise SinkError(result.error or "allow-list update failed")
        return result.message or "ok"


@lru_cache(maxsize=1)
def get_dispatcher() -> PropagationDispatcher:
    """FastAPI dependency: process-wide dispatcher built from the environment."""
    return PropagationDispatcher.from_config(get_config(), SessionLocal)
