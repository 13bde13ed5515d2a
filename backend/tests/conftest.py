"""
Shared fixtures: in-memory SQLite store, record factories, sink fakes
(spreadsheet and DMZ registry) and the API wired to all of them.
"""
import json
from types import SimpleNamespace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import httpx
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from regsync.auth import ALGORITHM, SECRET_KEY, get_current_user
from regsync.config import PropagationConfig, get_config
from regsync.database import Base, get_db
from regsync.main import app as main_app
from regsync.models.db_models import UserDB, FormDB, PaymentDB, FormStatus, PaymentStatus
from regsync.models.ledger import PropagationOutcome, PropagationTrigger, TriggerType
from regsync.services.propagation import get_dispatcher


# =============================================================================
# STORAGE
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory database shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return PropagationConfig(
        sheet_id="sheet-123",
        service_credential={"client_email": "svc@example.iam.gserviceaccount.com"},
        per_player_rate=800,
        sync_enabled=True,
        dmz_api_url="https://dmz.test/api/users",
        dmz_api_key="dmz-key",
        sink_timeout_seconds=2.0,
        sink_retry_attempts=1,
        sink_retry_backoff_seconds=0,
        internal_api_key="internal-test-key",
    )


# =============================================================================
# FACTORIES
# =============================================================================

def players(count: int, prefix: str = "player") -> List[Dict[str, str]]:
    return [
        {"name": f"{prefix} {i}", "email": f"{prefix}{i}@uni.test", "phone": f"98765{i:05d}"}
        for i in range(count)
    ]


def make_user(db, email: str = None, **kwargs) -> UserDB:
    user = UserDB(
        id=kwargs.pop("id", str(uuid4())),
        email=email or f"{uuid4().hex[:8]}@uni.test",
        name=kwargs.pop("name", "Test Captain"),
        university_name=kwargs.pop("university_name", "Ashoka University"),
        phone=kwargs.pop("phone", "9999999999"),
        **kwargs,
    )
    db.add(user)
    db.commit()
    return user


def make_form(db, user: UserDB, title: str, player_count: int, status: FormStatus = FormStatus.SUBMITTED, **fields) -> FormDB:
    bag = {"playerFields": players(player_count, prefix=title.lower())}
    bag.update(fields)
    form = FormDB(id=str(uuid4()), owner_id=user.id, title=title, status=status, fields=bag)
    db.add(form)
    db.commit()
    return form


def make_payment(
    db,
    user: Optional[UserDB],
    baseline: Optional[Dict[str, int]] = None,
    status: PaymentStatus = PaymentStatus.VERIFIED,
    transaction_id: str = "TXN-001",
    as_text: bool = False,
    raw: Any = None,
    verified_at: Optional[datetime] = None,
) -> PaymentDB:
    if raw is None and baseline is not None:
        raw = {"submittedForms": {title: {"Players": n} for title, n in baseline.items()}}
        if as_text:
            raw = json.dumps(raw)
    payment = PaymentDB(
        id=str(uuid4()),
        owner_id=user.id if user else None,
        status=status,
        transaction_id=transaction_id,
        payment_data=raw,
        verified_at=verified_at or (datetime.utcnow() if status == PaymentStatus.VERIFIED else None),
    )
    db.add(payment)
    db.commit()
    return payment


@pytest.fixture
def factories():
    """Factory helpers bundled for tests that prefer a fixture."""
    return SimpleNamespace(
        players=players,
        user=make_user,
        form=make_form,
        payment=make_payment,
        later=lambda minutes: datetime.utcnow() + timedelta(minutes=minutes),
    )


# =============================================================================
# SINK FAKES
# =============================================================================

class InMemorySpreadsheet:
    """SpreadsheetSink holding tabs as lists of rows (row 0 is the header)."""

    def __init__(self):
        self.tabs: Dict[str, List[List[Any]]] = {}
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None

    def _check(self, op: str):
        self.calls.append(op)
        if self.fail_with is not None:
            raise self.fail_with

    def data_rows(self, name: str) -> List[List[Any]]:
        return self.tabs.get(name, [])[1:]

    async def ensure_sheet(self, name: str, header: Sequence[str]) -> bool:
        self._check("ensure_sheet")
        if name in self.tabs:
            return False
        self.tabs[name] = [list(header)]
        return True

    async def clear_rows(self, name: str, cell_range: str) -> None:
        self._check("clear_rows")
        self.tabs[name] = self.tabs.get(name, [[]])[:1]

    async def write_rows(self, name: str, rows, start_cell: str = "A2") -> None:
        self._check("write_rows")
        self.tabs[name] = self.tabs[name][:1] + [list(r) for r in rows]

    async def upsert_row(self, name: str, key: str, row) -> None:
        self._check("upsert_row")
        tab = self.tabs[name]
        for index, existing in enumerate(tab[1:], start=1):
            if existing and existing[0] == key:
                tab[index] = list(row)
                return
        tab.append(list(row))

    async def settle(self) -> None:
        return None


@pytest.fixture
def sheet():
    return InMemorySpreadsheet()


class DmzServer:
    """httpx MockTransport handler emulating the DMZ user registry."""

    def __init__(self):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_emails = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content or b"{}")
        email = body.get("email")
        if email in self.fail_emails:
            return httpx.Response(500, json={"message": "registry unavailable"})
        if request.method == "POST":
            if email in self.users:
                return httpx.Response(409, json={"message": "User already exists"})
            self.users[email] = body
            return httpx.Response(201, json={"message": "created"})
        if request.method == "DELETE":
            if email not in self.users:
                return httpx.Response(404, json={"message": "not found"})
            del self.users[email]
            return httpx.Response(200, json={"message": "deleted"})
        return httpx.Response(405)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def dmz_server():
    return DmzServer()


# =============================================================================
# API
# =============================================================================

class RecordingDispatcher:
    """Stands in for the dispatcher: records triggers, runs nothing."""

    def __init__(self):
        self.triggers: List[PropagationTrigger] = []
        self.outcomes: List[PropagationOutcome] = []
        self.pending = 0

    @property
    def recent_outcomes(self) -> List[PropagationOutcome]:
        return list(self.outcomes)

    @property
    def trigger_types(self) -> List[TriggerType]:
        return [t.type for t in self.triggers]

    def submit(self, trigger: PropagationTrigger) -> None:
        self.triggers.append(trigger)

    async def run(self, trigger: PropagationTrigger) -> PropagationOutcome:
        self.triggers.append(trigger)
        now = datetime.now(timezone.utc)
        outcome = PropagationOutcome(trigger=trigger, started_at=now, completed_at=now, due_payment_count=0)
        self.outcomes.append(outcome)
        return outcome


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def app(session_factory, config, dispatcher):
    """The application wired to the test store, config and dispatcher."""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main_app.dependency_overrides[get_db] = override_get_db
    main_app.dependency_overrides[get_config] = lambda: config
    main_app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield main_app
    main_app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def login_as(app):
    """Authenticate subsequent requests as the given user, bypassing the token."""
    def _login(user: UserDB) -> None:
        user_id = user.id

        def current_user(db=Depends(get_db)):
            return db.get(UserDB, user_id)

        app.dependency_overrides[get_current_user] = current_user
    return _login


@pytest.fixture
def bearer():
    """Authorization header carrying a token as the front end would issue it."""
    def _bearer(user: UserDB, expires_in: timedelta = timedelta(hours=1)) -> Dict[str, str]:
        claims = {
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "exp": datetime.now(timezone.utc) + expires_in,
        }
        return {"Authorization": f"Bearer {jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)}"}
    return _bearer
