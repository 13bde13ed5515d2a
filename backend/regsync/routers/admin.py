"""
Registration Sync - Admin Router
Due-payments view and the admin mutations that feed the sync pipeline.

Every mutation commits first and returns; downstream propagation runs in
the background and its outcome never changes the response.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..config import PropagationConfig, get_config
from ..database import get_db
from ..models.db_models import UserDB, FormDB, PaymentDB, FormStatus, PaymentStatus
from ..models.ledger import PropagationTrigger, TriggerType
from ..services.propagation import PropagationDispatcher, get_dispatcher
from ..services.reconciliation import (
    DuePaymentsLedgerView,
    ReconciliationEngine,
    RosterSnapshotReader,
    StorageError,
    UserNotFoundError,
    build_baseline_snapshot,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class SportDeltaItem(BaseModel):
    """Per-sport change in a due-payment record."""
    form_id: str
    sport: str
    original_players: int
    current_players: int
    difference: int


class DuePaymentItem(BaseModel):
    """One outstanding balance."""
    id: str
    user_id: str
    user_name: str
    user_email: str
    university_name: str
    payment_id: str
    transaction_id: str
    original_player_count: int
    current_player_count: int
    player_difference: int
    amount_due: int
    status: str
    last_updated: str
    forms: List[SportDeltaItem]


class DuePaymentsResponse(BaseModel):
    success: bool = True
    data: List[DuePaymentItem]


class SubmittedFormInput(BaseModel):
    """Per-sport roster as edited from the admin user dialog."""
    title: Optional[str] = None
    status: FormStatus = FormStatus.DRAFT
    fields: Dict[str, Any] = Field(default_factory=dict)


class UserUpdateRequest(BaseModel):
    """Fields an admin may change on a user."""
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    university_name: Optional[str] = None
    email_verified: Optional[bool] = None
    registration_done: Optional[bool] = None
    payment_done: Optional[bool] = None
    submitted_forms: Optional[Dict[str, SubmittedFormInput]] = None


class RegistrationStatusRequest(BaseModel):
    """Soft delete (true) or restore (false)."""
    deleted: Optional[bool] = None


class FormStatusRequest(BaseModel):
    status: FormStatus


USER_SCALAR_FIELDS = (
    "name",
    "email",
    "phone",
    "university_name",
    "email_verified",
    "registration_done",
    "payment_done",
)


# =============================================================================
# HELPERS
# =============================================================================

def _user_dict(user: UserDB) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "university_name": user.university_name,
        "email_verified": bool(user.email_verified),
        "registration_done": bool(user.registration_done),
        "payment_done": bool(user.payment_done),
        "deleted": bool(user.deleted),
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


def _form_dict(form: FormDB) -> Dict[str, Any]:
    return {
        "id": form.id,
        "owner_id": form.owner_id,
        "title": form.title,
        "status": form.status.value if isinstance(form.status, FormStatus) else form.status,
        "fields": form.fields or {},
    }


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to persist {what}: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to update {what}")


def _get_or_404(db: Session, model, record_id: str, label: str):
    try:
        record = db.query(model).filter(model.id == record_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Failed to read {label} {record_id}: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to fetch {label}")
    if record is None:
        raise HTTPException(status_code=404, detail=f"{label.capitalize()} not found")
    return record


# =============================================================================
# DUE PAYMENTS
# =============================================================================

@router.get("/due-payments", response_model=DuePaymentsResponse)
async def list_due_payments(
    db: Session = Depends(get_db),
    config: PropagationConfig = Depends(get_config),
    _: UserDB = Depends(require_admin),
):
    """All users whose current rosters exceed what their verified payment covered."""
    ledger = DuePaymentsLedgerView(db, per_player_rate=config.per_player_rate, tz=config.timezone)
    try:
        rows = ledger.all_due_payments()
    except StorageError as e:
        logger.error(f"Error fetching due payments: {e}")
        raise HTTPException(status_code=503, detail="Failed to fetch due payments")

    return {"success": True, "data": [row.to_dict() for row in rows]}


@router.get("/users/{user_id}/reconciliation", response_model=dict)
async def get_user_reconciliation(
    user_id: str,
    db: Session = Depends(get_db),
    config: PropagationConfig = Depends(get_config),
    _: UserDB = Depends(require_admin),
):
    """Reconciliation for one user; data is null when they have no verified payment."""
    engine = ReconciliationEngine(db, per_player_rate=config.per_player_rate)
    try:
        result = engine.reconcile(user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found")
    except StorageError as e:
        logger.error(f"Error reconciling user {user_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to reconcile user")

    return {"success": True, "data": result.to_dict() if result else None}


# =============================================================================
# USER / REGISTRATION MUTATIONS
# =============================================================================

@router.patch("/users/{user_id}", response_model=dict)
async def update_user(
    user_id: str,
    request: UserUpdateRequest,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: UserDB = Depends(require_admin),
):
    """
    Update a user and, optionally, their per-sport rosters.

    submitted_forms upserts one form per sport (matched on title).
    """
    user = _get_or_404(db, UserDB, user_id, "user")
    previous_email = user.email
    previous_university = user.university_name

    changes = request.model_dump(exclude_unset=True)

    new_email = changes.get("email")
    if new_email and new_email != user.email:
        clash = db.query(UserDB).filter(UserDB.email == new_email, UserDB.id != user.id).first()
        if clash is not None:
            raise HTTPException(status_code=409, detail="Email already in use")

    for field_name in USER_SCALAR_FIELDS:
        if field_name == "email" and changes.get("email") is None:
            continue
        if field_name in changes:
            setattr(user, field_name, changes[field_name])
    user.updated_at = datetime.utcnow()

    touched_forms: List[FormDB] = []
    for sport_key, sport in (request.submitted_forms or {}).items():
        title = sport.title or sport_key
        form = db.query(FormDB).filter(FormDB.owner_id == user.id, FormDB.title == title).first()
        if form is None:
            form = FormDB(id=str(uuid4()), owner_id=user.id, title=title, created_at=datetime.utcnow())
            db.add(form)
        form.status = sport.status
        form.fields = sport.fields
        form.updated_at = datetime.utcnow()
        touched_forms.append(form)

    _commit(db, "user")
    logger.info(f"Admin updated user {user.id} ({len(touched_forms)} forms)")

    identity_changed = user.email != previous_email or user.university_name != previous_university
    dispatcher.submit(PropagationTrigger(
        type=TriggerType.USER_UPDATED,
        user_id=user.id,
        record_id=user.id,
        previous_email=previous_email if identity_changed else None,
    ))
    for form in touched_forms:
        dispatcher.submit(PropagationTrigger(
            type=TriggerType.FORM_SAVED,
            user_id=user.id,
            record_id=form.id,
        ))

    return {"success": True, "data": _user_dict(user)}


@router.patch("/registrations/{user_id}", response_model=dict)
async def set_registration_deleted(
    user_id: str,
    request: RegistrationStatusRequest,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: UserDB = Depends(require_admin),
):
    """Soft delete or restore a registration."""
    if request.deleted is None:
        raise HTTPException(status_code=400, detail="Invalid request")

    user = _get_or_404(db, UserDB, user_id, "user")
    user.deleted = request.deleted
    user.deleted_at = datetime.utcnow() if request.deleted else None
    _commit(db, "user")

    dispatcher.submit(PropagationTrigger(
        type=TriggerType.USER_DELETED,
        user_id=user.id,
        record_id=user.id,
    ))

    return {
        "success": True,
        "message": "User deleted successfully" if request.deleted else "User restored successfully",
    }


# =============================================================================
# FORM / PAYMENT REVIEW
# =============================================================================

@router.patch("/forms/{form_id}/status", response_model=dict)
async def set_form_status(
    form_id: str,
    request: FormStatusRequest,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: UserDB = Depends(require_admin),
):
    """Review a roster: draft, submitted, confirmed or rejected."""
    form = _get_or_404(db, FormDB, form_id, "form")
    form.status = request.status
    form.updated_at = datetime.utcnow()
    _commit(db, "form")

    trigger_type = (
        TriggerType.FORM_SUBMITTED
        if request.status in (FormStatus.SUBMITTED, FormStatus.CONFIRMED)
        else TriggerType.FORM_SAVED
    )
    dispatcher.submit(PropagationTrigger(type=trigger_type, user_id=form.owner_id, record_id=form.id))

    return {"success": True, "data": _form_dict(form)}


@router.post("/payments/{payment_id}/verify", response_model=dict)
async def verify_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    _: UserDB = Depends(require_admin),
):
    """
    Mark a payment verified and freeze its baseline snapshot.

    A snapshot captured when the payment was submitted is kept as-is;
    otherwise the owner's current rosters become the baseline.
    """
    payment = _get_or_404(db, PaymentDB, payment_id, "payment")
    if payment.status == PaymentStatus.VERIFIED:
        raise HTTPException(status_code=409, detail="Payment already verified")
    if not payment.owner_id:
        raise HTTPException(status_code=400, detail="Payment has no owner")

    owner = _get_or_404(db, UserDB, payment.owner_id, "user")

    if payment.payment_data is None:
        try:
            forms = RosterSnapshotReader(db).forms_for(owner.id)
        except StorageError as e:
            logger.error(f"Error capturing baseline for payment {payment.id}: {e}")
            raise HTTPException(status_code=503, detail="Failed to verify payment")
        payment.payment_data = build_baseline_snapshot(forms)

    payment.status = PaymentStatus.VERIFIED
    payment.verified_at = datetime.utcnow()
    owner.payment_done = True
    _commit(db, "payment")
    logger.info(f"Payment {payment.id} verified for user {owner.id}")

    dispatcher.submit(PropagationTrigger(
        type=TriggerType.PAYMENT_VERIFIED,
        user_id=owner.id,
        record_id=payment.id,
    ))

    return {
        "success": True,
        "data": {
            "id": payment.id,
            "owner_id": payment.owner_id,
            "status": payment.status.value,
            "transaction_id": payment.transaction_id,
            "verified_at": payment.verified_at.isoformat(),
        },
    }
