"""
Roster Form Routes

Applicant-side roster edits. Saving and submitting a roster commit the
form and hand the change to the propagation dispatcher.
"""
from datetime import datetime
from typing import Any, Dict
from uuid import uuid4
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models.db_models import UserDB, FormDB, FormStatus
from ..models.ledger import PropagationTrigger, TriggerType
from ..services.propagation import PropagationDispatcher, get_dispatcher
from ..services.reconciliation import player_count

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/forms", tags=["forms"])

# Confirmed and rejected rosters are closed to applicant edits
LOCKED_STATUSES = (FormStatus.CONFIRMED, FormStatus.REJECTED)


class FormSaveRequest(BaseModel):
    """Roster field bag: playerFields list plus optional coachFields."""
    fields: Dict[str, Any] = Field(default_factory=dict)


def _commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save form: {e}")
        raise HTTPException(status_code=503, detail="Failed to save form")


def _find_form(db: Session, owner_id: str, title: str):
    return db.query(FormDB).filter(FormDB.owner_id == owner_id, FormDB.title == title).first()


@router.put("/{title}", response_model=dict)
async def save_form(
    title: str,
    request: FormSaveRequest,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    current_user: UserDB = Depends(get_current_user),
):
    """Create or update the current user's roster for a sport."""
    form = _find_form(db, current_user.id, title)
    if form is None:
        form = FormDB(
            id=str(uuid4()),
            owner_id=current_user.id,
            title=title,
            status=FormStatus.DRAFT,
            created_at=datetime.utcnow(),
        )
        db.add(form)
    elif form.status in LOCKED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Form is {form.status.value} and can no longer be edited")

    form.fields = request.fields
    form.updated_at = datetime.utcnow()
    _commit(db)

    dispatcher.submit(PropagationTrigger(
        type=TriggerType.FORM_SAVED,
        user_id=current_user.id,
        record_id=form.id,
    ))

    return {
        "success": True,
        "data": {
            "id": form.id,
            "title": form.title,
            "status": form.status.value,
            "players": player_count(form.fields),
        },
    }


@router.post("/{title}/submit", response_model=dict)
async def submit_form(
    title: str,
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    current_user: UserDB = Depends(get_current_user),
):
    """Submit a roster for review; its players are pushed to the allow-list."""
    form = _find_form(db, current_user.id, title)
    if form is None:
        raise HTTPException(status_code=404, detail="Form not found")
    if form.status in LOCKED_STATUSES:
        raise HTTPException(status_code=409, detail=f"Form is {form.status.value} and can no longer be submitted")

    form.status = FormStatus.SUBMITTED
    form.updated_at = datetime.utcnow()
    _commit(db)
    logger.info(f"User {current_user.id} submitted {title} roster ({player_count(form.fields)} players)")

    dispatcher.submit(PropagationTrigger(
        type=TriggerType.FORM_SUBMITTED,
        user_id=current_user.id,
        record_id=form.id,
    ))

    return {"success": True, "data": {"id": form.id, "title": form.title, "status": form.status.value}}


@router.post("/complete-registration", response_model=dict)
async def complete_registration(
    db: Session = Depends(get_db),
    dispatcher: PropagationDispatcher = Depends(get_dispatcher),
    current_user: UserDB = Depends(get_current_user),
):
    """Mark the current user's registration as complete."""
    current_user.registration_done = True
    current_user.updated_at = datetime.utcnow()
    _commit(db)

    dispatcher.submit(PropagationTrigger(
        type=TriggerType.USER_UPDATED,
        user_id=current_user.id,
        record_id=current_user.id,
    ))

    return {"success": True, "message": "Registration completed successfully"}
