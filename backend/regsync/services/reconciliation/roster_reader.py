"""
Roster Snapshot Reader

Reads a user's roster forms and extracts the live player count per sport.
"""
from typing import Any, Dict, List
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import FormDB


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """The document store could not be read. Fatal to the calling request."""


def player_count(fields: Any) -> int:
    """Number of entries in a form's playerFields list (0 when absent)."""
    if not isinstance(fields, dict):
        return 0
    players = fields.get("playerFields")
    if not isinstance(players, list):
        return 0
    return len(players)


class RosterSnapshotReader:
    """Read-only view over the forms owned by a user."""

    def __init__(self, db: Session):
        self.db = db

    def forms_for(self, user_id: str) -> List[FormDB]:
        """All forms owned by the user, oldest first."""
        try:
            return (
                self.db.query(FormDB)
                .filter(FormDB.owner_id == user_id)
                .order_by(FormDB.created_at, FormDB.title)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to read forms for user {user_id}: {e}")
            raise StorageError(f"Could not read forms for user {user_id}") from e

    def current_counts(self, user_id: str) -> Dict[str, int]:
        """Map of sport title -> current player count."""
        return {form.title: player_count(form.fields) for form in self.forms_for(user_id)}
