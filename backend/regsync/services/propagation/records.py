"""
Record tab layouts for the incremental sheet sync.

Each tab is keyed on the record id in column A so a single changed record
can be upserted without touching unrelated rows.
"""
from datetime import datetime
from typing import Any, List, Optional

from ...models.db_models import UserDB, FormDB, PaymentDB
from ..reconciliation.baseline_resolver import parse_baseline_snapshot
from ..reconciliation.roster_reader import player_count


USERS_SHEET = "Users"
FORMS_SHEET = "Forms"
PAYMENTS_SHEET = "Payments"

USERS_HEADER = [
    "User ID", "Name", "Email", "Phone", "University",
    "Email Verified", "Registration Done", "Payment Done", "Deleted", "Updated At",
]

FORMS_HEADER = [
    "Form ID", "Owner ID", "Owner Email", "University", "Sport",
    "Status", "Players", "Coach", "Updated At",
]

PAYMENTS_HEADER = [
    "Payment ID", "Owner ID", "Owner Email", "Transaction ID", "Amount",
    "Status", "Verified At", "Sports Paid For",
]


def _fmt_bool(value: Optional[bool]) -> str:
    return "Yes" if value else "No"


def _fmt_dt(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def user_row(user: UserDB) -> List[str]:
    return [
        user.id,
        _text(user.name),
        _text(user.email),
        _text(user.phone),
        _text(user.university_name),
        _fmt_bool(user.email_verified),
        _fmt_bool(user.registration_done),
        _fmt_bool(user.payment_done),
        _fmt_bool(user.deleted),
        _fmt_dt(user.updated_at),
    ]


def form_row(form: FormDB, owner: Optional[UserDB] = None) -> List[str]:
    fields = form.fields if isinstance(form.fields, dict) else {}
    coach = fields.get("coachFields")
    coach_name = coach.get("name") if isinstance(coach, dict) else None
    return [
        form.id,
        _text(form.owner_id),
        _text(owner.email if owner else None),
        _text(owner.university_name if owner else None),
        _text(form.title),
        _text(getattr(form.status, "value", form.status)),
        str(player_count(form.fields)),
        _text(coach_name),
        _fmt_dt(form.updated_at),
    ]


def payment_row(payment: PaymentDB, owner: Optional[UserDB] = None) -> List[str]:
    paid_for = parse_baseline_snapshot(payment.payment_data)
    return [
        payment.id,
        _text(payment.owner_id),
        _text(owner.email if owner else None),
        _text(payment.transaction_id),
        _text(payment.amount),
        _text(getattr(payment.status, "value", payment.status)),
        _fmt_dt(payment.verified_at),
        ", ".join(f"{title} ({count})" for title, count in sorted(paid_for.items())),
    ]
