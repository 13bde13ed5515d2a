"""
Registration Sync - SQLAlchemy ORM Models
Users, per-sport roster forms and payments
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Enum as SQLEnum, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class FormStatus(str, Enum):
    """Lifecycle of a roster submission."""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    """Payment review states. Only VERIFIED payments are reconciled."""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class UserDB(Base):
    """Registered applicant (or admin) account."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    university_name = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="user")

    email_verified = Column(Boolean, default=False)
    registration_done = Column(Boolean, default=False)
    payment_done = Column(Boolean, default=False)

    # Soft delete only - users are never removed
    deleted = Column(Boolean, default=False)
    deleted_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    forms = relationship("FormDB", back_populates="owner", cascade="all, delete-orphan")
    payments = relationship("PaymentDB", back_populates="owner", cascade="all, delete-orphan")


class FormDB(Base):
    """
    Per-sport roster submission.

    fields is a free-form bag:
        {"playerFields": [{"name": ..., "email": ..., "phone": ...}, ...],
         "coachFields": {...}}
    The length of playerFields is the current player count for the sport.
    """
    __tablename__ = "forms"
    __table_args__ = (
        UniqueConstraint("owner_id", "title", name="uq_forms_owner_title"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(100), nullable=False)  # Sport title, e.g. "Football"
    status = Column(SQLEnum(FormStatus), nullable=False, default=FormStatus.DRAFT)
    fields = Column(JSON, nullable=True, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("UserDB", back_populates="forms")


class PaymentDB(Base):
    """
    Payment record with the baseline snapshot frozen at verification.

    payment_data holds {"submittedForms": {<title>: {"Players": <int>}}}.
    Legacy rows store it as serialized JSON text instead of an object.
    """
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    transaction_id = Column(String(100), nullable=True)
    amount = Column(Integer, nullable=True)

    # Written once when the payment is verified, never mutated afterwards
    payment_data = Column(JSON, nullable=True)

    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("UserDB", back_populates="payments")
