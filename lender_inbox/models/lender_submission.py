"""
LenderSubmission model - one application's offer request sent to one lender.

The listener never creates or deletes these rows. It only moves a row to
"responded" and records the offer terms parsed out of the lender's reply.
"""

from sqlalchemy import (
    Column, Integer, String, Text, Numeric, DateTime, UniqueConstraint, Index
)
from sqlalchemy.sql import func
from lender_inbox.database import Base
import enum


class SubmissionStatus(str, enum.Enum):
    """Lifecycle of a submission."""
    PENDING = "pending"
    SENT = "sent"
    RESPONDED = "responded"
    APPROVED = "approved"
    REJECTED = "rejected"


class LenderSubmission(Base):
    """
    Offer request tracked per (application, lender) pair.
    """
    __tablename__ = "lender_submissions"

    id = Column(Integer, primary_key=True)

    # ============ IDENTITY ============
    application_id = Column(String(36), nullable=False, index=True)
    lender_id = Column(String(36), nullable=False, index=True)

    # ============ STATUS ============
    status = Column(String(20), default=SubmissionStatus.PENDING.value, index=True)

    # ============ LENDER REPLY ============
    response = Column(Text)  # Normalized reply body, truncated
    offered_amount = Column(Numeric(14, 2))  # e.g. 150000.00
    factor_rate = Column(Numeric(8, 4))  # e.g. 1.3000
    terms = Column(String(64))  # e.g. "12 months"
    response_date = Column(DateTime)

    # Mail provider's Message-ID, kept for dedupe and threading
    provider_message_id = Column(String(512))

    # ============ INTERNAL TRACKING ============
    created_at = Column(DateTime, server_default=func.now())
    last_updated = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("application_id", "lender_id", name="uq_submission_app_lender"),
        Index("ix_submissions_app_status", "application_id", "status"),
    )

    def __repr__(self):
        return (
            f"<LenderSubmission(id={self.id}, application_id={self.application_id}, "
            f"lender_id={self.lender_id}, status={self.status})>"
        )

    def to_dict(self) -> dict:
        """Return the fields the listener reads and writes."""
        return {
            "id": self.id,
            "application_id": self.application_id,
            "lender_id": self.lender_id,
            "status": self.status,
            "response": self.response,
            "offered_amount": self.offered_amount,
            "factor_rate": self.factor_rate,
            "terms": self.terms,
            "response_date": self.response_date.isoformat() if self.response_date else None,
            "provider_message_id": self.provider_message_id,
        }
