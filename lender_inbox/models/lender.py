"""
Lender model - the lender directory used to resolve reply senders.

Only the columns the listener reads are mapped here; the directory itself is
maintained by the web front end.
"""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from lender_inbox.database import Base


class Lender(Base):
    """A funding partner that receives submissions and replies by email."""
    __tablename__ = "lenders"

    id = Column(String(36), primary_key=True)
    name = Column(String(255))

    # Matched case-insensitively against the reply's envelope sender
    contact_email = Column(String(255), index=True)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f"<Lender(id={self.id}, contact_email={self.contact_email})>"
