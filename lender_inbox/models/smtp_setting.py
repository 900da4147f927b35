"""
SmtpSetting model - stored mailbox credentials, one row per application.

The same credentials serve the outbound SMTP path and the inbound IMAP
listener. Several applications may share one physical mailbox.
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from lender_inbox.database import Base


class SmtpSetting(Base):
    """Per-application mailbox credentials (read-only for the listener)."""
    __tablename__ = "smtp_settings"

    id = Column(Integer, primary_key=True)
    application_id = Column(String(36), unique=True, nullable=False, index=True)

    host = Column(String(255))
    port = Column(Integer)
    username = Column(String(255))
    password = Column(String(512))

    from_email = Column(String(255))
    from_name = Column(String(255))

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        # Never include the password
        return f"<SmtpSetting(application_id={self.application_id}, username={self.username}, host={self.host})>"
