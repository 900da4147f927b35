"""
SQLAlchemy models for the lender reply listener.

This package contains:
- Lender: lender directory (contact emails used for sender lookup)
- LenderSubmission: per-lender offer request updated from replies
- SmtpSetting: stored mailbox credentials, one row per application
"""

from lender_inbox.models.lender import Lender
from lender_inbox.models.lender_submission import LenderSubmission, SubmissionStatus
from lender_inbox.models.smtp_setting import SmtpSetting

__all__ = ["Lender", "LenderSubmission", "SubmissionStatus", "SmtpSetting"]
