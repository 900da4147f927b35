"""
Database service layer for the reply listener.

This module is the narrow contract the listener has with the backing store:
- list_mailbox_credentials: stored per-application mailbox rows
- find_lender_ids_by_email / find_lender_emails: lender directory lookups
- find_submissions_for_application / update_submission: submission rows

Every call runs in its own short session, so mailbox threads can share one
SubmissionStore without sharing a Session.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lender_inbox.database import SessionLocal
from lender_inbox.errors import StoreError
from lender_inbox.models.lender import Lender
from lender_inbox.models.lender_submission import LenderSubmission
from lender_inbox.models.smtp_setting import SmtpSetting

logger = logging.getLogger(__name__)

# Columns the listener is allowed to write
UPDATABLE_COLUMNS = frozenset({
    "status",
    "response",
    "offered_amount",
    "factor_rate",
    "terms",
    "response_date",
    "provider_message_id",
})


class SubmissionStore:
    """
    Read/update access to lenders, submissions and mailbox credentials.

    Usage:
        store = SubmissionStore(SessionLocal)
        lender_ids = store.find_lender_ids_by_email("offers@lender.com")
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @contextmanager
    def _session(self, action: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreError(f"{action} failed: {e}") from e
        finally:
            db.close()

    # ============ MAILBOX CONFIGURATION ============

    def list_mailbox_credentials(self) -> List[Dict[str, Any]]:
        """All stored credential rows as plain dicts."""
        with self._session("read smtp_settings") as db:
            rows = db.query(SmtpSetting).order_by(SmtpSetting.id).all()
            return [
                {
                    "application_id": r.application_id,
                    "host": r.host,
                    "port": r.port,
                    "username": r.username,
                    "password": r.password,
                }
                for r in rows
            ]

    # ============ LENDER DIRECTORY ============

    def find_lender_ids_by_email(self, email: str) -> List[str]:
        """Lender ids whose contact email matches, ignoring case."""
        if not email:
            return []
        with self._session("lookup lender by email") as db:
            rows = db.query(Lender.id).filter(
                func.lower(Lender.contact_email) == email.strip().lower()
            ).all()
            return [r[0] for r in rows]

    def find_lender_emails(self, lender_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Contact email per lender id (unknown ids are left out)."""
        ids = [i for i in lender_ids if i]
        if not ids:
            return {}
        with self._session("lookup lender emails") as db:
            rows = db.query(Lender.id, Lender.contact_email).filter(
                func.lower(Lender.id).in_([i.lower() for i in ids])
            ).all()
            return {r[0]: r[1] for r in rows}

    # ============ SUBMISSIONS ============

    def find_submissions_for_application(self, application_id: str) -> List[Dict[str, Any]]:
        """Submissions (id, lender_id, status) for one application."""
        with self._session("read lender_submissions") as db:
            rows = db.query(
                LenderSubmission.id,
                LenderSubmission.lender_id,
                LenderSubmission.status,
            ).filter(
                func.lower(LenderSubmission.application_id) == application_id.lower()
            ).order_by(LenderSubmission.id).all()
            return [
                {"id": r.id, "lender_id": r.lender_id, "status": r.status}
                for r in rows
            ]

    def update_submission(self, submission_id: int, values: Dict[str, Any]) -> bool:
        """
        Update one submission row by id.

        Only UPDATABLE_COLUMNS may be written. Returns False when the row does
        not exist (rows are never created here).
        """
        unknown = set(values) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not writable by the listener: {sorted(unknown)}")

        with self._session("update lender_submissions") as db:
            submission = db.query(LenderSubmission).filter(
                LenderSubmission.id == submission_id
            ).first()
            if submission is None:
                return False

            for column, value in values.items():
                setattr(submission, column, value)

            db.commit()
            logger.debug("Updated submission %s: %s", submission_id, sorted(values))
            return True

    def get_submission(self, submission_id: int) -> Optional[Dict[str, Any]]:
        """Full row as a dict (used by the HTTP glue and tests)."""
        with self._session("read lender_submissions") as db:
            submission = db.query(LenderSubmission).filter(
                LenderSubmission.id == submission_id
            ).first()
            return submission.to_dict() if submission else None


def get_store() -> SubmissionStore:
    """FastAPI dependency returning a store bound to the app's engine."""
    return SubmissionStore(SessionLocal)
