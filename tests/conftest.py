"""
Shared fixtures: an in-memory SQLite store seeded with one lender, one sent
submission and the mailbox credentials for its application.
"""

import os

# database.py builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["IMAP_DAEMON_ENABLED"] = "false"

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from lender_inbox.config import Settings
from lender_inbox.database import build_engine, create_tables
from lender_inbox.models import Lender, LenderSubmission, SmtpSetting, SubmissionStatus
from lender_inbox.services.db_service import SubmissionStore

APPLICATION_ID = "3fa85f64-5717-4562-b3fc-2c963f66afa6"
SECOND_APPLICATION_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
LENDER_ID = "9b2c1e44-0d3a-4c55-8f1e-7a6b5c4d3e2f"
LENDER_EMAIL = "offers@acmefunding.com"

MAILBOX_HOST = "imap.broker.example"
MAILBOX_USER = "apps@broker.example"

RECEIVED_AT = datetime(2026, 10, 16, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def store(session_factory):
    return SubmissionStore(session_factory)


@pytest.fixture
def seeded(session_factory):
    """Lender + submission in "sent" state + mailbox credentials. Returns the submission id."""
    db = session_factory()
    try:
        db.add(Lender(id=LENDER_ID, name="Acme Funding", contact_email=LENDER_EMAIL))
        submission = LenderSubmission(
            application_id=APPLICATION_ID,
            lender_id=LENDER_ID,
            status=SubmissionStatus.SENT.value,
        )
        db.add(submission)
        db.add(SmtpSetting(
            application_id=APPLICATION_ID,
            host=MAILBOX_HOST,
            port=993,
            username=MAILBOX_USER,
            password="app-password",
        ))
        db.commit()
        return submission.id
    finally:
        db.close()


@pytest.fixture
def settings():
    """Settings with short timings for daemon tests."""
    return Settings(
        database_url="sqlite://",
        backoff_initial_seconds=0.01,
        backoff_max_seconds=0.05,
        idle_timeout_seconds=0.05,
    )
