"""
Mailbox Session
===============
Connection lifecycle and message loop for one mailbox.

DISCONNECTED → CONNECTED → INBOX_OPEN → SEARCHING
    → (FETCHING → PIPELINE → MARKING_SEEN) per message
    → CLOSING → DISCONNECTED

Every message returned by the search is flagged \\Seen exactly once per run,
whatever happened to it, and one failing message never stops the loop.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from lender_inbox.errors import MailboxConnectionError
from lender_inbox.services.db_service import SubmissionStore
from lender_inbox.services.email_pipeline import (
    ProcessingOutcome,
    ProcessingStatus,
    run_pipeline,
)
from lender_inbox.services.imap_client import (
    DEFAULT_FOLDER,
    ClientFactory,
    MailboxClient,
    MailboxConfig,
)
from lender_inbox.services.submission_updater import DEFAULT_BODY_MAX_CHARS

logger = logging.getLogger(__name__)

SKIP_NO_MESSAGE = "no message"


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    INBOX_OPEN = "inbox_open"
    SEARCHING = "searching"
    FETCHING = "fetching"
    PIPELINE = "pipeline"
    MARKING_SEEN = "marking_seen"
    CLOSING = "closing"


@dataclass
class MailboxRunSummary:
    """Per-mailbox result of one search-and-process cycle."""
    mailbox: str
    found: int = 0
    outcomes: List[ProcessingOutcome] = field(default_factory=list)
    error: Optional[str] = None
    finished_at: Optional[datetime] = None

    def _count(self, status: ProcessingStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def processed(self) -> int:
        return self._count(ProcessingStatus.PROCESSED)

    @property
    def skipped(self) -> int:
        return self._count(ProcessingStatus.SKIPPED)

    @property
    def errored(self) -> int:
        return self._count(ProcessingStatus.ERRORED)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "mailbox": self.mailbox,
            "found": self.found,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errored,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }
        if self.error:
            data["error"] = self.error
        return data


class MailboxSession:
    """
    Drives one mailbox connection through a processing run.

    Usage:
        session = MailboxSession(config, imap_tools_factory, store)
        summary = session.run(since)
    """

    def __init__(
        self,
        config: MailboxConfig,
        client_factory: ClientFactory,
        store: SubmissionStore,
        folder: str = DEFAULT_FOLDER,
        quote_boundary: bool = True,
        max_chars: int = DEFAULT_BODY_MAX_CHARS,
    ):
        self.config = config
        self.store = store
        self.folder = folder
        self.quote_boundary = quote_boundary
        self.max_chars = max_chars

        self._client_factory = client_factory
        self._client: Optional[MailboxClient] = None
        self.state = SessionState.DISCONNECTED

    @property
    def label(self) -> str:
        return self.config.label

    def connect(self) -> None:
        """
        Connect, log in and open the inbox.

        Raises:
            MailboxConnectionError: Any step failed (the session is closed again)
        """
        self._client = self._client_factory(self.config)
        try:
            self._client.connect()
            self.state = SessionState.CONNECTED
            self._client.open_inbox(self.folder)
            self.state = SessionState.INBOX_OPEN
        except MailboxConnectionError:
            self.close()
            raise
        logger.info(f"{self.folder} opened: {self.label}")

    def process_unseen(self, since: datetime) -> MailboxRunSummary:
        """
        Search unseen messages since the cutoff and process each one.

        Raises:
            MailboxConnectionError: The session is not open
            MailboxProtocolError: The search itself failed
        """
        if self._client is None or self.state == SessionState.DISCONNECTED:
            raise MailboxConnectionError(f"{self.label} is not connected")

        summary = MailboxRunSummary(mailbox=self.label)

        self.state = SessionState.SEARCHING
        uids = self._client.search_unseen_since(since)
        summary.found = len(uids)
        if uids:
            logger.info(f"📬 Found {len(uids)} unseen message(s) in {self.label}")

        for uid in uids:
            if self._client is None:
                raise MailboxConnectionError(f"{self.label} was closed during processing")
            outcome = self._process_message(uid)
            summary.outcomes.append(outcome)
            _log_outcome(self.label, outcome)

        self.state = SessionState.INBOX_OPEN
        summary.finished_at = datetime.now(timezone.utc)
        return summary

    def _process_message(self, uid: str) -> ProcessingOutcome:
        outcome = ProcessingOutcome(uid=uid, status=ProcessingStatus.ERRORED, reason="not processed")
        try:
            self.state = SessionState.FETCHING
            message = self._client.fetch(uid)
            if message is None:
                outcome = ProcessingOutcome(uid=uid, status=ProcessingStatus.SKIPPED, reason=SKIP_NO_MESSAGE)
            else:
                self.state = SessionState.PIPELINE
                outcome = run_pipeline(
                    message,
                    self.store,
                    quote_boundary=self.quote_boundary,
                    max_chars=self.max_chars,
                    mailbox_applications=self.config.application_ids,
                )
        except Exception as e:
            # One bad message must not abort the batch
            logger.warning(f"UID {uid} on {self.label}: fetch/process failed: {e}", exc_info=True)
            outcome = ProcessingOutcome(uid=uid, status=ProcessingStatus.ERRORED, reason=str(e))
        finally:
            self._mark_seen(uid)
        return outcome

    def _mark_seen(self, uid: str) -> None:
        self.state = SessionState.MARKING_SEEN
        try:
            self._client.mark_seen(uid)
        except Exception as e:
            logger.warning(f"Could not flag UID {uid} as seen on {self.label}: {e}")

    def supports_idle(self) -> bool:
        return self._client is not None and self._client.supports_idle()

    def wait_for_new_mail(self, timeout: float) -> bool:
        """Block on the server's new-mail notification (daemon mode)."""
        if self._client is None:
            raise MailboxConnectionError(f"{self.label} is not connected")
        return self._client.wait_for_new_mail(timeout)

    def close(self) -> None:
        """Log out; teardown failures are ignored because the session is over."""
        if self._client is not None:
            self.state = SessionState.CLOSING
            client, self._client = self._client, None
            try:
                client.logout()
            except Exception as e:
                logger.debug(f"Logout from {self.label} failed: {e}")
        self.state = SessionState.DISCONNECTED

    def run(self, since: datetime) -> MailboxRunSummary:
        """
        One complete batch run: connect, process, disconnect.

        Connection and search failures become the summary's error instead of
        raising, so the caller can move on to the next mailbox.
        """
        try:
            self.connect()
            return self.process_unseen(since)
        except Exception as e:
            logger.warning(f"Mailbox {self.label} failed: {e}")
            return MailboxRunSummary(
                mailbox=self.label,
                error=str(e),
                finished_at=datetime.now(timezone.utc),
            )
        finally:
            self.close()


def _log_outcome(label: str, outcome: ProcessingOutcome) -> None:
    if outcome.status == ProcessingStatus.PROCESSED:
        logger.info(
            f"✅ Reply captured on {label} | UID {outcome.uid} "
            f"app={outcome.application_id} lender={outcome.lender_id}"
        )
    elif outcome.status == ProcessingStatus.SKIPPED:
        logger.info(f"Skipped UID {outcome.uid} on {label}: {outcome.reason}")
    else:
        logger.warning(f"❌ UID {outcome.uid} on {label} errored: {outcome.reason}")
