"""
Reply Listener
==============
Loads the mailbox set from stored credentials and drives one MailboxSession
per distinct mailbox.

Two modes:
- run_once: sequential batch over every mailbox, returns a RunSummary
- ListenerDaemon: one worker thread per mailbox that stays connected, waits
  on IDLE (or polls), re-runs the unseen search on every wake-up and
  reconnects with capped exponential backoff (tenacity)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, wait_exponential

from lender_inbox.config import Settings, get_settings
from lender_inbox.errors import ReplyIngestError
from lender_inbox.services.db_service import SubmissionStore
from lender_inbox.services.imap_client import (
    DEFAULT_IMAP_PORT,
    ClientFactory,
    MailboxConfig,
    imap_tools_factory,
)
from lender_inbox.services.mailbox_session import MailboxRunSummary, MailboxSession

logger = logging.getLogger(__name__)


# ============ MAILBOX SET ============

def group_mailboxes(rows: Iterable[Dict[str, Any]], default_port: int = DEFAULT_IMAP_PORT) -> List[MailboxConfig]:
    """
    Collapse credential rows into distinct mailboxes.

    Rows sharing (host, username), compared case-insensitively, are one
    mailbox; their application ids are merged. Rows missing host, username
    or password are ignored. The first row seen supplies port and password.
    """
    grouped: Dict[tuple, Dict[str, Any]] = {}

    for row in rows:
        host = (row.get("host") or "").strip()
        username = (row.get("username") or "").strip()
        password = row.get("password") or ""
        if not host or not username or not password:
            logger.debug(f"Ignoring incomplete mailbox row for application {row.get('application_id')}")
            continue

        key = (host.lower(), username.lower())
        entry = grouped.get(key)
        if entry is None:
            entry = grouped[key] = {
                "host": host,
                "username": username,
                "password": password,
                "port": int(row.get("port") or default_port),
                "application_ids": set(),
            }
        if row.get("application_id"):
            entry["application_ids"].add(str(row["application_id"]).lower())

    return [
        MailboxConfig(
            host=e["host"],
            username=e["username"],
            password=e["password"],
            port=e["port"],
            application_ids=frozenset(e["application_ids"]),
        )
        for e in grouped.values()
    ]


def load_mailboxes(store: SubmissionStore, default_port: int = DEFAULT_IMAP_PORT) -> List[MailboxConfig]:
    """Distinct mailboxes from the stored credentials (read fresh every call)."""
    return group_mailboxes(store.list_mailbox_credentials(), default_port)


# ============ BATCH MODE ============

@dataclass
class RunSummary:
    """Aggregate result of one orchestration run."""
    mailboxes: List[MailboxRunSummary] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return sum(m.processed for m in self.mailboxes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed_count,
            "mailboxes": [m.to_dict() for m in self.mailboxes],
            "errors": list(self.errors),
        }


class ReplyListener:
    """
    Builds sessions for the configured mailboxes.

    Usage:
        listener = ReplyListener(store)
        summary = listener.run_once()
    """

    def __init__(
        self,
        store: SubmissionStore,
        client_factory: ClientFactory = imap_tools_factory,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.client_factory = client_factory
        self.settings = settings or get_settings()

    def load_mailboxes(self) -> List[MailboxConfig]:
        return load_mailboxes(self.store, self.settings.imap_default_port)

    def create_session(self, config: MailboxConfig) -> MailboxSession:
        return MailboxSession(
            config,
            self.client_factory,
            self.store,
            folder=self.settings.imap_folder,
            quote_boundary=self.settings.quote_boundary_enabled,
            max_chars=self.settings.reply_body_max_chars,
        )

    def since(self, days: int, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - timedelta(days=days)

    def run_once(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Process every mailbox once, one after another.

        A failing mailbox is recorded in the summary and the run continues.

        Raises:
            StoreError: The mailbox configuration could not be read
        """
        mailboxes = self.load_mailboxes()
        summary = RunSummary()
        if not mailboxes:
            logger.warning("No mailbox credentials configured; nothing to process")
            return summary

        since = self.since(self.settings.batch_since_days, now)
        logger.info(f"🔄 Checking {len(mailboxes)} mailbox(es) for replies since {since.date()}")

        for config in mailboxes:
            result = self.create_session(config).run(since)
            summary.mailboxes.append(result)
            if result.error:
                summary.errors.append(f"{result.mailbox}: {result.error}")

        logger.info(
            f"✅ Run complete: {summary.processed_count} processed, "
            f"{len(summary.errors)} mailbox error(s)"
        )
        return summary


def run_once(
    store: SubmissionStore,
    client_factory: ClientFactory = imap_tools_factory,
    settings: Optional[Settings] = None,
) -> RunSummary:
    """One batch run over all configured mailboxes."""
    return ReplyListener(store, client_factory, settings).run_once()


# ============ DAEMON MODE ============

def reconnect_wait(settings: Settings) -> wait_exponential:
    """Reconnect delay: initial, doubling per failed attempt, capped at the maximum."""
    return wait_exponential(
        multiplier=settings.backoff_initial_seconds,
        min=settings.backoff_initial_seconds,
        max=settings.backoff_max_seconds,
    )


class ListenerDaemon:
    """
    Long-running listener: one worker thread per mailbox.

    Usage:
        daemon = ListenerDaemon(store)
        daemon.start()
        ...
        daemon.stop()

    Each worker reconnects through tenacity with exponential backoff; a fresh
    Retrying is started after every healthy connection, which resets the
    delay. stop() sets the shared event (interrupting any backoff sleep) and
    logs out every open session, which also ends a pending IDLE wait.
    """

    def __init__(
        self,
        store: SubmissionStore,
        client_factory: ClientFactory = imap_tools_factory,
        settings: Optional[Settings] = None,
    ):
        self.listener = ReplyListener(store, client_factory, settings)
        self.settings = self.listener.settings
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._last: Dict[str, Dict[str, Any]] = {}
        self._sessions: Dict[str, MailboxSession] = {}

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> List[MailboxConfig]:
        """Start one worker per mailbox and return immediately."""
        if self.running:
            raise RuntimeError("Listener daemon is already running")

        self._stop.clear()
        mailboxes = self.listener.load_mailboxes()
        if not mailboxes:
            logger.warning("No mailbox credentials configured; daemon has nothing to watch")

        self._threads = [
            threading.Thread(
                target=self._watch_mailbox,
                args=(config,),
                name=f"imap-{config.label}",
                daemon=True,
            )
            for config in mailboxes
        ]
        for thread in self._threads:
            thread.start()

        logger.info(f"🚀 Listener daemon watching {len(mailboxes)} mailbox(es)")
        return mailboxes

    def run_forever(self) -> None:
        """Start the workers and block until stop() is called."""
        self.start()
        try:
            while not self._stop.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping listener daemon")
        finally:
            self.stop()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal all workers, close their connections and wait for them to exit."""
        self._stop.set()

        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.close()

        if timeout is None:
            timeout = self.settings.idle_timeout_seconds + 5
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout)
        logger.info("🛑 Listener daemon stopped")

    def status(self) -> Dict[str, Any]:
        with self._lock:
            mailboxes = dict(self._last)
        return {
            "running": self.running and not self._stop.is_set(),
            "mailboxes": mailboxes,
        }

    def _record(self, label: str, summary: Dict[str, Any]) -> None:
        with self._lock:
            self._last[label] = summary

    def _stop_requested(self, retry_state: RetryCallState) -> bool:
        return self._stop.is_set()

    def _watch_mailbox(self, config: MailboxConfig) -> None:
        while not self._stop.is_set():
            retrying = Retrying(
                retry=retry_if_exception_type(ReplyIngestError),
                wait=reconnect_wait(self.settings),
                stop=self._stop_requested,
                sleep=self._stop.wait,
                before_sleep=lambda state: logger.info(
                    f"Reconnecting to {config.label} in {state.next_action.sleep:.0f}s"
                ),
                reraise=True,
            )
            try:
                retrying(self._serve_connection, config)
            except ReplyIngestError as e:
                # Only reached once stop() was requested
                logger.debug(f"Gave up reconnecting to {config.label}: {e}")
            except Exception as e:
                # The worker must outlive any single failure
                logger.exception(f"Unexpected error watching {config.label}: {e}")
                self._record(config.label, {"mailbox": config.label, "error": str(e)})
                self._stop.wait(self.settings.backoff_initial_seconds)
            else:
                # A healthy connection dropped: pause once, then a fresh backoff
                self._stop.wait(self.settings.backoff_initial_seconds)

        logger.info(f"Stopped watching {config.label}")

    def _serve_connection(self, config: MailboxConfig) -> None:
        """
        Connect and process on every wake-up until stopped or disconnected.

        Raises ReplyIngestError when the connection failed before completing a
        cycle; returns normally when a healthy connection was lost or on stop.
        """
        session = self.listener.create_session(config)
        with self._lock:
            self._sessions[config.label] = session
        healthy = False
        try:
            session.connect()
            while not self._stop.is_set():
                since = self.listener.since(self.settings.daemon_since_days)
                summary = session.process_unseen(since)
                self._record(config.label, summary.to_dict())
                healthy = True
                self._wait_for_wakeup(session)
        except ReplyIngestError as e:
            if self._stop.is_set():
                return
            logger.warning(f"Mailbox {config.label} connection lost: {e}")
            self._record(config.label, {"mailbox": config.label, "error": str(e)})
            if not healthy:
                raise
        finally:
            with self._lock:
                if self._sessions.get(config.label) is session:
                    del self._sessions[config.label]
            session.close()

    def _wait_for_wakeup(self, session: MailboxSession) -> None:
        # Every wake-up, notification or timeout, re-runs the full search
        timeout = self.settings.idle_timeout_seconds
        if session.supports_idle():
            if session.wait_for_new_mail(timeout):
                logger.debug(f"New mail notification on {session.label}")
        else:
            self._stop.wait(timeout)


def run_forever(
    store: SubmissionStore,
    client_factory: ClientFactory = imap_tools_factory,
    settings: Optional[Settings] = None,
) -> ListenerDaemon:
    """Run the daemon in the calling thread until interrupted."""
    daemon = ListenerDaemon(store, client_factory, settings)
    daemon.run_forever()
    return daemon
