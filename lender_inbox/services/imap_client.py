"""
IMAP Client
===========
Mailbox protocol seam for the reply listener.

MailboxClient is the abstract interface the session drives; ImapToolsClient
is the production implementation on top of imap_tools. Tests substitute a
fake client through the same factory signature.
"""

import imaplib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, FrozenSet, List, Optional, Union

from email.message import Message
from imap_tools import AND, MailBox, MailMessageFlags
from imap_tools.errors import ImapToolsError

from lender_inbox.errors import MailboxConnectionError, MailboxProtocolError

logger = logging.getLogger(__name__)

DEFAULT_IMAP_PORT = 993
DEFAULT_FOLDER = "INBOX"

# Everything the socket/TLS/IMAP layers raise for a failed command
_IMAP_ERRORS = (ImapToolsError, imaplib.IMAP4.error, OSError)


@dataclass(frozen=True)
class MailboxConfig:
    """One physical mailbox and the applications that send from it."""
    host: str
    username: str
    password: str = field(repr=False)
    port: int = DEFAULT_IMAP_PORT
    application_ids: FrozenSet[str] = frozenset()

    @property
    def label(self) -> str:
        """user@host, used in logs and summaries."""
        return f"{self.username}@{self.host}"


@dataclass
class InboundMessage:
    """A fetched message; lives for one fetch/process/flag cycle."""
    uid: str
    sender: str
    raw: Union[bytes, str, Message, None]
    provider_message_id: Optional[str] = None
    received_at: Optional[datetime] = None
    subject: str = ""


class MailboxClient(ABC):
    """Abstract interface for mailbox operations."""

    @abstractmethod
    def connect(self) -> None:
        """Open a TLS connection and log in. Raises MailboxConnectionError."""

    @abstractmethod
    def open_inbox(self, folder: str = DEFAULT_FOLDER) -> None:
        """Select the folder to watch. Raises MailboxConnectionError."""

    @abstractmethod
    def search_unseen_since(self, since: datetime) -> List[str]:
        """
        UIDs of unseen messages received on/after since.

        Raises:
            MailboxProtocolError: The search command failed
        """

    @abstractmethod
    def fetch(self, uid: str) -> Optional[InboundMessage]:
        """Envelope + full source of one message, None if it vanished."""

    @abstractmethod
    def mark_seen(self, uid: str) -> None:
        """Set the \\Seen flag. Raises MailboxProtocolError."""

    @abstractmethod
    def supports_idle(self) -> bool:
        """True when the server can push new-mail notifications."""

    @abstractmethod
    def wait_for_new_mail(self, timeout: float) -> bool:
        """
        Block until the server reports mailbox changes or timeout passes.

        Returns:
            True if the server reported something

        Raises:
            MailboxConnectionError: The connection dropped while waiting
        """

    @abstractmethod
    def logout(self) -> None:
        """Close the connection."""


ClientFactory = Callable[[MailboxConfig], MailboxClient]


class ImapToolsClient(MailboxClient):
    """Production IMAP client using imap_tools.MailBox (implicit TLS)."""

    def __init__(self, config: MailboxConfig, timeout: Optional[float] = 60):
        self.config = config
        self.timeout = timeout
        self._mailbox: Optional[MailBox] = None

    def _require_mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise MailboxConnectionError(f"{self.config.label} is not connected")
        return self._mailbox

    def connect(self) -> None:
        try:
            mailbox = MailBox(self.config.host, port=self.config.port, timeout=self.timeout)
            mailbox.login(self.config.username, self.config.password, initial_folder=None)
        except _IMAP_ERRORS as e:
            raise MailboxConnectionError(f"Failed to connect to {self.config.label}: {e}") from e
        self._mailbox = mailbox
        logger.info(f"Connected to IMAP server: {self.config.label}")

    def open_inbox(self, folder: str = DEFAULT_FOLDER) -> None:
        mailbox = self._require_mailbox()
        try:
            mailbox.folder.set(folder)
        except _IMAP_ERRORS as e:
            raise MailboxConnectionError(f"Failed to open {folder} on {self.config.label}: {e}") from e

    def search_unseen_since(self, since: datetime) -> List[str]:
        mailbox = self._require_mailbox()
        try:
            # IMAP SINCE has day granularity
            return list(mailbox.uids(AND(seen=False, date_gte=since.date())))
        except _IMAP_ERRORS as e:
            raise MailboxProtocolError(f"IMAP search failed: {e}") from e

    def fetch(self, uid: str) -> Optional[InboundMessage]:
        mailbox = self._require_mailbox()
        try:
            msg = next(iter(mailbox.fetch(AND(uid=uid), mark_seen=False)), None)
        except _IMAP_ERRORS as e:
            raise MailboxProtocolError(f"IMAP fetch of UID {uid} failed: {e}") from e
        if msg is None:
            return None

        message_ids = msg.headers.get("message-id", ("",))
        return InboundMessage(
            uid=msg.uid or uid,
            sender=(msg.from_ or "").strip().lower(),
            raw=msg.obj,
            provider_message_id=(message_ids[0] or "").strip() or None,
            # imap_tools reports a missing Date header as 1900-01-01
            received_at=msg.date if msg.date_str else None,
            subject=msg.subject or "",
        )

    def mark_seen(self, uid: str) -> None:
        mailbox = self._require_mailbox()
        try:
            mailbox.flag(uid, MailMessageFlags.SEEN, True)
        except _IMAP_ERRORS as e:
            raise MailboxProtocolError(f"Failed to flag UID {uid} as seen: {e}") from e

    def supports_idle(self) -> bool:
        mailbox = self._require_mailbox()
        return "IDLE" in mailbox.client.capabilities

    def wait_for_new_mail(self, timeout: float) -> bool:
        mailbox = self._require_mailbox()
        try:
            responses = mailbox.idle.wait(timeout=int(max(timeout, 1)))
        except _IMAP_ERRORS as e:
            raise MailboxConnectionError(f"IDLE failed on {self.config.label}: {e}") from e
        return bool(responses)

    def logout(self) -> None:
        if self._mailbox is None:
            return
        mailbox, self._mailbox = self._mailbox, None
        try:
            mailbox.logout()
            logger.info(f"Disconnected from IMAP server: {self.config.label}")
        except _IMAP_ERRORS as e:
            logger.debug(f"Logout from {self.config.label} failed: {e}")


def imap_tools_factory(config: MailboxConfig) -> MailboxClient:
    """Default ClientFactory."""
    return ImapToolsClient(config)
