"""Tests for the imap_tools-backed mailbox client."""

import imaplib
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from imap_tools import MailMessage, MailMessageFlags

from lender_inbox.errors import MailboxConnectionError, MailboxProtocolError
from lender_inbox.services import imap_client
from lender_inbox.services.imap_client import ImapToolsClient, MailboxConfig

CONFIG = MailboxConfig(host="imap.acme.example", username="apps@acme.example", password="pw")

RAW_NO_DATE = (
    b"From: Offers@ACME.com\r\n"
    b"To: apps@acme.example\r\n"
    b"Subject: Re: deal\r\n"
    b"Message-ID: <x1@acme.com>\r\n"
    b"\r\n"
    b"We can do $50,000.\r\n"
)

RAW_WITH_DATE = (
    b"From: offers@acme.com\r\n"
    b"Subject: Re: deal\r\n"
    b"Date: Fri, 16 Oct 2026 14:30:00 +0000\r\n"
    b"\r\n"
    b"body\r\n"
)


class StubMailBox:
    """Stands in for imap_tools.MailBox; error makes every command fail."""

    def __init__(self, messages=(), error=None, capabilities=("IMAP4REV1", "IDLE"), idle_responses=()):
        self.messages = [MailMessage.from_bytes(raw) for raw in messages]
        self.error = error
        self.client = SimpleNamespace(capabilities=capabilities)
        self.idle = SimpleNamespace(wait=self._idle_wait)
        self.folder = SimpleNamespace(set=self._set_folder)
        self.idle_responses = list(idle_responses)

        self.criteria = []
        self.fetch_calls = []
        self.flagged = []
        self.selected = None
        self.logged_out = False

    def _check(self):
        if self.error is not None:
            raise self.error

    def login(self, username, password, initial_folder="INBOX"):
        self._check()
        return self

    def _set_folder(self, folder):
        self._check()
        self.selected = folder

    def uids(self, criteria):
        self._check()
        self.criteria.append(str(criteria))
        return ["3", "5"]

    def fetch(self, criteria, mark_seen=True):
        self._check()
        self.fetch_calls.append((str(criteria), mark_seen))
        return iter(self.messages)

    def flag(self, uid, flags, value):
        self._check()
        self.flagged.append((uid, flags, value))

    def _idle_wait(self, timeout):
        self._check()
        return self.idle_responses

    def logout(self):
        self._check()
        self.logged_out = True


def connected_client(mailbox):
    client = ImapToolsClient(CONFIG)
    client._mailbox = mailbox
    return client


class TestConnect:
    def test_login_and_select(self, monkeypatch):
        mailbox = StubMailBox()
        monkeypatch.setattr(imap_client, "MailBox", lambda host, port, timeout: mailbox)

        client = ImapToolsClient(CONFIG)
        client.connect()
        client.open_inbox("INBOX")

        assert mailbox.selected == "INBOX"

    def test_socket_failure_is_connection_error(self, monkeypatch):
        def refuse(host, port, timeout):
            raise OSError("connection refused")

        monkeypatch.setattr(imap_client, "MailBox", refuse)

        with pytest.raises(MailboxConnectionError):
            ImapToolsClient(CONFIG).connect()

    def test_login_failure_is_connection_error(self, monkeypatch):
        mailbox = StubMailBox(error=imaplib.IMAP4.error("AUTHENTICATIONFAILED"))
        monkeypatch.setattr(imap_client, "MailBox", lambda host, port, timeout: mailbox)

        with pytest.raises(MailboxConnectionError):
            ImapToolsClient(CONFIG).connect()

    def test_folder_failure_is_connection_error(self):
        client = connected_client(StubMailBox(error=imaplib.IMAP4.error("NO such folder")))
        with pytest.raises(MailboxConnectionError):
            client.open_inbox("Offers")

    def test_commands_require_connection(self):
        with pytest.raises(MailboxConnectionError):
            ImapToolsClient(CONFIG).search_unseen_since(datetime.now(timezone.utc))


class TestSearch:
    def test_unseen_since_date(self):
        mailbox = StubMailBox()
        uids = connected_client(mailbox).search_unseen_since(datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc))

        assert uids == ["3", "5"]
        assert "UNSEEN" in mailbox.criteria[0]
        assert "SINCE 14-Oct-2026" in mailbox.criteria[0]

    def test_failure_is_protocol_error(self):
        client = connected_client(StubMailBox(error=imaplib.IMAP4.error("BAD")))
        with pytest.raises(MailboxProtocolError, match="search failed"):
            client.search_unseen_since(datetime(2026, 10, 14, tzinfo=timezone.utc))


class TestFetch:
    def test_maps_envelope(self):
        mailbox = StubMailBox(messages=[RAW_NO_DATE])
        message = connected_client(mailbox).fetch("5")

        assert message.uid == "5"
        assert message.sender == "offers@acme.com"
        assert message.provider_message_id == "<x1@acme.com>"
        assert message.received_at is None
        assert message.subject == "Re: deal"
        assert b"We can do $50,000." in message.raw.as_bytes()

    def test_does_not_mark_seen(self):
        mailbox = StubMailBox(messages=[RAW_NO_DATE])
        connected_client(mailbox).fetch("5")

        assert mailbox.fetch_calls[0][1] is False
        assert "UID 5" in mailbox.fetch_calls[0][0]

    def test_date_header(self):
        message = connected_client(StubMailBox(messages=[RAW_WITH_DATE])).fetch("6")

        assert message.received_at == datetime(2026, 10, 16, 14, 30, tzinfo=timezone.utc)
        assert message.provider_message_id is None

    def test_vanished_message(self):
        assert connected_client(StubMailBox()).fetch("9") is None

    def test_failure_is_protocol_error(self):
        client = connected_client(StubMailBox(error=OSError("socket closed")))
        with pytest.raises(MailboxProtocolError):
            client.fetch("5")


class TestMarkSeen:
    def test_sets_seen_flag(self):
        mailbox = StubMailBox()
        connected_client(mailbox).mark_seen("7")

        assert mailbox.flagged == [("7", MailMessageFlags.SEEN, True)]

    def test_failure_is_protocol_error(self):
        client = connected_client(StubMailBox(error=imaplib.IMAP4.error("NO")))
        with pytest.raises(MailboxProtocolError):
            client.mark_seen("7")


class TestIdle:
    def test_capability_detection(self):
        assert connected_client(StubMailBox()).supports_idle()
        assert not connected_client(StubMailBox(capabilities=("IMAP4REV1",))).supports_idle()

    def test_wait_reports_server_responses(self):
        assert connected_client(StubMailBox(idle_responses=[b"* 4 EXISTS"])).wait_for_new_mail(5)
        assert not connected_client(StubMailBox()).wait_for_new_mail(5)

    def test_dropped_connection_during_idle(self):
        client = connected_client(StubMailBox(error=imaplib.IMAP4.abort("socket error")))
        with pytest.raises(MailboxConnectionError):
            client.wait_for_new_mail(5)


class TestLogout:
    def test_logout_failure_is_ignored(self):
        client = connected_client(StubMailBox(error=imaplib.IMAP4.error("BYE")))
        client.logout()
        assert client._mailbox is None

    def test_logout(self):
        mailbox = StubMailBox()
        client = connected_client(mailbox)
        client.logout()
        client.logout()
        assert mailbox.logged_out
