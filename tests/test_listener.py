"""Tests for mailbox grouping, batch runs and the listener daemon."""

import time
from dataclasses import replace
from types import SimpleNamespace

import pytest

from lender_inbox.models import SmtpSetting
from lender_inbox.services.listener import (
    ListenerDaemon,
    ReplyListener,
    group_mailboxes,
    load_mailboxes,
    reconnect_wait,
    run_once,
)

from conftest import APPLICATION_ID, MAILBOX_HOST, MAILBOX_USER, SECOND_APPLICATION_ID
from fakes import FakeClientFactory, FakeMailServer, make_message, wait_until

OFFER_BODY = (
    "We are pleased to offer $150,000 at a factor rate of 1.3 for a 12 month term. "
    f"Application ID: {APPLICATION_ID}"
)

LABEL = f"{MAILBOX_USER}@{MAILBOX_HOST}"


def add_credentials(session_factory, application_id, host, username, password="pw", port=993):
    db = session_factory()
    try:
        db.add(SmtpSetting(
            application_id=application_id, host=host, port=port,
            username=username, password=password,
        ))
        db.commit()
    finally:
        db.close()


class TestGroupMailboxes:
    def test_rows_sharing_host_and_user_collapse(self):
        rows = [
            {"application_id": "A", "host": "imap.x.com", "port": 993, "username": "Ops@x.com", "password": "p1"},
            {"application_id": "B", "host": "IMAP.X.COM", "port": 993, "username": "ops@x.com", "password": "p2"},
        ]
        mailboxes = group_mailboxes(rows)

        assert len(mailboxes) == 1
        assert mailboxes[0].application_ids == frozenset({"a", "b"})
        assert mailboxes[0].password == "p1"

    def test_incomplete_rows_ignored(self):
        rows = [
            {"application_id": "A", "host": "", "username": "u", "password": "p"},
            {"application_id": "B", "host": "h", "username": None, "password": "p"},
            {"application_id": "C", "host": "h", "username": "u", "password": ""},
        ]
        assert group_mailboxes(rows) == []

    def test_default_port(self):
        rows = [{"application_id": "A", "host": "h", "port": None, "username": "u", "password": "p"}]
        assert group_mailboxes(rows, default_port=1993)[0].port == 1993

    def test_password_not_in_repr(self):
        rows = [{"application_id": "A", "host": "h", "username": "u", "password": "hunter2"}]
        assert "hunter2" not in repr(group_mailboxes(rows)[0])


class TestRunOnce:
    def test_shared_mailbox_opens_one_connection(self, store, seeded, session_factory, settings):
        add_credentials(session_factory, SECOND_APPLICATION_ID, MAILBOX_HOST.upper(), MAILBOX_USER)
        server = FakeMailServer([make_message("1", OFFER_BODY)])
        factory = FakeClientFactory(default=server)

        summary = run_once(store, factory, settings)

        assert server.connections == 1
        assert len(factory.configs) == 1
        assert factory.configs[0].application_ids == frozenset({APPLICATION_ID, SECOND_APPLICATION_ID})
        assert summary.processed_count == 1

    def test_failing_mailbox_does_not_stop_the_run(self, store, seeded, session_factory, settings):
        add_credentials(session_factory, SECOND_APPLICATION_ID, "imap.other.example", "desk@other.example")
        broken = FakeMailServer()
        broken.connect_failures = 1
        healthy = FakeMailServer([make_message("1", OFFER_BODY)])
        factory = FakeClientFactory(servers={
            LABEL: healthy,
            "desk@other.example@imap.other.example": broken,
        })

        summary = ReplyListener(store, factory, settings).run_once()

        assert summary.processed_count == 1
        assert len(summary.mailboxes) == 2
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("desk@other.example@imap.other.example")

    def test_no_mailboxes(self, store, settings):
        summary = run_once(store, FakeClientFactory(), settings)
        assert summary.to_dict() == {"success": True, "processed": 0, "mailboxes": [], "errors": []}

    def test_load_mailboxes_reads_store(self, store, seeded):
        mailboxes = load_mailboxes(store)
        assert [m.label for m in mailboxes] == [LABEL]
        assert mailboxes[0].application_ids == frozenset({APPLICATION_ID})


class TestReconnectWait:
    def test_doubles_to_cap(self, settings):
        wait = reconnect_wait(replace(settings, backoff_initial_seconds=2, backoff_max_seconds=60))
        delays = [wait(SimpleNamespace(attempt_number=n)) for n in range(1, 8)]
        assert delays == [2, 4, 8, 16, 32, 60, 60]


class TestListenerDaemon:
    def test_processes_mail_and_stops(self, store, seeded, settings):
        server = FakeMailServer([make_message("1", OFFER_BODY)], idle=True)
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), settings)

        daemon.start()
        assert wait_until(lambda: "1" in server.seen)
        daemon.stop(timeout=2)

        assert not daemon.running
        assert server.logouts >= 1
        assert LABEL in daemon.status()["mailboxes"]
        assert store.get_submission(seeded)["status"] == "responded"

    def test_picks_up_mail_arriving_later(self, store, seeded, settings):
        server = FakeMailServer(idle=False)
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), settings)

        daemon.start()
        assert wait_until(lambda: server.connections == 1)
        server.add(make_message("7", OFFER_BODY))
        assert wait_until(lambda: "7" in server.seen)
        daemon.stop(timeout=2)

        assert server.connections == 1

    def test_reconnects_after_connection_failures(self, store, seeded, settings):
        server = FakeMailServer([make_message("1", OFFER_BODY)], idle=True)
        server.connect_failures = 2
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), settings)

        daemon.start()
        assert wait_until(lambda: "1" in server.seen)
        daemon.stop(timeout=2)

        assert server.connections >= 3

    def test_reconnects_after_search_failure(self, store, seeded, settings):
        server = FakeMailServer([make_message("1", OFFER_BODY)], idle=True)
        server.search_fails = True
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), settings)

        daemon.start()
        assert wait_until(lambda: server.connections >= 2)
        server.search_fails = False
        assert wait_until(lambda: "1" in server.seen)
        daemon.stop(timeout=2)

        assert server.logouts >= 2

    def test_stop_interrupts_idle_wait(self, store, seeded, settings):
        server = FakeMailServer([make_message("1", OFFER_BODY)], idle=True)
        server.idle_blocks = True
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), replace(settings, idle_timeout_seconds=30))

        daemon.start()
        assert wait_until(lambda: "1" in server.seen)
        started = time.monotonic()
        daemon.stop(timeout=10)

        assert time.monotonic() - started < 5
        assert not daemon.running
        assert server.logouts >= 1

    def test_reconnect_backoff_is_interrupted_by_stop(self, store, seeded, settings):
        server = FakeMailServer()
        server.connect_failures = 1000
        slow = replace(settings, backoff_initial_seconds=30, backoff_max_seconds=60)
        daemon = ListenerDaemon(store, FakeClientFactory(default=server), slow)

        daemon.start()
        assert wait_until(lambda: server.connections >= 1)
        started = time.monotonic()
        daemon.stop(timeout=10)

        assert time.monotonic() - started < 5
        assert not daemon.running

    def test_no_mailboxes(self, store, settings):
        daemon = ListenerDaemon(store, FakeClientFactory(), settings)
        assert daemon.start() == []
        daemon.stop(timeout=1)
        assert daemon.status() == {"running": False, "mailboxes": {}}

    def test_cannot_start_twice(self, store, seeded, settings):
        daemon = ListenerDaemon(store, FakeClientFactory(default=FakeMailServer()), settings)
        daemon.start()
        try:
            with pytest.raises(RuntimeError):
                daemon.start()
        finally:
            daemon.stop(timeout=2)
