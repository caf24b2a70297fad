"""Tests for intake sources, the poller and the daemon loop."""

import os
from unittest.mock import MagicMock

import pytest

from invoice_intake.pipeline import ProcessingPipeline
from invoice_intake.poller import (
    EmlDirectorySource,
    MailboxSource,
    Poller,
    SourceError,
    create_source,
    parse_eml,
)
from invoice_intake.runner.daemon import ERROR_BACKOFF_SECONDS, IntakeDaemon
from invoice_intake.schemas import IntakeDocument, SchemaValidationError
from invoice_intake.state_store import LeaseStatus


class FakeSource(MailboxSource):
    """In-memory source; items mapped to None fail on fetch."""

    def __init__(self, items):
        self.items = items

    @property
    def name(self):
        return "fake"

    def list_item_ids(self, limit=None):
        return list(self.items)[:limit]

    def fetch(self, item_id):
        document = self.items[item_id]
        if document is None:
            raise SourceError(f"{item_id} vanished")
        return document


@pytest.fixture
def pipeline(store, extraction_client, config, lease_queue):
    return ProcessingPipeline(
        store, extraction_client, config, lease_queue=lease_queue, sleep=lambda s: None
    )


@pytest.fixture
def poller(store, config, pipeline, lease_queue):
    return Poller(store, config, pipeline, lease_queue=lease_queue)


@pytest.fixture
def mailbox(mailbox_dir, sample_eml):
    """Mailbox with two messages, a.eml older than b.eml."""
    for index, name in enumerate(["a.eml", "b.eml"]):
        path = mailbox_dir / name
        path.write_bytes(sample_eml)
        os.utime(path, (1_700_000_000 + index, 1_700_000_000 + index))
    (mailbox_dir / "notes.txt").write_text("not a message")
    return mailbox_dir


class TestParseEml:
    """Tests for parse_eml."""

    def test_fields(self, sample_eml):
        document = parse_eml(sample_eml, "inv.eml")
        assert document.subject == "Invoice INV-1042"
        assert document.sender == "Acme Billing <billing@acme.example>"
        assert document.body == "Please find attached invoice INV-1042."
        assert document.attachment_filename == "INV-1042.pdf"
        assert document.attachment_pdf.startswith(b"%PDF-1.4")
        assert document.source_item_id == "inv.eml"

    def test_plain_message(self):
        raw = b"From: a@example.com\nSubject: Lunch\n\nSee you at noon.\n"
        document = parse_eml(raw)
        assert document.subject == "Lunch"
        assert document.body == "See you at noon."
        assert document.has_pdf is False


class TestEmlDirectorySource:
    """Tests for the .eml directory source."""

    def test_lists_oldest_first(self, mailbox):
        assert EmlDirectorySource(mailbox).list_item_ids(10) == ["a.eml", "b.eml"]

    def test_limit(self, mailbox):
        assert EmlDirectorySource(mailbox).list_item_ids(1) == ["a.eml"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(SourceError, match="not found"):
            EmlDirectorySource(tmp_path / "nope").list_item_ids(10)

    def test_fetch(self, mailbox):
        document = EmlDirectorySource(mailbox).fetch("b.eml")
        assert document.source_item_id == "b.eml"

    @pytest.mark.parametrize("item_id", ["missing.eml", "../outside.eml"])
    def test_fetch_errors(self, mailbox, item_id):
        with pytest.raises(SourceError):
            EmlDirectorySource(mailbox).fetch(item_id)

    def test_create_source(self, store, connection_id):
        source = create_source(store.get_connection(connection_id))
        assert isinstance(source, EmlDirectorySource)

    def test_unsupported_source_type(self, store, tenant_id):
        conn_id = store.create_connection(tenant_id, "imap", "imap", "imap://example")
        with pytest.raises(ValueError, match="Unsupported source type"):
            create_source(store.get_connection(conn_id))


class TestPoller:
    """Tests for polling a connection."""

    def test_processes_new_items(self, poller, store, tenant_id, connection_id, mailbox):
        result = poller.poll_connection(store.get_connection(connection_id))

        assert result.ok
        assert (result.discovered, result.claimed, result.processed) == (2, 2, 2)
        assert [r.status for r in result.results] == ["completed", "duplicate"]
        for item_id in ("a.eml", "b.eml"):
            assert store.get_lease_by_item(connection_id, item_id).status == LeaseStatus.PROCESSED

        connection = store.get_connection(connection_id)
        assert connection.last_poll_status == "success"
        assert store.get_tenant(tenant_id).last_successful_poll is not None

    def test_repoll_skips_processed(self, poller, store, extraction_client, connection_id, mailbox):
        connection = store.get_connection(connection_id)
        poller.poll_connection(connection)
        calls = extraction_client.classify.call_count

        result = poller.poll_connection(connection)

        assert result.discovered == 2
        assert result.claimed == 0
        assert extraction_client.classify.call_count == calls

    def test_backlog_drains_past_batch_size(self, poller, store, config, connection_id, mailbox, sample_eml):
        """Processed files stay in the directory but never hide newer ones."""
        config.lease.claim_batch_size = 2
        (mailbox / "c.eml").write_bytes(sample_eml)
        connection = store.get_connection(connection_id)

        first = poller.poll_connection(connection)
        assert (first.discovered, first.claimed) == (3, 2)
        assert store.get_lease_by_item(connection_id, "c.eml") is None

        second = poller.poll_connection(connection)
        assert (second.discovered, second.claimed, second.processed) == (3, 1, 1)
        assert store.get_lease_by_item(connection_id, "c.eml").status == LeaseStatus.PROCESSED

    def test_pipeline_error_leaves_lease(self, poller, store, extraction_client, connection_id, mailbox):
        extraction_client.extract.side_effect = SchemaValidationError("extract", "bad")

        result = poller.poll_connection(store.get_connection(connection_id))

        assert result.failed == 2
        assert result.processed == 0
        assert store.get_lease_by_item(connection_id, "a.eml").status == LeaseStatus.PROCESSING

    def test_listing_failure(self, poller, store, tenant_id, connection_id, mailbox_dir):
        mailbox_dir.rmdir()

        result = poller.poll_connection(store.get_connection(connection_id))

        assert not result.ok
        assert "Mailbox directory not found" in result.error
        connection = store.get_connection(connection_id)
        assert connection.consecutive_failures == 1
        assert connection.last_poll_status == "error"
        assert store.get_tenant(tenant_id).last_successful_poll is None

    def test_fetch_failure_isolated(self, store, config, pipeline, lease_queue, connection_id, sample_document):
        source = FakeSource({"broken.eml": None, "good.eml": sample_document})
        poller = Poller(store, config, pipeline, lease_queue=lease_queue, source_factory=lambda c: source)

        result = poller.poll_connection(store.get_connection(connection_id))

        assert result.failed == 1
        assert result.processed == 1
        broken = store.get_lease_by_item(connection_id, "broken.eml")
        assert broken.status == LeaseStatus.FAILED
        assert broken.last_error == "fetch failed: broken.eml vanished"
        assert store.get_connection(connection_id).consecutive_failures == 0

    def test_poll_all(self, store, config, pipeline, lease_queue, tenant_id, connection_id):
        other_tenant = store.create_tenant("Second Tenant")
        other = store.create_connection(other_tenant, "inbox", "fake", "mem://")
        disabled = store.create_connection(tenant_id, "old inbox", "fake", "mem://old")
        store.set_connection_active(disabled, False)

        polled = []

        def factory(connection):
            polled.append(connection.id)
            return FakeSource({f"{connection.id}.eml": IntakeDocument(subject="hi")})

        poller = Poller(store, config, pipeline, lease_queue=lease_queue, source_factory=factory)
        results = poller.poll_all()

        assert sorted(polled) == sorted([connection_id, other])
        assert all(r.ok for r in results)


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestDaemon:
    """Tests for the daemon loop."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def daemon(self, clock):
        poller = MagicMock()
        poller.poll_all.return_value = []
        return IntakeDaemon(
            poller,
            MagicMock(),
            poll_interval_minutes=5,
            sweep_interval_minutes=15,
            clock=clock,
            sleep=clock.sleep,
        )

    def test_schedule(self, daemon, clock):
        assert daemon.run_once() == (True, True)
        assert daemon.run_once() == (False, False)

        clock.now += 5 * 60
        assert daemon.run_once() == (True, False)

        clock.now += 10 * 60
        assert daemon.run_once() == (True, True)

    def test_run_cycles(self, daemon, clock):
        daemon.run(max_cycles=4)
        assert daemon.poller.poll_all.call_count == 4
        assert daemon.monitor.sweep.call_count == 2

    def test_shutdown_skips_sweep(self, daemon):
        daemon.poller.poll_all.side_effect = lambda: daemon.request_shutdown() or []

        daemon.run()

        assert daemon.shutdown_requested
        daemon.monitor.sweep.assert_not_called()

    def test_error_backoff(self, daemon, clock):
        daemon.poller.poll_all.side_effect = RuntimeError("database is locked")
        daemon.run(max_cycles=1)
        assert clock.sleeps == [ERROR_BACKOFF_SECONDS]

    def test_poll_error_still_sweeps(self, daemon, clock):
        daemon.poller.poll_all.side_effect = RuntimeError("database is locked")

        daemon.run(max_cycles=1)

        daemon.monitor.sweep.assert_called_once()
        assert clock.sleeps == [ERROR_BACKOFF_SECONDS]
