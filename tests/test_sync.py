"""
Tests for the sync engine.

Runs the engine against an in-memory database and a fake CRM client that
serves canned pages.
"""

import json
import threading
from unittest.mock import patch

import pytest

from crm_sync.api.crm_api import FetchError, TransientFetchError
from crm_sync.auth.token_manager import AuthenticationRequired, TokenRefreshError
from crm_sync.sync.engine import (
    MAX_RUN_ERRORS,
    SyncEngine,
    SyncInProgressError,
    SyncRun,
    SyncRunStatus,
    SyncStrategy,
)
from crm_sync.sync.mapping import EntityType


class FakeClient:
    """Serves pre-built pages per entity type; cursors are page numbers."""

    def __init__(self, pages=None):
        self.pages = {EntityType.parse(k): v for k, v in (pages or {}).items()}
        self.calls = []
        self.errors = {}
        self.on_fetch = None
        self._lock = threading.Lock()

    def fetch_page(self, entity_type, cursor=None, page_size=None, modified_since=None):
        entity = EntityType.parse(entity_type)
        page = cursor or 1
        with self._lock:
            self.calls.append((entity, page, modified_since))
        if self.on_fetch is not None:
            self.on_fetch(entity, page)
        error = self.errors.get((entity, page))
        if error is not None:
            raise error
        pages = self.pages.get(entity, [[]])
        records = pages[page - 1] if page <= len(pages) else []
        next_cursor = page + 1 if page < len(pages) else None
        return records, next_cursor


def _matter(matter_id, name="Lee Exchange", **extra):
    record = {
        "id": matter_id,
        "display_name": name,
        "number": f"M-{matter_id}",
        "status": "Open",
        "opened_date": "2026-01-10T00:00:00",
        "custom_field_values": [],
    }
    record.update(extra)
    return record


def _contact(contact_id, name, **extra):
    record = {"id": contact_id, "display_name": name}
    record.update(extra)
    return record


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def engine(db, client):
    return SyncEngine(db, client)


class TestSyncRun:
    """Tests for the SyncRun dataclass."""

    def test_dict_round_trip_through_store(self, db):
        run = SyncRun(EntityType.MATTERS, SyncStrategy.FULL, triggered_by="cli")
        run.errors.append("matters 1: bad date")
        run.id = db.record_sync_run(run.to_dict())

        loaded = SyncRun.from_dict(db.get_sync_run(run.id))
        assert loaded.sync_type is EntityType.MATTERS
        assert loaded.strategy is SyncStrategy.FULL
        assert loaded.status is SyncRunStatus.RUNNING
        assert loaded.errors == ["matters 1: bad date"]
        assert loaded.started_at == run.started_at
        assert loaded.triggered_by == "cli"

    def test_error_list_is_capped(self):
        run = SyncRun(EntityType.TASKS, SyncStrategy.FULL)
        for i in range(MAX_RUN_ERRORS + 50):
            run.add_error(f"error {i}")
        assert len(run.errors) == MAX_RUN_ERRORS + 1
        assert run.errors[-1].startswith("...")

    def test_summary(self):
        run = SyncRun(EntityType.CONTACTS, SyncStrategy.INCREMENTAL, records_processed=3)
        assert run.summary().startswith("contacts incremental sync running: 3 processed")
        assert not run.is_finished
        assert run.duration_seconds is None


class TestSchema:
    def test_mapped_columns_are_created(self, db, engine):
        columns = db.table_columns("exchanges")
        assert {"name", "proceeds", "day_45", "identification_deadline"} <= columns
        assert {"display_name", "referral_source"} <= db.table_columns("contacts")


class TestStrategy:
    """Tests for strategy resolution."""

    def test_first_incremental_becomes_full(self, engine):
        assert engine.resolve_strategy(EntityType.MATTERS, "incremental") == (
            SyncStrategy.FULL,
            None,
        )

    def test_incremental_uses_last_completion(self, db, client, engine):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        first = engine.run_sync(EntityType.MATTERS)
        assert first.strategy is SyncStrategy.FULL

        second = engine.run_sync(EntityType.MATTERS, "incremental")
        assert second.strategy is SyncStrategy.INCREMENTAL
        assert second.modified_since == first.completed_at
        assert client.calls[-1][2] == first.completed_at

    def test_full_hint_ignores_history(self, engine, client):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        engine.run_sync(EntityType.MATTERS)
        run = engine.run_sync(EntityType.MATTERS, SyncStrategy.FULL)
        assert run.strategy is SyncStrategy.FULL
        assert run.modified_since is None

    def test_failed_runs_do_not_advance_watermark(self, db, client, engine):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        first = engine.run_sync(EntityType.MATTERS)

        client.errors[(EntityType.MATTERS, 1)] = FetchError("boom")
        with pytest.raises(FetchError):
            engine.run_sync(EntityType.MATTERS)

        strategy, since = engine.resolve_strategy(EntityType.MATTERS)
        assert strategy is SyncStrategy.INCREMENTAL
        assert since == first.completed_at


class TestRunSync:
    """Tests for a single run."""

    def test_full_sync_creates_rows(self, db, client, engine):
        client.pages = {
            EntityType.MATTERS: [[_matter("1"), _matter("2", "Ray Exchange")], [_matter("3")]]
        }

        run = engine.run_sync(EntityType.MATTERS, "full", triggered_by="test")

        assert run.status is SyncRunStatus.COMPLETED
        assert run.pages_fetched == 2
        assert (run.records_processed, run.records_created, run.records_updated) == (3, 3, 0)
        assert db.count_rows("exchanges") == 3

        row = db.get_by_external_id("exchanges", "2")
        assert row["name"] == "Ray Exchange"
        assert row["status"] == "PENDING"
        assert row["identification_deadline"] == "2026-02-24"
        assert row["last_synced_at"] is not None

        stored = db.get_sync_run(run.id)
        assert stored["status"] == "completed"
        assert stored["records_created"] == 3
        assert stored["triggered_by"] == "test"
        assert [d["action"] for d in db.get_sync_run_details(run.id)] == ["created"] * 3

    def test_rerun_is_idempotent(self, db, client, engine):
        client.pages = {EntityType.CONTACTS: [[_contact("c1", "Ann Lee"), _contact("c2", "Bo Ray")]]}

        engine.run_sync(EntityType.CONTACTS, "full")
        before = db.query("contacts")
        second = engine.run_sync(EntityType.CONTACTS, "full")
        after = db.query("contacts")

        assert (second.records_created, second.records_updated) == (0, 2)
        assert [r["id"] for r in after] == [r["id"] for r in before]
        assert [r["display_name"] for r in after] == ["Ann Lee", "Bo Ray"]

    def test_raw_payload_keeps_unmapped_labels(self, db, client, engine, custom_field):
        matter = _matter(
            "1",
            custom_field_values=[custom_field("Favourite Colour", "TextBox", value_string="Teal")],
        )
        client.pages = {EntityType.MATTERS: [[matter]]}

        engine.run_sync(EntityType.MATTERS, "full")

        row = db.get_by_external_id("exchanges", "1")
        payload = json.loads(row["raw_payload"])
        labels = [e["custom_field_ref"]["label"] for e in payload["custom_field_values"]]
        assert labels == ["Favourite Colour"]
        assert row["mapping_version"] == engine.mapper.version

    def test_custom_fields_first_write_wins(self, db, client, engine, custom_field):
        """Test custom columns keep local values while fixed columns follow the CRM."""
        client.pages = {
            EntityType.MATTERS: [[
                _matter(
                    "1",
                    custom_field_values=[
                        custom_field("Proceeds", "Currency", value_number=500000),
                        custom_field("Bank", "TextBox", value_string="First Bank"),
                    ],
                )
            ]]
        }
        engine.run_sync(EntityType.MATTERS, "full")

        client.pages = {
            EntityType.MATTERS: [[
                _matter(
                    "1",
                    "Lee Exchange (renamed)",
                    custom_field_values=[
                        custom_field("Proceeds", "Currency", value_number=750000),
                        custom_field("Bank", "TextBox", value_string="Other Bank"),
                    ],
                )
            ]]
        }
        run = engine.run_sync(EntityType.MATTERS, "full")

        row = db.get_by_external_id("exchanges", "1")
        assert row["proceeds"] == 500000.0
        assert row["bank"] == "First Bank"
        assert row["name"] == "Lee Exchange (renamed)"

        detail = db.get_sync_run_details(run.id)[0]
        assert detail["action"] == "updated"
        assert detail["message"] == "kept local values for: Proceeds, Bank"

    def test_empty_local_custom_column_is_filled(self, db, client, engine, custom_field):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        engine.run_sync(EntityType.MATTERS, "full")

        client.pages = {
            EntityType.MATTERS: [[
                _matter("1", custom_field_values=[custom_field("Bank", "TextBox", value_string="B")])
            ]]
        }
        engine.run_sync(EntityType.MATTERS, "full")
        assert db.get_by_external_id("exchanges", "1")["bank"] == "B"

    def test_bad_records_are_skipped(self, db, client, engine):
        """Test per-record failures are counted and the run still completes."""
        client.pages = {
            EntityType.MATTERS: [[
                _matter("1"),
                {"display_name": "No id"},
                _matter("3", opened_date="not a date"),
                "not a record",
                _matter("5"),
            ]]
        }

        run = engine.run_sync(EntityType.MATTERS, "full")

        assert run.status is SyncRunStatus.COMPLETED
        assert run.records_processed == 5
        assert run.records_created == 2
        assert run.records_failed == 3
        assert len(run.errors) == 3
        assert "no id" in run.errors[0]
        assert db.count_rows("exchanges") == 2

        failed = [d for d in db.get_sync_run_details(run.id) if d["action"] == "failed"]
        assert [d["external_id"] for d in failed] == [None, "3", None]

    def test_malformed_custom_field_ref_fails_only_that_record(self, db, client, engine):
        """Test a custom_field_ref that is not an object fails its record alone."""
        client.pages = {
            EntityType.MATTERS: [[
                _matter("1"),
                _matter(
                    "2",
                    custom_field_values=[{"custom_field_ref": "Bank", "value_string": "Chase"}],
                ),
                _matter("3"),
            ]]
        }

        run = engine.run_sync(EntityType.MATTERS, "full")

        assert run.status is SyncRunStatus.COMPLETED
        assert (run.records_processed, run.records_created, run.records_failed) == (3, 2, 1)
        assert "custom_field_ref" in run.errors[0]
        assert db.get_by_external_id("exchanges", "2") is None
        assert db.get_by_external_id("exchanges", "3") is not None

    def test_non_string_contact_name(self, db, client, engine):
        """Test a numeric display_name is matched and stored as text."""
        local_id = db.insert("contacts", {"display_name": "Ann Lee"})
        client.pages = {
            EntityType.CONTACTS: [[_contact("c1", 12345), _contact("c2", "Ann Lee")]]
        }

        run = engine.run_sync(EntityType.CONTACTS, "full")

        assert run.status is SyncRunStatus.COMPLETED
        assert run.records_failed == 0
        assert db.get_by_external_id("contacts", "c1")["display_name"] == "12345"
        assert db.get_by_external_id("contacts", "c2")["id"] == local_id

    def test_matcher_error_means_no_link(self, db, client, engine):
        """Test a failing secondary match falls back to creating the row."""
        db.insert("contacts", {"display_name": "Ann Lee"})
        client.pages = {EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]]}

        with patch.object(engine.matcher, "find_link", side_effect=TypeError("bad name")):
            run = engine.run_sync(EntityType.CONTACTS, "full")

        assert run.status is SyncRunStatus.COMPLETED
        assert (run.records_created, run.records_failed) == (1, 0)
        assert db.count_rows("contacts") == 2

    def test_empty_collection(self, db, client, engine):
        run = engine.run_sync(EntityType.TASKS, "full")
        assert run.status is SyncRunStatus.COMPLETED
        assert run.pages_fetched == 1
        assert run.records_processed == 0

    def test_fetch_failure_marks_run_failed(self, db, client, engine):
        """Test a page failure fails the run but keeps earlier pages."""
        client.pages = {EntityType.MATTERS: [[_matter("1")], [_matter("2")]]}
        client.errors[(EntityType.MATTERS, 2)] = FetchError("HTTP 500")

        with pytest.raises(FetchError):
            engine.run_sync(EntityType.MATTERS, "full")

        run = engine.last_runs[EntityType.MATTERS]
        assert run.status is SyncRunStatus.FAILED
        assert run.error_message == "HTTP 500"
        assert db.get_sync_run(run.id)["status"] == "failed"
        assert db.get_sync_run(run.id)["records_created"] == 1
        assert db.count_rows("exchanges") == 1

    def test_tasks_are_stored(self, db, client, engine):
        client.pages = {
            EntityType.TASKS: [[{
                "id": "t1",
                "subject": "Send 45-day notice",
                "status": "NotCompleted",
                "matter_ref": {"id": "1", "display_name": "Lee Exchange"},
            }]]
        }
        engine.run_sync("tasks", "full")
        row = db.get_by_external_id("tasks", "t1")
        assert row["title"] == "Send 45-day notice"
        assert row["matter_external_id"] == "1"


RUN_LEVEL_FAILURES = [
    (AuthenticationRequired, "Re-authorization required"),
    (TokenRefreshError, "Token endpoint returned HTTP 503"),
    (TransientFetchError, "Retries exhausted after HTTP 429"),
]


@pytest.mark.parametrize("error_class,message", RUN_LEVEL_FAILURES)
class TestRunLevelErrors:
    """Tests for errors that end a run part way through."""

    @pytest.fixture(autouse=True)
    def failing_second_page(self, client, error_class, message):
        client.pages = {
            EntityType.MATTERS: [[_matter("1"), _matter("2")], [_matter("3")]],
            EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]],
        }
        client.errors[(EntityType.MATTERS, 2)] = error_class(message)

    def test_run_sync_records_failure_and_raises(self, db, engine, error_class, message):
        with pytest.raises(error_class):
            engine.run_sync(EntityType.MATTERS, "full")

        run = engine.last_runs[EntityType.MATTERS]
        stored = db.get_sync_run(run.id)
        assert stored["status"] == "failed"
        assert stored["error_message"] == message
        assert stored["pages_fetched"] == 1
        assert stored["records_processed"] == 2
        assert stored["records_created"] == 2
        assert stored["completed_at"] is not None
        assert db.count_rows("exchanges") == 2

    def test_trigger_sync_returns_failed_run_id(self, db, engine, error_class, message):
        run_id = engine.trigger_sync(EntityType.MATTERS, "full")

        assert run_id is not None
        stored = db.get_sync_run(run_id)
        assert stored["status"] == "failed"
        assert stored["records_created"] == 2

    def test_run_many_isolates_entity_type(self, engine, error_class, message):
        runs = engine.run_many(["contacts", "matters"], strategy="full")

        assert runs[EntityType.MATTERS].status is SyncRunStatus.FAILED
        assert runs[EntityType.MATTERS].records_created == 2
        assert runs[EntityType.CONTACTS].status is SyncRunStatus.COMPLETED
        assert runs[EntityType.CONTACTS].records_created == 1


class TestUnexpectedErrors:
    """Tests for errors outside the known run-level set."""

    def test_trigger_sync_does_not_raise(self, db, client, engine):
        client.errors[(EntityType.MATTERS, 1)] = RuntimeError("boom")

        run_id = engine.trigger_sync(EntityType.MATTERS, "full")

        assert db.get_sync_run(run_id)["status"] == "failed"
        assert db.get_sync_run(run_id)["error_message"] == "boom"

    def test_run_many_keeps_other_results(self, client, engine):
        client.pages = {EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]]}
        client.errors[(EntityType.TASKS, 1)] = RuntimeError("boom")

        runs = engine.run_many(strategy="full")

        assert runs[EntityType.TASKS].status is SyncRunStatus.FAILED
        assert runs[EntityType.CONTACTS].status is SyncRunStatus.COMPLETED
        assert runs[EntityType.MATTERS].status is SyncRunStatus.COMPLETED


class TestCancellation:
    """Tests for cancel_event."""

    def test_cancel_before_start(self, db, client, engine):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        event = threading.Event()
        event.set()

        run = engine.run_sync(EntityType.MATTERS, "full", cancel_event=event)

        assert run.status is SyncRunStatus.CANCELLED
        assert run.pages_fetched == 0
        assert client.calls == []
        assert db.get_sync_run(run.id)["status"] == "cancelled"

    def test_cancel_at_page_boundary(self, db, client, engine):
        """Test the page in flight finishes and the next one is not fetched."""
        client.pages = {EntityType.MATTERS: [[_matter("1")], [_matter("2")], [_matter("3")]]}
        event = threading.Event()
        client.on_fetch = lambda entity, page: event.set()

        run = engine.run_sync(EntityType.MATTERS, "full", cancel_event=event)

        assert run.status is SyncRunStatus.CANCELLED
        assert run.pages_fetched == 1
        assert db.count_rows("exchanges") == 1
        assert run.completed_at is not None

    def test_cancelled_run_is_not_a_watermark(self, client, engine):
        event = threading.Event()
        event.set()
        engine.run_sync(EntityType.MATTERS, "full", cancel_event=event)
        assert engine.resolve_strategy(EntityType.MATTERS)[0] is SyncStrategy.FULL


class TestConcurrency:
    """Tests for per-entity-type exclusion and parallel runs."""

    def test_same_entity_type_does_not_overlap(self, client, engine):
        started = threading.Event()
        release = threading.Event()

        def block(entity, page):
            started.set()
            release.wait(5)

        client.on_fetch = block
        worker = threading.Thread(target=engine.run_sync, args=(EntityType.MATTERS, "full"))
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises(SyncInProgressError):
                engine.run_sync(EntityType.MATTERS, "full")
            assert engine.trigger_sync(EntityType.MATTERS, "full") is None
        finally:
            release.set()
            worker.join(5)

        assert engine.run_sync(EntityType.MATTERS, "full").status is SyncRunStatus.COMPLETED

    def test_run_many_parallel(self, db, client, engine):
        client.pages = {
            EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]],
            EntityType.MATTERS: [[_matter("1")], [_matter("2")]],
            EntityType.TASKS: [[{"id": "t1", "subject": "Call"}]],
        }

        runs = engine.run_many(strategy="full", triggered_by="test")

        assert set(runs) == set(EntityType)
        assert all(r.status is SyncRunStatus.COMPLETED for r in runs.values())
        assert len({r.id for r in runs.values()}) == 3
        assert db.count_rows("contacts") == 1
        assert db.count_rows("exchanges") == 2
        assert db.count_rows("tasks") == 1

    def test_run_many_isolates_failures(self, db, client, engine):
        client.pages = {
            EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]],
            EntityType.MATTERS: [[_matter("1")]],
        }
        client.errors[(EntityType.TASKS, 1)] = FetchError("HTTP 403")

        runs = engine.run_many(strategy="full")

        assert runs[EntityType.TASKS].status is SyncRunStatus.FAILED
        assert runs[EntityType.CONTACTS].status is SyncRunStatus.COMPLETED
        assert runs[EntityType.MATTERS].status is SyncRunStatus.COMPLETED

    def test_run_many_sequential_subset(self, client, engine):
        runs = engine.run_many(["contacts", "exchanges"], strategy="full", parallel=False)
        assert list(runs) == [EntityType.CONTACTS, EntityType.MATTERS]
        assert [c[0] for c in client.calls] == [EntityType.CONTACTS, EntityType.MATTERS]


class TestTriggerSync:
    """Tests for trigger_sync."""

    def test_returns_run_id(self, db, client, engine):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        run_id = engine.trigger_sync("matters")
        assert db.get_sync_run(run_id)["status"] == "completed"
        assert db.get_sync_run(run_id)["triggered_by"] == "manual"

    def test_failure_is_recorded_not_raised(self, db, client, engine):
        client.errors[(EntityType.MATTERS, 1)] = FetchError("HTTP 500")
        run_id = engine.trigger_sync(EntityType.MATTERS, "full")
        stored = db.get_sync_run(run_id)
        assert stored["status"] == "failed"
        assert stored["error_message"] == "HTTP 500"


class TestSecondaryMatch:
    """Tests for linking CRM records to unlinked local rows."""

    def test_links_unlinked_row(self, db, client, engine):
        local_id = db.insert("contacts", {"display_name": "Ann Lee", "referral_source": "Web"})
        client.pages = {EntityType.CONTACTS: [[_contact("c1", "Lee, Ann")]]}

        run = engine.run_sync(EntityType.CONTACTS, "full")

        assert db.count_rows("contacts") == 1
        row = db.get_by_external_id("contacts", "c1")
        assert row["id"] == local_id
        assert row["referral_source"] == "Web"
        assert (run.records_created, run.records_updated) == (0, 1)
        assert db.get_sync_run_details(run.id)[0]["action"] == "linked"

    def test_one_row_links_once(self, db, client, engine):
        db.insert("contacts", {"display_name": "Ann Lee"})
        client.pages = {
            EntityType.CONTACTS: [[_contact("c1", "Ann Lee"), _contact("c2", "Ann Lee")]]
        }

        run = engine.run_sync(EntityType.CONTACTS, "full")

        assert db.count_rows("contacts") == 2
        assert [d["action"] for d in db.get_sync_run_details(run.id)] == ["linked", "created"]

    def test_disabled(self, db, client):
        db_engine = SyncEngine(db, client, secondary_match=False)
        db.insert("contacts", {"display_name": "Ann Lee"})
        client.pages = {EntityType.CONTACTS: [[_contact("c1", "Ann Lee")]]}

        run = db_engine.run_sync(EntityType.CONTACTS, "full")

        assert run.records_created == 1
        assert db.count_rows("contacts") == 2
        assert db_engine.matcher is None


class TestStatus:
    def test_get_status(self, db, client, engine):
        client.pages = {EntityType.MATTERS: [[_matter("1")]]}
        engine.run_sync(EntityType.MATTERS, "full")

        status = engine.get_status()

        assert set(status) == {"contacts", "matters", "tasks"}
        assert status["matters"]["row_count"] == 1
        assert status["matters"]["last_run"]["status"] == "completed"
        assert status["matters"]["last_successful"] is not None
        assert status["contacts"]["last_run"] is None
