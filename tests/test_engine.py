"""
End-to-end reconciliation passes over in-memory ledger and device stores.
"""

from datetime import timedelta
from pathlib import Path
from unittest.mock import Mock

import pytest

from ledger_sync.core.models import SyncConfig
from ledger_sync.ledger.tasks import ACTIVITY, CLAIMS, TASKS, LedgerTaskManager
from ledger_sync.reminders.tasks import RemindersTaskManager
from ledger_sync.sync.codec import NoteCodec
from ledger_sync.sync.engine import OwnerLocks, ReconciliationEngine
from ledger_sync.sync.state import SyncStateStore
from ledger_sync.sync.triage import Persona, TriageClassifier, TriageResult

OWNER = "owner-1"


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        owner_id=OWNER,
        sync_mode="full",
        state_path=str(tmp_path / "state.json"),
        instance_id="inst-1",
    )


@pytest.fixture
def make_engine(config, ledger_gateway, device_gateway, clock):
    device_gateway.add_list("list-1", "Inbox", default=True)

    def factory(cfg=None, **kwargs):
        cfg = cfg or config
        kwargs.setdefault("locks", OwnerLocks())
        return ReconciliationEngine(
            cfg,
            LedgerTaskManager(ledger_gateway, cfg.owner_id),
            RemindersTaskManager(gateway=device_gateway),
            clock=clock,
            **kwargs,
        )
    return factory


@pytest.fixture
def engine(make_engine):
    return make_engine()


def seed_task(ledger_gateway, clock, task_id, **fields):
    data = {
        "ownerUid": OWNER,
        "title": "Task",
        "status": 0,
        "updatedAt": clock() - timedelta(hours=1),
    }
    data.update(fields)
    ledger_gateway.seed(TASKS, task_id, data)


def only_task(ledger_gateway):
    docs = ledger_gateway.docs(TASKS)
    assert len(docs) == 1
    return next(iter(docs.items()))


class TestImport:

    def test_new_device_item_creates_task(self, engine, ledger_gateway, device_gateway, clock, config):
        device_gateway.add_item("rem-1", "Buy milk")

        result = engine.run()

        assert result.success
        assert result.count("ledger_created") == 1
        task_id, doc = only_task(ledger_gateway)
        assert doc["title"] == "Buy milk"
        assert doc["status"] == 0
        assert doc["reminderId"] == "rem-1"
        assert doc["reminderListId"] == "list-1"

        meta, _ = NoteCodec().decode(device_gateway.reminders["rem-1"].notes)
        assert meta["taskRef"] == doc["reference"]
        assert meta["taskId"] == task_id
        assert SyncStateStore(config.state_path).watermark(OWNER) == clock()
        assert ledger_gateway.docs(CLAIMS) == {}

    def test_second_pass_is_quiet(self, engine, device_gateway, clock):
        device_gateway.add_item("rem-1", "Buy milk")
        engine.run()
        notes = device_gateway.reminders["rem-1"].notes
        clock.advance(minutes=20)

        result = engine.run()

        assert result.success
        assert (result.created, result.updated, result.repaired) == (0, 0, 0)
        assert device_gateway.reminders["rem-1"].notes == notes

    def test_duplicate_titles_import_once(self, engine, ledger_gateway, device_gateway):
        device_gateway.add_item("rem-1", "Buy milk")
        device_gateway.add_item("rem-2", "buy MILK")

        result = engine.run()

        only_task(ledger_gateway)
        assert result.count("suppressed") == 1

    def test_completed_and_blank_items_are_skipped(self, engine, ledger_gateway, device_gateway):
        device_gateway.add_item("rem-1", "Done already", completed=True)
        device_gateway.add_item("rem-2", "   ")

        engine.run()

        assert ledger_gateway.docs(TASKS) == {}

    def test_relink_by_note_ref(self, engine, ledger_gateway, device_gateway, clock):
        seed_task(ledger_gateway, clock, "t-1", title="Call mum", reference="TK-ABC234")
        device_gateway.add_item("rem-7", "Call mum", notes="BOB: v=1 taskRef=TK-ABC234")

        result = engine.run()

        task_id, doc = only_task(ledger_gateway)
        assert task_id == "t-1"
        assert doc["reminderId"] == "rem-7"
        assert result.count("relinked") == 1
        assert result.count("device_created") == 0

    def test_claim_held_by_other_instance(self, engine, ledger_gateway, device_gateway, clock):
        ledger_gateway.seed(CLAIMS, f"{OWNER}_rem-1", {"instanceId": "inst-2", "claimedAt": clock()})
        device_gateway.add_item("rem-1", "Buy milk")

        engine.run()

        assert ledger_gateway.docs(TASKS) == {}


class TestMerge:

    @pytest.fixture
    def linked(self, engine, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-1", "Buy milk")
        engine.run()
        clock.advance(minutes=5)
        return only_task(ledger_gateway)[0]

    def test_device_completion_sets_ttl(self, engine, linked, ledger_gateway, device_gateway):
        device_gateway.update_reminder("rem-1", completed=True)

        result = engine.run()

        doc = ledger_gateway.docs(TASKS)[linked]
        assert result.count("ledger_updated") == 1
        assert doc["status"] == 2
        assert doc["deleteAfter"] == doc["completedAt"] + timedelta(days=30)

    def test_device_title_edit_wins(self, engine, linked, ledger_gateway, device_gateway):
        device_gateway.update_reminder("rem-1", title="Buy oat milk")

        engine.run()

        doc = ledger_gateway.docs(TASKS)[linked]
        assert doc["title"] == "Buy oat milk"
        assert doc["normalizedTitle"] == "buy oat milk"

    def test_ledger_title_edit_wins(self, engine, linked, ledger_gateway, device_gateway, clock):
        doc = ledger_gateway.docs(TASKS)[linked]
        doc["title"] = "Buy soy milk"
        doc["updatedAt"] = clock()

        result = engine.run()

        assert result.count("device_updated") == 1
        assert device_gateway.reminders["rem-1"].title == "Buy soy milk"


class TestLifecycle:

    def test_ttl_removes_expired_item(self, engine, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-9", "Old", completed=True, modified_at=clock() - timedelta(hours=2))
        seed_task(ledger_gateway, clock, "t-old", title="Old", status=2, reminderId="rem-9",
                  deleteAfter=clock() - timedelta(days=1))

        result = engine.run()

        assert result.count("ttl_removed") == 1
        assert "rem-9" not in device_gateway.reminders
        assert "reminderId" not in ledger_gateway.docs(TASKS)["t-old"]

    def test_ttl_waits_for_deadline(self, engine, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-9", "Old", completed=True, modified_at=clock() - timedelta(hours=2))
        seed_task(ledger_gateway, clock, "t-old", title="Old", status=2, reminderId="rem-9",
                  deleteAfter=clock() + timedelta(days=1))

        result = engine.run()

        assert result.count("ttl_removed") == 0
        assert "rem-9" in device_gateway.reminders

    def test_ledger_delete_completes_device_item(self, engine, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-5", "Old chore", modified_at=clock() - timedelta(hours=2))
        seed_task(ledger_gateway, clock, "t-del", title="Old chore", deleted=True, reminderId="rem-5")

        result = engine.run()

        item = device_gateway.reminders["rem-5"]
        assert result.count("deletions_propagated") == 1
        assert item.completed
        assert "#tags: deleted" in item.notes

        clock.advance(minutes=20)
        before = len(device_gateway.updates)
        again = engine.run()
        assert again.count("deletions_propagated") == 0
        assert len(device_gateway.updates) == before

    def test_missing_device_item_is_unlinked(self, engine, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-1", "Other")
        seed_task(ledger_gateway, clock, "t-orph", title="Ghost", reminderId="rem-gone")

        result = engine.run()

        doc = ledger_gateway.docs(TASKS)["t-orph"]
        assert result.count("orphans_cleared") == 1
        assert "reminderId" not in doc
        assert doc["reminderMissingAt"] == clock()

        clock.advance(minutes=20)
        assert engine.run().count("device_created") == 0

    def test_empty_device_snapshot_keeps_links(self, engine, ledger_gateway, clock):
        seed_task(ledger_gateway, clock, "t-1", reminderId="rem-1")

        result = engine.run()

        assert result.count("orphans_cleared") == 0
        assert ledger_gateway.docs(TASKS)["t-1"]["reminderId"] == "rem-1"


class TestExport:

    def test_unlinked_task_exported_to_default_list(self, engine, ledger_gateway, device_gateway, clock):
        seed_task(ledger_gateway, clock, "t-1", title="Water plants", reference="TK-ABC234", priority=1)

        result = engine.run()

        doc = ledger_gateway.docs(TASKS)["t-1"]
        item = device_gateway.reminders[doc["reminderId"]]
        assert result.count("device_created") == 1
        assert item.list_id == "list-1"
        assert item.priority == 1
        assert "taskRef=TK-ABC234" in item.notes

    def test_theme_mapping_picks_list(self, engine, ledger_gateway, device_gateway, clock):
        ledger_gateway.seed("themes", "th1", {"ownerUid": OWNER, "name": "Home", "reminderListName": "Household"})
        ledger_gateway.seed("stories", "s1", {"ownerUid": OWNER, "themeId": "th1", "reference": "ST-1"})
        seed_task(ledger_gateway, clock, "t-1", title="Water plants", storyId="s1")

        engine.run()

        doc = ledger_gateway.docs(TASKS)["t-1"]
        item = device_gateway.reminders[doc["reminderId"]]
        assert item.list_name == "Household"
        assert doc["reminderListName"] == "Household"
        assert "#theme: Home" in item.notes
        assert "#story: ST-1" in item.notes


class TestTriage:

    @pytest.fixture
    def triage_config(self, config):
        config.enable_triage = True
        return config

    @pytest.fixture
    def lists(self, device_gateway):
        device_gateway.add_list("list-t", "Triage")
        device_gateway.add_list("list-w", "Work")

    def test_work_item_is_routed_away(self, make_engine, triage_config, lists, ledger_gateway, device_gateway):
        classifier = Mock(spec=TriageClassifier)
        classifier.classify.return_value = TriageResult(Persona.WORK, 0.9, "llm")
        device_gateway.add_item("rem-t", "Prep quarterly deck", list_id="list-t")

        result = make_engine(triage_config, classifier=classifier).run()

        classifier.classify.assert_called_once_with("Prep quarterly deck", "", [])
        assert result.count("routed_away") == 1
        assert device_gateway.reminders["rem-t"].list_id == "list-w"
        assert ledger_gateway.docs(TASKS) == {}

    def test_personal_item_imported_with_theme(self, make_engine, triage_config, lists, ledger_gateway, device_gateway):
        device_gateway.add_item("rem-t", "Fix the washing machine", list_id="list-t")

        make_engine(triage_config).run()

        _, doc = only_task(ledger_gateway)
        assert doc["persona"] == "personal"
        assert doc["theme"] == "Home"

    def test_work_list_is_not_imported(self, make_engine, triage_config, lists, ledger_gateway, device_gateway):
        device_gateway.add_item("rem-w", "Quarterly review", list_id="list-w")
        make_engine(triage_config).run()
        assert ledger_gateway.docs(TASKS) == {}


class TestHiddenMetadata:

    @pytest.fixture
    def hidden(self, make_engine, config):
        config.show_metadata_in_notes = False
        return make_engine(config)

    @pytest.fixture
    def linked(self, hidden, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-1", "Buy milk")
        hidden.run()
        clock.advance(minutes=5)
        return only_task(ledger_gateway)[0]

    def assert_quiet(self, engine, device_gateway, clock):
        clock.advance(minutes=20)
        before = len(device_gateway.updates)

        result = engine.run()

        assert result.success
        assert (result.created, result.updated, result.repaired) == (0, 0, 0)
        assert result.count("deletions_propagated") == 0
        assert len(device_gateway.updates) == before

    def test_import_writes_links_only(self, hidden, linked, ledger_gateway, device_gateway, clock, config):
        notes = device_gateway.reminders["rem-1"].notes
        doc = ledger_gateway.docs(TASKS)[linked]

        assert "BOB:" not in notes
        assert f"{config.deep_link_base}/task/{doc['reference']}" in notes
        self.assert_quiet(hidden, device_gateway, clock)

    def test_device_completion_then_quiet(self, hidden, linked, ledger_gateway, device_gateway, clock):
        device_gateway.update_reminder("rem-1", completed=True)

        result = hidden.run()

        assert result.count("ledger_updated") == 1
        assert ledger_gateway.docs(TASKS)[linked]["status"] == 2
        self.assert_quiet(hidden, device_gateway, clock)

    def test_ledger_title_edit_then_quiet(self, hidden, linked, ledger_gateway, device_gateway, clock):
        doc = ledger_gateway.docs(TASKS)[linked]
        doc["title"] = "Buy soy milk"
        doc["updatedAt"] = clock()

        result = hidden.run()

        assert result.count("device_updated") == 1
        assert device_gateway.reminders["rem-1"].title == "Buy soy milk"
        self.assert_quiet(hidden, device_gateway, clock)

    def test_ledger_delete_tags_user_lines_once(self, hidden, ledger_gateway, device_gateway, clock):
        device_gateway.add_item("rem-5", "Old chore", notes="Keep receipt",
                                modified_at=clock() - timedelta(hours=2))
        seed_task(ledger_gateway, clock, "t-del", title="Old chore", deleted=True, reminderId="rem-5")

        result = hidden.run()

        item = device_gateway.reminders["rem-5"]
        assert result.count("deletions_propagated") == 1
        assert item.completed
        assert item.notes.split("\n") == ["Keep receipt", "#deleted"]
        self.assert_quiet(hidden, device_gateway, clock)


class TestPassControl:

    def test_dry_run_writes_nothing(self, engine, ledger_gateway, device_gateway, config):
        device_gateway.add_item("rem-1", "Buy milk")

        result = engine.run(dry_run=True)

        assert result.dry_run and result.success
        assert result.count("ledger_created") == 1
        assert ledger_gateway.docs(TASKS) == {}
        assert ledger_gateway.docs(CLAIMS) == {}
        assert ledger_gateway.docs(ACTIVITY) == {}
        assert device_gateway.reminders["rem-1"].notes is None
        assert not Path(config.state_path).exists()

    def test_live_pass_mirrors_activity(self, engine, ledger_gateway, device_gateway):
        device_gateway.add_item("rem-1", "Buy milk")
        engine.run()
        records = ledger_gateway.docs(ACTIVITY).values()
        assert any(r["activityType"] == "reminderSync" and r["action"] == "importDevice" for r in records)

    def test_commit_failure_keeps_watermark(self, engine, ledger_gateway, device_gateway, config):
        ledger_gateway.fail_all_commits = True
        device_gateway.add_item("rem-1", "Buy milk")

        result = engine.run()

        assert not result.success
        assert result.errors
        assert "BOB:" in device_gateway.reminders["rem-1"].notes
        assert SyncStateStore(config.state_path).watermark(OWNER) is None

    def test_concurrent_pass_rejected(self, make_engine):
        locks = OwnerLocks()
        assert locks.acquire(OWNER)

        result = make_engine(locks=locks).run()

        assert not result.success
        assert "already running" in result.errors[0]

    def test_missing_owner(self, make_engine, config):
        config.owner_id = None
        result = make_engine(config).run()
        assert not result.success
        assert "owner" in result.errors[0].lower()

    def test_cancel_discards_writes(self, engine, ledger_gateway, device_gateway, config):
        device_gateway.add_item("rem-1", "Buy milk")
        original = device_gateway.get_reminders

        def cancelling(list_ids=None):
            engine.cancel()
            return original(list_ids)

        device_gateway.get_reminders = cancelling

        result = engine.run()

        assert result.cancelled
        assert not result.success
        assert ledger_gateway.commit_calls == []
        assert not Path(config.state_path).exists()

    def test_delta_after_full(self, engine, device_gateway, clock):
        device_gateway.add_item("rem-1", "Buy milk")
        engine.run()
        clock.advance(minutes=20)

        result = engine.run(mode="delta")

        assert result.mode == "delta"
        assert result.success
        assert (result.created, result.updated, result.repaired) == (0, 0, 0)

    def test_delta_without_history_runs_full(self, make_engine, config):
        config.sync_mode = "delta"
        assert make_engine(config).run().mode == "full"

    def test_malformed_tags_do_not_abort(self, engine, ledger_gateway, device_gateway, clock):
        seed_task(ledger_gateway, clock, "t-1", title="Water plants", tags=5)

        result = engine.run()

        assert result.success
        assert result.count("device_created") == 1

    def test_unexpected_error_is_reported(self, make_engine, device_gateway, config):
        locks = OwnerLocks()
        engine = make_engine(locks=locks)
        engine.deduplicator.analyze = Mock(side_effect=RuntimeError("boom"))
        device_gateway.add_item("rem-1", "Buy milk")

        result = engine.run()

        assert not result.success
        assert result.errors == ["Sync aborted: boom"]
        assert not locks.is_running(OWNER)
        assert SyncStateStore(config.state_path).watermark(OWNER) is None
