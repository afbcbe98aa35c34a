"""
Tests for the CLI command classes (ledger_sync/commands/).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from ledger_sync.commands import ClassifyCommand, DedupeCommand, StatusCommand, SyncCommand
from ledger_sync.core.models import SyncConfig, SyncResult
from ledger_sync.ledger.tasks import ACTIVITY, TASKS, LedgerTaskManager
from ledger_sync.sync.engine import ReconciliationEngine
from ledger_sync.sync.state import SyncStateStore
from ledger_sync.sync.triage import Persona, TriageClassifier, TriageResult

OWNER = "owner-1"
LONG_AGO = datetime(2020, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def config(tmp_path):
    return SyncConfig(owner_id=OWNER, state_path=str(tmp_path / "state.json"))


def make_result(success=True, dry_run=True, **counts):
    return SyncResult(owner_id=OWNER, mode="full", dry_run=dry_run, success=success,
                      counts=counts, errors=[] if success else ["boom"])


class TestSyncCommand:

    def test_single_dry_run_pass(self, config, capsys):
        engine = Mock(spec=ReconciliationEngine)
        engine.run.return_value = make_result(ledger_created=1)

        assert SyncCommand(config, engine=engine).run()

        engine.run.assert_called_once_with(mode=None, dry_run=True)
        out = capsys.readouterr().out
        assert "[DRY RUN]" in out
        assert "ledger created: 1" in out
        assert "--apply" in out

    def test_apply_and_mode(self, config):
        engine = Mock(spec=ReconciliationEngine)
        engine.run.return_value = make_result(dry_run=False)
        SyncCommand(config, engine=engine).run(apply_changes=True, mode="full")
        engine.run.assert_called_once_with(mode="full", dry_run=False)

    def test_failed_pass(self, config, capsys):
        engine = Mock(spec=ReconciliationEngine)
        engine.run.return_value = make_result(success=False)
        assert not SyncCommand(config, engine=engine).run()
        assert "boom" in capsys.readouterr().out

    def test_watch_sleeps_between_passes(self, config):
        engine = Mock(spec=ReconciliationEngine)
        engine.run.return_value = make_result()
        sleep = Mock()

        assert SyncCommand(config, engine=engine, sleep=sleep).run(watch=True, max_passes=2)

        assert engine.run.call_count == 2
        sleep.assert_called_once_with(15 * 60)

    def test_watch_reports_any_failure(self, config):
        engine = Mock(spec=ReconciliationEngine)
        engine.run.side_effect = [make_result(success=False), make_result()]
        assert not SyncCommand(config, engine=engine, sleep=Mock()).run(watch=True, max_passes=2)

    def test_missing_project(self, config, capsys):
        assert not SyncCommand(config).run()
        assert "Configuration error" in capsys.readouterr().out


class TestDedupeCommand:

    @pytest.fixture
    def manager(self, ledger_gateway, clock):
        ledger_gateway.seed(TASKS, "a", {"ownerUid": OWNER, "title": "Pay rent", "status": 0,
                                         "externalId": "ext-1", "updatedAt": clock() - timedelta(hours=2)})
        ledger_gateway.seed(TASKS, "b", {"ownerUid": OWNER, "title": "Pay rent", "status": 0,
                                         "externalId": "ext-1", "updatedAt": clock() - timedelta(hours=1)})
        return LedgerTaskManager(ledger_gateway, None)

    def test_dry_run_reports_groups(self, config, manager, ledger_gateway, capsys):
        assert DedupeCommand(config, manager=manager).run()

        out = capsys.readouterr().out
        assert "Found 1 duplicate groups (1 duplicates)" in out
        assert "keep b, retire a" in out
        assert "duplicateOf" not in ledger_gateway.docs(TASKS)["a"]

    def test_soft_apply(self, config, manager, ledger_gateway):
        assert DedupeCommand(config, manager=manager).run(apply_changes=True)

        doc = ledger_gateway.docs(TASKS)["a"]
        assert doc["duplicateOf"] == "b"
        assert doc["status"] == 2
        assert any(r.get("activityType") == "deduplicateTasks" for r in ledger_gateway.docs(ACTIVITY).values())

    def test_hard_apply(self, config, manager, ledger_gateway):
        assert DedupeCommand(config, manager=manager).run(apply_changes=True, hard=True)
        assert set(ledger_gateway.docs(TASKS)) == {"b"}

    def test_purge_expired(self, config, manager, ledger_gateway, capsys):
        ledger_gateway.seed(TASKS, "old", {"ownerUid": OWNER, "title": "x", "status": 2, "deleteAfter": LONG_AGO})
        ledger_gateway.seed(TASKS, "reopened", {"ownerUid": OWNER, "title": "y", "status": 0, "deleteAfter": LONG_AGO})

        assert DedupeCommand(config, manager=manager).run(apply_changes=True, purge_expired=True)

        assert "old" not in ledger_gateway.docs(TASKS)
        assert "reopened" in ledger_gateway.docs(TASKS)
        assert "Purged 1 expired tasks" in capsys.readouterr().out

    def test_commit_failure(self, config, manager, ledger_gateway):
        ledger_gateway.fail_all_commits = True
        assert not DedupeCommand(config, manager=manager).run(apply_changes=True)

    def test_no_owner(self, tmp_path, manager):
        assert not DedupeCommand(SyncConfig(state_path=str(tmp_path / "s.json")), manager=manager).run()


class TestClassifyCommand:

    def test_plain_output(self, config, capsys):
        classifier = Mock(spec=TriageClassifier)
        classifier.classify.return_value = TriageResult(Persona.PERSONAL, 0.91, "heuristic", "Home")

        assert ClassifyCommand(config, classifier=classifier).run("Fix the washing machine", tags=["home"])

        classifier.classify.assert_called_once_with("Fix the washing machine", None, ["home"])
        out = capsys.readouterr().out
        assert "Persona:    personal" in out
        assert "Confidence: 0.91" in out
        assert "Theme:      Home" in out

    def test_enabled_regardless_of_sync_setting(self, config):
        assert not config.enable_triage
        assert ClassifyCommand(config).classifier.enabled


class TestStatusCommand:

    def test_no_owner(self, tmp_path, capsys):
        assert not StatusCommand(SyncConfig(state_path=str(tmp_path / "s.json"))).run()
        assert "(not configured)" in capsys.readouterr().out

    def test_no_passes_yet(self, config, capsys):
        assert StatusCommand(config).run()
        assert "No completed passes" in capsys.readouterr().out

    def test_shows_last_pass(self, config, clock, capsys):
        SyncStateStore(config.state_path).record_pass(OWNER, "full", clock(), {"summary": "created=2"})

        assert StatusCommand(config).run()

        out = capsys.readouterr().out
        assert "Watermark:    2025-03-10T09:00:00Z" in out
        assert "Last result:  created=2" in out
