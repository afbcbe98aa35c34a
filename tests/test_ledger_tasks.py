"""
Tests for ledger task decoding, loading and batched writes (ledger_sync/ledger/tasks.py).
"""

from datetime import datetime, timedelta, timezone

import pytest

from ledger_sync.core.models import LedgerTask, TaskStatus
from ledger_sync.ledger.gateway import DELETE_FIELD, WriteOp
from ledger_sync.ledger.tasks import (
    ACTIVITY,
    CLAIMS,
    TASKS,
    LedgerTaskManager,
    LedgerWriteBatch,
    completion_fields,
)
from ledger_sync.utils.date import to_datetime

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
OWNER = "owner-1"


def doc(**fields):
    data = {"ownerUid": OWNER, "title": "Task", "status": 0}
    data.update(fields)
    return data


@pytest.fixture
def manager(ledger_gateway):
    return LedgerTaskManager(ledger_gateway, OWNER, page_size=2)


class TestDecoding:

    @pytest.mark.parametrize("raw, expected", [
        (0, TaskStatus.OPEN), (1, TaskStatus.OPEN), (2, TaskStatus.DONE), (-1, TaskStatus.DELETED),
        ("done", TaskStatus.DONE), ("Completed", TaskStatus.DONE), ("2", TaskStatus.DONE),
        ("deleted", TaskStatus.DELETED), ("in-progress", TaskStatus.OPEN), (None, TaskStatus.OPEN),
    ])
    def test_status(self, raw, expected):
        assert TaskStatus.decode(raw) == expected

    def test_reference_aliases(self):
        assert LedgerTask.from_document("t", {"shortId": "TK-ABC234"}).human_ref == "TK-ABC234"
        assert LedgerTask.from_document("t", {"ref": "R1", "code": "C1"}).human_ref == "R1"

    def test_timestamps_in_any_shape(self):
        millis = int(T0.timestamp() * 1000)
        task = LedgerTask.from_document("t", {
            "dueDate": millis,
            "updatedAt": "2025-03-01T12:00:00Z",
            "createdAt": T0.replace(tzinfo=None),
        })
        assert task.due_at == T0
        assert task.updated_at == T0
        assert task.created_at == T0

    def test_tags_and_priority(self):
        task = LedgerTask.from_document("t", {"tags": "home, #Errands", "priority": "2"})
        assert task.tags == ["home", "Errands"]
        assert task.priority == 2

    @pytest.mark.parametrize("raw", [5, {"a": 1}, True])
    def test_malformed_tags_are_ignored(self, raw):
        assert LedgerTask.from_document("t", {"tags": raw}).tags == []

    @pytest.mark.parametrize("fields, tag", [
        ({"status": -1}, "deleted"),
        ({"deleted": True}, "deleted"),
        ({"reminderSyncDirective": "complete"}, "deleted"),
        ({"convertedToStoryId": "s1"}, "convertedtostory"),
        ({}, None),
    ])
    def test_deletion_tag(self, fields, tag):
        assert LedgerTask.from_document("t", fields).deletion_tag == tag


class TestLoading:

    def test_full_load_pages_by_id(self, ledger_gateway, manager):
        for i in range(5):
            ledger_gateway.seed(TASKS, f"t{i}", doc())
        ledger_gateway.seed(TASKS, "other", doc(ownerUid="someone-else"))

        tasks = manager.fetch_tasks("full")

        assert [t.id for t in tasks] == ["t0", "t1", "t2", "t3", "t4"]
        assert len([q for q in ledger_gateway.queries if q["collection"] == TASKS]) == 3

    def test_max_tasks_cap(self, ledger_gateway):
        manager = LedgerTaskManager(ledger_gateway, OWNER, page_size=2, max_tasks=3)
        for i in range(5):
            ledger_gateway.seed(TASKS, f"t{i}", doc())
        assert len(manager.fetch_tasks("full")) == 3

    def test_delta_load_filters_by_server_update(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "old", doc(serverUpdatedAt=T0 - timedelta(hours=1)))
        ledger_gateway.seed(TASKS, "new", doc(serverUpdatedAt=T0 + timedelta(hours=1)))

        tasks = manager.fetch_tasks("delta", watermark=T0)

        assert [t.id for t in tasks] == ["new"]

    def test_delta_falls_back_without_index(self, ledger_gateway, manager):
        ledger_gateway.missing_index_fields.add("serverUpdatedAt")
        ledger_gateway.seed(TASKS, "old", doc(updatedAt=T0 - timedelta(hours=1)))
        ledger_gateway.seed(TASKS, "new", doc(updatedAt=T0 + timedelta(hours=1)))

        tasks = manager.fetch_tasks("delta", watermark=T0)

        assert [t.id for t in tasks] == ["new"]
        assert ledger_gateway.queries[-1]["order_by"] == "updatedAt"

    def test_fetch_by_device_ids_in_chunks(self, ledger_gateway, manager):
        for i in range(12):
            ledger_gateway.seed(TASKS, f"t{i}", doc(reminderId=f"r{i}"))
        tasks = manager.fetch_by_device_ids([f"r{i}" for i in range(12)] + ["r0"])
        assert sorted(t.id for t in tasks) == sorted(f"t{i}" for i in range(12))
        in_queries = [q for q in ledger_gateway.queries if any(f[1] == "in" for f in q.get("filters", []))]
        assert len(in_queries) == 2

    def test_fetch_by_ids_drops_other_owners(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "mine", doc())
        ledger_gateway.seed(TASKS, "theirs", doc(ownerUid="someone-else"))
        assert [t.id for t in manager.fetch_by_ids(["mine", "theirs", "missing"])] == ["mine"]

    def test_find_by_reference_upper_cases(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "t1", doc(reference="TK-ABC234"))
        assert manager.find_by_reference("tk-abc234").id == "t1"
        assert manager.find_by_reference("TK-NOPE22") is None

    def test_find_open_by_title_picks_oldest_open(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "a", doc(normalizedTitle="buy milk", createdAt=T0 + timedelta(days=1)))
        ledger_gateway.seed(TASKS, "b", doc(normalizedTitle="buy milk", createdAt=T0))
        ledger_gateway.seed(TASKS, "c", doc(normalizedTitle="buy milk", createdAt=T0 - timedelta(days=1), status=2))
        assert manager.find_open_by_title("buy milk").id == "b"

    def test_fetch_expired(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "gone", doc(status=2, deleteAfter=T0 - timedelta(days=1)))
        ledger_gateway.seed(TASKS, "kept", doc(status=2, deleteAfter=T0 + timedelta(days=1)))
        ledger_gateway.seed(TASKS, "open", doc())
        assert [t.id for t in manager.fetch_expired(T0)] == ["gone"]


class TestWrites:

    def test_completion_fields_ttl(self):
        fields = completion_fields(T0, 30)
        assert fields["completedAt"] == T0
        assert fields["deleteAfter"] == T0 + timedelta(days=30)

    def test_stage_update_writes_normalized_title_and_stamps(self, ledger_gateway, manager, clock):
        batch = LedgerWriteBatch()
        manager.stage_update(batch, "t1", {"title": "Buy MILK!"})
        manager.stage_update(batch, "t1", {"priority": 2})

        assert len(batch) == 1
        manager.commit(batch.ops())

        stored = ledger_gateway.docs(TASKS)["t1"]
        assert stored["normalizedTitle"] == "buy milk"
        assert stored["priority"] == 2
        assert stored["updatedAt"] == clock()
        assert stored["serverUpdatedAt"] == clock()

    def test_delete_field_removes_key(self, ledger_gateway, manager):
        ledger_gateway.seed(TASKS, "t1", doc(reminderId="r1"))
        manager.commit([WriteOp.set(TASKS, "t1", {"reminderId": DELETE_FIELD})])
        assert "reminderId" not in ledger_gateway.docs(TASKS)["t1"]

    def test_create_payload(self, ledger_gateway, manager):
        batch = LedgerWriteBatch()
        task = LedgerTask(
            id="t1", title="Water plants", human_ref="TK-ABC234", linked_device_id="r1",
            priority=2, due_at=T0, recurrence={"frequency": "weekly", "interval": 1, "daysOfWeek": ["MO"]},
        )
        manager.stage_create(batch, task)
        manager.commit(batch.ops())

        stored = ledger_gateway.docs(TASKS)["t1"]
        assert stored["ownerUid"] == OWNER
        assert stored["reference"] == "TK-ABC234"
        assert stored["reminderId"] == "r1"
        assert stored["status"] == 0
        assert to_datetime(stored["dueDate"]) == T0
        assert stored["repeatFrequency"] == "weekly"
        assert stored["repeatDaysOfWeek"] == ["MO"]
        assert stored["source"] == "ledger-sync"

    def test_commit_continues_after_failed_chunk(self, ledger_gateway):
        manager = LedgerTaskManager(ledger_gateway, OWNER, batch_size=2)
        ledger_gateway.failing_commits = {0}
        ops = [WriteOp.set(TASKS, f"t{i}", {"title": "x"}) for i in range(5)]

        outcome = manager.commit(ops)

        assert not outcome.ok
        assert outcome.committed == 3
        assert outcome.failed == 2
        assert set(ledger_gateway.docs(TASKS)) == {"t2", "t3", "t4"}

    def test_commit_can_abort(self, ledger_gateway):
        manager = LedgerTaskManager(ledger_gateway, OWNER, batch_size=2)
        ledger_gateway.failing_commits = {0}
        outcome = manager.commit([WriteOp.set(TASKS, f"t{i}", {}) for i in range(5)], abort_on_error=True)
        assert outcome.committed == 0
        assert len(ledger_gateway.commit_calls) == 1

    def test_append_activity_is_best_effort(self, ledger_gateway, manager):
        ledger_gateway.denied_collections.add(ACTIVITY)
        assert manager.append_activity({"activityType": "x"}) is None


class TestClaims:

    def test_claim_free_item(self, ledger_gateway, manager):
        assert manager.claim_creation("r1", "inst-a", T0, 120)
        claim = ledger_gateway.docs(CLAIMS)[f"{OWNER}_r1"]
        assert claim["instanceId"] == "inst-a"

    def test_fresh_claim_by_other_instance_blocks(self, manager):
        manager.claim_creation("r1", "inst-a", T0, 120)
        assert not manager.claim_creation("r1", "inst-b", T0 + timedelta(seconds=30), 120)

    def test_stale_claim_is_taken_over(self, ledger_gateway, manager):
        manager.claim_creation("r1", "inst-a", T0, 120)
        assert manager.claim_creation("r1", "inst-b", T0 + timedelta(seconds=121), 120)
        assert ledger_gateway.docs(CLAIMS)[f"{OWNER}_r1"]["instanceId"] == "inst-b"

    def test_own_claim_is_renewed(self, manager):
        manager.claim_creation("r1", "inst-a", T0, 120)
        assert manager.claim_creation("r1", "inst-a", T0 + timedelta(seconds=5), 120)

    def test_release_is_staged_with_the_batch(self, ledger_gateway, manager):
        manager.claim_creation("r1", "inst-a", T0, 120)
        batch = LedgerWriteBatch()

        manager.stage_release_claim(batch, "r1")

        assert f"{OWNER}_r1" in ledger_gateway.docs(CLAIMS)
        manager.commit(batch.ops())
        assert ledger_gateway.docs(CLAIMS) == {}
