"""
Tests for identity resolution (ledger_sync/sync/matcher.py).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from ledger_sync.core.models import DeviceItem, LedgerTask, TaskStatus
from ledger_sync.sync.matcher import IdentityResolver, LedgerIndex

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def task(task_id, **kwargs):
    kwargs.setdefault("title", f"Task {task_id}")
    return LedgerTask(id=task_id, **kwargs)


class TestLedgerIndex:

    def test_duplicates_are_not_resolution_targets(self):
        index = LedgerIndex([
            task("a", linked_device_id="R1", human_ref="TK-A", duplicate_of="b"),
        ])
        assert "a" in index
        assert index.find_device("r1") is None
        assert index.find_ref("TK-A") is None

    def test_newest_task_owns_shared_device_id(self):
        older = task("a", linked_device_id="r1", updated_at=T0)
        newer = task("b", linked_device_id="R1", updated_at=T0 + timedelta(hours=1))
        index = LedgerIndex([newer, older])
        assert index.find_device("r1") is newer

    def test_title_map_keeps_oldest_open_task(self):
        first = task("b", title="Buy milk", created_at=T0)
        second = task("a", title="buy  MILK!", created_at=T0 + timedelta(days=1))
        closed = task("c", title="Buy milk", created_at=T0 - timedelta(days=1), status=TaskStatus.DONE)
        index = LedgerIndex([second, closed, first])
        assert index.find_open_title("Buy Milk") is first

    def test_link_device_moves_key(self):
        t = task("a", linked_device_id="old")
        index = LedgerIndex([t])
        index.link_device(t, "new")
        assert index.find_device("old") is None
        assert index.find_device("NEW") is t
        assert t.linked_device_id == "new"

    def test_refs_are_upper_cased(self):
        index = LedgerIndex([task("a", human_ref="tk-abc234")])
        assert index.refs == {"TK-ABC234"}


class TestIdentityResolver:

    def test_device_id_first(self):
        by_device = task("a", linked_device_id="r1")
        by_ref = task("b", human_ref="TK-B")
        resolver = IdentityResolver(LedgerIndex([by_device, by_ref]))

        resolution = resolver.resolve(DeviceItem(uuid="R1", title="x"), {"taskRef": "TK-B"})

        assert resolution.task is by_device
        assert resolution.key == "device_id"

    def test_human_ref_case_insensitive(self):
        t = task("a", human_ref="TK-ABC234")
        resolver = IdentityResolver(LedgerIndex([t]))
        resolution = resolver.resolve(DeviceItem(uuid="r9", title="x"), {"taskRef": "tk-abc234"})
        assert resolution.task is t
        assert resolution.key == "human_ref"

    def test_remote_lookup_once_per_ref(self):
        remote = task("z", human_ref="TK-ZZZ222")
        lookup = Mock(return_value=remote)
        index = LedgerIndex()
        resolver = IdentityResolver(index, lookup_ref=lookup)

        resolution = resolver.resolve(DeviceItem(uuid="r1", title="x"), {"taskRef": "TK-ZZZ222"})

        assert resolution.task is remote
        assert resolution.remote
        assert "z" in index
        # Second resolution hits the index
        resolver.resolve(DeviceItem(uuid="r2", title="x"), {"taskRef": "TK-ZZZ222"})
        lookup.assert_called_once_with("TK-ZZZ222")

    def test_remote_misses_are_memoized(self):
        lookup = Mock(return_value=None)
        resolver = IdentityResolver(LedgerIndex(), lookup_ref=lookup)
        for uuid in ("r1", "r2"):
            assert not resolver.resolve(DeviceItem(uuid=uuid, title="x"), {"taskRef": "TK-NOPE22"}).found
        assert lookup.call_count == 1

    def test_raw_task_id(self):
        t = task("doc-1")
        resolver = IdentityResolver(LedgerIndex([t]))
        resolution = resolver.resolve(DeviceItem(uuid="r1", title="other"), {"taskId": "doc-1"})
        assert resolution.task is t
        assert resolution.key == "task_id"

    def test_title_net_only_matches_open_tasks(self):
        done = task("a", title="Buy milk", status=TaskStatus.DONE)
        resolver = IdentityResolver(LedgerIndex([done]))
        assert not resolver.resolve(DeviceItem(uuid="r1", title="Buy milk")).found

        open_task = task("b", title="Buy milk")
        resolver = IdentityResolver(LedgerIndex([done, open_task]))
        resolution = resolver.resolve(DeviceItem(uuid="r1", title="BUY MILK"))
        assert resolution.task is open_task
        assert resolution.key == "title"

    def test_external_and_alt_ids(self):
        alt = task("a", device_alt_id="r-alt")
        ext = task("b", external_id="ext-1")
        resolver = IdentityResolver(LedgerIndex([alt, ext]))
        assert resolver.resolve(DeviceItem(uuid="R-ALT", title="x")).task is alt
        assert resolver.resolve(DeviceItem(uuid="r2", title="x", external_id="EXT-1")).task is ext

    def test_unmatched_item_is_new(self):
        resolver = IdentityResolver(LedgerIndex([task("a", title="Something else")]))
        resolution = resolver.resolve(DeviceItem(uuid="r1", title="Buy milk"))
        assert not resolution.found
        assert resolution.key is None
