"""Identity resolution between device items and ledger tasks."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional
import logging

from ..core.models import DeviceItem, LedgerTask
from ..utils.text import normalize_title

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)
_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def _key(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = str(value).strip().lower()
    return cleaned or None


@dataclass
class Resolution:
    """Outcome of resolving one device item."""
    task: Optional[LedgerTask] = None
    key: Optional[str] = None
    remote: bool = False

    @property
    def found(self) -> bool:
        return self.task is not None


class LedgerIndex:
    """Lookup maps over the ledger snapshot.

    Duplicates (tasks with ``duplicateOf``) are kept in ``by_id`` only and
    never become resolution targets. When several live tasks share a device
    id, the most recently updated one wins; the title map keeps the oldest
    open task per normalized title.
    """

    def __init__(self, tasks: Iterable[LedgerTask] = ()):
        self.by_id: Dict[str, LedgerTask] = {}
        self.by_device_id: Dict[str, LedgerTask] = {}
        self.by_ref: Dict[str, LedgerTask] = {}
        self.by_source_ref: Dict[str, LedgerTask] = {}
        self.by_alt_device_id: Dict[str, LedgerTask] = {}
        self.by_external_id: Dict[str, LedgerTask] = {}
        self.by_title: Dict[str, LedgerTask] = {}
        for task in tasks:
            self.add(task)

    def __len__(self) -> int:
        return len(self.by_id)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self.by_id

    def tasks(self) -> List[LedgerTask]:
        return list(self.by_id.values())

    @property
    def refs(self) -> set:
        """Upper-cased human refs already in use."""
        return {task.human_ref.upper() for task in self.by_id.values() if task.human_ref}

    def add(self, task: LedgerTask) -> None:
        self.by_id[task.id] = task
        if task.is_duplicate:
            return

        device_key = _key(task.linked_device_id)
        if device_key:
            current = self.by_device_id.get(device_key)
            if current is None or (task.updated_at or _EPOCH, task.id) > (current.updated_at or _EPOCH, current.id):
                self.by_device_id[device_key] = task

        for mapping, value in (
            (self.by_ref, task.human_ref),
            (self.by_source_ref, task.source_ref),
            (self.by_alt_device_id, task.device_alt_id),
            (self.by_external_id, task.external_id),
        ):
            key = _key(value)
            if key and key not in mapping:
                mapping[key] = task

        if task.is_open:
            self._index_title(task)

    def _index_title(self, task: LedgerTask) -> None:
        title_key = normalize_title(task.title)
        if not title_key:
            return
        current = self.by_title.get(title_key)
        if current is None or (task.created_at or _FAR_FUTURE, task.id) < (current.created_at or _FAR_FUTURE, current.id):
            self.by_title[title_key] = task

    def link_device(self, task: LedgerTask, device_id: str) -> None:
        """Point the device-id map at ``task`` after a (re)link."""
        old_key = _key(task.linked_device_id)
        if old_key and self.by_device_id.get(old_key) is task:
            del self.by_device_id[old_key]
        task.linked_device_id = device_id
        self.by_device_id[_key(device_id)] = task

    def unlink_device(self, task: LedgerTask) -> None:
        key = _key(task.linked_device_id)
        if key and self.by_device_id.get(key) is task:
            del self.by_device_id[key]
        task.linked_device_id = None

    def forget_title(self, task: LedgerTask) -> None:
        """Drop a task from the title map once it is no longer open."""
        title_key = normalize_title(task.title)
        if self.by_title.get(title_key) is task:
            del self.by_title[title_key]

    def find_device(self, device_id: Optional[str]) -> Optional[LedgerTask]:
        key = _key(device_id)
        return self.by_device_id.get(key) if key else None

    def find_ref(self, ref: Optional[str]) -> Optional[LedgerTask]:
        key = _key(ref)
        return self.by_ref.get(key) if key else None

    def find_open_title(self, title: Optional[str]) -> Optional[LedgerTask]:
        key = normalize_title(title)
        return self.by_title.get(key) if key else None


class IdentityResolver:
    """Finds the ledger task a device item stands for.

    Resolution stops at the first hit, in this order:

    1. device identity: the item id against linked device ids and alternate
       device ids, then the item's external id against external ids
    2. the note-embedded human ref (case-insensitive), with one point lookup
       against the ledger when the snapshot does not have it, then the
       note-embedded raw task id
    3. the normalized title against open tasks
    """

    def __init__(
        self,
        index: LedgerIndex,
        lookup_ref: Optional[Callable[[str], Optional[LedgerTask]]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.index = index
        self.lookup_ref = lookup_ref
        self.logger = logger or logging.getLogger(__name__)
        self._remote_misses: set = set()

    def resolve(self, item: DeviceItem, metadata: Optional[Dict[str, str]] = None) -> Resolution:
        metadata = metadata or {}

        task = self.index.find_device(item.uuid)
        if task:
            return Resolution(task, "device_id")
        for mapping, value, key in (
            (self.index.by_alt_device_id, item.uuid, "alt_device_id"),
            (self.index.by_external_id, item.external_id, "external_id"),
            (self.index.by_source_ref, item.external_id, "source_ref"),
        ):
            lookup = _key(value)
            if lookup and lookup in mapping:
                return Resolution(mapping[lookup], key)

        ref = (metadata.get("taskRef") or "").strip()
        if ref:
            task = self.index.find_ref(ref)
            if task:
                return Resolution(task, "human_ref")
            task = self._lookup_remote(ref)
            if task:
                return Resolution(task, "human_ref", remote=True)

        raw_id = (metadata.get("taskId") or "").strip()
        if raw_id:
            task = self.index.by_id.get(raw_id)
            if task and not task.is_duplicate:
                return Resolution(task, "task_id")

        task = self.index.find_open_title(item.title)
        if task:
            return Resolution(task, "title")

        return Resolution()

    def _lookup_remote(self, ref: str) -> Optional[LedgerTask]:
        if self.lookup_ref is None:
            return None
        miss_key = ref.upper()
        if miss_key in self._remote_misses:
            return None
        task = self.lookup_ref(ref)
        if task is None or task.is_duplicate:
            self._remote_misses.add(miss_key)
            return None
        self.logger.debug(f"Resolved {ref} by point lookup (task {task.id})")
        self.index.add(task)
        return task
