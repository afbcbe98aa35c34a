"""Last-writer-wins conflict resolution and priority remapping."""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ..core.models import DeviceItem, LedgerTask, TaskStatus
from ..utils.date import ensure_utc, same_minute
from ..utils.tags import merge_tags

DEVICE = "device"
LEDGER = "ledger"

# Device ordinal -> ledger ordinal (1 high, 2 medium, 3 low, 4 none)
def device_to_ledger_priority(device_priority: Optional[int]) -> int:
    value = int(device_priority or 0)
    if 1 <= value <= 4:
        return 1
    if value == 5:
        return 2
    if 6 <= value <= 9:
        return 3
    return 4


# Ledger ordinal -> device ordinal; 4 and 5 both land on "none"
LEDGER_TO_DEVICE_PRIORITY = {1: 1, 2: 5, 3: 9, 4: 0, 5: 0}


def ledger_to_device_priority(ledger_priority: Optional[int]) -> int:
    if ledger_priority is None:
        return 0
    return LEDGER_TO_DEVICE_PRIORITY.get(int(ledger_priority), 0)


def infer_item_type(list_name: Optional[str], tags: List[str]) -> Optional[str]:
    """``chore``/``routine`` when the list title or a tag says so."""
    lowered = (list_name or "").lower()
    tag_set = {t.lower() for t in tags}
    for kind in ("routine", "chore"):
        if kind in lowered or kind in tag_set or f"{kind}s" in tag_set:
            return kind
    return None


class ConflictResolver:
    """Decides which side wins for a linked pair and computes field diffs."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def device_effective(modified_at: Optional[datetime], synced_at: Optional[datetime]) -> Optional[datetime]:
        """Later of the item's own modification time and its note ``synced`` stamp."""
        stamps = [ensure_utc(s) for s in (modified_at, synced_at) if s is not None]
        return max(stamps) if stamps else None

    def winner(self, device_effective: Optional[datetime], ledger_updated: Optional[datetime]) -> str:
        """
        'device' only when the device side is strictly newer.

        Ties and missing evidence go to the ledger so passes always converge.
        """
        if device_effective is None:
            return LEDGER
        if ledger_updated is None:
            return DEVICE
        if ensure_utc(device_effective) > ensure_utc(ledger_updated):
            return DEVICE
        return LEDGER

    def ledger_changes(self, task: LedgerTask, item: DeviceItem, device_tags: List[str]) -> Dict[str, Any]:
        """
        Task attribute changes needed to bring the ledger up to the device.

        Keys are ``LedgerTask`` attribute names. Deletion intent on the ledger
        is never overridden by the device completion flag.
        """
        changes: Dict[str, Any] = {}

        title = (item.title or "").strip()
        if title and title != (task.title or "").strip():
            changes["title"] = title

        if task.deletion_tag is None:
            status = TaskStatus.DONE if item.completed else TaskStatus.OPEN
            if status != task.status:
                changes["status"] = status

        if not same_minute(item.due_date, task.due_at):
            changes["due_at"] = item.due_date

        if item.recurrence and item.recurrence != task.recurrence:
            changes["recurrence"] = dict(item.recurrence)

        # Same bucket on either table means nothing to push
        device_priority = int(item.priority or 0)
        ledger_priority = device_to_ledger_priority(device_priority)
        if ledger_priority != task.priority and ledger_to_device_priority(task.priority) != device_priority:
            changes["priority"] = ledger_priority

        item_type = infer_item_type(item.list_name, device_tags)
        if item_type and item_type != task.item_type:
            changes["item_type"] = item_type

        if item.list_id and item.list_id != task.list_id:
            changes["list_id"] = item.list_id
        if item.list_name and item.list_name != task.list_name:
            changes["list_name"] = item.list_name

        merged = merge_tags(task.tags, device_tags)
        if [t.lower() for t in merged] != [t.lower() for t in task.tags]:
            changes["tags"] = merged

        if changes:
            self.logger.debug(f"Device wins for {task.id}: {sorted(changes)}")
        return changes

    def device_changes(self, task: LedgerTask, item: DeviceItem) -> Dict[str, Any]:
        """
        Device field changes needed to bring the item up to the ledger.

        Keys match ``RemindersTaskManager.update_item``. Grouping placement
        and notes are handled by the caller.
        """
        changes: Dict[str, Any] = {}

        if task.title and task.title.strip() != (item.title or "").strip():
            changes["title"] = task.title

        if not same_minute(task.due_at, item.due_date):
            changes["due_date"] = task.due_at

        completed = task.status != TaskStatus.OPEN
        if completed != bool(item.completed):
            changes["completed"] = completed

        if task.priority is not None and device_to_ledger_priority(item.priority) != task.priority:
            device_priority = ledger_to_device_priority(task.priority)
            if device_priority != int(item.priority or 0):
                changes["priority"] = device_priority

        if changes:
            self.logger.debug(f"Ledger wins for {task.id}: {sorted(changes)}")
        return changes
