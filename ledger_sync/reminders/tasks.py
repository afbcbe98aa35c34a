"""Device-store manager: Reminders CRUD in terms of DeviceItem."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from ..core.models import DeviceItem, DeviceList
from ..utils.date import parse_iso
from .gateway import ReminderData, RemindersGateway


class RemindersTaskManager:
    """Manages CRUD operations for device items.

    Mutations are applied immediately and individually; the device store has
    no batch or transaction concept. Successful updates are reflected on the
    passed item in place.
    """

    def __init__(
        self,
        gateway: Optional[RemindersGateway] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway or RemindersGateway(logger=logger)
        self.logger = logger or logging.getLogger(__name__)
        self._lists: Optional[List[DeviceList]] = None

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------
    def list_lists(self, refresh: bool = False) -> List[DeviceList]:
        """All groupings in the device store."""
        if self._lists is None or refresh:
            self._lists = [
                DeviceList(id=entry['id'], name=entry['name'])
                for entry in self.gateway.get_lists()
            ]
        return list(self._lists)

    def find_list(self, name: Optional[str]) -> Optional[DeviceList]:
        """Find a grouping by name, case-insensitively."""
        if not name:
            return None
        wanted = name.strip().lower()
        for lst in self.list_lists():
            if lst.name.strip().lower() == wanted:
                return lst
        return None

    def get_list(self, list_id: Optional[str]) -> Optional[DeviceList]:
        if not list_id:
            return None
        for lst in self.list_lists():
            if lst.id == list_id:
                return lst
        return None

    def default_list(self) -> Optional[DeviceList]:
        entry = self.gateway.get_default_list()
        if not entry:
            return None
        return DeviceList(id=entry['id'], name=entry['name'])

    def ensure_list(self, name: str) -> Optional[DeviceList]:
        """Return the named grouping, creating it when missing."""
        existing = self.find_list(name)
        if existing:
            return existing

        list_id = self.gateway.create_list(name)
        if not list_id:
            self.logger.warning(f"Could not create list '{name}'")
            return None

        created = DeviceList(id=list_id, name=name)
        if self._lists is not None:
            self._lists.append(created)
        self.logger.info(f"Created list '{name}' ({list_id})")
        return created

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def list_items(self, list_ids: Optional[List[str]] = None) -> List[DeviceItem]:
        """Enumerate all items (open and completed) across the given lists."""
        return [self._to_item(rem) for rem in self.gateway.get_reminders(list_ids)]

    @staticmethod
    def _to_item(rem: ReminderData) -> DeviceItem:
        return DeviceItem(
            uuid=rem.uuid,
            title=rem.title,
            completed=rem.completed,
            list_id=rem.list_id,
            list_name=rem.list_name,
            due_date=parse_iso(rem.due_date),
            priority=int(rem.priority or 0),
            notes=rem.notes,
            recurrence=rem.recurrence,
            external_id=rem.external_id,
            url=rem.url,
            created_at=parse_iso(rem.created_at),
            modified_at=parse_iso(rem.modified_at),
            completion_date=parse_iso(rem.completion_date),
        )

    def create_item(
        self,
        title: str,
        list_id: Optional[str] = None,
        notes: Optional[str] = None,
        due_date: Optional[datetime] = None,
        priority: int = 0,
        completed: bool = False,
    ) -> Optional[DeviceItem]:
        """Create a new item and return it, or None on failure."""
        uuid_value = self.gateway.create_reminder(
            title=title,
            list_id=list_id,
            notes=notes,
            due_date=due_date,
            priority=priority,
            completed=completed,
        )
        if not uuid_value:
            self.logger.warning(f"Failed to create device item: {title}")
            return None

        now = datetime.now(timezone.utc)
        lst = self.get_list(list_id)
        return DeviceItem(
            uuid=uuid_value,
            title=title,
            completed=completed,
            list_id=list_id,
            list_name=lst.name if lst else None,
            due_date=due_date,
            priority=priority,
            notes=notes,
            created_at=now,
            modified_at=now,
        )

    def update_item(self, item: DeviceItem, changes: Dict[str, Any]) -> Optional[DeviceItem]:
        """
        Apply ``changes`` to an item.

        Recognized keys: ``title``, ``notes``, ``due_date``, ``completed``,
        ``priority`` and ``list_id``. Returns the updated item, or None when
        the store rejected the write.
        """
        updates: Dict[str, Any] = {}
        for key in ("title", "notes", "due_date", "completed", "priority"):
            if key in changes:
                updates[key] = changes[key]
        if changes.get("list_id"):
            updates["calendar_id"] = changes["list_id"]

        if not updates:
            return item

        if not self.gateway.update_reminder(item.uuid, **updates):
            self.logger.warning(f"Device store rejected update for {item.uuid}")
            return None

        now = datetime.now(timezone.utc)
        for key in ("title", "notes", "due_date", "priority"):
            if key in updates:
                setattr(item, key, updates[key])
        if "completed" in updates:
            completed = bool(updates["completed"])
            if completed and not item.completed:
                item.completion_date = now
            elif not completed:
                item.completion_date = None
            item.completed = completed
        if "calendar_id" in updates:
            lst = self.get_list(updates["calendar_id"])
            item.list_id = updates["calendar_id"]
            item.list_name = lst.name if lst else item.list_name
        item.modified_at = now
        return item

    def delete_item(self, item: DeviceItem) -> bool:
        """Hard-delete an item from the device store."""
        return self.gateway.delete_reminder(item.uuid)
