"""
Domain models for ledger-sync.

This module contains the core data structures shared by the ledger manager,
the device-store manager and the reconciliation engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4
import os
import json

from ..utils.date import to_datetime
from ..utils.tags import merge_tags
from .paths import get_path_manager


def _normalize_path(path: str) -> str:
    return os.path.abspath(os.path.expanduser(path))


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class F:
    """Ledger document field names."""

    OWNER = "ownerUid"
    TITLE = "title"
    NORMALIZED_TITLE = "normalizedTitle"
    STATUS = "status"
    DUE = "dueDate"
    CREATED = "createdAt"
    UPDATED = "updatedAt"
    SERVER_UPDATED = "serverUpdatedAt"
    COMPLETED = "completedAt"
    DELETE_AFTER = "deleteAfter"
    DEVICE_ID = "reminderId"
    DEVICE_ALT_ID = "deviceAltId"
    REFERENCE = "reference"
    REFERENCE_ALIASES = ("reference", "ref", "shortId", "code")
    STORY = "storyId"
    GOAL = "goalId"
    SPRINT = "sprintId"
    THEME = "theme"
    TAGS = "tags"
    DUPLICATE_OF = "duplicateOf"
    DUPLICATE_KEY = "duplicateKey"
    PRIORITY = "priority"
    SOURCE_REF = "sourceRef"
    EXTERNAL_ID = "externalId"
    LIST_ID = "reminderListId"
    LIST_NAME = "reminderListName"
    CONVERTED_TO_STORY = "convertedToStoryId"
    DELETED = "deleted"
    SYNC_DIRECTIVE = "reminderSyncDirective"
    RECURRENCE = "recurrence"
    TYPE = "type"
    DEVICE_MISSING_AT = "reminderMissingAt"
    PERSONA = "persona"
    SOURCE = "source"


class TaskStatus(Enum):
    """Ledger task lifecycle status."""

    OPEN = "open"
    DONE = "done"
    DELETED = "deleted"

    @classmethod
    def decode(cls, value: Any) -> TaskStatus:
        """
        Decode the stored status, which arrives as an integer code or a string.

        ``2``/"done"/"complete"/"completed" mean done, ``-1``/"deleted" means
        deleted, everything else (including ``0``, ``1`` and missing) is open.
        """
        if value is None or isinstance(value, bool):
            return cls.OPEN
        if isinstance(value, (int, float)):
            code = int(value)
            if code == 2:
                return cls.DONE
            if code == -1:
                return cls.DELETED
            return cls.OPEN
        text = str(value).strip().lower()
        if text in ("2", "done", "complete", "completed"):
            return cls.DONE
        if text in ("-1", "deleted"):
            return cls.DELETED
        return cls.OPEN

    @property
    def code(self) -> int:
        """Integer written back to the ledger."""
        return {TaskStatus.OPEN: 0, TaskStatus.DONE: 2, TaskStatus.DELETED: -1}[self]


@dataclass
class LedgerTask:
    """Represents a task document in the ledger.

    ``story_id`` is the parent grouping pointer and ``goal_id`` the category
    group pointer; ``sprint_id`` is the optional time-box.
    """

    id: str
    owner_id: Optional[str] = None
    title: str = ""
    status: TaskStatus = TaskStatus.OPEN
    due_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    server_updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    delete_after: Optional[datetime] = None
    linked_device_id: Optional[str] = None
    human_ref: Optional[str] = None
    story_id: Optional[str] = None
    goal_id: Optional[str] = None
    sprint_id: Optional[str] = None
    theme: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    duplicate_of: Optional[str] = None
    duplicate_key: Optional[str] = None
    priority: Optional[int] = None
    source_ref: Optional[str] = None
    external_id: Optional[str] = None
    device_alt_id: Optional[str] = None
    list_id: Optional[str] = None
    list_name: Optional[str] = None
    item_type: Optional[str] = None
    persona: Optional[str] = None
    recurrence: Optional[Dict[str, Any]] = None
    deleted_flag: bool = False
    sync_directive: Optional[str] = None
    converted_to_story_id: Optional[str] = None
    device_missing_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == TaskStatus.OPEN

    @property
    def is_duplicate(self) -> bool:
        return bool(self.duplicate_of)

    @property
    def deletion_tag(self) -> Optional[str]:
        """
        Tag to stamp on the linked device item when the ledger intends removal.

        Returns None when the task carries no deletion intent.
        """
        if self.converted_to_story_id:
            return "convertedtostory"
        directive = (self.sync_directive or "").strip().lower()
        if self.status == TaskStatus.DELETED or self.deleted_flag or directive in ("delete", "complete"):
            return "deleted"
        return None

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> LedgerTask:
        """Decode a raw ledger document into a task."""
        human_ref = None
        for key in F.REFERENCE_ALIASES:
            human_ref = _clean_str(data.get(key))
            if human_ref:
                break

        priority = data.get(F.PRIORITY)
        try:
            priority = int(priority) if priority is not None else None
        except (TypeError, ValueError):
            priority = None

        tags = data.get(F.TAGS) or []
        if isinstance(tags, str):
            tags = tags.split(",")
        elif not isinstance(tags, (list, tuple)):
            tags = []

        recurrence = data.get(F.RECURRENCE)
        if not isinstance(recurrence, dict):
            recurrence = None

        return cls(
            id=doc_id,
            owner_id=_clean_str(data.get(F.OWNER)),
            title=str(data.get(F.TITLE) or ""),
            status=TaskStatus.decode(data.get(F.STATUS)),
            due_at=to_datetime(data.get(F.DUE)),
            created_at=to_datetime(data.get(F.CREATED)),
            updated_at=to_datetime(data.get(F.UPDATED)),
            server_updated_at=to_datetime(data.get(F.SERVER_UPDATED)),
            completed_at=to_datetime(data.get(F.COMPLETED)),
            delete_after=to_datetime(data.get(F.DELETE_AFTER)),
            linked_device_id=_clean_str(data.get(F.DEVICE_ID)),
            human_ref=human_ref,
            story_id=_clean_str(data.get(F.STORY)),
            goal_id=_clean_str(data.get(F.GOAL)),
            sprint_id=_clean_str(data.get(F.SPRINT)),
            theme=_clean_str(data.get(F.THEME)),
            tags=merge_tags([str(t) for t in tags], []),
            duplicate_of=_clean_str(data.get(F.DUPLICATE_OF)),
            duplicate_key=_clean_str(data.get(F.DUPLICATE_KEY)),
            priority=priority,
            source_ref=_clean_str(data.get(F.SOURCE_REF)),
            external_id=_clean_str(data.get(F.EXTERNAL_ID)),
            device_alt_id=_clean_str(data.get(F.DEVICE_ALT_ID)),
            list_id=_clean_str(data.get(F.LIST_ID)),
            list_name=_clean_str(data.get(F.LIST_NAME)),
            item_type=_clean_str(data.get(F.TYPE)),
            persona=_clean_str(data.get(F.PERSONA)),
            recurrence=recurrence,
            deleted_flag=bool(data.get(F.DELETED)),
            sync_directive=_clean_str(data.get(F.SYNC_DIRECTIVE)),
            converted_to_story_id=_clean_str(data.get(F.CONVERTED_TO_STORY)),
            device_missing_at=to_datetime(data.get(F.DEVICE_MISSING_AT)),
        )


@dataclass
class DeviceList:
    """A grouping (Reminders list) in the device store."""

    id: str
    name: str


@dataclass
class DeviceItem:
    """Represents an item from the device store (Apple Reminders)."""

    uuid: str
    title: str
    completed: bool = False
    list_id: Optional[str] = None
    list_name: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: int = 0
    notes: Optional[str] = None
    recurrence: Optional[Dict[str, Any]] = None
    external_id: Optional[str] = None
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    completion_date: Optional[datetime] = None


@dataclass
class TaskContext:
    """Denormalized story/goal/sprint context for one task."""

    story_ref: Optional[str] = None
    goal_ref: Optional[str] = None
    theme: Optional[str] = None
    sprint_id: Optional[str] = None
    sprint_name: Optional[str] = None


@dataclass
class SyncResult:
    """Structured outcome of one reconciliation pass."""

    owner_id: Optional[str]
    mode: str
    dry_run: bool
    success: bool = True
    cancelled: bool = False
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    phase_ms: Dict[str, float] = field(default_factory=dict)
    decisions: List[Dict[str, Any]] = field(default_factory=list)

    def count(self, key: str) -> int:
        return self.counts.get(key, 0)

    @property
    def created(self) -> int:
        return self.count("ledger_created") + self.count("device_created")

    @property
    def updated(self) -> int:
        return self.count("ledger_updated") + self.count("device_updated")

    @property
    def repaired(self) -> int:
        return self.count("repaired")

    def summary(self) -> str:
        return (
            f"created={self.created} updated={self.updated} "
            f"repaired={self.repaired} errors={len(self.errors)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "mode": self.mode,
            "dry_run": self.dry_run,
            "success": self.success,
            "cancelled": self.cancelled,
            "counts": dict(self.counts),
            "errors": list(self.errors),
            "phase_ms": dict(self.phase_ms),
            "summary": self.summary(),
        }


@dataclass
class SyncConfig:
    """Configuration for reconciliation passes."""

    owner_id: Optional[str] = None
    project_id: Optional[str] = None
    credentials_path: Optional[str] = None
    sync_mode: str = "delta"
    dry_run: bool = False
    show_metadata_in_notes: bool = True
    enable_triage: bool = False
    triage_list_name: Optional[str] = "Triage"
    work_list_name: Optional[str] = "Work"
    triage_endpoint: Optional[str] = None
    triage_min_confidence: float = 0.70
    triage_timeout: float = 3.0
    ttl_days: int = 30
    background_interval_minutes: int = 15
    full_resync_hours: float = 6.0
    deep_link_base: str = "https://bob20250810.web.app"
    default_list_name: Optional[str] = None
    theme_list_map: Dict[str, str] = field(default_factory=dict)
    import_recurring: bool = False
    mirror_activity: bool = True
    page_size: int = 500
    max_tasks: int = 10000
    batch_size: int = 400
    claim_ttl_seconds: int = 120
    instance_id: str = field(default_factory=lambda: str(uuid4()))
    state_path: Optional[str] = None

    MIN_INTERVAL_MINUTES = 15
    MAX_BATCH_SIZE = 500

    def __post_init__(self) -> None:
        if self.sync_mode not in ("delta", "full"):
            self.sync_mode = "delta"
        self.background_interval_minutes = max(
            self.MIN_INTERVAL_MINUTES, int(self.background_interval_minutes or 0)
        )
        self.batch_size = max(1, min(self.MAX_BATCH_SIZE, int(self.batch_size)))
        self.ttl_days = max(0, int(self.ttl_days))

        if self.state_path is None:
            self.state_path = str(get_path_manager().state_path)
        else:
            self.state_path = _normalize_path(self.state_path)

    def resolved_owner_id(self) -> Optional[str]:
        """Owner id from the environment override or the config file."""
        return os.environ.get("LEDGER_SYNC_OWNER") or self.owner_id

    def list_for_theme(self, theme: Optional[str]) -> Optional[str]:
        """Local theme → list override, matched case-insensitively."""
        if not theme:
            return None
        wanted = theme.strip().lower()
        for name, list_name in self.theme_list_map.items():
            if name.strip().lower() == wanted:
                return list_name
        return None

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    @classmethod
    def load_from_file(cls, config_path: str) -> SyncConfig:
        config_path = _normalize_path(config_path)
        if not os.path.exists(config_path):
            return cls()

        try:
            with open(config_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError:
            return cls()

        ledger = data.get("ledger", {})
        sync = data.get("sync", {})
        triage = data.get("triage", {})
        paths = data.get("paths", {})

        def pick(section: Dict[str, Any], key: str, default: Any, flat_key: Optional[str] = None) -> Any:
            return section.get(key, data.get(flat_key or key, default))

        kwargs: Dict[str, Any] = dict(
            owner_id=pick(ledger, "owner_id", None),
            project_id=pick(ledger, "project_id", None),
            credentials_path=pick(ledger, "credentials_path", None),
            page_size=pick(ledger, "page_size", 500),
            max_tasks=pick(ledger, "max_tasks", 10000),
            batch_size=pick(ledger, "batch_size", 400),
            sync_mode=pick(sync, "mode", "delta", "sync_mode"),
            dry_run=pick(sync, "dry_run", False),
            show_metadata_in_notes=pick(sync, "show_metadata_in_notes", True),
            ttl_days=pick(sync, "ttl_days", 30),
            background_interval_minutes=pick(sync, "background_interval_minutes", 15),
            full_resync_hours=pick(sync, "full_resync_hours", 6.0),
            deep_link_base=pick(sync, "deep_link_base", "https://bob20250810.web.app"),
            default_list_name=pick(sync, "default_list_name", None),
            import_recurring=pick(sync, "import_recurring", False),
            mirror_activity=pick(sync, "mirror_activity", True),
            claim_ttl_seconds=pick(sync, "claim_ttl_seconds", 120),
            enable_triage=pick(triage, "enabled", False, "enable_triage"),
            triage_list_name=pick(triage, "list_name", "Triage", "triage_list_name"),
            work_list_name=pick(triage, "work_list_name", "Work"),
            triage_endpoint=pick(triage, "endpoint", None, "triage_endpoint"),
            triage_min_confidence=pick(triage, "min_confidence", 0.70, "triage_min_confidence"),
            triage_timeout=pick(triage, "timeout", 3.0, "triage_timeout"),
            theme_list_map=dict(data.get("theme_list_map") or {}),
            state_path=paths.get("state", data.get("state_path")),
        )
        if data.get("instance_id"):
            kwargs["instance_id"] = data["instance_id"]

        return cls(**kwargs)

    def save_to_file(self, config_path: str) -> None:
        config_path = _normalize_path(config_path)
        os.makedirs(os.path.dirname(config_path), exist_ok=True)

        data = {
            "ledger": {
                "owner_id": self.owner_id,
                "project_id": self.project_id,
                "credentials_path": self.credentials_path,
                "page_size": self.page_size,
                "max_tasks": self.max_tasks,
                "batch_size": self.batch_size,
            },
            "sync": {
                "mode": self.sync_mode,
                "dry_run": self.dry_run,
                "show_metadata_in_notes": self.show_metadata_in_notes,
                "ttl_days": self.ttl_days,
                "background_interval_minutes": self.background_interval_minutes,
                "full_resync_hours": self.full_resync_hours,
                "deep_link_base": self.deep_link_base,
                "default_list_name": self.default_list_name,
                "import_recurring": self.import_recurring,
                "mirror_activity": self.mirror_activity,
                "claim_ttl_seconds": self.claim_ttl_seconds,
            },
            "triage": {
                "enabled": self.enable_triage,
                "list_name": self.triage_list_name,
                "work_list_name": self.work_list_name,
                "endpoint": self.triage_endpoint,
                "min_confidence": self.triage_min_confidence,
                "timeout": self.triage_timeout,
            },
            "theme_list_map": self.theme_list_map,
            "instance_id": self.instance_id,
            "paths": {
                "state": self.state_path,
            },
        }

        with open(config_path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
