"""Reconciliation engine orchestrating one ledger <-> device store pass."""

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
import logging
import threading
import time

from ..core.exceptions import (
    LedgerError,
    LedgerSyncError,
    NotAuthenticatedError,
    PermissionDeniedError,
    SyncInProgressError,
)
from ..core.models import (
    DeviceItem,
    DeviceList,
    F,
    LedgerTask,
    SyncConfig,
    SyncResult,
    TaskContext,
    TaskStatus,
)
from ..ledger.gateway import DELETE_FIELD, SERVER_TIMESTAMP
from ..ledger.tasks import (
    LedgerTaskManager,
    LedgerWriteBatch,
    completion_fields,
    recurrence_fields,
    reopen_fields,
)
from ..reminders.tasks import RemindersTaskManager
from ..utils.date import datetime_to_millis, format_iso, utc_now
from ..utils.tags import add_tag_token, apply_priority_tag, format_tag_line, has_tag_token, merge_tags
from ..utils.text import generate_human_ref, normalize_title
from .codec import NoteCodec
from .context import ContextResolver
from .deduplicator import LedgerDeduplicator
from .log import DIAGNOSTICS, TO_DEVICE, TO_LEDGER, SyncLog
from .matcher import IdentityResolver, LedgerIndex
from .resolver import (
    DEVICE,
    ConflictResolver,
    device_to_ledger_priority,
    infer_item_type,
    ledger_to_device_priority,
)
from .state import SyncStateStore
from .triage import Persona, TriageClassifier, TriageResult

COUNT_KEYS = (
    "ledger_created",
    "device_created",
    "ledger_updated",
    "device_updated",
    "repaired",
    "relinked",
    "suppressed",
    "duplicates",
    "orphans_cleared",
    "deletions_propagated",
    "ttl_removed",
    "routed_away",
)

DUPLICATE_TAG = "duplicate"


class _Cancelled(Exception):
    pass


class OwnerLocks:
    """Per-owner pass locks shared by every engine in the process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def acquire(self, owner_id: str) -> bool:
        """Take the owner's lock without waiting; False if a pass holds it."""
        with self._guard:
            lock = self._locks.setdefault(owner_id, threading.Lock())
        return lock.acquire(blocking=False)

    def release(self, owner_id: str) -> None:
        with self._guard:
            lock = self._locks.get(owner_id)
        if lock is not None and lock.locked():
            lock.release()

    def is_running(self, owner_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(owner_id)
        return bool(lock and lock.locked())


DEFAULT_LOCKS = OwnerLocks()


class ReconciliationEngine:
    """Runs reconciliation passes for the configured owner.

    Ledger writes are staged into one batch and committed at the end of the
    pass; device writes are applied as they are decided. Per-pass state lives
    on the instance and is reset at the start of every run, while the context
    cache and theme mapping are owned by the instance for its lifetime.
    """

    def __init__(
        self,
        config: SyncConfig,
        ledger: LedgerTaskManager,
        device: RemindersTaskManager,
        state: Optional[SyncStateStore] = None,
        classifier: Optional[TriageClassifier] = None,
        context: Optional[ContextResolver] = None,
        locks: Optional[OwnerLocks] = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config
        self.ledger = ledger
        self.device = device
        self.logger = logger or logging.getLogger(__name__)
        self.state = state or SyncStateStore(config.state_path, logger=self.logger)
        self.classifier = classifier or TriageClassifier.from_config(config, logger=self.logger)
        self.locks = locks or DEFAULT_LOCKS
        self.clock = clock

        self.codec = NoteCodec(config.deep_link_base, logger=self.logger)
        self.resolver = ConflictResolver(logger=self.logger)
        self.deduplicator = LedgerDeduplicator(ttl_days=config.ttl_days, clock=clock, logger=self.logger)
        self.context = context or ContextResolver(
            ledger.gateway, report_error=self._report_store_error, logger=self.logger
        )

        self._cancel = threading.Event()
        self._reset(None, config.sync_mode, config.dry_run)

    def _reset(self, owner_id: Optional[str], mode: str, dry_run: bool) -> None:
        self.owner_id = owner_id
        self.mode = mode
        self.dry_run = dry_run
        self.now = self.clock()
        self.result = SyncResult(
            owner_id=owner_id, mode=mode, dry_run=dry_run,
            counts={key: 0 for key in COUNT_KEYS},
        )
        self.log = SyncLog(owner_id, dry_run, manager=self.ledger, mirror=self.config.mirror_activity)
        self.batch = LedgerWriteBatch()
        self.index = LedgerIndex()
        self.identity = IdentityResolver(self.index, logger=self.logger)
        self.items: Dict[str, DeviceItem] = {}
        self.notes: Dict[str, Tuple[Dict[str, str], List[str]]] = {}
        self.observed: Dict[str, Optional[datetime]] = {}
        self.created_pairs: Set[str] = set()
        self._loaded: List[LedgerTask] = []

    def cancel(self) -> None:
        """Abandon the running pass at the next phase boundary (before commit)."""
        self._cancel.set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def run(self, mode: Optional[str] = None, dry_run: Optional[bool] = None) -> SyncResult:
        """
        Run one reconciliation pass.

        Never raises: failures are reported on the returned result. A pass
        for an owner that already has one in flight is rejected.
        """
        owner_id = self.config.resolved_owner_id()
        mode = mode or self.config.sync_mode
        dry_run = self.config.dry_run if dry_run is None else dry_run

        if not owner_id:
            return self._rejected(
                NotAuthenticatedError("No owner id available; sign in before syncing"), mode, dry_run
            )
        if not self.locks.acquire(owner_id):
            return self._rejected(
                SyncInProgressError(f"A sync pass is already running for {owner_id}"), mode, dry_run, owner_id
            )

        try:
            self._cancel.clear()
            if mode == "delta" and self.state.needs_full(owner_id, self.clock(), self.config.full_resync_hours):
                self.logger.info("No recent full pass on record; running a full pass")
                mode = "full"

            self._reset(owner_id, mode, dry_run)
            self.ledger.owner_id = owner_id
            self.context.owner_id = owner_id
            self.logger.info("Starting %s sync for %s (dry_run=%s)", mode, owner_id, dry_run)

            try:
                self._run_phases()
            except _Cancelled:
                self.result.cancelled = True
                self.logger.info("Sync pass cancelled; ledger writes discarded")
            except LedgerSyncError as e:
                self._record_error(f"Sync aborted: {e}")
            except Exception as e:
                self.logger.exception("Unexpected failure during sync pass")
                self.result.errors.append(f"Sync aborted: {e}")

            result = self.result
            result.success = not result.errors and not result.cancelled
            result.decisions = list(self.log.entries)
            self.log.summary(result)
            return result
        finally:
            self.locks.release(owner_id)

    def _rejected(self, error: LedgerSyncError, mode: str, dry_run: bool,
                  owner_id: Optional[str] = None) -> SyncResult:
        self.logger.warning(str(error))
        return SyncResult(owner_id=owner_id, mode=mode, dry_run=dry_run, success=False, errors=[str(error)])

    def _run_phases(self) -> None:
        with self._phase("load"):
            self._load()
        with self._phase("index"):
            self._build_index()
        with self._phase("dedupe"):
            self._dedupe()
        with self._phase("repair"):
            self._repair_links()
        with self._phase("import"):
            self._import_items()
            self._export_tasks()
        with self._phase("merge"):
            self._merge_pairs()
        with self._phase("orphans"):
            self._clear_orphans()
        with self._phase("deletions"):
            self._propagate_deletions()
        with self._phase("ttl"):
            self._sweep_expired()
        with self._phase("commit"):
            self._commit()

    @contextmanager
    def _phase(self, name: str) -> Iterator[None]:
        if self._cancel.is_set():
            raise _Cancelled()
        started = time.perf_counter()
        try:
            yield
        finally:
            self.result.phase_ms[name] = round((time.perf_counter() - started) * 1000, 1)

    # ------------------------------------------------------------------
    # Error reporting
    # ------------------------------------------------------------------
    def _record_error(self, message: str) -> None:
        self.result.errors.append(message)
        self.logger.error(message)

    def _report_store_error(self, context: str, error: Exception) -> None:
        if isinstance(error, PermissionDeniedError):
            self.log.report_permission(context, error)
        else:
            self._record_error(f"{context}: {error}")

    @contextmanager
    def _record_errors(self, context: str, subject: Optional[str] = None) -> Iterator[None]:
        """Skip the current record on a store error; the pass continues."""
        try:
            yield
        except PermissionDeniedError as e:
            self.log.report_permission(context, e)
        except LedgerError as e:
            label = f"{context} {subject}" if subject else context
            self._record_error(f"{label}: {e}")

    # ------------------------------------------------------------------
    # Phase 1-2: load and index
    # ------------------------------------------------------------------
    def _load(self) -> None:
        watermark = self.state.watermark(self.owner_id) if self.mode == "delta" else None
        self._loaded = self.ledger.fetch_tasks(self.mode, watermark)

        self.device.list_lists(refresh=True)
        for item in self.device.list_items():
            key = item.uuid.lower()
            meta, user_lines = self.codec.decode(item.notes)
            self.items[key] = item
            self.notes[key] = (meta, user_lines)
            # Captured before this pass writes anything to the item
            self.observed[key] = self.resolver.device_effective(item.modified_at, self.codec.synced_at(meta))

        self.logger.info(f"Loaded {len(self._loaded)} ledger tasks and {len(self.items)} device items")

    def _build_index(self) -> None:
        self.index = LedgerIndex(self._loaded)

        if self.mode == "delta":
            with self._record_errors("load linked tasks"):
                unlinked = [item.uuid for item in self.items.values() if self.index.find_device(item.uuid) is None]
                for task in self.ledger.fetch_by_device_ids(unlinked):
                    if task.id not in self.index:
                        self.index.add(task)
                task_ids = [
                    meta["taskId"] for meta, _ in self.notes.values()
                    if meta.get("taskId") and meta["taskId"] not in self.index
                ]
                for task in self.ledger.fetch_by_ids(task_ids):
                    if task.id not in self.index:
                        self.index.add(task)

        self._new_identity_resolver()
        self.context.refresh_theme_mapping()
        self.context.reset_cache()
        self.context.prefetch(self.index.tasks())

    def _new_identity_resolver(self) -> None:
        lookup = self._lookup_ref if self.mode == "delta" else None
        self.identity = IdentityResolver(self.index, lookup_ref=lookup, logger=self.logger)

    def _lookup_ref(self, ref: str) -> Optional[LedgerTask]:
        with self._record_errors("lookup reference", ref):
            return self.ledger.find_by_reference(ref)
        return None

    def _dedupe(self) -> None:
        results = self.deduplicator.analyze(self.index.tasks())
        if not results.decisions:
            return

        self.deduplicator.apply_soft(results, self.index.by_id, self.ledger, self.batch)
        for decision in results.decisions:
            self.log.detail(DIAGNOSTICS, "markDuplicate", task_id=decision.task_id, metadata=decision.to_dict())
        self.result.counts["duplicates"] += results.duplicate_count

        # Retired tasks must stop being resolution targets
        self.index = LedgerIndex(self.index.tasks())
        self._new_identity_resolver()

    # ------------------------------------------------------------------
    # Note rendering and device writes
    # ------------------------------------------------------------------
    def _render_notes(self, task: LedgerTask, item: DeviceItem, meta: Dict[str, str],
                      user_lines: List[str], synced: Optional[str]) -> str:
        context = self.context.resolve(task)
        expected = {
            "taskRef": task.human_ref,
            "taskId": task.id,
            "storyRef": context.story_ref,
            "goalRef": context.goal_ref,
            "sprintId": context.sprint_id,
            "sprint": context.sprint_name,
            "theme": context.theme,
            "status": "open" if task.is_open and not task.deletion_tag else "complete",
            "due": format_iso(task.due_at),
            "list": item.list_name,
            "listId": item.list_id,
            "tags": format_tag_line(merge_tags(task.tags, self.codec.tags(meta))),
            "synced": synced,
        }
        if task.priority is not None:
            user_lines = apply_priority_tag(user_lines, task.priority)
        return self.codec.encode(expected, user_lines, include_block=self.config.show_metadata_in_notes)

    def _stale_notes(self, key: str, task: LedgerTask, item: DeviceItem,
                     meta: Optional[Dict[str, str]] = None) -> Optional[str]:
        """Freshly stamped notes when the rendered block differs from the item's, else None."""
        current_meta, user_lines = self.notes[key]
        meta = current_meta if meta is None else meta
        current = (item.notes or "").replace("\r\n", "\n")
        if self._render_notes(task, item, meta, user_lines, meta.get("synced")) == current:
            return None
        return self._render_notes(task, item, meta, user_lines, format_iso(self.now))

    def _update_device(self, key: str, item: DeviceItem, changes: Dict[str, Any]) -> bool:
        """Apply device changes, or only mirror them in memory on a dry run."""
        if self.dry_run:
            self._simulate(item, changes)
        elif self.device.update_item(item, changes) is None:
            self._record_error(f"Device update failed for {item.uuid}")
            return False
        if "notes" in changes:
            self.notes[key] = self.codec.decode(changes["notes"])
        return True

    def _simulate(self, item: DeviceItem, changes: Dict[str, Any]) -> None:
        for attr in ("title", "notes", "due_date", "priority", "completed"):
            if attr in changes:
                setattr(item, attr, changes[attr])
        if changes.get("list_id"):
            lst = self.device.get_list(changes["list_id"])
            item.list_id = changes["list_id"]
            item.list_name = lst.name if lst else item.list_name

    def _ensure_list(self, name: Optional[str]) -> Optional[DeviceList]:
        if not name:
            return None
        existing = self.device.find_list(name)
        if existing is not None or self.dry_run:
            return existing
        return self.device.ensure_list(name)

    def _placement(self, task: LedgerTask, context: TaskContext,
                   item: Optional[DeviceItem] = None) -> Optional[DeviceList]:
        """
        Device list a task belongs in, or None to leave the item where it is.

        An item already sitting in the ledger's recorded list stays put.
        Otherwise the theme decides (local override, theme mapping, then a
        list named after the theme), then the recorded list id or name.
        """
        if item is not None and task.list_id and task.list_id == item.list_id:
            return None
        theme = context.theme
        name = self.config.list_for_theme(theme) or self.context.list_for_theme(theme) or theme
        if name:
            return self._ensure_list(name)
        if task.list_id:
            lst = self.device.get_list(task.list_id)
            if lst is not None:
                return lst
        return self._ensure_list(task.list_name)

    # ------------------------------------------------------------------
    # Phase 3: reverse-link repair
    # ------------------------------------------------------------------
    def _repair_links(self) -> None:
        for key, item in list(self.items.items()):
            task = self.index.find_device(item.uuid)
            if task is None:
                continue
            with self._record_errors("repair metadata", item.uuid):
                notes = self._stale_notes(key, task, item)
                if notes is None:
                    continue
                meta, _ = self.notes[key]
                action = "repairMetadata" if meta.get("taskRef") or meta.get("taskId") else "restoreMetadata"
                if self._update_device(key, item, {"notes": notes}):
                    self.result.counts["repaired"] += 1
                    self.log.detail(TO_DEVICE, action, task_id=task.id, device_id=item.uuid, story_id=task.story_id)

    # ------------------------------------------------------------------
    # Phase 4: import device items, export ledger-only tasks
    # ------------------------------------------------------------------
    def _import_items(self) -> None:
        retired_devices = {
            task.linked_device_id.lower()
            for task in self.index.tasks()
            if task.is_duplicate and task.linked_device_id
        }
        for key, item in list(self.items.items()):
            if key in retired_devices or self.index.find_device(item.uuid) is not None:
                continue
            with self._record_errors("import", item.uuid):
                self._import_item(key, item)

    def _import_item(self, key: str, item: DeviceItem) -> None:
        meta, user_lines = self.notes[key]

        # Another item may have claimed this identity earlier in the phase
        resolution = self.identity.resolve(item, meta)
        if resolution.found:
            self._link_existing(key, item, resolution.task, resolution.key)
            return

        title = (item.title or "").strip()
        if item.completed or not title:
            return
        if self._in_work_list(item):
            return

        tags = self.codec.tags(meta)
        persona = theme = None
        if self._triage_applies(item):
            verdict = self.classifier.classify(title, "\n".join(user_lines), tags)
            if verdict.persona == Persona.WORK:
                self._route_to_work(key, item, verdict)
                return
            if verdict.persona == Persona.PERSONAL:
                persona, theme = verdict.persona.value, verdict.suggested_theme

        item_type = infer_item_type(item.list_name, tags)
        if item.recurrence and not item_type and not self.config.import_recurring:
            self.logger.debug(f"Skipping recurring item {item.uuid} ({title})")
            return

        if self.mode == "delta":
            task = self.ledger.find_open_by_title(normalize_title(title))
            if task is not None and not task.is_duplicate:
                if task.id not in self.index:
                    self.index.add(task)
                self._link_existing(key, item, task, "title")
                return

        if not self.dry_run and not self.ledger.claim_creation(
            item.uuid, self.config.instance_id, self.now, self.config.claim_ttl_seconds
        ):
            self.log.detail(DIAGNOSTICS, "claimHeld", device_id=item.uuid, metadata={"title": title})
            return

        task = LedgerTask(
            id=self.ledger.new_task_id(),
            owner_id=self.owner_id,
            title=title,
            status=TaskStatus.OPEN,
            due_at=item.due_date,
            created_at=self.now,
            updated_at=self.now,
            linked_device_id=item.uuid,
            human_ref=self._new_human_ref(),
            priority=device_to_ledger_priority(item.priority),
            list_id=item.list_id,
            list_name=item.list_name,
            item_type=item_type,
            persona=persona,
            theme=theme,
            tags=tags,
            recurrence=item.recurrence,
            external_id=item.external_id,
        )
        self.ledger.stage_create(self.batch, task)
        self.ledger.stage_release_claim(self.batch, item.uuid)
        self.index.add(task)
        self.created_pairs.add(key)
        self.result.counts["ledger_created"] += 1
        self.log.detail(
            TO_LEDGER, "importDevice", task_id=task.id, device_id=item.uuid,
            metadata={"title": title, "ref": task.human_ref, "persona": persona},
        )

        notes = self._render_notes(task, item, meta, user_lines, format_iso(self.now))
        self._update_device(key, item, {"notes": notes})

    def _new_human_ref(self) -> str:
        taken = self.index.refs
        ref = generate_human_ref(taken)
        # A delta snapshot does not hold every ref; confirm with the ledger
        if self.mode == "delta":
            for _ in range(5):
                if self.ledger.find_by_reference(ref) is None:
                    break
                taken.add(ref.upper())
                ref = generate_human_ref(taken)
        return ref

    def _link_existing(self, key: str, item: DeviceItem, task: LedgerTask, matched_by: Optional[str]) -> None:
        linked = (task.linked_device_id or "").lower()
        if linked and linked != key and linked in self.items:
            self.result.counts["suppressed"] += 1
            self.log.detail(
                TO_LEDGER, "suppressDuplicateTitle", task_id=task.id, device_id=item.uuid,
                metadata={"matchedBy": matched_by, "linkedTo": task.linked_device_id},
            )
            return

        self.index.link_device(task, item.uuid)
        task.device_missing_at = None
        self.ledger.stage_update(self.batch, task.id, {F.DEVICE_ID: item.uuid, F.DEVICE_MISSING_AT: DELETE_FIELD})
        self.result.counts["relinked"] += 1
        self.log.detail(
            TO_LEDGER, "relink", task_id=task.id, device_id=item.uuid, story_id=task.story_id,
            metadata={"matchedBy": matched_by},
        )

    @staticmethod
    def _same_list(item: DeviceItem, name: Optional[str]) -> bool:
        return bool(name) and (item.list_name or "").strip().lower() == name.strip().lower()

    def _in_work_list(self, item: DeviceItem) -> bool:
        return self.config.enable_triage and self._same_list(item, self.config.work_list_name)

    def _triage_applies(self, item: DeviceItem) -> bool:
        if not self.config.enable_triage:
            return False
        if self.config.triage_list_name:
            return self._same_list(item, self.config.triage_list_name)
        return True

    def _route_to_work(self, key: str, item: DeviceItem, verdict: TriageResult) -> None:
        target = self._ensure_list(self.config.work_list_name)
        self.result.counts["routed_away"] += 1
        metadata = verdict.to_dict()
        metadata["list"] = self.config.work_list_name
        self.log.detail(TO_DEVICE, "routeToWork", device_id=item.uuid, metadata=metadata)
        if target is not None and target.id != item.list_id:
            self._update_device(key, item, {"list_id": target.id})

    def _export_tasks(self) -> None:
        for task in self.index.tasks():
            if (
                task.is_duplicate
                or not task.is_open
                or task.deletion_tag
                or task.linked_device_id
                or task.device_missing_at
                or not task.title.strip()
            ):
                continue
            with self._record_errors("export", task.id):
                self._export_task(task)

    def _export_task(self, task: LedgerTask) -> None:
        target = self._placement(task, self.context.resolve(task))
        if target is None:
            target = self._ensure_list(self.config.default_list_name) or self.device.default_list()

        draft = DeviceItem(
            uuid="",
            title=task.title,
            list_id=target.id if target else None,
            list_name=target.name if target else None,
            due_date=task.due_at,
            priority=ledger_to_device_priority(task.priority),
        )
        notes = self._render_notes(task, draft, {}, [], format_iso(self.now))

        if not self.dry_run:
            item = self.device.create_item(
                task.title,
                list_id=draft.list_id,
                notes=notes,
                due_date=task.due_at,
                priority=draft.priority,
            )
            if item is None:
                self._record_error(f"Device create failed for task {task.id}")
                return
            key = item.uuid.lower()
            self.items[key] = item
            self.notes[key] = self.codec.decode(notes)
            self.created_pairs.add(key)
            self.index.link_device(task, item.uuid)

            fields: Dict[str, Any] = {F.DEVICE_ID: item.uuid}
            if item.list_id:
                fields[F.LIST_ID] = item.list_id
                fields[F.LIST_NAME] = item.list_name
                task.list_id, task.list_name = item.list_id, item.list_name
            self.ledger.stage_update(self.batch, task.id, fields)

        self.result.counts["device_created"] += 1
        self.log.detail(
            TO_DEVICE, "createDevice", task_id=task.id, device_id=task.linked_device_id,
            story_id=task.story_id, metadata={"title": task.title, "list": draft.list_name},
        )

    # ------------------------------------------------------------------
    # Phase 5-6: last-writer-wins merge with priority remapping
    # ------------------------------------------------------------------
    def _merge_pairs(self) -> None:
        for key, item in list(self.items.items()):
            if key in self.created_pairs:
                continue
            task = self.index.find_device(item.uuid)
            if task is None or task.deletion_tag:
                continue
            with self._record_errors("merge", task.id):
                self._merge_pair(key, item, task)

    def _merge_pair(self, key: str, item: DeviceItem, task: LedgerTask) -> None:
        device_changes: Dict[str, Any] = {}
        preview = item

        if self.resolver.winner(self.observed.get(key), task.updated_at) == DEVICE:
            meta, _ = self.notes[key]
            changes = self.resolver.ledger_changes(task, item, self.codec.tags(meta))
            if changes:
                self._apply_ledger_changes(task, changes)
                self.result.counts["ledger_updated"] += 1
                self.log.detail(
                    TO_LEDGER, "updateFromDevice", task_id=task.id, device_id=item.uuid,
                    story_id=task.story_id, metadata={"fields": sorted(changes)},
                )
        else:
            device_changes = self.resolver.device_changes(task, item)
            target = self._placement(task, self.context.resolve(task), item)
            if target is not None and target.id != item.list_id:
                device_changes["list_id"] = target.id
                preview = replace(item, list_id=target.id, list_name=target.name)

        notes = self._stale_notes(key, task, preview)
        if notes is not None:
            device_changes["notes"] = notes
        if not device_changes:
            return
        if not self._update_device(key, item, device_changes):
            return

        fields = sorted(device_changes)
        if fields == ["notes"]:
            self.result.counts["repaired"] += 1
            self.log.detail(TO_DEVICE, "refreshMetadata", task_id=task.id, device_id=item.uuid)
        else:
            self.result.counts["device_updated"] += 1
            self.log.detail(
                TO_DEVICE, "updateDeviceFromLedger", task_id=task.id, device_id=item.uuid,
                story_id=task.story_id, metadata={"fields": fields},
            )

        if "list_id" in device_changes and item.list_id != task.list_id:
            task.list_id, task.list_name = item.list_id, item.list_name
            self.ledger.stage_update(self.batch, task.id, {F.LIST_ID: item.list_id, F.LIST_NAME: item.list_name})

    def _apply_ledger_changes(self, task: LedgerTask, changes: Dict[str, Any]) -> None:
        """Stage device-side values onto the ledger task and mirror them in memory."""
        fields: Dict[str, Any] = {}
        for attr, value in changes.items():
            if attr == "title":
                fields[F.TITLE] = value
            elif attr == "status":
                fields[F.STATUS] = value.code
                if value == TaskStatus.DONE:
                    completion = completion_fields(self.now, self.config.ttl_days)
                    fields.update(completion)
                    task.completed_at = completion[F.COMPLETED]
                    task.delete_after = completion[F.DELETE_AFTER]
                else:
                    fields.update(reopen_fields())
                    task.completed_at = task.delete_after = None
            elif attr == "due_at":
                fields[F.DUE] = datetime_to_millis(value) if value else DELETE_FIELD
            elif attr == "recurrence":
                fields.update(recurrence_fields(value))
            elif attr == "priority":
                fields[F.PRIORITY] = value
            elif attr == "item_type":
                fields[F.TYPE] = value
            elif attr == "list_id":
                fields[F.LIST_ID] = value
            elif attr == "list_name":
                fields[F.LIST_NAME] = value
            elif attr == "tags":
                fields[F.TAGS] = list(value)

        self.index.forget_title(task)
        for attr, value in changes.items():
            setattr(task, attr, value)
        task.updated_at = self.now
        if task.is_open:
            self.index.add(task)

        self.ledger.stage_update(self.batch, task.id, fields)

    # ------------------------------------------------------------------
    # Phase 7-9: orphans, deletion propagation, TTL
    # ------------------------------------------------------------------
    def _clear_orphans(self) -> None:
        if not self.items:
            self.logger.warning("Device snapshot is empty; skipping orphan cleanup")
            return
        for task in self.index.tasks():
            device_id = task.linked_device_id
            if not device_id or device_id.lower() in self.items:
                continue
            self.index.unlink_device(task)
            task.device_missing_at = self.now
            self.ledger.stage_update(self.batch, task.id, {
                F.DEVICE_ID: DELETE_FIELD,
                F.DEVICE_MISSING_AT: SERVER_TIMESTAMP,
            })
            self.result.counts["orphans_cleared"] += 1
            self.log.detail(TO_LEDGER, "clearMissingDevice", task_id=task.id, device_id=device_id)

    def _propagate_deletions(self) -> None:
        for task in self.index.tasks():
            tag = DUPLICATE_TAG if task.is_duplicate else task.deletion_tag
            if not tag or not task.linked_device_id:
                continue
            key = task.linked_device_id.lower()
            item = self.items.get(key)
            if item is None:
                continue
            if task.is_duplicate:
                holder = self.index.find_device(item.uuid)
                if holder is not None and holder is not task:
                    continue
            with self._record_errors("propagate deletion", task.id):
                self._complete_for_deletion(key, item, task, tag)

    def _complete_for_deletion(self, key: str, item: DeviceItem, task: LedgerTask, tag: str) -> None:
        meta, user_lines = self.notes[key]
        tags = self.codec.tags(meta)
        tagged_already = tag.lower() in {t.lower() for t in tags} or has_tag_token(user_lines, tag)
        if item.completed and tagged_already:
            return

        tagged = dict(meta)
        tagged["tags"] = format_tag_line(merge_tags(tags, [tag]))
        if not self.config.show_metadata_in_notes:
            # Without a block the tag has to live in the user's own lines
            user_lines = add_tag_token(user_lines, tag)
        notes = self._render_notes(task, item, tagged, user_lines, format_iso(self.now))
        if self._update_device(key, item, {"completed": True, "notes": notes}):
            self.result.counts["deletions_propagated"] += 1
            action = "completeDuplicate" if tag == DUPLICATE_TAG else "completeFromLedgerDelete"
            self.log.detail(
                TO_DEVICE, action, task_id=task.id, device_id=item.uuid,
                story_id=task.story_id, metadata={"tag": tag},
            )

    def _sweep_expired(self) -> None:
        candidates = self.index.tasks()
        if self.mode == "delta":
            with self._record_errors("load expired tasks"):
                for task in self.ledger.fetch_expired(self.now):
                    if task.id not in self.index:
                        self.index.add(task)
                        candidates.append(task)

        for task in candidates:
            if task.is_open or task.delete_after is None or not task.linked_device_id:
                continue
            if not self.now > task.delete_after:
                continue
            key = task.linked_device_id.lower()
            item = self.items.get(key)
            if item is None:
                continue
            holder = self.index.find_device(item.uuid)
            if holder is not None and holder is not task:
                continue

            if not self.dry_run and not self.device.delete_item(item):
                self._record_error(f"Device delete failed for {item.uuid}")
                continue
            del self.items[key]
            device_id = task.linked_device_id
            self.index.unlink_device(task)
            self.ledger.stage_update(self.batch, task.id, {F.DEVICE_ID: DELETE_FIELD})
            self.result.counts["ttl_removed"] += 1
            self.log.detail(
                TO_DEVICE, "ttlRemove", task_id=task.id, device_id=device_id,
                metadata={"deleteAfter": format_iso(task.delete_after)},
            )

    # ------------------------------------------------------------------
    # Phase 10: commit
    # ------------------------------------------------------------------
    def _commit(self) -> None:
        ops = self.batch.ops()
        if self.dry_run:
            self.logger.info(f"Dry run: {len(ops)} ledger writes not committed")
            return

        if ops:
            outcome = self.ledger.commit(ops)
            self.result.errors.extend(outcome.errors)
            self.logger.info(f"Committed {outcome.committed} of {len(ops)} ledger writes")

        self.log.flush_mirror()
        if not self.result.errors:
            self.state.record_pass(self.owner_id, self.mode, self.now, summary={
                "summary": self.result.summary(),
                "counts": dict(self.result.counts),
            })
