"""Ledger task manager: decoding, payloads, loading and batched commits."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from ..core.exceptions import LedgerError, MissingIndexError
from ..core.models import F, LedgerTask
from ..utils.date import datetime_to_millis, to_datetime
from ..utils.text import normalize_title
from .gateway import (
    DELETE_FIELD,
    DOCUMENT_ID,
    IN_QUERY_LIMIT,
    SERVER_TIMESTAMP,
    LedgerDocument,
    LedgerGateway,
    WriteOp,
    chunked,
)

TASKS = "tasks"
CLAIMS = "sync_claims"
ACTIVITY = "activity"
SOURCE = "ledger-sync"

_FAR_FUTURE = datetime.max.replace(tzinfo=timezone.utc)


def completion_fields(now: datetime, ttl_days: int) -> Dict[str, Any]:
    """Completion stamp plus the TTL deadline derived from it."""
    return {
        F.COMPLETED: now,
        F.DELETE_AFTER: now + timedelta(days=ttl_days),
    }


def reopen_fields() -> Dict[str, Any]:
    return {F.COMPLETED: DELETE_FIELD, F.DELETE_AFTER: DELETE_FIELD}


class LedgerWriteBatch:
    """Accumulates ledger mutations for one commit.

    Repeated writes to the same document are merged into one operation, in
    the order they were first staged.
    """

    def __init__(self):
        self._ops: Dict[Tuple[str, str], WriteOp] = {}

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        key = (collection, doc_id)
        existing = self._ops.get(key)
        if existing is None or existing.delete:
            self._ops[key] = WriteOp.set(collection, doc_id, data)
        else:
            existing.data.update(data)

    def delete(self, collection: str, doc_id: str) -> None:
        self._ops[(collection, doc_id)] = WriteOp.remove(collection, doc_id)

    def ops(self) -> List[WriteOp]:
        return list(self._ops.values())

    def __len__(self) -> int:
        return len(self._ops)


@dataclass
class CommitOutcome:
    """Result of flushing a list of writes in chunks."""
    committed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class LedgerTaskManager:
    """Reads and writes task documents for one owner."""

    def __init__(
        self,
        gateway: LedgerGateway,
        owner_id: Optional[str],
        page_size: int = 500,
        max_tasks: int = 10000,
        batch_size: int = 400,
        logger: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.owner_id = owner_id
        self.page_size = page_size
        self.max_tasks = max_tasks
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger(__name__)

    def _owner_filter(self) -> Tuple[str, str, Any]:
        return (F.OWNER, "==", self.owner_id)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    def fetch_tasks(self, mode: str = "full", watermark: Optional[datetime] = None) -> List[LedgerTask]:
        """
        Load the owner's tasks.

        Delta mode fetches tasks whose ``serverUpdatedAt`` is newer than the
        watermark and falls back to ``updatedAt`` when the store reports a
        missing index. Full mode pages through every task ordered by id.
        """
        if mode == "delta" and watermark is not None:
            try:
                docs = self._paged_query(
                    [self._owner_filter(), (F.SERVER_UPDATED, ">", watermark)], F.SERVER_UPDATED
                )
            except MissingIndexError as e:
                self.logger.warning(
                    f"Delta query on {F.SERVER_UPDATED} needs an index ({e}); falling back to {F.UPDATED}"
                )
                docs = self._paged_query(
                    [self._owner_filter(), (F.UPDATED, ">", watermark)], F.UPDATED
                )
        else:
            docs = self._paged_query([self._owner_filter()], DOCUMENT_ID)

        tasks = [LedgerTask.from_document(doc.id, doc.data) for doc in docs]
        self.logger.debug(f"Loaded {len(tasks)} ledger tasks ({mode})")
        return tasks

    def _paged_query(self, filters: Sequence[Tuple[str, str, Any]], order_by: str) -> List[LedgerDocument]:
        results: List[LedgerDocument] = []
        cursor: Optional[LedgerDocument] = None
        while len(results) < self.max_tasks:
            limit = min(self.page_size, self.max_tasks - len(results))
            page = self.gateway.query(TASKS, filters, order_by=order_by, limit=limit, start_after=cursor)
            results.extend(page)
            if len(page) < limit:
                break
            cursor = page[-1]
        else:
            self.logger.warning(f"Stopped loading at the {self.max_tasks} task cap")
        return results

    def fetch_by_ids(self, task_ids: Sequence[str]) -> List[LedgerTask]:
        """Point-load tasks by document id, in chunks."""
        tasks: List[LedgerTask] = []
        unique = list(dict.fromkeys(i for i in task_ids if i))
        for chunk in chunked(unique, IN_QUERY_LIMIT):
            for doc in self.gateway.get_many(TASKS, chunk):
                task = LedgerTask.from_document(doc.id, doc.data)
                if task.owner_id == self.owner_id:
                    tasks.append(task)
        return tasks

    def fetch_by_device_ids(self, device_ids: Sequence[str]) -> List[LedgerTask]:
        """Load tasks linked to any of the given device ids, in chunks."""
        tasks: List[LedgerTask] = []
        unique = list(dict.fromkeys(i for i in device_ids if i))
        for chunk in chunked(unique, IN_QUERY_LIMIT):
            docs = self.gateway.query(TASKS, [self._owner_filter(), (F.DEVICE_ID, "in", chunk)])
            tasks.extend(LedgerTask.from_document(doc.id, doc.data) for doc in docs)
        return tasks

    def find_by_reference(self, ref: str) -> Optional[LedgerTask]:
        """Point lookup by human ref (exact, then upper-cased)."""
        for candidate in dict.fromkeys([ref, ref.upper()]):
            docs = self.gateway.query(
                TASKS, [self._owner_filter(), (F.REFERENCE, "==", candidate)], limit=5
            )
            tasks = [LedgerTask.from_document(d.id, d.data) for d in docs]
            tasks = [t for t in tasks if not t.is_duplicate]
            if tasks:
                return tasks[0]
        return None

    def find_open_by_title(self, normalized: str) -> Optional[LedgerTask]:
        """Oldest open, non-duplicate task with the given normalized title."""
        if not normalized:
            return None
        docs = self.gateway.query(
            TASKS, [self._owner_filter(), (F.NORMALIZED_TITLE, "==", normalized)], limit=20
        )
        tasks = [LedgerTask.from_document(d.id, d.data) for d in docs]
        tasks = [t for t in tasks if t.is_open and not t.is_duplicate]
        if not tasks:
            return None
        return min(tasks, key=lambda t: (t.created_at or _FAR_FUTURE, t.id))

    def fetch_expired(self, now: datetime) -> List[LedgerTask]:
        """Tasks whose ``deleteAfter`` deadline has passed."""
        docs = self.gateway.query(TASKS, [self._owner_filter(), (F.DELETE_AFTER, "<", now)])
        return [LedgerTask.from_document(d.id, d.data) for d in docs]

    def new_task_id(self) -> str:
        return self.gateway.new_id(TASKS)

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------
    def task_payload(self, task: LedgerTask) -> Dict[str, Any]:
        """Full document payload for a newly created task."""
        payload: Dict[str, Any] = {
            F.OWNER: task.owner_id or self.owner_id,
            F.TITLE: task.title,
            F.NORMALIZED_TITLE: normalize_title(task.title),
            F.STATUS: task.status.code,
            F.TAGS: list(task.tags),
            F.SOURCE: SOURCE,
            F.CREATED: task.created_at or SERVER_TIMESTAMP,
            F.UPDATED: SERVER_TIMESTAMP,
            F.SERVER_UPDATED: SERVER_TIMESTAMP,
        }
        optional = {
            F.REFERENCE: task.human_ref,
            F.DEVICE_ID: task.linked_device_id,
            F.DUE: datetime_to_millis(task.due_at),
            F.PRIORITY: task.priority,
            F.LIST_ID: task.list_id,
            F.LIST_NAME: task.list_name,
            F.TYPE: task.item_type,
            F.PERSONA: task.persona,
            F.THEME: task.theme,
            F.EXTERNAL_ID: task.external_id,
            F.COMPLETED: task.completed_at,
            F.DELETE_AFTER: task.delete_after,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        if task.recurrence:
            payload.update(recurrence_fields(task.recurrence))
        return payload

    def stage_create(self, batch: LedgerWriteBatch, task: LedgerTask) -> None:
        batch.set(TASKS, task.id, self.task_payload(task))

    def stage_update(self, batch: LedgerWriteBatch, task_id: str, fields: Dict[str, Any]) -> None:
        """Stage a merge update, stamping both update timestamps."""
        data = dict(fields)
        if F.TITLE in data and data[F.TITLE] is not DELETE_FIELD:
            data[F.NORMALIZED_TITLE] = normalize_title(data[F.TITLE])
        data[F.UPDATED] = SERVER_TIMESTAMP
        data[F.SERVER_UPDATED] = SERVER_TIMESTAMP
        batch.set(TASKS, task_id, data)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _claim_id(self, device_id: str) -> str:
        return f"{self.owner_id}_{device_id}".replace("/", "_")

    def claim_creation(self, device_id: str, instance_id: str, now: datetime, ttl_seconds: int) -> bool:
        """
        Write an advisory creation claim for a device item.

        Returns False when another instance holds a claim younger than
        ``ttl_seconds``. Best effort only: two passes can still race.
        """
        claim_id = self._claim_id(device_id)
        existing = self.gateway.get(CLAIMS, claim_id)
        if existing is not None:
            holder = existing.data.get("instanceId")
            claimed_at = to_datetime(existing.data.get("claimedAt"))
            if holder and holder != instance_id and claimed_at is not None:
                if (now - claimed_at).total_seconds() < ttl_seconds:
                    self.logger.info(f"Creation of {device_id} already claimed by {holder}")
                    return False

        self.gateway.set(CLAIMS, claim_id, {
            F.OWNER: self.owner_id,
            "deviceId": device_id,
            "instanceId": instance_id,
            "claimedAt": now,
        })
        return True

    def stage_release_claim(self, batch: LedgerWriteBatch, device_id: str) -> None:
        """Drop the creation claim together with the task it guarded."""
        batch.delete(CLAIMS, self._claim_id(device_id))

    def commit(self, ops: Sequence[WriteOp], abort_on_error: bool = False) -> CommitOutcome:
        """
        Flush writes in chunks of ``batch_size``.

        Each chunk commits independently; a failing chunk is reported and,
        unless ``abort_on_error`` is set, later chunks are still attempted.
        """
        outcome = CommitOutcome()
        for chunk in chunked(list(ops), self.batch_size):
            try:
                self.gateway.commit(chunk)
                outcome.committed += len(chunk)
            except LedgerError as e:
                outcome.failed += len(chunk)
                outcome.errors.append(f"Batch commit of {len(chunk)} writes failed: {e}")
                self.logger.error(outcome.errors[-1])
                if abort_on_error:
                    break
        return outcome

    def append_activity(self, data: Dict[str, Any]) -> Optional[str]:
        """Best-effort audit append; failures are logged, never raised."""
        record = dict(data)
        record.setdefault(F.OWNER, self.owner_id)
        record.setdefault(F.SOURCE, SOURCE)
        record.setdefault(F.CREATED, SERVER_TIMESTAMP)
        try:
            return self.gateway.add(ACTIVITY, record)
        except LedgerError as e:
            self.logger.warning(f"Could not append activity record: {e}")
            return None


def recurrence_fields(recurrence: Dict[str, Any]) -> Dict[str, Any]:
    """Recurrence payload plus the flattened repeat* fields."""
    fields: Dict[str, Any] = {F.RECURRENCE: dict(recurrence)}
    fields["repeatFrequency"] = recurrence.get("frequency")
    fields["repeatInterval"] = recurrence.get("interval", 1)
    if recurrence.get("daysOfWeek"):
        fields["repeatDaysOfWeek"] = list(recurrence["daysOfWeek"])
    return fields
