"""Ledger-side duplicate detection and resolution."""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..core.models import F, LedgerTask, TaskStatus
from ..ledger.gateway import DELETE_FIELD, WriteOp
from ..ledger.tasks import TASKS, LedgerTaskManager, LedgerWriteBatch, completion_fields
from ..utils.date import utc_now

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# (key name, LedgerTask attribute), checked in this order
DEDUP_KEYS: Tuple[Tuple[str, str], ...] = (
    ("linkedDeviceId", "linked_device_id"),
    ("humanRef", "human_ref"),
    ("sourceRef", "source_ref"),
    ("deviceAltId", "device_alt_id"),
    ("externalId", "external_id"),
)

SOFT = "soft"
HARD = "hard"


@dataclass
class DuplicateGroup:
    """Tasks sharing one key value."""
    key_name: str
    key_value: str
    survivor_id: str
    duplicate_ids: List[str]

    @property
    def size(self) -> int:
        return len(self.duplicate_ids) + 1


@dataclass
class DuplicateDecision:
    """One task to retire in favour of a survivor."""
    task_id: str
    survivor_id: str
    key_name: str
    key_value: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "taskId": self.task_id,
            "survivorId": self.survivor_id,
            "key": self.key_name,
            "value": self.key_value,
        }


@dataclass
class DeduplicationResults:
    """Results from a deduplication analysis or sweep."""
    groups: List[DuplicateGroup] = field(default_factory=list)
    decisions: List[DuplicateDecision] = field(default_factory=list)
    total_tasks: int = 0
    mode: str = SOFT
    dry_run: bool = True
    committed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def duplicate_count(self) -> int:
        return len(self.decisions)

    def audit_record(self) -> Dict:
        return {
            "activityType": "deduplicateTasks",
            "mode": self.mode,
            "dryRun": self.dry_run,
            "groups": self.group_count,
            "duplicates": self.duplicate_count,
            "committed": self.committed,
            "errors": list(self.errors),
            "decisions": [d.to_dict() for d in self.decisions[:100]],
        }


class LedgerDeduplicator:
    """Partitions ledger tasks into duplicate groups and retires the extras."""

    def __init__(
        self,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ):
        self.ttl_days = ttl_days
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _survivor_key(task: LedgerTask):
        return (task.updated_at or _EPOCH, task.id)

    def analyze(self, tasks: List[LedgerTask]) -> DeduplicationResults:
        """
        Group non-duplicate tasks by each key in turn.

        The most recently updated task of a group survives (ties go to the
        larger id). A task retired under an earlier key is not considered
        again for later keys.
        """
        candidates = [t for t in tasks if not t.is_duplicate]
        results = DeduplicationResults(total_tasks=len(candidates))
        claimed: set = set()

        for key_name, attr in DEDUP_KEYS:
            buckets: Dict[str, List[LedgerTask]] = defaultdict(list)
            for task in candidates:
                if task.id in claimed:
                    continue
                value = getattr(task, attr)
                if not value or not str(value).strip():
                    continue
                buckets[str(value).strip().lower()].append(task)

            for value, members in sorted(buckets.items()):
                if len(members) < 2:
                    continue
                survivor = max(members, key=self._survivor_key)
                losers = sorted((m for m in members if m is not survivor), key=lambda t: t.id)
                results.groups.append(DuplicateGroup(
                    key_name=key_name,
                    key_value=getattr(survivor, attr),
                    survivor_id=survivor.id,
                    duplicate_ids=[t.id for t in losers],
                ))
                for loser in losers:
                    claimed.add(loser.id)
                    results.decisions.append(DuplicateDecision(
                        task_id=loser.id,
                        survivor_id=survivor.id,
                        key_name=key_name,
                        key_value=str(getattr(loser, attr)),
                    ))

        if results.decisions:
            self.logger.info(
                "Found %d duplicate groups covering %d duplicates",
                results.group_count, results.duplicate_count,
            )
        return results

    def soft_fields(self, decision: DuplicateDecision, task: Optional[LedgerTask], survivor: Optional[LedgerTask], now: datetime) -> Dict:
        """Ledger fields that retire ``task`` as a duplicate."""
        fields = {
            F.DUPLICATE_OF: decision.survivor_id,
            F.DUPLICATE_KEY: decision.key_value,
            F.STATUS: TaskStatus.DONE.code,
        }
        fields.update(completion_fields(now, self.ttl_days))
        # The survivor keeps the shared device item
        if (
            task is not None and survivor is not None and task.linked_device_id
            and task.linked_device_id.lower() == (survivor.linked_device_id or "").lower()
        ):
            fields[F.DEVICE_ID] = DELETE_FIELD
        return fields

    def apply_soft(
        self,
        results: DeduplicationResults,
        tasks_by_id: Dict[str, LedgerTask],
        manager: LedgerTaskManager,
        batch: LedgerWriteBatch,
    ) -> None:
        """Stage soft retirement writes and mirror them onto the in-memory tasks."""
        now = self.clock()
        for decision in results.decisions:
            task = tasks_by_id.get(decision.task_id)
            survivor = tasks_by_id.get(decision.survivor_id)
            fields = self.soft_fields(decision, task, survivor, now)
            manager.stage_update(batch, decision.task_id, fields)
            if task is not None:
                task.duplicate_of = decision.survivor_id
                task.duplicate_key = decision.key_value
                task.status = TaskStatus.DONE
                task.completed_at = fields[F.COMPLETED]
                task.delete_after = fields[F.DELETE_AFTER]
                if fields.get(F.DEVICE_ID) is DELETE_FIELD:
                    task.linked_device_id = None
                task.updated_at = now

    def sweep(
        self,
        manager: LedgerTaskManager,
        tasks: List[LedgerTask],
        mode: str = SOFT,
        dry_run: bool = True,
        audit: bool = True,
    ) -> DeduplicationResults:
        """
        Standalone maintenance sweep over a full snapshot.

        Soft mode marks duplicates, hard mode deletes them. Writes are
        committed in batches; the first failing batch aborts the sweep and the
        error is reported on the results. Batches already committed stay
        committed.
        """
        results = self.analyze(tasks)
        results.mode = mode
        results.dry_run = dry_run

        if dry_run or not results.decisions:
            return results

        tasks_by_id = {t.id: t for t in tasks}
        if mode == HARD:
            ops = [WriteOp.remove(TASKS, d.task_id) for d in results.decisions]
        else:
            batch = LedgerWriteBatch()
            self.apply_soft(results, tasks_by_id, manager, batch)
            ops = batch.ops()

        outcome = manager.commit(ops, abort_on_error=True)
        results.committed = outcome.committed
        results.errors.extend(outcome.errors)

        if audit:
            manager.append_activity(results.audit_record())
        return results
