"""Structured per-record sync decision log."""

from typing import Any, Dict, List, Optional, Set
import json
import logging

from ..core.models import SyncResult

TO_LEDGER = "toLedger"
TO_DEVICE = "toDevice"
DIAGNOSTICS = "diagnostics"

# Activity mirroring is capped per pass
MIRROR_LIMIT = 200


class SyncLog:
    """Collects decision entries for one pass.

    Every entry is written to the ``ledger_sync.sync.log`` logger as a
    ``[DETAIL] {json}`` line and kept in ``entries``. Live passes mirror the
    entries to the ledger's activity collection at the end of the pass.
    """

    def __init__(
        self,
        owner_id: Optional[str],
        dry_run: bool,
        manager=None,
        mirror: bool = True,
        logger: Optional[logging.Logger] = None,
    ):
        self.owner_id = owner_id
        self.dry_run = dry_run
        self.manager = manager
        self.mirror = mirror
        self.logger = logger or logging.getLogger(__name__)
        self.entries: List[Dict[str, Any]] = []
        self._reported: Set[str] = set()

    def detail(
        self,
        direction: str,
        action: str,
        task_id: Optional[str] = None,
        device_id: Optional[str] = None,
        story_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "direction": direction,
            "action": action,
            "dryRun": self.dry_run,
        }
        if task_id:
            entry["taskId"] = task_id
        if device_id:
            entry["reminderId"] = device_id
        if story_id:
            entry["storyId"] = story_id
        if metadata:
            entry["metadata"] = metadata
        self.entries.append(entry)
        self.logger.info("[DETAIL] %s", json.dumps(entry, default=str, sort_keys=True))
        return entry

    def report_permission(self, context: str, error: Exception) -> None:
        """Log a permission failure once per distinct context."""
        if context in self._reported:
            return
        self._reported.add(context)
        self.logger.warning(f"Permission denied ({context}): {error}")

    def flush_mirror(self) -> int:
        """Append the pass's entries to the activity collection; returns the count written."""
        if self.dry_run or not self.mirror or self.manager is None or not self.entries:
            return 0
        written = 0
        for entry in self.entries[:MIRROR_LIMIT]:
            record = {"activityType": "reminderSync"}
            record.update(entry)
            if self.manager.append_activity(record) is not None:
                written += 1
        return written

    def summary(self, result: SyncResult) -> None:
        self.logger.info(
            "Sync %s (%s%s): %s",
            "complete" if result.success else "finished with errors",
            result.mode,
            ", dry run" if result.dry_run else "",
            result.summary(),
        )
        if result.phase_ms:
            timing = " ".join(f"{name}={ms:.0f}ms" for name, ms in result.phase_ms.items())
            self.logger.info(f"Phase timing: {timing}")
        for error in result.errors:
            self.logger.error(f"  {error}")
