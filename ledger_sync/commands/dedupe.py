"""Dedupe command - standalone ledger deduplication and expiry purge."""

import logging
from typing import Optional

from ..core.exceptions import ConfigurationError, LedgerError
from ..core.models import SyncConfig
from ..ledger.gateway import WriteOp
from ..ledger.tasks import TASKS, LedgerTaskManager
from ..sync.deduplicator import HARD, SOFT, LedgerDeduplicator
from ..utils.date import utc_now
from .sync import build_ledger_manager


class DedupeCommand:
    """Finds and retires duplicate ledger tasks for the configured owner."""

    def __init__(
        self,
        config: SyncConfig,
        verbose: bool = False,
        manager: Optional[LedgerTaskManager] = None,
    ):
        self.config = config
        self.verbose = verbose
        self.manager = manager
        self.logger = logging.getLogger(__name__)
        if verbose:
            self.logger.setLevel(logging.DEBUG)

    def run(self, apply_changes: bool = False, hard: bool = False, purge_expired: bool = False) -> bool:
        owner_id = self.config.resolved_owner_id()
        if not owner_id:
            print("No owner id configured. Set ledger.owner_id or LEDGER_SYNC_OWNER.")
            return False

        try:
            manager = self.manager or build_ledger_manager(self.config)
            manager.owner_id = owner_id
            tasks = manager.fetch_tasks("full")
        except (ConfigurationError, LedgerError) as e:
            print(f"Could not load ledger tasks: {e}")
            return False

        deduplicator = LedgerDeduplicator(ttl_days=self.config.ttl_days)
        results = deduplicator.sweep(
            manager, tasks, mode=HARD if hard else SOFT, dry_run=not apply_changes
        )

        print(f"\nScanned {results.total_tasks} tasks")
        print(f"Found {results.group_count} duplicate groups ({results.duplicate_count} duplicates)")
        for group in results.groups[:25]:
            print(f"  {group.key_name}={group.key_value}: keep {group.survivor_id}, "
                  f"retire {', '.join(group.duplicate_ids)}")
        if results.group_count > 25:
            print(f"  ... and {results.group_count - 25} more groups")

        success = not results.errors
        if results.errors:
            for error in results.errors:
                print(f"  Error: {error}")
        elif apply_changes and results.decisions:
            action = "Deleted" if hard else "Marked"
            print(f"{action} {results.committed} duplicate tasks")

        if purge_expired:
            success = self._purge_expired(manager, apply_changes) and success

        if not apply_changes:
            print("\nDry run only. Run with --apply to write changes.")
        return success

    def _purge_expired(self, manager: LedgerTaskManager, apply_changes: bool) -> bool:
        """Hard-delete ledger tasks whose retention deadline has passed."""
        now = utc_now()
        try:
            expired = [t for t in manager.fetch_expired(now) if not t.is_open]
        except LedgerError as e:
            print(f"Could not query expired tasks: {e}")
            return False

        print(f"Found {len(expired)} tasks past their retention deadline")
        if not apply_changes or not expired:
            return True

        outcome = manager.commit([WriteOp.remove(TASKS, t.id) for t in expired], abort_on_error=True)
        manager.append_activity({
            "activityType": "purgeExpiredTasks",
            "purged": outcome.committed,
            "errors": list(outcome.errors),
        })
        print(f"Purged {outcome.committed} expired tasks")
        for error in outcome.errors:
            print(f"  Error: {error}")
        return outcome.ok
