"""Sync command - run reconciliation passes."""

import logging
import time
from typing import Callable, Optional

from ..core.exceptions import ConfigurationError
from ..core.models import SyncConfig, SyncResult
from ..ledger.gateway import FirestoreLedgerGateway
from ..ledger.tasks import LedgerTaskManager
from ..reminders.tasks import RemindersTaskManager
from ..sync.engine import ReconciliationEngine


def build_ledger_manager(config: SyncConfig, logger: Optional[logging.Logger] = None) -> LedgerTaskManager:
    """Ledger manager backed by Firestore, from the configured project."""
    if not config.project_id:
        raise ConfigurationError(
            "No ledger project configured. Set ledger.project_id in the config file."
        )
    gateway = FirestoreLedgerGateway(
        project_id=config.project_id,
        credentials_path=config.credentials_path,
        logger=logger,
    )
    return LedgerTaskManager(
        gateway,
        config.resolved_owner_id(),
        page_size=config.page_size,
        max_tasks=config.max_tasks,
        batch_size=config.batch_size,
        logger=logger,
    )


def build_engine(config: SyncConfig, logger: Optional[logging.Logger] = None) -> ReconciliationEngine:
    ledger = build_ledger_manager(config, logger)
    device = RemindersTaskManager(logger=logger)
    return ReconciliationEngine(config, ledger, device, logger=logger)


def print_result(result: SyncResult) -> None:
    label = "DRY RUN" if result.dry_run else "APPLIED"
    print(f"\n[{label}] {result.mode} sync for {result.owner_id or '(no owner)'}")
    print(f"  {result.summary()}")
    for key, value in result.counts.items():
        if value:
            print(f"  {key.replace('_', ' ')}: {value}")
    if result.cancelled:
        print("  Pass was cancelled before commit.")
    if result.errors:
        print("  Errors:")
        for error in result.errors[:20]:
            print(f"    - {error}")
        if len(result.errors) > 20:
            print(f"    ... and {len(result.errors) - 20} more")
    if result.dry_run:
        print("\nRun with --apply to write these changes.")


class SyncCommand:
    """Command for reconciling the ledger with Apple Reminders."""

    def __init__(
        self,
        config: SyncConfig,
        verbose: bool = False,
        engine: Optional[ReconciliationEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.verbose = verbose
        self.engine = engine
        self.sleep = sleep
        self.logger = logging.getLogger(__name__)
        if verbose:
            self.logger.setLevel(logging.DEBUG)

    def run(
        self,
        apply_changes: bool = False,
        mode: Optional[str] = None,
        watch: bool = False,
        max_passes: Optional[int] = None,
    ) -> bool:
        """Run one pass, or keep running passes on the configured interval."""
        try:
            engine = self.engine or build_engine(self.config)
        except ConfigurationError as e:
            print(f"Configuration error: {e}")
            return False

        if not watch:
            result = engine.run(mode=mode, dry_run=not apply_changes)
            print_result(result)
            return result.success

        interval_minutes = max(SyncConfig.MIN_INTERVAL_MINUTES, self.config.background_interval_minutes)
        print(f"Running a sync pass every {interval_minutes} minutes (Ctrl-C to stop)")

        passes = 0
        all_success = True
        while max_passes is None or passes < max_passes:
            result = engine.run(mode=mode, dry_run=not apply_changes)
            print_result(result)
            all_success = all_success and result.success
            passes += 1
            if max_passes is not None and passes >= max_passes:
                break
            self.logger.debug(f"Sleeping {interval_minutes} minutes until the next pass")
            self.sleep(interval_minutes * 60)
        return all_success
