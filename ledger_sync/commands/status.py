"""Status command - show persisted pass state."""

from ..core.models import SyncConfig
from ..sync.state import SyncStateStore


class StatusCommand:
    """Prints the watermark and last pass summary for the configured owner."""

    def __init__(self, config: SyncConfig, verbose: bool = False):
        self.config = config
        self.verbose = verbose

    def run(self) -> bool:
        owner_id = self.config.resolved_owner_id()
        print(f"Owner:        {owner_id or '(not configured)'}")
        print(f"Project:      {self.config.project_id or '(not configured)'}")
        print(f"Mode:         {self.config.sync_mode}")
        print(f"State file:   {self.config.state_path}")
        if not owner_id:
            return False

        state = SyncStateStore(self.config.state_path).get(owner_id)
        if not state:
            print("No completed passes recorded yet.")
            return True

        print(f"Watermark:    {state.get('watermark', '-')}")
        print(f"Last full:    {state.get('lastFullSync', '-')}")
        print(f"Last delta:   {state.get('lastDeltaSync', '-')}")
        summary = state.get("lastSummary") or {}
        if summary.get("summary"):
            print(f"Last result:  {summary['summary']}")
        return True
