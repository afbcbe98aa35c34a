"""Per-owner watermark persistence between passes."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging

from ..utils.date import format_iso, parse_iso
from ..utils.io import safe_read_json, update_json


class SyncStateStore:
    """Reads and writes ``sync_state.json``.

    Layout::

        {"owners": {"<ownerId>": {"watermark": iso, "lastFullSync": iso,
                                  "lastDeltaSync": iso, "lastSummary": {...}}}}
    """

    def __init__(self, path: str, logger: Optional[logging.Logger] = None):
        self.path = path
        self.logger = logger or logging.getLogger(__name__)

    def _load(self) -> Dict[str, Any]:
        data = safe_read_json(self.path, default={"owners": {}})
        if not isinstance(data.get("owners"), dict):
            data["owners"] = {}
        return data

    def get(self, owner_id: str) -> Dict[str, Any]:
        return dict(self._load()["owners"].get(owner_id, {}))

    def watermark(self, owner_id: str) -> Optional[datetime]:
        return parse_iso(self.get(owner_id).get("watermark"))

    def last_full(self, owner_id: str) -> Optional[datetime]:
        return parse_iso(self.get(owner_id).get("lastFullSync"))

    def needs_full(self, owner_id: str, now: datetime, full_resync_hours: float) -> bool:
        """True without a watermark or when the last full pass is too old."""
        if self.watermark(owner_id) is None:
            return True
        last_full = self.last_full(owner_id)
        if last_full is None:
            return True
        return now - last_full >= timedelta(hours=full_resync_hours)

    def record_pass(self, owner_id: str, mode: str, started_at: datetime,
                    summary: Optional[Dict[str, Any]] = None) -> bool:
        """
        Persist a successful pass.

        The watermark is the pass start so that writes landing while the
        pass ran are picked up by the next delta.
        """
        def stamp(data: Dict[str, Any]) -> Dict[str, Any]:
            if not isinstance(data.get("owners"), dict):
                data["owners"] = {}
            entry = data["owners"].setdefault(owner_id, {})
            entry["watermark"] = format_iso(started_at)
            if mode == "full":
                entry["lastFullSync"] = format_iso(started_at)
            else:
                entry["lastDeltaSync"] = format_iso(started_at)
            if summary is not None:
                entry["lastSummary"] = summary
            return data

        ok = update_json(self.path, stamp)
        if not ok:
            self.logger.warning(f"Could not persist sync state to {self.path}")
        return ok
