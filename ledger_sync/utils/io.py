"""
JSON state files: atomic replacement plus cooperative ``fcntl`` locking.

Several ``ledger-sync`` processes (a ``--watch`` loop and a manual pass, say)
may share one working directory, so readers take a shared lock and writers
an exclusive one on a ``<file>.lock`` companion.
"""

import contextlib
import errno
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

try:  # fcntl is only available on POSIX platforms
    import fcntl  # type: ignore
except ImportError:  # pragma: no cover - Windows has no advisory locks
    fcntl = None  # type: ignore


LOCK_TIMEOUT = 8.0  # seconds
LOCK_POLL = 0.05  # seconds

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def locked(path: Path, exclusive: bool, timeout: float = LOCK_TIMEOUT) -> Iterator[None]:
    """Hold the advisory lock for ``path`` while the body runs."""
    if fcntl is None:
        yield
        return

    path.parent.mkdir(parents=True, exist_ok=True)
    mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
    give_up_at = time.monotonic() + timeout

    with open(path.parent / f"{path.name}.lock", "a") as handle:
        while True:
            try:
                fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
                break
            except OSError as exc:  # pragma: no cover - depends on timing
                if exc.errno not in (errno.EACCES, errno.EAGAIN):
                    raise
                if time.monotonic() >= give_up_at:
                    raise TimeoutError(f"Lock on {path} not acquired within {timeout}s") from exc
                time.sleep(LOCK_POLL)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _load(path: Path, default: Dict[str, Any]) -> Dict[str, Any]:
    if not path.exists():
        return default
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    return data if isinstance(data, dict) else default


def _replace(path: Path, data: Dict[str, Any], indent: int) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=indent, ensure_ascii=False, sort_keys=True, default=str)
        os.replace(tmp_name, str(path))
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def safe_read_json(file_path: str, default: Optional[Dict] = None, *,
                   lock_timeout: float = LOCK_TIMEOUT) -> Dict[str, Any]:
    """
    Read a JSON object under a shared lock.

    Returns ``default`` (an empty dict when not given) for a missing,
    unreadable or non-object file.
    """
    fallback = {} if default is None else default
    path = Path(file_path).expanduser()
    try:
        with locked(path, exclusive=False, timeout=lock_timeout):
            return _load(path, fallback)
    except (TimeoutError, OSError, ValueError) as exc:
        logger.warning("Could not read %s: %s", file_path, exc)
    return fallback


def update_json(file_path: str, mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
                indent: int = 2, *, lock_timeout: float = LOCK_TIMEOUT) -> bool:
    """
    Read, transform and rewrite a JSON object while holding one exclusive lock.

    ``mutate`` receives the current object (empty when missing or corrupt)
    and returns the object to store. Returns False when the file could not
    be written.
    """
    path = Path(file_path).expanduser()
    try:
        with locked(path, exclusive=True, timeout=lock_timeout):
            try:
                current = _load(path, {})
            except (OSError, ValueError) as exc:
                logger.warning("Discarding unreadable %s: %s", file_path, exc)
                current = {}
            _replace(path, mutate(current), indent)
        return True
    except (TimeoutError, OSError, TypeError, ValueError) as exc:
        logger.error("Error writing %s: %s", file_path, exc)
    return False
