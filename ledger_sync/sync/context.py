"""Story/goal/sprint context resolution with request coalescing."""

from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging
import time

from ..core.exceptions import LedgerError, PermissionDeniedError
from ..core.models import F, LedgerTask, TaskContext
from ..ledger.gateway import IN_QUERY_LIMIT, LedgerGateway, chunked

STORIES = "stories"
GOALS = "goals"
SPRINTS = "sprints"
THEMES = "themes"

THEME_REFRESH_SECONDS = 300


def _first(data: Optional[Dict[str, Any]], keys: Iterable[str]) -> Optional[str]:
    if not data:
        return None
    for key in keys:
        value = data.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class ContextResolver:
    """Resolves denormalized context for tasks, caching every lookup.

    Instances are owned by one engine; the cache (including negative results
    for missing documents) lives as long as the instance.
    """

    def __init__(
        self,
        gateway: LedgerGateway,
        owner_id: Optional[str] = None,
        report_error: Optional[Callable[[str, Exception], None]] = None,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.owner_id = owner_id
        self.report_error = report_error
        self.max_workers = max_workers
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._cache: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        self._theme_names: Dict[str, str] = {}
        self._theme_lists: Dict[str, str] = {}
        self._themes_loaded_at: Optional[float] = None
        self.queries = 0

    def _report(self, context: str, error: Exception) -> None:
        if self.report_error is not None:
            self.report_error(context, error)
        else:
            self.logger.warning(f"{context}: {error}")

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def cached(self, collection: str, doc_id: str) -> bool:
        return (collection, doc_id) in self._cache

    def reset_cache(self) -> None:
        """Drop cached documents; the theme mapping keeps its own refresh cadence."""
        self._cache.clear()

    def _fetch_chunk(self, collection: str, ids: List[str]) -> Tuple[str, List[str], Dict[str, Dict[str, Any]], Optional[Exception]]:
        try:
            self.queries += 1
            docs = self.gateway.get_many(collection, ids)
            return collection, ids, {doc.id: doc.data for doc in docs}, None
        except LedgerError as e:
            return collection, ids, {}, e

    def prefetch_ids(self, collection: str, ids: Iterable[str]) -> None:
        """Batch-load ids not yet cached, in chunks of at most ten."""
        pending = sorted({i for i in ids if i and not self.cached(collection, i)})
        if not pending:
            return
        chunks = list(chunked(pending, IN_QUERY_LIMIT))
        if len(chunks) == 1 or self.max_workers <= 1:
            fetched = [self._fetch_chunk(collection, chunk) for chunk in chunks]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                fetched = list(pool.map(lambda c: self._fetch_chunk(collection, c), chunks))

        for coll, chunk_ids, found, error in fetched:
            if error is not None:
                self._report(f"prefetch {coll}", error)
            for doc_id in chunk_ids:
                self._cache[(coll, doc_id)] = found.get(doc_id)

    def prefetch(self, tasks: Iterable[LedgerTask]) -> None:
        """Warm the cache for every story, goal and sprint the tasks reference."""
        tasks = list(tasks)
        self.prefetch_ids(STORIES, (t.story_id for t in tasks))

        goal_ids = {t.goal_id for t in tasks if t.goal_id}
        sprint_ids = {t.sprint_id for t in tasks if t.sprint_id}
        for task in tasks:
            story = self._cache.get((STORIES, task.story_id)) if task.story_id else None
            if story:
                goal_ids.add(_first(story, (F.GOAL,)))
                sprint_ids.add(_first(story, (F.SPRINT,)))
        self.prefetch_ids(GOALS, goal_ids)
        self.prefetch_ids(SPRINTS, sprint_ids)

    def fetch(self, collection: str, doc_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Cached point read; missing documents and failures cache as None."""
        if not doc_id:
            return None
        key = (collection, doc_id)
        if key in self._cache:
            return self._cache[key]
        data = None
        try:
            self.queries += 1
            doc = self.gateway.get(collection, doc_id)
            data = doc.data if doc is not None else None
        except LedgerError as e:
            self._report(f"get {collection}", e)
        self._cache[key] = data
        return data

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------
    def resolve(self, task: LedgerTask) -> TaskContext:
        """
        Context for one task. Never raises.

        Unresolvable ids fall back to the id itself as the reference.
        """
        context = TaskContext()

        story = self.fetch(STORIES, task.story_id)
        if task.story_id:
            context.story_ref = _first(story, F.REFERENCE_ALIASES) or task.story_id

        goal_id = task.goal_id or _first(story, (F.GOAL,))
        goal = self.fetch(GOALS, goal_id)
        if goal_id:
            context.goal_ref = _first(goal, F.REFERENCE_ALIASES) or goal_id

        context.theme = (
            self._theme_of(story)
            or self._theme_of(goal)
            or task.theme
        )

        sprint_id = task.sprint_id or _first(story, (F.SPRINT,))
        if sprint_id:
            sprint = self.fetch(SPRINTS, sprint_id)
            context.sprint_id = sprint_id
            context.sprint_name = _first(sprint, ("name", "title")) or sprint_id

        return context

    def _theme_of(self, data: Optional[Dict[str, Any]]) -> Optional[str]:
        name = _first(data, ("theme",))
        if name:
            return name
        theme_id = _first(data, ("themeId",))
        if not theme_id:
            return None
        return self._theme_names.get(theme_id, theme_id)

    # ------------------------------------------------------------------
    # Theme → list mapping
    # ------------------------------------------------------------------
    def refresh_theme_mapping(self, force: bool = False) -> Dict[str, str]:
        """
        Reload the owner's themes at most every five minutes.

        Returns a map of lower-cased theme name to device list name.
        """
        now = self.clock()
        if (
            not force
            and self._themes_loaded_at is not None
            and now - self._themes_loaded_at < THEME_REFRESH_SECONDS
        ):
            return dict(self._theme_lists)

        self._themes_loaded_at = now
        try:
            self.queries += 1
            docs = self.gateway.query(THEMES, [(F.OWNER, "==", self.owner_id)])
        except PermissionDeniedError as e:
            self._report("query themes", e)
            return dict(self._theme_lists)
        except LedgerError as e:
            self.logger.warning(f"Theme refresh failed: {e}")
            return dict(self._theme_lists)

        names: Dict[str, str] = {}
        lists: Dict[str, str] = {}
        for doc in docs:
            name = _first(doc.data, ("name", "title"))
            if not name:
                continue
            names[doc.id] = name
            lists[name.lower()] = _first(doc.data, ("reminderListName", "listName")) or name
        self._theme_names = names
        self._theme_lists = lists
        self.logger.debug(f"Loaded {len(lists)} theme mappings")
        return dict(lists)

    def list_for_theme(self, theme: Optional[str]) -> Optional[str]:
        if not theme:
            return None
        return self._theme_lists.get(theme.strip().lower())
