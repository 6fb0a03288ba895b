# Rev 0.1.0
"""Today focus list.

Items are either standalone text or snapshot copies of a task/subtask. The
list is newest-first with active items above done ones. Completion and
renames flow Today -> Tree through ``TreeCommands``; the reverse direction
is reconciliation's job.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import SessionContext, Subtask, Task, TodayItem, new_id
from researchos.models.errors import RemoteResult, ValidationError
from researchos.models.types import DuplicateChoice
from researchos.services.persistence import Backend, TodaySnapshot
from researchos.services.scheduling import Runner
from researchos.services.tree_commands import TreeCommands
from researchos.services.tree_store import ProjectTreeStore
from researchos.utils.timefmt import utc_now

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TodayOutcome:
    code: str      # added | duplicate_found | reactivated | duplicated | cancelled | toggled | renamed | not_found
    item: Optional[TodayItem] = None
    existing: Optional[TodayItem] = None
    propagated: Optional[bool] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code not in ("duplicate_found", "cancelled", "not_found")


def partition(items: Iterable[TodayItem]) -> Tuple[TodayItem, ...]:
    """Active above done; relative order within each group is kept."""
    items = list(items)
    return tuple(i for i in items if not i.is_done) + tuple(i for i in items if i.is_done)


class TodayEngine(QObject):
    itemsChanged = Signal(list)
    toast = Signal(str)

    def __init__(self, store: ProjectTreeStore, commands: TreeCommands, backend: Backend,
                 session: SessionContext, runner: Runner, clock: Callable[[], datetime] = utc_now):
        super().__init__()
        self._store = store
        self._commands = commands
        self._backend = backend
        self._session = session
        self._runner = runner
        self._clock = clock
        self._items: Tuple[TodayItem, ...] = ()
        self._stamp: Optional[datetime] = None
        self._revision = 0
        self.loaded = False

        store.treeChanged.connect(self._on_tree_changed)
        store.tagDeleted.connect(self._on_tag_deleted)

    @property
    def items(self) -> Tuple[TodayItem, ...]:
        return self._items

    def find(self, item_id: str) -> Optional[TodayItem]:
        return next((i for i in self._items if i.id == item_id), None)

    # ---- adding ----
    def add_task(self, task: Task, project_id: Optional[str],
                 choice: Optional[DuplicateChoice] = None) -> TodayOutcome:
        def make() -> TodayItem:
            return TodayItem(id=new_id(), title=task.title, tags=task.tags, source_project_id=project_id,
                             source_task_id=task.id, created_at=self._clock())
        existing = self._linked((task.id, None))
        return self._add(existing, make, choice)

    def add_subtask(self, subtask: Subtask, parent_task: Task, project_id: Optional[str],
                    choice: Optional[DuplicateChoice] = None) -> TodayOutcome:
        def make() -> TodayItem:
            return TodayItem(id=new_id(), title=subtask.title, tags=subtask.tags, source_project_id=project_id,
                             source_task_id=parent_task.id, source_subtask_id=subtask.id,
                             created_at=self._clock())
        existing = self._linked((parent_task.id, subtask.id))
        return self._add(existing, make, choice)

    def add_standalone(self, title: str, choice: Optional[DuplicateChoice] = None) -> TodayOutcome:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Today item title must not be empty")
        title = title.strip()

        def make() -> TodayItem:
            return TodayItem(id=new_id(), title=title, is_local=True, created_at=self._clock())
        existing = next((i for i in self._items if not i.is_linked and i.title == title), None)
        return self._add(existing, make, choice)

    def _linked(self, key: Tuple[Optional[str], Optional[str]]) -> Optional[TodayItem]:
        # prefer an active copy when several exist
        matches = [i for i in self._items if i.is_linked and i.source_key == key]
        return next((i for i in matches if not i.is_done), matches[0] if matches else None)

    def _add(self, existing: Optional[TodayItem], make: Callable[[], TodayItem],
             choice: Optional[DuplicateChoice]) -> TodayOutcome:
        if existing is None:
            item = make()
            self._set((item,) + self._items)
            return TodayOutcome("added", item=item)
        if choice is None:
            return TodayOutcome("duplicate_found", existing=existing)
        choice = DuplicateChoice(choice)
        if choice is DuplicateChoice.CANCEL:
            return TodayOutcome("cancelled", existing=existing)
        if choice is DuplicateChoice.REACTIVATE:
            if not existing.is_done:
                return TodayOutcome("reactivated", item=existing, existing=existing)
            item = replace(existing, is_done=False)
            self._set(partition(item if i.id == item.id else i for i in self._items))
            return TodayOutcome("reactivated", item=item, existing=existing)
        item = make()
        self._set((item,) + self._items)
        return TodayOutcome("duplicated", item=item, existing=existing)

    # ---- editing ----
    def toggle_done(self, item_id: str) -> TodayOutcome:
        item = self.find(item_id)
        if item is None:
            return TodayOutcome("not_found")
        flipped = replace(item, is_done=not item.is_done)
        self._set(partition(flipped if i.id == item_id else i for i in self._items))
        if not flipped.is_linked:
            return TodayOutcome("toggled", item=flipped)
        kind, source_id = self._source(flipped)
        propagated = self._commands.set_completed(kind, source_id, flipped.is_done)
        return TodayOutcome("toggled", item=flipped, propagated=propagated,
                            error=None if propagated else f"{kind} no longer exists")

    def rename(self, item_id: str, title: str) -> TodayOutcome:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Today item title must not be empty")
        title = title.strip()
        item = self.find(item_id)
        if item is None:
            return TodayOutcome("not_found")
        renamed = replace(item, title=title)
        self._set(tuple(renamed if i.id == item_id else i for i in self._items))
        if not renamed.is_linked:
            return TodayOutcome("renamed", item=renamed)

        kind, source_id = self._source(renamed)
        try:
            propagated = self._commands.rename(kind, source_id, title)
        except ValidationError as e:
            log.info("rename of %s %s not propagated: %s", kind, source_id, e)
            return TodayOutcome("renamed", item=renamed, propagated=False, error=str(e))
        return TodayOutcome("renamed", item=renamed, propagated=propagated,
                            error=None if propagated else f"{kind} no longer exists")

    def remove(self, ids: Iterable[str]) -> int:
        ids = set(ids)
        kept = tuple(i for i in self._items if i.id not in ids)
        removed = len(self._items) - len(kept)
        if removed:
            self._set(kept)
        return removed

    def duplicate(self, ids: Iterable[str]) -> List[TodayItem]:
        ids = set(ids)
        now = self._clock()
        copies = [replace(i, id=new_id(), is_done=False, created_at=now) for i in self._items if i.id in ids]
        if copies:
            self._set(tuple(copies) + self._items)
        return copies

    def reorder(self, from_index: int, to_index: int) -> bool:
        n = len(self._items)
        if not (0 <= from_index < n and 0 <= to_index < n):
            return False
        if from_index == to_index:
            return True
        items = list(self._items)
        items.insert(to_index, items.pop(from_index))
        self._set(tuple(items))
        return True

    # ---- derivations ----
    def detach_orphans(self) -> int:
        """Turn linked copies whose source is gone into standalone items."""
        detached = 0
        out = []
        for item in self._items:
            if item.is_linked and not self._source_exists(item):
                item = replace(item, is_local=True, source_project_id=None,
                               source_task_id=None, source_subtask_id=None)
                detached += 1
            out.append(item)
        if detached:
            log.info("Detached %d Today item(s) from deleted sources", detached)
            self._set(tuple(out))
        return detached

    def _on_tree_changed(self, _origin: str) -> None:
        if self._store.hydrated and self.loaded:
            self.detach_orphans()

    def _on_tag_deleted(self, tag_id: str) -> None:
        if any(tag_id in i.tags for i in self._items):
            self._set(tuple(replace(i, tags=i.tags - {tag_id}) if tag_id in i.tags else i for i in self._items))

    @staticmethod
    def _source(item: TodayItem) -> Tuple[str, str]:
        if item.source_subtask_id is not None:
            return "subtask", item.source_subtask_id
        return "task", item.source_task_id

    def _source_exists(self, item: TodayItem) -> bool:
        kind, source_id = self._source(item)
        return self._store.locate(kind, source_id) is not None

    # ---- persistence ----
    def load(self) -> None:
        revision = self._revision

        def done(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("Loading Today list failed: %s", result.error)
                self.toast.emit("Couldn't load your Today list.")
                return
            snapshot = result.data or TodaySnapshot()
            if self._revision == revision:
                self.apply_remote(snapshot, force=True)
            else:
                self._hydrate_over_edits(snapshot)

        self._runner.submit(lambda: self._backend.load_today(self._session.current_user_id), done)

    def _hydrate_over_edits(self, snapshot: TodaySnapshot) -> None:
        """The list was edited while loading: keep those edits on top of the stored list."""
        local_ids = {i.id for i in self._items}
        merged = self._items + tuple(i for i in snapshot.items if i.id not in local_ids)
        log.info("Keeping %d Today item(s) edited during load", len(self._items))
        self.loaded = True
        self._set(partition(merged))
        if self._store.hydrated:
            self.detach_orphans()

    def apply_remote(self, snapshot: TodaySnapshot, force: bool = False) -> bool:
        """Adopt a fetched list unless ours is newer (last write wins)."""
        theirs = snapshot.client_timestamp
        if not force and self._stamp is not None and theirs is not None and theirs < self._stamp:
            log.debug("Ignoring older Today snapshot (%s < %s)", theirs, self._stamp)
            return False
        self._items = tuple(snapshot.items)
        self._stamp = theirs or self._stamp
        self.loaded = True
        self.itemsChanged.emit(list(self._items))
        if self._store.hydrated:
            self.detach_orphans()
        return True

    def _set(self, items: Tuple[TodayItem, ...]) -> None:
        self._items = items
        self._revision += 1
        self._stamp = self._clock()
        self.itemsChanged.emit(list(items))
        self._save()

    def _save(self) -> None:
        items, stamp = self._items, self._stamp
        uid = self._session.current_user_id

        def done(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("Saving Today list failed: %s", result.error)
                self.toast.emit("Couldn't save your Today list.")

        self._runner.submit(lambda: self._backend.save_today(uid, items, stamp), done)
