# Rev 0.1.0
"""ProjectTreeStore: the single owner of the canonical project tree.

Every mutator swaps in a new immutable tree and emits ``treeChanged(origin)``.
Nobody else holds a mutable reference; readers go through ``tree`` or the
id-based lookups so they never keep a pointer past a reconciliation.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import (
    EntityPath, Project, ProjectTree, SessionContext, Tag, Task,
)
from researchos.services import tree_ops
from researchos.utils.timefmt import utc_now

log = logging.getLogger(__name__)


class ProjectTreeStore(QObject):
    treeChanged = Signal(str)       # origin: local | remote | load | rollback
    tagDeleted = Signal(str)

    def __init__(self, session: SessionContext, clock: Callable[[], Any] = utc_now):
        super().__init__()
        self._session = session
        self._clock = clock
        self._tree = ProjectTree()
        self._hydrated = False

    # ---- reads ----
    @property
    def tree(self) -> ProjectTree:
        return self._tree

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    def find_latest(self, project_id: Optional[str]) -> Optional[Project]:
        if project_id is None:
            return None
        return tree_ops.find_project(self._tree, project_id)

    def locate(self, kind: str, entity_id: str) -> Optional[EntityPath]:
        return tree_ops.locate(self._tree, kind, entity_id)

    def get(self, kind: str, entity_id: str) -> Optional[Any]:
        if kind == "tag":
            return self._tree.tag(entity_id)
        path = self.locate(kind, entity_id)
        return tree_ops.get_at(self._tree, path) if path else None

    # ---- mutators ----
    def apply_local_edit(self, path: EntityPath, patch: Mapping[str, Any], origin: str = "local") -> ProjectTree:
        """Patch the node at ``path``; a vanished path is a silent no-op."""
        new = tree_ops.apply_patch(
            self._tree, path, patch, self._clock(),
            actor=self._session.current_user_id, actor_name=self._session.display_name,
        )
        if new is self._tree:
            log.debug("apply_local_edit: %s no longer exists", path)
        self._commit(new, origin)
        return self._tree

    def patch_entity(self, kind: str, entity_id: str, patch: Mapping[str, Any], origin: str = "local") -> bool:
        if kind == "tag":
            tag = self._tree.tag(entity_id)
            if tag is None:
                return False
            tags = tuple(replace(t, **dict(patch)) if t.id == entity_id else t for t in self._tree.tags)
            self._commit(replace(self._tree, tags=tags), origin)
            return True
        path = self.locate(kind, entity_id)
        if path is None:
            return False
        self.apply_local_edit(path, patch, origin)
        return True

    def insert(self, kind: str, entity: Any, index: Optional[int] = None, origin: str = "local") -> bool:
        if kind == "tag":
            return self.upsert_tag(entity, origin)
        new = tree_ops.insert(self._tree, kind, entity, index, stamp=self._clock())
        if new is self._tree:
            log.info("insert %s %s: parent is gone, dropped", kind, entity.id)
            return False
        self._commit(new, origin)
        return True

    def remove(self, kind: str, entity_id: str, origin: str = "local") -> Tuple[Any, int]:
        """Returns (removed_node, former_index); (None, -1) when already gone."""
        if kind == "tag":
            tag = self._tree.tag(entity_id)
            if tag is not None:
                self.delete_tag(entity_id, origin)
            return tag, -1
        path = self.locate(kind, entity_id)
        if path is None:
            return None, -1
        new, node, index = tree_ops.remove(self._tree, path, stamp=self._clock())
        self._commit(new, origin)
        return node, index

    def upsert_tag(self, tag: Tag, origin: str = "local") -> bool:
        tags = list(self._tree.tags)
        for i, t in enumerate(tags):
            if t.id == tag.id:
                tags[i] = tag
                break
        else:
            tags.append(tag)
        self._commit(replace(self._tree, tags=tuple(tags)), origin)
        return True

    def delete_tag(self, tag_id: str, origin: str = "local") -> None:
        new = tree_ops.strip_tag(self._tree, tag_id)
        self._commit(new, origin)
        self.tagDeleted.emit(tag_id)

    def tagged_with(self, tag_id: str) -> List[Tuple[str, str]]:
        """(kind, id) of every task/subtask carrying ``tag_id``."""
        out: List[Tuple[str, str]] = [("task", t.id) for _p, _si, t in self._tree.iter_tasks() if tag_id in t.tags]
        out.extend(("subtask", st.id) for _p, _si, _t, st in self._tree.iter_subtasks() if tag_id in st.tags)
        return out

    def reorder_projects(self, ordered_ids: Iterable[str], origin: str = "local") -> Dict[str, int]:
        """Reorder by id and stamp priority_rank = position + 1. Returns the old ranks."""
        by_id = {p.id: p for p in self._tree.projects}
        old = {p.id: p.priority_rank for p in self._tree.projects}
        ordered = [by_id[i] for i in ordered_ids if i in by_id]
        seen = {p.id for p in ordered}
        ordered += [p for p in self._tree.projects if p.id not in seen]
        now = self._clock()
        projects = tuple(
            p if p.priority_rank == n else replace(p, priority_rank=n, updated_at=now)
            for n, p in enumerate(ordered, start=1)
        )
        self._commit(replace(self._tree, projects=projects), origin)
        return old

    def replace_tree(self, tree: ProjectTree, origin: str = "remote") -> None:
        self._hydrated = True
        self._commit(tree, origin, force=True)

    # ---- internals ----
    def _commit(self, new: ProjectTree, origin: str, force: bool = False) -> None:
        if new is self._tree and not force:
            return
        self._tree = new
        self.treeChanged.emit(origin)


class Selection:
    """What the UI is looking at, held by id and resolved on every read."""

    def __init__(self, store: ProjectTreeStore):
        self._store = store
        self.project_id: Optional[str] = None
        self.task_id: Optional[str] = None

    def select_project(self, project_id: Optional[str]) -> None:
        self.project_id, self.task_id = project_id, None

    def select_task(self, task_id: Optional[str]) -> None:
        self.task_id = task_id

    def project(self) -> Optional[Project]:
        return self._store.find_latest(self.project_id)

    def task(self) -> Optional[Tuple[int, Task]]:
        if self.task_id is None:
            return None
        path = self._store.locate("task", self.task_id)
        if path is None or path.project_id != self.project_id:
            return None
        return path.stage_index, tree_ops.get_at(self._store.tree, path)

    def prune(self) -> bool:
        """Drop ids that no longer resolve. True if anything was cleared."""
        changed = False
        if self.project_id is not None and self.project() is None:
            self.project_id, self.task_id, changed = None, None, True
        if self.task_id is not None and self.task() is None:
            self.task_id, changed = None, True
        return changed
