# Rev 0.1.0
"""Notification list, dismissed keys and the desktop sink.

At most one live notification exists per ``NotificationKey``. Deleting or
clearing records the key as dismissed so the scanner never regenerates it,
until the item's reminder is set again (``rearm``).
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import Notification, NotificationKey, Project, SessionContext, Task
from researchos.models.errors import RemoteResult
from researchos.models.types import OVERDUE_TYPES
from researchos.services import tree_ops
from researchos.services.persistence import Backend
from researchos.services.scheduling import Runner
from researchos.services.tree_store import ProjectTreeStore

log = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def show(self, notification: Notification) -> None: ...


class LogSink:
    def show(self, notification: Notification) -> None:
        log.info("[notify] %s: %s", notification.title, notification.message)


class NotificationCenter(QObject):
    changed = Signal(list)
    toast = Signal(str)

    def __init__(self, store: ProjectTreeStore, backend: Backend, session: SessionContext, runner: Runner):
        super().__init__()
        self._store = store
        self._backend = backend
        self._session = session
        self._runner = runner
        self._items: Tuple[Notification, ...] = ()
        self._dismissed: Set[NotificationKey] = set()
        self._dismissed_loaded = False
        self.loaded = False

    # ---- reads ----
    @property
    def items(self) -> Tuple[Notification, ...]:
        return self._items

    @property
    def dismissed(self) -> FrozenSet[NotificationKey]:
        return frozenset(self._dismissed)

    def keys(self) -> Set[NotificationKey]:
        return {n.key for n in self._items}

    def is_suppressed(self, key: NotificationKey) -> bool:
        """True if a live notification or a dismissal already covers ``key``."""
        return key in self._dismissed or any(n.key == key for n in self._items)

    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.is_read)

    def resolve_target(self, notification: Notification) -> Optional[Tuple[Project, int, Optional[Task]]]:
        """Where clicking a notification should navigate, against the latest tree."""
        if notification.task_id is not None:
            path = self._store.locate("task", notification.task_id)
            if path is not None:
                project = self._store.find_latest(path.project_id)
                return project, path.stage_index, tree_ops.get_at(self._store.tree, path)
        project = self._store.find_latest(notification.project_id)
        if project is None:
            return None
        return project, project.current_stage_index, None

    # ---- loading ----
    def load(self) -> None:
        """Dismissed keys first, then the list; ``loaded`` only flips once both arrived."""
        uid = self._session.current_user_id

        def got_dismissed(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("Loading dismissed keys failed: %s", result.error)
                self.toast.emit("Couldn't load notifications.")
                return
            # keys dismissed while the load was in flight stay dismissed
            self._dismissed |= set(result.data or ())
            self._dismissed_loaded = True
            self._runner.submit(lambda: self._backend.load_notifications(uid), got_items)

        def got_items(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("Loading notifications failed: %s", result.error)
                self.toast.emit("Couldn't load notifications.")
                return
            self.apply_remote(result.data or ())

        self._runner.submit(lambda: self._backend.load_dismissed(uid), got_dismissed)

    def apply_remote(self, items: Iterable[Notification]) -> None:
        """Adopt the backend's list, keeping one notification per key (newest wins)."""
        seen: Set[NotificationKey] = set()
        out: List[Notification] = []
        for n in sorted(items, key=lambda n: n.created_at.timestamp() if n.created_at else 0.0, reverse=True):
            if n.key in seen:
                continue
            seen.add(n.key)
            out.append(n)
        self._items = tuple(out)
        self.loaded = self._dismissed_loaded
        self.changed.emit(list(self._items))

    # ---- mutations ----
    def append(self, items: Sequence[Notification]) -> List[Notification]:
        """Add notifications whose key is not live or dismissed; returns the ones added."""
        fresh: List[Notification] = []
        taken = self.keys() | self._dismissed
        for n in items:
            if n.key in taken:
                continue
            taken.add(n.key)
            fresh.append(n)
        if not fresh:
            return fresh
        self._items = tuple(reversed(fresh)) + self._items
        self.changed.emit(list(self._items))
        uid = self._session.current_user_id
        self._submit("save notifications", lambda: self._backend.add_notifications(uid, fresh))
        return fresh

    def mark_read(self, notification_id: str) -> bool:
        target = next((n for n in self._items if n.id == notification_id), None)
        if target is None or target.is_read:
            return False
        self._items = tuple(replace(n, is_read=True) if n.id == notification_id else n for n in self._items)
        self.changed.emit(list(self._items))
        uid = self._session.current_user_id
        self._submit("mark read", lambda: self._backend.patch_notifications(uid, [notification_id], {"is_read": True}))
        return True

    def mark_all_read(self) -> int:
        ids = [n.id for n in self._items if not n.is_read]
        if not ids:
            return 0
        self._items = tuple(replace(n, is_read=True) if not n.is_read else n for n in self._items)
        self.changed.emit(list(self._items))
        uid = self._session.current_user_id
        self._submit("mark all read", lambda: self._backend.patch_notifications(uid, ids, {"is_read": True}))
        return len(ids)

    def delete(self, ids: Iterable[str]) -> int:
        """Remove notifications and remember their keys so they never come back."""
        ids = set(ids)
        gone = [n for n in self._items if n.id in ids]
        if not gone:
            return 0
        self._items = tuple(n for n in self._items if n.id not in ids)
        self._dismissed.update(n.key for n in gone)
        self.changed.emit(list(self._items))
        self._persist_removal([n.id for n in gone])
        return len(gone)

    def clear_all(self) -> int:
        return self.delete([n.id for n in self._items])

    def rearm(self, task_id: Optional[str], subtask_id: Optional[str] = None) -> int:
        """A reminder was (re)set: let the item's overdue alert fire again."""
        def matches(key: NotificationKey) -> bool:
            return key.type in OVERDUE_TYPES and key.task_id == task_id and key.subtask_id == subtask_id

        undismissed = {k for k in self._dismissed if matches(k)}
        stale = [n.id for n in self._items if matches(n.key)]
        if not undismissed and not stale:
            return 0
        self._dismissed -= undismissed
        if stale:
            self._items = tuple(n for n in self._items if n.id not in stale)
            self.changed.emit(list(self._items))
        self._persist_removal(stale)
        return len(undismissed) + len(stale)

    # ---- internals ----
    def _persist_removal(self, ids: List[str]) -> None:
        uid = self._session.current_user_id
        keys = frozenset(self._dismissed)
        if ids:
            self._submit("delete notifications", lambda: self._backend.delete_notifications(uid, ids))
        self._submit("save dismissed", lambda: self._backend.save_dismissed(uid, keys))

    def _submit(self, label: str, fn: Callable[[], RemoteResult]) -> None:
        def done(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("%s failed: %s", label, result.error)

        self._runner.submit(fn, done)
