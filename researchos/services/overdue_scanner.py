# Rev 0.1.0
"""Periodic overdue scan.

Each tick walks the whole tree and raises one notification per overdue
task/subtask key. The same dedup state serves timer ticks and scans
triggered by tree changes, so neither can double-fire.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import Notification, NotificationKey, Project, SessionContext, Subtask, Task, new_id
from researchos.models.types import NotificationType
from researchos.services.notification_center import LogSink, NotificationCenter, NotificationSink
from researchos.services.scheduling import TimerFactory, qt_timer_factory
from researchos.services.tree_store import ProjectTreeStore
from researchos.utils.timefmt import format_reminder, is_overdue, utc_now

log = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 60_000


class OverdueScanner(QObject):
    notificationsEmitted = Signal(list)

    def __init__(self, store: ProjectTreeStore, center: NotificationCenter, session: SessionContext,
                 timer_factory: TimerFactory = qt_timer_factory, interval_ms: int = DEFAULT_INTERVAL_MS,
                 sink: Optional[NotificationSink] = None, clock: Callable[[], datetime] = utc_now):
        super().__init__()
        self._store = store
        self._center = center
        self._session = session
        self._interval_ms = interval_ms
        self._sink = sink or LogSink()
        self._clock = clock
        self._timer = timer_factory(self.scan, True)
        self._running = False
        self._deferred = False
        self.notified: Set[NotificationKey] = set()

        store.treeChanged.connect(self._on_tree_changed)
        center.changed.connect(self._on_center_changed)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        self._running = True
        self._timer.start(self._interval_ms)
        self.scan()

    def stop(self, reset: bool = False) -> None:
        self._running = False
        self._timer.cancel()
        if reset:
            self.notified.clear()

    def forget(self, task_id: Optional[str], subtask_id: Optional[str] = None) -> None:
        """Drop session memory for one item so a rescheduled reminder can fire again."""
        self.notified = {k for k in self.notified if not (k.task_id == task_id and k.subtask_id == subtask_id)}

    def _on_tree_changed(self, _origin: str) -> None:
        if self._running:
            self.scan()

    def _on_center_changed(self, _items: list) -> None:
        # notifications finished loading after a skipped scan
        if self._running and self._deferred:
            self.scan()

    def _overdue(self, now: datetime) -> Dict[NotificationKey, Callable[[], Notification]]:
        uid = self._session.current_user_id
        found: Dict[NotificationKey, Callable[[], Notification]] = {}
        for project, _si, task in self._store.tree.iter_tasks():
            if not task.is_completed and is_overdue(task.reminder_date, now):
                key = NotificationKey(uid, NotificationType.TASK_OVERDUE.value, task.id, None)
                found[key] = self._builder(key, project, task, None, now)
            for sub in task.subtasks:
                if not sub.is_completed and is_overdue(sub.reminder_date, now):
                    key = NotificationKey(uid, NotificationType.SUBTASK_OVERDUE.value, task.id, sub.id)
                    found[key] = self._builder(key, project, task, sub, now)
        return found

    @staticmethod
    def _builder(key: NotificationKey, project: Project, task: Task, sub: Optional[Subtask],
                 now: datetime) -> Callable[[], Notification]:
        item = sub or task

        def build() -> Notification:
            label = format_reminder(item.reminder_date, now)
            where = f"{project.title} › {task.title}" if sub else project.title
            return Notification(
                id=new_id(), user_id=key.user_id, type=key.type,
                title=f"Overdue: {item.title}",
                message=f"{where} ({label})",
                project_id=project.id, task_id=key.task_id, subtask_id=key.subtask_id,
                reminder_date=item.reminder_date, created_at=now,
            )
        return build

    def scan(self) -> List[Notification]:
        """One pass; returns the notifications raised by it."""
        if not (self._store.hydrated and self._center.loaded):
            log.debug("Scan skipped; tree or notifications not loaded yet")
            self._deferred = True
            return []
        self._deferred = False
        now = self._clock()
        overdue = self._overdue(now)
        self.notified &= set(overdue)

        candidates: List[Notification] = []
        for key, build in overdue.items():
            if key in self.notified or self._center.is_suppressed(key):
                continue
            candidates.append(build())
        fresh = self._center.append(candidates) if candidates else []
        self.notified.update(n.key for n in fresh)
        for n in fresh:
            self._sink.show(n)
        if fresh:
            log.info("Raised %d overdue notification(s)", len(fresh))
            self.notificationsEmitted.emit(fresh)
        return fresh
