# Rev 0.1.0

"""Pytest fixtures for researchos (Rev 0.1.0)"""
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import pytest
from PySide6.QtCore import QCoreApplication

from researchos.models.entities import (
    Project, ProjectTree, SessionContext, Stage, Subtask, Task,
)
from researchos.models.errors import RemoteResult
from researchos.repositories.db import Database
from researchos.repositories.sqlite_blob_repository import SQLiteBlobRepository
from researchos.services.persistence import Dispatcher, LocalBackend, PendingLedger, TodaySnapshot
from researchos.services.scheduling import InlineRunner, ManualTimerFactory

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
USER = "u-1"


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kw) -> None:
        self.now += timedelta(**kw)


# --- A tiny in-memory stub backend ------------------------------------------

class StubBackend:
    """Records calls; individual methods can be made to fail."""

    def __init__(self, tree: Optional[ProjectTree] = None):
        self.tree = tree or ProjectTree()
        self.today = TodaySnapshot()
        self.notifications: List[Any] = []
        self.dismissed: frozenset = frozenset()
        self.calls: List[tuple] = []
        self.fail: Dict[str, RemoteResult] = {}
        self.handlers: Dict[int, Callable] = {}
        self.subscriptions = 0

    def _result(self, name: str, *args, data: Any = None) -> RemoteResult:
        self.calls.append((name,) + args)
        return self.fail.get(name) or RemoteResult(data=data)

    def load_tree(self, user_id):
        return self._result("load_tree", user_id, data=self.tree)

    def load_today(self, user_id):
        return self._result("load_today", user_id, data=self.today)

    def load_notifications(self, user_id):
        return self._result("load_notifications", user_id, data=tuple(self.notifications))

    def load_dismissed(self, user_id):
        return self._result("load_dismissed", user_id, data=self.dismissed)

    def create_entity(self, kind, payload):
        return self._result("create_entity", kind, payload.id, data=payload)

    def patch_entity(self, kind, entity_id, patch: Mapping[str, Any]):
        return self._result("patch_entity", kind, entity_id, dict(patch), data=dict(patch))

    def delete_entity(self, kind, entity_id):
        return self._result("delete_entity", kind, entity_id)

    def save_today(self, user_id, items, client_timestamp=None):
        res = self._result("save_today", user_id, tuple(items), client_timestamp)
        if res.ok:
            self.today = TodaySnapshot(tuple(items), client_timestamp)
        return res

    def add_notifications(self, user_id, items):
        return self._result("add_notifications", user_id, tuple(items))

    def patch_notifications(self, user_id, ids, patch):
        return self._result("patch_notifications", user_id, tuple(ids), dict(patch))

    def delete_notifications(self, user_id, ids):
        return self._result("delete_notifications", user_id, tuple(ids))

    def save_dismissed(self, user_id, keys):
        return self._result("save_dismissed", user_id, frozenset(keys))

    def subscribe_changes(self, user_id, relevant_ids, on_event):
        self.subscriptions += 1
        self.handlers[self.subscriptions] = on_event
        return self.subscriptions

    def unsubscribe(self, handle):
        self.handlers.pop(handle, None)

    def notify_collaborators(self, project_id, exclude_user_id, template):
        return self._result("notify_collaborators", project_id, exclude_user_id, template.type, data=1)

    def named(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]


# --- Tree builders ----------------------------------------------------------

def make_tree(reminder: Optional[datetime] = None, owner: str = USER, members=()) -> ProjectTree:
    """P1 > S1 > T1 (subtasks ST1, ST2) and T2; P2 empty."""
    st1 = Subtask(id="ST1", task_id="T1", title="Collect samples")
    st2 = Subtask(id="ST2", task_id="T1", title="Label tubes")
    t1 = Task(id="T1", stage_id="S1", title="Run assay", subtasks=(st1, st2), reminder_date=reminder)
    t2 = Task(id="T2", stage_id="S1", title="Write methods")
    s1 = Stage(id="S1", project_id="P1", title="Experiments", tasks=(t1, t2))
    p1 = Project(id="P1", title="Enzyme kinetics", owner_id=owner, members=members, stages=(s1,))
    p2 = Project(id="P2", title="Review paper", owner_id=owner)
    return ProjectTree(projects=(p1, p2))


# --- Fixtures ----------------------------------------------------------------

@pytest.fixture(scope="session")
def qapp():
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture()
def session() -> SessionContext:
    return SessionContext(USER, is_demo_mode=True, display_name="Ada")


@pytest.fixture()
def backend() -> StubBackend:
    return StubBackend(make_tree())


@pytest.fixture()
def timers() -> ManualTimerFactory:
    return ManualTimerFactory()


@pytest.fixture()
def dispatcher(qapp) -> Dispatcher:
    return Dispatcher(InlineRunner(), PendingLedger())


@pytest.fixture()
def db(tmp_path: Path):
    database = Database(path=str(tmp_path / "test.db"))
    try:
        database.run_migrations()
        yield database
    finally:
        database.close()


@pytest.fixture()
def blob_repo(db) -> SQLiteBlobRepository:
    return SQLiteBlobRepository(db)


@pytest.fixture()
def local_backend(blob_repo) -> LocalBackend:
    return LocalBackend(blob_repo, USER)
