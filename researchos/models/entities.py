# Rev 0.1.0
"""Immutable entities for the project tree, the Today list and notifications.

Every mutation goes through ``dataclasses.replace`` so untouched branches keep
their identity and consumers can compare by ``is``.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Iterator, NamedTuple, Optional, Tuple


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, kw_only=True)
class Tracked:
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by: Optional[str] = None
    modified_by: Optional[str] = None
    modified_by_name: Optional[str] = None
    is_local: bool = False     # created here, not yet echoed by the backend


@dataclass(frozen=True, kw_only=True)
class Comment(Tracked):
    task_id: str
    content: str
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    @property
    def title(self) -> str:
        return self.content


@dataclass(frozen=True, kw_only=True)
class Subtask(Tracked):
    task_id: str
    title: str
    is_completed: bool = False
    reminder_date: Optional[datetime] = None
    order_index: int = 0
    tags: FrozenSet[str] = frozenset()


@dataclass(frozen=True, kw_only=True)
class Task(Tracked):
    stage_id: str
    title: str
    description: str = ""
    is_completed: bool = False
    reminder_date: Optional[datetime] = None
    order_index: int = 0
    tags: FrozenSet[str] = frozenset()
    subtasks: Tuple[Subtask, ...] = ()
    comments: Tuple[Comment, ...] = ()


@dataclass(frozen=True, kw_only=True)
class Stage(Tracked):
    project_id: str
    title: str
    order_index: int = 0
    is_completed: bool = False
    reminder_date: Optional[datetime] = None
    tasks: Tuple[Task, ...] = ()


@dataclass(frozen=True)
class ProjectMember:
    user_id: str
    role: str = "editor"       # viewer | editor | admin
    name: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class Project(Tracked):
    title: str
    owner_id: Optional[str] = None
    emoji: str = "🧪"
    priority_rank: int = 2
    current_stage_index: int = 0
    publication_target: Optional[str] = None
    is_completed: bool = False
    reminder_date: Optional[datetime] = None
    members: Tuple[ProjectMember, ...] = ()
    pending_invites: Tuple[str, ...] = ()
    stages: Tuple[Stage, ...] = ()

    @property
    def progress(self) -> float:
        if not self.stages:
            return 0.0
        return (self.current_stage_index + 1) / len(self.stages)

    def is_shared(self, current_user_id: Optional[str]) -> bool:
        # Pending invitations alone do not make a project shared.
        return self.owner_id != current_user_id or len(self.members) > 0


@dataclass(frozen=True)
class Tag:
    id: str
    name: str
    color: str = "#6b7280"


@dataclass(frozen=True)
class ProjectTree:
    projects: Tuple[Project, ...] = ()
    tags: Tuple[Tag, ...] = ()

    def project_ids(self) -> set[str]:
        return {p.id for p in self.projects}

    def tag(self, tag_id: str) -> Optional[Tag]:
        return next((t for t in self.tags if t.id == tag_id), None)

    def iter_tasks(self) -> Iterator[Tuple[Project, int, Task]]:
        for p in self.projects:
            for si, s in enumerate(p.stages):
                for t in s.tasks:
                    yield p, si, t

    def iter_subtasks(self) -> Iterator[Tuple[Project, int, Task, Subtask]]:
        for p, si, t in self.iter_tasks():
            for st in t.subtasks:
                yield p, si, t, st

    def all_ids(self) -> set[str]:
        ids: set[str] = set()
        for p in self.projects:
            ids.add(p.id)
            for s in p.stages:
                ids.add(s.id)
                for t in s.tasks:
                    ids.add(t.id)
                    ids.update(st.id for st in t.subtasks)
                    ids.update(c.id for c in t.comments)
        return ids


@dataclass(frozen=True)
class TodayItem:
    id: str
    title: str
    is_done: bool = False
    is_local: bool = False                    # standalone, no backing tree item
    source_project_id: Optional[str] = None
    source_task_id: Optional[str] = None
    source_subtask_id: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    created_at: Optional[datetime] = None

    @property
    def is_linked(self) -> bool:
        return self.source_task_id is not None

    @property
    def source_key(self) -> Tuple[Optional[str], Optional[str]]:
        return (self.source_task_id, self.source_subtask_id)


class NotificationKey(NamedTuple):
    user_id: Optional[str]
    type: str
    task_id: Optional[str]
    subtask_id: Optional[str]

    def encode(self) -> str:
        return "|".join(p or "" for p in self)

    @classmethod
    def decode(cls, s: str) -> "NotificationKey":
        user_id, typ, task_id, subtask_id = (s.split("|") + ["", "", "", ""])[:4]
        return cls(user_id or None, typ, task_id or None, subtask_id or None)


@dataclass(frozen=True)
class Notification:
    id: str
    user_id: Optional[str]
    type: str
    title: str
    message: str = ""
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    subtask_id: Optional[str] = None
    is_read: bool = False
    reminder_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def key(self) -> NotificationKey:
        return NotificationKey(self.user_id, self.type, self.task_id, self.subtask_id)


@dataclass(frozen=True)
class SessionContext:
    """Opaque identity handed in by the auth layer."""
    current_user_id: Optional[str]
    is_demo_mode: bool = True
    display_name: Optional[str] = None


@dataclass(frozen=True)
class EntityPath:
    """Address of a node: project id, stage index, task id, subtask id."""
    project_id: str
    stage_index: Optional[int] = None
    task_id: Optional[str] = None
    subtask_id: Optional[str] = None
    comment_id: Optional[str] = None

    @property
    def kind(self) -> str:
        if self.comment_id is not None:
            return "comment"
        if self.subtask_id is not None:
            return "subtask"
        if self.task_id is not None:
            return "task"
        if self.stage_index is not None:
            return "stage"
        return "project"
