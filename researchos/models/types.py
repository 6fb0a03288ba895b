# researchos type definitions
# Rev 0.1.0

from __future__ import annotations
from enum import Enum
from typing import Literal

# Entity classification hierarchy: project → stage → task → subtask (+ comment, tag)
EntityKind = Literal["project", "stage", "task", "subtask", "comment", "tag"]
ENTITY_KINDS: tuple[str, ...] = ("project", "stage", "task", "subtask", "comment", "tag")

# Where a tree replacement came from; consumers use it to skip echo work
Origin = Literal["local", "remote", "load", "rollback"]


class NotificationType(str, Enum):
    TASK_REMINDER = "task_reminder"
    SUBTASK_REMINDER = "subtask_reminder"
    TASK_OVERDUE = "task_overdue"
    SUBTASK_OVERDUE = "subtask_overdue"
    TASK_CREATED = "task_created"
    TASK_DELETED = "task_deleted"
    TASK_MODIFIED = "task_modified"
    TASK_COMPLETED = "task_completed"
    SUBTASK_COMPLETED = "subtask_completed"
    PROJECT_SHARED = "project_shared"
    PROJECT_INVITE = "project_invite"


OVERDUE_TYPES = frozenset({NotificationType.TASK_OVERDUE.value, NotificationType.SUBTASK_OVERDUE.value})


class DuplicateChoice(str, Enum):
    REACTIVATE = "reactivate"
    DUPLICATE = "duplicate"
    CANCEL = "cancel"
