# Rev 0.1.0
"""User-facing tree mutators, each one an optimistic command.

The local change lands in the store immediately; the backend call follows
through the dispatcher, which undoes the local change if the backend refuses.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import (
    Comment, Notification, Project, SessionContext, Stage, Subtask, Tag, Task, Tracked, new_id,
)
from researchos.models.errors import RemoteResult, ValidationError
from researchos.models.types import NotificationType
from researchos.services import tree_ops
from researchos.services.persistence import Backend, Dispatcher, OptimisticCommand
from researchos.services.tree_store import ProjectTreeStore
from researchos.utils.timefmt import utc_now

log = logging.getLogger(__name__)

_COMPLETED_TYPE = {
    "task": NotificationType.TASK_COMPLETED,
    "subtask": NotificationType.SUBTASK_COMPLETED,
}


def _require_title(kind: str, title: Optional[str]) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError(f"{kind} title must not be empty")
    return title.strip()


class TreeCommands(QObject):
    reminderChanged = Signal(object, object)      # task_id, subtask_id

    def __init__(self, store: ProjectTreeStore, dispatcher: Dispatcher, backend: Backend,
                 session: SessionContext, clock: Callable[[], datetime] = utc_now):
        super().__init__()
        self._store = store
        self._dispatcher = dispatcher
        self._backend = backend
        self._session = session
        self._clock = clock

    # ---- creation ----
    def _stamp(self) -> Dict[str, Any]:
        now = self._clock()
        uid = self._session.current_user_id
        return dict(id=new_id(), created_at=now, updated_at=now, created_by=uid,
                    modified_by=uid, modified_by_name=self._session.display_name, is_local=True)

    def _create(self, kind: str, entity: Any, project_id: Optional[str]) -> Any:
        self._dispatcher.run(OptimisticCommand(
            label=f"new {kind}",
            apply=lambda: self._store.insert(kind, entity),
            compensate=lambda: self._store.remove(kind, entity.id, origin="rollback"),
            remote=lambda: self._backend.create_entity(kind, entity),
            on_success=self._fan_out(project_id, NotificationType.TASK_CREATED, entity) if kind == "task" else None,
            pending=("create", kind, entity.id),
            pending_entity=entity,
        ))
        return entity

    def create_project(self, title: str, emoji: Optional[str] = None,
                       publication_target: Optional[str] = None) -> Project:
        extra = {"emoji": emoji} if emoji else {}
        project = Project(
            title=_require_title("project", title),
            owner_id=self._session.current_user_id,
            priority_rank=len(self._store.tree.projects) + 1,
            publication_target=publication_target,
            **extra, **self._stamp(),
        )
        return self._create("project", project, project.id)

    def create_stage(self, project_id: str, title: str) -> Stage:
        project = self._store.find_latest(project_id)
        if project is None:
            raise ValidationError(f"project {project_id} does not exist")
        stage = Stage(project_id=project_id, title=_require_title("stage", title),
                      order_index=len(project.stages), **self._stamp())
        return self._create("stage", stage, project_id)

    def create_task(self, stage_id: str, title: str, description: str = "",
                    reminder_date: Optional[datetime] = None, tags: Iterable[str] = ()) -> Task:
        path = self._store.locate("stage", stage_id)
        if path is None:
            raise ValidationError(f"stage {stage_id} does not exist")
        stage = tree_ops.get_at(self._store.tree, path)
        task = Task(stage_id=stage_id, title=_require_title("task", title), description=description,
                    reminder_date=reminder_date, order_index=len(stage.tasks), tags=frozenset(tags),
                    **self._stamp())
        return self._create("task", task, path.project_id)

    def create_subtask(self, task_id: str, title: str, reminder_date: Optional[datetime] = None,
                       tags: Iterable[str] = ()) -> Subtask:
        path = self._store.locate("task", task_id)
        if path is None:
            raise ValidationError(f"task {task_id} does not exist")
        parent = tree_ops.get_at(self._store.tree, path)
        subtask = Subtask(task_id=task_id, title=_require_title("subtask", title), reminder_date=reminder_date,
                          order_index=len(parent.subtasks), tags=frozenset(tags), **self._stamp())
        return self._create("subtask", subtask, path.project_id)

    def add_comment(self, task_id: str, content: str) -> Comment:
        path = self._store.locate("task", task_id)
        if path is None:
            raise ValidationError(f"task {task_id} does not exist")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("comment must not be empty")
        comment = Comment(task_id=task_id, content=content.strip(), user_id=self._session.current_user_id,
                          user_name=self._session.display_name, **self._stamp())
        return self._create("comment", comment, path.project_id)

    # ---- edits ----
    def update(self, kind: str, entity_id: str, patch: Mapping[str, Any]) -> bool:
        """Patch one entity. False when it no longer exists (nothing to do)."""
        notify = NotificationType.TASK_MODIFIED if kind == "task" else None
        return self._patch(kind, entity_id, patch, notify)

    def _patch(self, kind: str, entity_id: str, patch: Mapping[str, Any],
               notify_type: Optional[NotificationType]) -> bool:
        node = self._store.get(kind, entity_id)
        if node is None:
            return False
        if kind == "tag":
            unknown = set(patch) - {"name", "color"}
            if unknown:
                raise ValidationError(f"tag has no field(s) {sorted(unknown)}")
            if "name" in patch:
                _require_title("tag", patch["name"])
        else:
            tree_ops.validate_patch(kind, node, patch)

        patch = dict(patch)
        old = {k: getattr(node, k) for k in patch}
        remote_patch = dict(patch)
        if isinstance(node, Tracked):
            remote_patch.update(updated_at=self._clock(), modified_by=self._session.current_user_id,
                                modified_by_name=self._session.display_name)
        path = self._store.locate(kind, entity_id) if kind != "tag" else None
        fan_out = None
        if notify_type is not None and path is not None:
            fan_out = self._fan_out(path.project_id, notify_type, replace(node, **patch))

        self._dispatcher.run(OptimisticCommand(
            label=f"{kind} change",
            apply=lambda: self._store.patch_entity(kind, entity_id, patch),
            compensate=lambda: self._store.patch_entity(kind, entity_id, old, origin="rollback"),
            remote=lambda: self._backend.patch_entity(kind, entity_id, remote_patch),
            on_success=fan_out,
            pending=("patch", kind, entity_id),
            pending_patch=patch,
        ))
        return True

    def rename(self, kind: str, entity_id: str, title: str) -> bool:
        field_name = {"comment": "content", "tag": "name"}.get(kind, "title")
        return self.update(kind, entity_id, {field_name: title})

    def set_completed(self, kind: str, entity_id: str, done: bool = True) -> bool:
        if done:
            notify = _COMPLETED_TYPE.get(kind)
        else:
            notify = NotificationType.TASK_MODIFIED if kind == "task" else None
        return self._patch(kind, entity_id, {"is_completed": done}, notify)

    def set_reminder(self, kind: str, entity_id: str, when: Optional[datetime]) -> bool:
        """Set or clear a reminder; a task/subtask reminder re-arms overdue alerts."""
        ok = self._patch(kind, entity_id, {"reminder_date": when}, None)
        if ok and kind in ("task", "subtask"):
            node = self._store.get(kind, entity_id)
            if kind == "task":
                self.reminderChanged.emit(entity_id, None)
            elif node is not None:
                self.reminderChanged.emit(node.task_id, entity_id)
        return ok

    def delete(self, kind: str, entity_id: str) -> bool:
        if kind == "tag":
            return self.delete_tag(entity_id)
        path = self._store.locate(kind, entity_id)
        if path is None:
            return False
        node = tree_ops.get_at(self._store.tree, path)
        removed: Dict[str, Any] = {"index": None}

        def apply() -> None:
            _node, removed["index"] = self._store.remove(kind, entity_id)

        def compensate() -> None:
            self._store.insert(kind, node, removed["index"], origin="rollback")

        self._dispatcher.run(OptimisticCommand(
            label=f"{kind} deletion",
            apply=apply,
            compensate=compensate,
            remote=lambda: self._backend.delete_entity(kind, entity_id),
            on_success=self._fan_out(path.project_id, NotificationType.TASK_DELETED, node) if kind == "task" else None,
            pending=("delete", kind, entity_id),
        ))
        return True

    # ---- tags ----
    def create_tag(self, name: str, color: str = "#6b7280") -> Tag:
        tag = Tag(id=new_id(), name=_require_title("tag", name), color=color)
        self._dispatcher.run(OptimisticCommand(
            label="new tag",
            apply=lambda: self._store.upsert_tag(tag),
            compensate=lambda: self._store.remove("tag", tag.id, origin="rollback"),
            remote=lambda: self._backend.create_entity("tag", tag),
            pending=("create", "tag", tag.id),
            pending_entity=tag,
        ))
        return tag

    def delete_tag(self, tag_id: str) -> bool:
        """Delete a tag and strip it from every task, subtask and Today item."""
        tag = self._store.tree.tag(tag_id)
        if tag is None:
            return False
        tagged = self._store.tagged_with(tag_id)

        def compensate() -> None:
            self._store.upsert_tag(tag, origin="rollback")
            for kind, eid in tagged:
                node = self._store.get(kind, eid)
                if node is not None:
                    self._store.patch_entity(kind, eid, {"tags": node.tags | {tag_id}}, origin="rollback")

        self._dispatcher.run(OptimisticCommand(
            label="tag deletion",
            apply=lambda: self._store.delete_tag(tag_id),
            compensate=compensate,
            remote=lambda: self._backend.delete_entity("tag", tag_id),
            pending=("delete", "tag", tag_id),
        ))
        return True

    # ---- ordering ----
    def reorder_projects(self, ordered_ids: Iterable[str]) -> None:
        ordered_ids = list(ordered_ids)
        state: Dict[str, Dict[str, int]] = {"old": {}}

        def apply() -> None:
            state["old"] = self._store.reorder_projects(ordered_ids)

        def compensate() -> None:
            old = state["old"]
            self._store.reorder_projects(sorted(old, key=lambda pid: old[pid]), origin="rollback")

        def remote() -> RemoteResult:
            for p in self._store.tree.projects:
                if state["old"].get(p.id) == p.priority_rank:
                    continue
                res = self._backend.patch_entity("project", p.id, {"priority_rank": p.priority_rank})
                if not res.ok:
                    return res
            return RemoteResult()

        self._dispatcher.run(OptimisticCommand(
            label="project order", apply=apply, compensate=compensate, remote=remote,
        ))

    # ---- collaborator fan-out ----
    def _template(self, project_id: str, notify_type: NotificationType, node: Any) -> Notification:
        verb = notify_type.value.split("_", 1)[1]
        who = self._session.display_name or "Someone"
        return Notification(
            id=new_id(), user_id=None, type=notify_type.value,
            title=f"{node.title}",
            message=f"{who} {verb} \"{node.title}\"",
            project_id=project_id,
            task_id=node.task_id if isinstance(node, Subtask) else node.id,
            subtask_id=node.id if isinstance(node, Subtask) else None,
            created_at=self._clock(),
        )

    def _shared(self, project_id: Optional[str]) -> bool:
        if self._session.is_demo_mode or project_id is None:
            return False
        project = self._store.find_latest(project_id)
        return project is not None and project.is_shared(self._session.current_user_id)

    def _fan_out(self, project_id: Optional[str], notify_type: NotificationType,
                 node: Any) -> Optional[Callable[[RemoteResult], None]]:
        if not self._shared(project_id):
            return None

        def send(_result: RemoteResult) -> None:
            self._notify_now(project_id, notify_type, node)
        return send

    def _notify_now(self, project_id: Optional[str], notify_type: NotificationType, node: Any) -> None:
        if node is None or not self._shared(project_id):
            return
        template = self._template(project_id, notify_type, node)
        self._dispatcher.background(
            f"notify {notify_type.value}",
            lambda: self._backend.notify_collaborators(project_id, self._session.current_user_id, template),
        )
