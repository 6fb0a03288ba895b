# Rev 0.1.0
"""Pure, copy-on-write operations over ``ProjectTree``.

Only the nodes on the mutated path are rebuilt; every other node keeps its
identity. Nothing here touches Qt, storage or the network.
"""
from __future__ import annotations

from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from researchos.models.entities import (
    EntityPath, Project, ProjectTree, Stage, Subtask, Task, Tracked,
)
from researchos.models.errors import ValidationError

Step = Tuple[str, int]

# Child collections are structural; a patch may never replace them wholesale
_STRUCTURAL = {"stages", "tasks", "subtasks", "comments"}
_IMMUTABLE = {"id", "created_at", "created_by"} | _STRUCTURAL
_TITLE_FIELD = {"comment": "content"}


# ---- lookup -----------------------------------------------------------------

def find_project(tree: ProjectTree, project_id: str) -> Optional[Project]:
    return next((p for p in tree.projects if p.id == project_id), None)


def _index(items: Iterable[Any], entity_id: Optional[str]) -> Optional[int]:
    for i, it in enumerate(items):
        if it.id == entity_id:
            return i
    return None


def steps_for(tree: ProjectTree, path: EntityPath) -> Optional[List[Step]]:
    """Resolve a path to (attribute, index) steps, or None if it is gone."""
    pi = _index(tree.projects, path.project_id)
    if pi is None:
        return None
    steps: List[Step] = [("projects", pi)]
    if path.stage_index is None and path.task_id is None:
        return steps

    stages = tree.projects[pi].stages
    if path.stage_index is not None:
        if not 0 <= path.stage_index < len(stages):
            return None
        candidates: Iterable[int] = (path.stage_index,)
    else:
        candidates = range(len(stages))
    if path.task_id is None:
        return steps + [("stages", path.stage_index)]

    for si in candidates:
        ti = _index(stages[si].tasks, path.task_id)
        if ti is None:
            continue
        steps += [("stages", si), ("tasks", ti)]
        task = stages[si].tasks[ti]
        if path.subtask_id is not None:
            sti = _index(task.subtasks, path.subtask_id)
            return None if sti is None else steps + [("subtasks", sti)]
        if path.comment_id is not None:
            ci = _index(task.comments, path.comment_id)
            return None if ci is None else steps + [("comments", ci)]
        return steps
    return None


def get_at(tree: ProjectTree, path: EntityPath) -> Optional[Any]:
    steps = steps_for(tree, path)
    if steps is None:
        return None
    node: Any = tree
    for attr, idx in steps:
        node = getattr(node, attr)[idx]
    return node


def locate(tree: ProjectTree, kind: str, entity_id: str) -> Optional[EntityPath]:
    for p in tree.projects:
        if kind == "project" and p.id == entity_id:
            return EntityPath(p.id)
        for si, s in enumerate(p.stages):
            if kind == "stage" and s.id == entity_id:
                return EntityPath(p.id, si)
            for t in s.tasks:
                if kind == "task" and t.id == entity_id:
                    return EntityPath(p.id, si, t.id)
                if kind == "subtask" and any(st.id == entity_id for st in t.subtasks):
                    return EntityPath(p.id, si, t.id, entity_id)
                if kind == "comment" and any(c.id == entity_id for c in t.comments):
                    return EntityPath(p.id, si, t.id, comment_id=entity_id)
    return None


def parent_path(tree: ProjectTree, kind: str, entity: Any) -> Optional[EntityPath]:
    """Where a freshly created ``entity`` should be attached."""
    if kind == "project":
        return None
    if kind == "stage":
        return EntityPath(entity.project_id) if find_project(tree, entity.project_id) else None
    if kind == "task":
        return locate(tree, "stage", entity.stage_id)
    if kind in ("subtask", "comment"):
        return locate(tree, "task", entity.task_id)
    raise ValueError(f"no parent for kind {kind!r}")


# ---- rebuild ----------------------------------------------------------------

def _rebuild(node: Any, steps: List[Step], fn: Callable[[Any], Any], stamp: Optional[datetime]) -> Any:
    if not steps:
        return fn(node)
    attr, idx = steps[0]
    children = getattr(node, attr)
    old = children[idx]
    new = _rebuild(old, steps[1:], fn, stamp)
    if new is old:
        return node
    if new is None:
        children = children[:idx] + children[idx + 1:]
    else:
        children = children[:idx] + (new,) + children[idx + 1:]
    node = replace(node, **{attr: children})
    if stamp is not None and isinstance(node, Tracked):
        node = replace(node, updated_at=stamp)
    return node


def update_at(tree: ProjectTree, path: EntityPath, fn: Callable[[Any], Any],
              stamp: Optional[datetime] = None) -> ProjectTree:
    """Apply ``fn`` at ``path``; a vanished path returns ``tree`` unchanged.

    ``fn`` returning None removes the node. Ancestors get ``updated_at=stamp``.
    """
    steps = steps_for(tree, path)
    if steps is None:
        return tree
    return _rebuild(tree, steps, fn, stamp)


def validate_patch(kind: str, node: Any, patch: Mapping[str, Any]) -> None:
    names = {f.name for f in fields(node)}
    for key in patch:
        if key in _IMMUTABLE:
            raise ValidationError(f"{kind}.{key} cannot be patched")
        if key not in names:
            raise ValidationError(f"{kind} has no field {key!r}")
    title_field = _TITLE_FIELD.get(kind, "title")
    if title_field in patch:
        value = patch[title_field]
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{kind} {title_field} must not be empty")


def patch_node(node: Any, patch: Mapping[str, Any], stamp: Optional[datetime],
               actor: Optional[str] = None, actor_name: Optional[str] = None) -> Any:
    extra: Dict[str, Any] = {}
    if isinstance(node, Tracked):
        if stamp is not None:
            extra["updated_at"] = stamp
        if actor is not None:
            extra["modified_by"] = actor
            extra["modified_by_name"] = actor_name
    return replace(node, **{**dict(patch), **extra})


def apply_patch(tree: ProjectTree, path: EntityPath, patch: Mapping[str, Any], stamp: Optional[datetime],
                actor: Optional[str] = None, actor_name: Optional[str] = None) -> ProjectTree:
    node = get_at(tree, path)
    if node is None:
        return tree
    validate_patch(path.kind, node, patch)
    return update_at(tree, path, lambda n: patch_node(n, patch, stamp, actor, actor_name), stamp)


def insert(tree: ProjectTree, kind: str, entity: Any, index: Optional[int] = None,
           stamp: Optional[datetime] = None) -> ProjectTree:
    """Attach ``entity`` under its parent; orphaned inserts are dropped."""
    if kind == "project":
        projects = list(tree.projects)
        projects.insert(len(projects) if index is None else index, entity)
        return replace(tree, projects=tuple(projects))

    ppath = parent_path(tree, kind, entity)
    if ppath is None:
        return tree
    attr = {"stage": "stages", "task": "tasks", "subtask": "subtasks", "comment": "comments"}[kind]

    def attach(parent: Any) -> Any:
        children = list(getattr(parent, attr))
        children.insert(len(children) if index is None else index, entity)
        return replace(parent, **{attr: tuple(children)})

    return update_at(tree, ppath, attach, stamp)


def remove(tree: ProjectTree, path: EntityPath, stamp: Optional[datetime] = None) -> Tuple[ProjectTree, Any, int]:
    """Returns (new_tree, removed_node, former_index); node is None if already gone."""
    steps = steps_for(tree, path)
    if steps is None:
        return tree, None, -1
    node = get_at(tree, path)
    return _rebuild(tree, steps, lambda _n: None, stamp), node, steps[-1][1]


# ---- tags -------------------------------------------------------------------

def _strip(item: Any, tag_id: str) -> Any:
    return replace(item, tags=item.tags - {tag_id}) if tag_id in item.tags else item


def strip_tag(tree: ProjectTree, tag_id: str) -> ProjectTree:
    """Remove ``tag_id`` from the canonical list and every embedded projection."""
    def fix_task(t: Task) -> Task:
        subtasks = tuple(_strip(st, tag_id) for st in t.subtasks)
        t2 = _strip(t, tag_id)
        if any(a is not b for a, b in zip(subtasks, t.subtasks)):
            t2 = replace(t2, subtasks=subtasks)
        return t2

    def fix_stage(s: Stage) -> Stage:
        tasks = tuple(fix_task(t) for t in s.tasks)
        return s if all(a is b for a, b in zip(tasks, s.tasks)) else replace(s, tasks=tasks)

    def fix_project(p: Project) -> Project:
        stages = tuple(fix_stage(s) for s in p.stages)
        return p if all(a is b for a, b in zip(stages, p.stages)) else replace(p, stages=stages)

    return replace(
        tree,
        projects=tuple(fix_project(p) for p in tree.projects),
        tags=tuple(t for t in tree.tags if t.id != tag_id),
    )


# ---- helpers used by derivations ------------------------------------------

def sort_overdue_first(items: Iterable[Task | Subtask], now: datetime) -> List[Task | Subtask]:
    """Overdue open items first, then everything with a reminder, then the rest.

    Items with a reminder sort by it, earliest first, within their group.
    """
    def rank(it: Task | Subtask) -> Tuple[int, int, float]:
        overdue = it.reminder_date is not None and it.reminder_date < now and not it.is_completed
        if it.reminder_date is None:
            return (1, 1, 0.0)
        return (0 if overdue else 1, 0, it.reminder_date.timestamp())
    return sorted(items, key=rank)

