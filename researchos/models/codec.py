# Rev 0.1.0
"""JSON-friendly dict <-> entity conversion.

Used by the local blob store (whole-document writes) and by the REST backend
(row payloads). Unknown keys are ignored on the way in so remote rows can
carry extra columns.
"""
from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Type, TypeVar

from .entities import (
    Comment, Notification, Project, ProjectMember, ProjectTree, Stage, Subtask, Tag, Task, TodayItem,
)
from ..utils.timefmt import parse_iso, to_iso

T = TypeVar("T")

_DATETIME_FIELDS = {"created_at", "updated_at", "reminder_date"}
_SET_FIELDS = {"tags"}
_CHILDREN: Dict[type, Dict[str, type]] = {
    Project: {"stages": Stage, "members": ProjectMember},
    Stage: {"tasks": Task},
    Task: {"subtasks": Subtask, "comments": Comment},
}

def _encode_value(v: Any) -> Any:
    if isinstance(v, datetime):
        return to_iso(v)
    if isinstance(v, frozenset):
        return sorted(v)
    if isinstance(v, tuple):
        return [_encode_value(x) for x in v]
    if is_dataclass(v):
        return encode(v)
    return v


def encode(obj: Any) -> Dict[str, Any]:
    return {f.name: _encode_value(getattr(obj, f.name)) for f in fields(obj)}


def decode(cls: Type[T], data: Mapping[str, Any]) -> T:
    children = _CHILDREN.get(cls, {})
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        v = data[f.name]
        if f.name in children:
            v = tuple(decode(children[f.name], x) for x in (v or ()))
        elif f.name in _DATETIME_FIELDS:
            v = v if isinstance(v, datetime) else parse_iso(v)
        elif f.name in _SET_FIELDS:
            v = frozenset(v or ())
        elif f.name == "pending_invites":
            v = tuple(v or ())
        kwargs[f.name] = v
    return cls(**kwargs)


def encode_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: _encode_value(v) for k, v in patch.items()}


# ---- documents -------------------------------------------------------------

def tree_to_dict(tree: ProjectTree) -> Dict[str, Any]:
    return {
        "projects": [encode(p) for p in tree.projects],
        "tags": [encode(t) for t in tree.tags],
    }


def tree_from_dict(data: Mapping[str, Any] | List[Any] | None) -> ProjectTree:
    if not data:
        return ProjectTree()
    # Early demo builds stored a bare project list
    if isinstance(data, list):
        data = {"projects": data, "tags": []}
    return ProjectTree(
        projects=tuple(decode(Project, p) for p in data.get("projects", ())),
        tags=tuple(decode(Tag, t) for t in data.get("tags", ())),
    )


def today_to_list(items: Iterable[TodayItem]) -> List[Dict[str, Any]]:
    return [encode(i) for i in items]


def today_from_list(data: Iterable[Mapping[str, Any]] | None) -> tuple[TodayItem, ...]:
    return tuple(decode(TodayItem, d) for d in (data or ()))


def notifications_to_list(items: Iterable[Notification]) -> List[Dict[str, Any]]:
    return [encode(n) for n in items]


def notifications_from_list(data: Iterable[Mapping[str, Any]] | None) -> tuple[Notification, ...]:
    return tuple(decode(Notification, d) for d in (data or ()))
