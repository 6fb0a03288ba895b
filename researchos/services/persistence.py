# Rev 0.1.0
"""Persistence boundary: the backend contract, the local (demo) backend,
the pending-edit ledger and the optimistic command dispatcher.

Backends never raise for remote trouble; every call resolves to a
``RemoteResult``. The dispatcher applies a command locally first, then runs
the remote half through a ``Runner`` and compensates if it fails.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import (
    Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple,
)

from PySide6.QtCore import QObject, Signal

from researchos.models import codec
from researchos.models.entities import (
    Notification, NotificationKey, ProjectTree, Tag, TodayItem,
)
from researchos.models.errors import RemoteResult
from researchos.repositories import sqlite_blob_repository as blobs
from researchos.repositories.sqlite_blob_repository import SQLiteBlobRepository
from researchos.services import tree_ops
from researchos.services.scheduling import Runner
from researchos.utils.timefmt import parse_iso, to_iso

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change from the backend's feed."""
    kind: str                       # project | stage | task | subtask | comment | tag | today | notification
    action: str                     # insert | update | delete
    entity_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None   # owner of the row (today/notification rows)
    actor_id: Optional[str] = None  # who made the change
    record: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TodaySnapshot:
    items: Tuple[TodayItem, ...] = ()
    client_timestamp: Optional[datetime] = None


EventHandler = Callable[[ChangeEvent], None]


class Backend(Protocol):
    def load_tree(self, user_id: str) -> RemoteResult: ...
    def load_today(self, user_id: str) -> RemoteResult: ...
    def load_notifications(self, user_id: str) -> RemoteResult: ...
    def load_dismissed(self, user_id: str) -> RemoteResult: ...
    def create_entity(self, kind: str, payload: Any) -> RemoteResult: ...
    def patch_entity(self, kind: str, entity_id: str, patch: Mapping[str, Any]) -> RemoteResult: ...
    def delete_entity(self, kind: str, entity_id: str) -> RemoteResult: ...
    def save_today(self, user_id: str, items: Sequence[TodayItem],
                   client_timestamp: Optional[datetime] = None) -> RemoteResult: ...
    def add_notifications(self, user_id: str, items: Sequence[Notification]) -> RemoteResult: ...
    def patch_notifications(self, user_id: str, ids: Sequence[str], patch: Mapping[str, Any]) -> RemoteResult: ...
    def delete_notifications(self, user_id: str, ids: Sequence[str]) -> RemoteResult: ...
    def save_dismissed(self, user_id: str, keys: Iterable[NotificationKey]) -> RemoteResult: ...
    def subscribe_changes(self, user_id: str, relevant_ids: Iterable[str], on_event: EventHandler) -> Any: ...
    def unsubscribe(self, handle: Any) -> None: ...
    def notify_collaborators(self, project_id: str, exclude_user_id: Optional[str],
                             template: Notification) -> RemoteResult: ...


# ---- local (demo mode) ------------------------------------------------------

def today_to_blob(snapshot: TodaySnapshot) -> Dict[str, Any]:
    return {
        "items": codec.today_to_list(snapshot.items),
        "client_timestamp": to_iso(snapshot.client_timestamp),
    }


def today_from_blob(data: Any) -> TodaySnapshot:
    if not data:
        return TodaySnapshot()
    if isinstance(data, list):
        return TodaySnapshot(items=codec.today_from_list(data))
    return TodaySnapshot(
        items=codec.today_from_list(data.get("items")),
        client_timestamp=parse_iso(data.get("client_timestamp")),
    )


class LocalBackend:
    """Everything lives in four SQLite blobs; the local copy is authoritative.

    Successful writes are echoed on the change feed so local-only sessions go
    through the same reconciliation path as connected ones.
    """

    def __init__(self, repo: SQLiteBlobRepository, user_id: str):
        self._repo = repo
        self._user_id = user_id
        self._subs: Dict[int, EventHandler] = {}
        self._ids = itertools.count(1)

    # ---- reads
    def load_tree(self, user_id: str) -> RemoteResult:
        return RemoteResult(data=codec.tree_from_dict(self._repo.get(user_id, blobs.TREE)))

    def load_today(self, user_id: str) -> RemoteResult:
        return RemoteResult(data=today_from_blob(self._repo.get(user_id, blobs.TODAY)))

    def load_notifications(self, user_id: str) -> RemoteResult:
        return RemoteResult(data=codec.notifications_from_list(self._repo.get(user_id, blobs.NOTIFICATIONS)))

    def load_dismissed(self, user_id: str) -> RemoteResult:
        raw = self._repo.get(user_id, blobs.DISMISSED) or []
        return RemoteResult(data=frozenset(NotificationKey.decode(s) for s in raw))

    # ---- tree writes
    def _tree(self) -> ProjectTree:
        return codec.tree_from_dict(self._repo.get(self._user_id, blobs.TREE))

    def _save_tree(self, tree: ProjectTree) -> None:
        self._repo.put(self._user_id, blobs.TREE, codec.tree_to_dict(tree))

    def save_tree(self, tree: ProjectTree) -> RemoteResult:
        self._save_tree(tree)
        return RemoteResult(data=tree)

    def create_entity(self, kind: str, payload: Any) -> RemoteResult:
        tree = self._tree()
        if kind == "tag":
            new = replace(tree, tags=tuple(t for t in tree.tags if t.id != payload.id) + (payload,))
        else:
            new = tree_ops.insert(tree, kind, replace(payload, is_local=False))
            if new is tree:
                return RemoteResult.fail("not_found", f"parent of {kind} {payload.id} is gone")
        self._save_tree(new)
        self._echo(kind, "insert", payload.id)
        return RemoteResult(data=payload)

    def patch_entity(self, kind: str, entity_id: str, patch: Mapping[str, Any]) -> RemoteResult:
        tree = self._tree()
        if kind == "tag":
            if tree.tag(entity_id) is None:
                return RemoteResult.fail("not_found", f"tag {entity_id}")
            new = replace(tree, tags=tuple(replace(t, **dict(patch)) if t.id == entity_id else t for t in tree.tags))
        else:
            path = tree_ops.locate(tree, kind, entity_id)
            if path is None:
                return RemoteResult.fail("not_found", f"{kind} {entity_id}")
            new = tree_ops.update_at(tree, path, lambda n: replace(n, **dict(patch)))
        self._save_tree(new)
        self._echo(kind, "update", entity_id)
        return RemoteResult(data=dict(patch))

    def delete_entity(self, kind: str, entity_id: str) -> RemoteResult:
        tree = self._tree()
        if kind == "tag":
            if tree.tag(entity_id) is None:
                return RemoteResult.fail("not_found", f"tag {entity_id}")
            new = tree_ops.strip_tag(tree, entity_id)
        else:
            path = tree_ops.locate(tree, kind, entity_id)
            if path is None:
                return RemoteResult.fail("not_found", f"{kind} {entity_id}")
            new, _node, _idx = tree_ops.remove(tree, path)
        self._save_tree(new)
        self._echo(kind, "delete", entity_id)
        return RemoteResult()

    # ---- today
    def save_today(self, user_id: str, items: Sequence[TodayItem],
                   client_timestamp: Optional[datetime] = None) -> RemoteResult:
        stored = today_from_blob(self._repo.get(user_id, blobs.TODAY))
        if (client_timestamp is not None and stored.client_timestamp is not None
                and stored.client_timestamp > client_timestamp):
            # last write wins: a newer list is already stored
            return RemoteResult(data=stored)
        snapshot = TodaySnapshot(items=tuple(items), client_timestamp=client_timestamp)
        self._repo.put(user_id, blobs.TODAY, today_to_blob(snapshot))
        return RemoteResult(data=snapshot)

    # ---- notifications
    def _notifications(self, user_id: str) -> List[Notification]:
        return list(codec.notifications_from_list(self._repo.get(user_id, blobs.NOTIFICATIONS)))

    def add_notifications(self, user_id: str, items: Sequence[Notification]) -> RemoteResult:
        current = self._notifications(user_id)
        live = {n.key for n in current}
        fresh = [n for n in items if n.key not in live]
        self._repo.put(user_id, blobs.NOTIFICATIONS, codec.notifications_to_list(fresh + current))
        return RemoteResult(data=tuple(fresh))

    def patch_notifications(self, user_id: str, ids: Sequence[str], patch: Mapping[str, Any]) -> RemoteResult:
        wanted = set(ids)
        current = [replace(n, **dict(patch)) if n.id in wanted else n for n in self._notifications(user_id)]
        self._repo.put(user_id, blobs.NOTIFICATIONS, codec.notifications_to_list(current))
        return RemoteResult()

    def delete_notifications(self, user_id: str, ids: Sequence[str]) -> RemoteResult:
        wanted = set(ids)
        current = [n for n in self._notifications(user_id) if n.id not in wanted]
        self._repo.put(user_id, blobs.NOTIFICATIONS, codec.notifications_to_list(current))
        return RemoteResult()

    def save_dismissed(self, user_id: str, keys: Iterable[NotificationKey]) -> RemoteResult:
        self._repo.put(user_id, blobs.DISMISSED, sorted(k.encode() for k in keys))
        return RemoteResult()

    # ---- feed
    def subscribe_changes(self, user_id: str, relevant_ids: Iterable[str], on_event: EventHandler) -> int:
        handle = next(self._ids)
        self._subs[handle] = on_event
        return handle

    def unsubscribe(self, handle: Any) -> None:
        self._subs.pop(handle, None)

    def notify_collaborators(self, project_id: str, exclude_user_id: Optional[str],
                             template: Notification) -> RemoteResult:
        return RemoteResult(data=0)    # no collaborators offline

    def _echo(self, kind: str, action: str, entity_id: str) -> None:
        event = ChangeEvent(kind=kind, action=action, entity_id=entity_id,
                            user_id=self._user_id, actor_id=self._user_id)
        for handler in list(self._subs.values()):
            handler(event)


# ---- pending ledger ---------------------------------------------------------

@dataclass
class _Pending:
    op: str                          # create | patch | delete
    kind: str
    entity_id: str
    patch: Mapping[str, Any] = field(default_factory=dict)
    entity: Any = None


class PendingLedger:
    """Writes sent to the backend but not yet answered.

    Reconciliation replays these on top of a fetched snapshot so a snapshot
    taken before the backend saw them cannot undo them.
    """

    def __init__(self):
        self._seq = itertools.count(1)
        self._open: Dict[int, _Pending] = {}
        self._confirmed: Dict[str, int] = {}       # created id -> epoch of confirmation
        self.epoch = 0

    def __len__(self) -> int:
        return len(self._open)

    def track(self, op: str, kind: str, entity_id: str, patch: Optional[Mapping[str, Any]] = None,
              entity: Any = None) -> int:
        token = next(self._seq)
        self._open[token] = _Pending(op, kind, entity_id, dict(patch or {}), entity)
        return token

    def resolve(self, token: int, ok: bool) -> None:
        pending = self._open.pop(token, None)
        self.epoch += 1
        if pending is not None and ok and pending.op == "create":
            self._confirmed[pending.entity_id] = self.epoch

    def confirmed_before(self, epoch: int) -> FrozenSet[str]:
        return frozenset(i for i, e in self._confirmed.items() if e <= epoch)

    def forget_confirmed(self, ids: Iterable[str]) -> None:
        for i in ids:
            self._confirmed.pop(i, None)

    def pending_tags(self) -> List[Tag]:
        return [p.entity for p in self._open.values() if p.op == "create" and p.kind == "tag"]

    def overlay(self, tree: ProjectTree) -> ProjectTree:
        """Re-apply open patches and deletes, oldest first."""
        for pending in self._open.values():
            if pending.op == "patch":
                tree = _overlay_patch(tree, pending)
            elif pending.op == "delete":
                tree = _overlay_delete(tree, pending)
        return tree


def _overlay_patch(tree: ProjectTree, pending: _Pending) -> ProjectTree:
    if pending.kind == "tag":
        return replace(tree, tags=tuple(
            replace(t, **dict(pending.patch)) if t.id == pending.entity_id else t for t in tree.tags
        ))
    path = tree_ops.locate(tree, pending.kind, pending.entity_id)
    if path is None:
        return tree
    return tree_ops.update_at(tree, path, lambda n: replace(n, **dict(pending.patch)))


def _overlay_delete(tree: ProjectTree, pending: _Pending) -> ProjectTree:
    if pending.kind == "tag":
        return tree_ops.strip_tag(tree, pending.entity_id) if tree.tag(pending.entity_id) else tree
    path = tree_ops.locate(tree, pending.kind, pending.entity_id)
    if path is None:
        return tree
    return tree_ops.remove(tree, path)[0]


# ---- optimistic commands ---------------------------------------------------

@dataclass
class OptimisticCommand:
    """A local change plus its remote half and the undo for when that fails."""
    label: str
    apply: Callable[[], None]
    compensate: Callable[[], None]
    remote: Callable[[], RemoteResult]
    on_success: Optional[Callable[[RemoteResult], None]] = None
    pending: Optional[Tuple[str, str, str]] = None          # (op, kind, entity_id)
    pending_patch: Optional[Mapping[str, Any]] = None
    pending_entity: Any = None


class Dispatcher(QObject):
    """Runs optimistic commands: apply now, remote later, compensate on failure."""
    toast = Signal(str)
    commandFailed = Signal(str, str)      # label, error

    def __init__(self, runner: Runner, ledger: Optional[PendingLedger] = None):
        super().__init__()
        self._runner = runner
        self.ledger = ledger if ledger is not None else PendingLedger()

    def run(self, cmd: OptimisticCommand) -> None:
        cmd.apply()
        token = None
        if cmd.pending is not None:
            op, kind, entity_id = cmd.pending
            token = self.ledger.track(op, kind, entity_id, cmd.pending_patch, cmd.pending_entity)

        def done(result: RemoteResult) -> None:
            if token is not None:
                self.ledger.resolve(token, result.ok)
            if result.ok:
                if cmd.on_success is not None:
                    cmd.on_success(result)
                return
            if result.error.is_not_found:
                log.info("%s: target already gone (%s); keeping local state", cmd.label, result.error)
                return
            log.warning("%s failed: %s; rolling back", cmd.label, result.error)
            cmd.compensate()
            self.commandFailed.emit(cmd.label, str(result.error))
            self.toast.emit(f"Couldn't save {cmd.label}. Your change was undone.")

        self._runner.submit(cmd.remote, done)

    def background(self, label: str, fn: Callable[[], RemoteResult]) -> None:
        """Remote call with nothing to undo; failures are only logged."""
        def done(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("%s failed: %s", label, result.error)

        self._runner.submit(fn, done)
