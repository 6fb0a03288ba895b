# Rev 0.1.0
"""Reconciliation of backend snapshots with local optimistic state.

Change events are filtered for relevance, then debounced: a newer event
restarts the pending timer. When the timer fires the tree is re-fetched and
merged. The merge keeps local creates the snapshot does not know about yet
and replays in-flight patches/deletes on top of it.
"""
from __future__ import annotations

import logging
from typing import Any, FrozenSet, Optional, Set, Tuple

from PySide6.QtCore import QObject, Signal

from researchos.models.entities import ProjectTree, SessionContext
from researchos.models.errors import RemoteResult
from researchos.models.types import ENTITY_KINDS
from researchos.services import tree_ops
from researchos.services.notification_center import NotificationCenter
from researchos.services.persistence import Backend, ChangeEvent, PendingLedger
from researchos.services.scheduling import Runner, TimerFactory, qt_timer_factory
from researchos.services.today_engine import TodayEngine
from researchos.services.tree_store import ProjectTreeStore, Selection

log = logging.getLogger(__name__)

TREE_KINDS = frozenset(ENTITY_KINDS)


def merge_snapshot(local: ProjectTree, remote: ProjectTree, ledger: Optional[PendingLedger] = None,
                   confirmed: FrozenSet[str] = frozenset()) -> Tuple[ProjectTree, int]:
    """Merge an authoritative snapshot with local state.

    Returns ``(merged, retained)`` where ``retained`` counts local-only
    entities carried over because the snapshot does not contain them yet.
    ``confirmed`` holds ids the backend acknowledged before the snapshot was
    requested; if those are missing they were deleted remotely and are dropped.
    """
    merged = ledger.overlay(remote) if ledger is not None else remote
    known = remote.all_ids()
    retained = 0

    def keep(node: Any) -> bool:
        return node.is_local and node.id not in known and node.id not in confirmed

    def attach(kind: str, node: Any, index: int) -> None:
        nonlocal merged, retained
        before = merged
        merged = tree_ops.insert(merged, kind, node, index)
        if merged is not before:
            retained += 1

    # Parents are visited before children, so a retained parent carries its subtree
    for pi, p in enumerate(local.projects):
        if keep(p):
            attach("project", p, pi)
            continue
        for si, s in enumerate(p.stages):
            if keep(s):
                attach("stage", s, si)
                continue
            for ti, t in enumerate(s.tasks):
                if keep(t):
                    attach("task", t, ti)
                    continue
                for kind, children in (("subtask", t.subtasks), ("comment", t.comments)):
                    for ci, child in enumerate(children):
                        if keep(child):
                            attach(kind, child, ci)

    if ledger is not None:
        remote_tags = {t.id for t in merged.tags}
        extra = tuple(t for t in ledger.pending_tags() if t.id not in remote_tags)
        if extra:
            merged = ProjectTree(projects=merged.projects, tags=merged.tags + extra)
            retained += len(extra)
    return merged, retained


class ReconciliationLayer(QObject):
    reconciled = Signal(int)

    def __init__(self, store: ProjectTreeStore, backend: Backend, session: SessionContext, runner: Runner,
                 ledger: PendingLedger, selection: Optional[Selection] = None,
                 today: Optional[TodayEngine] = None, center: Optional[NotificationCenter] = None,
                 timer_factory: TimerFactory = qt_timer_factory,
                 self_debounce_ms: int = 1500, collaborator_debounce_ms: int = 400):
        super().__init__()
        self._store = store
        self._backend = backend
        self._session = session
        self._runner = runner
        self._ledger = ledger
        self._selection = selection
        self._today = today
        self._center = center
        self._self_ms = self_debounce_ms
        self._collab_ms = collaborator_debounce_ms
        self._timer = timer_factory(self._fire, False)
        self._dirty: Set[str] = set()
        self._handle: Any = None
        self._subscribed_ids: FrozenSet[str] = frozenset()

    # ---- lifecycle ----
    def start(self) -> None:
        self._subscribe()

    def stop(self) -> None:
        self._timer.cancel()
        self._dirty.clear()
        if self._handle is not None:
            self._backend.unsubscribe(self._handle)
            self._handle = None

    def _subscribe(self) -> None:
        if self._handle is not None:
            self._backend.unsubscribe(self._handle)
        self._subscribed_ids = frozenset(self._store.tree.project_ids())
        self._handle = self._backend.subscribe_changes(
            self._session.current_user_id, self._subscribed_ids, self.on_event)

    # ---- events ----
    def is_relevant(self, event: ChangeEvent) -> bool:
        uid = self._session.current_user_id
        if event.kind in ("today", "notification"):
            return event.user_id == uid
        if event.kind not in TREE_KINDS:
            return False
        if event.action == "resync":
            return True
        if event.actor_id is not None and event.actor_id == uid:
            return True
        tree = self._store.tree
        if event.kind == "tag":
            return tree.tag(event.entity_id) is not None
        known = tree.all_ids()
        refs = (event.project_id, event.entity_id, event.record.get("stage_id"), event.record.get("task_id"))
        if any(r is not None and r in known for r in refs):
            return True
        # a project newly owned by or shared with us
        return event.kind == "project" and event.record.get("owner_id") == uid

    def on_event(self, event: ChangeEvent) -> None:
        if not self.is_relevant(event):
            log.debug("Dropping irrelevant %s %s event", event.kind, event.action)
            return
        self._dirty.add({"today": "today", "notification": "notifications"}.get(event.kind, "tree"))
        own = event.actor_id is not None and event.actor_id == self._session.current_user_id
        # a newer event always restarts the pending timer
        self._timer.start(self._self_ms if own else self._collab_ms)

    def _fire(self) -> None:
        dirty, self._dirty = self._dirty, set()
        if "tree" in dirty:
            self.refresh()
        if "today" in dirty and self._today is not None:
            self.reload_today()
        if "notifications" in dirty and self._center is not None:
            self.reload_notifications()

    # ---- fetch + merge ----
    def refresh(self, origin: str = "remote") -> None:
        uid = self._session.current_user_id
        epoch = self._ledger.epoch

        def done(result: RemoteResult) -> None:
            if not result.ok:
                log.warning("Tree refresh failed: %s", result.error)
                return
            self.adopt(result.data or ProjectTree(), epoch, origin)

        self._runner.submit(lambda: self._backend.load_tree(uid), done)

    def adopt(self, snapshot: ProjectTree, epoch: Optional[int] = None, origin: str = "remote") -> int:
        """Merge ``snapshot`` into the store; returns the retained local-only count."""
        confirmed = self._ledger.confirmed_before(self._ledger.epoch if epoch is None else epoch)
        merged, retained = merge_snapshot(self._store.tree, snapshot, self._ledger, confirmed)
        # confirmed creates are now either in the snapshot or gone for good
        self._ledger.forget_confirmed(confirmed)
        self._store.replace_tree(merged, origin)
        if self._selection is not None and self._selection.prune():
            log.info("Selection cleared; its project or task was removed remotely")
        if retained:
            log.debug("Reconciled with %d local-only entities retained", retained)
        self.reconciled.emit(retained)
        if self._handle is not None and frozenset(merged.project_ids()) != self._subscribed_ids:
            self._subscribe()
        return retained

    def reload_today(self) -> None:
        def done(result: RemoteResult) -> None:
            if result.ok and result.data is not None:
                self._today.apply_remote(result.data)
            elif not result.ok:
                log.warning("Today reload failed: %s", result.error)

        uid = self._session.current_user_id
        self._runner.submit(lambda: self._backend.load_today(uid), done)

    def reload_notifications(self) -> None:
        if not self._center.loaded:
            self._center.load()
            return

        def done(result: RemoteResult) -> None:
            if result.ok:
                self._center.apply_remote(result.data or ())
            else:
                log.warning("Notification reload failed: %s", result.error)

        uid = self._session.current_user_id
        self._runner.submit(lambda: self._backend.load_notifications(uid), done)
