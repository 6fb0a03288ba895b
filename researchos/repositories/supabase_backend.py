# Rev 0.1.0
"""Connected backend: Supabase PostgREST over ``requests``.

Tables: projects, project_members, stages, tasks, subtasks, comments, tags,
today_items (one row per user), notifications. Dismissed notification keys
stay on this device in the SQLite blob store.

The change feed polls each table on an ``updated_at``/``created_at`` cursor.
Polling cannot see deletes, so every ``resync_every`` polls it also emits a
``resync`` event that triggers a full refresh.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import requests

from researchos.models import codec
from researchos.models.entities import Notification, NotificationKey, ProjectTree, TodayItem, new_id
from researchos.models.errors import RemoteResult
from researchos.repositories import sqlite_blob_repository as blobs
from researchos.repositories.sqlite_blob_repository import SQLiteBlobRepository
from researchos.services.persistence import ChangeEvent, TodaySnapshot, today_from_blob
from researchos.services.scheduling import Runner, TimerFactory
from researchos.utils.timefmt import parse_iso, to_iso, utc_now

log = logging.getLogger(__name__)

TABLES = {
    "project": "projects",
    "stage": "stages",
    "task": "tasks",
    "subtask": "subtasks",
    "comment": "comments",
    "tag": "tags",
}

# Columns the client never sends; children are separate rows
_NOT_COLUMNS = {"is_local", "stages", "tasks", "subtasks", "comments", "members", "pending_invites"}

# stages.name holds the title
_RENAMES = {"stage": {"title": "name"}}


class SupabaseError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def _extract_error(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        msg = body.get("message") or body.get("error_description") or body.get("error")
        if msg:
            return str(msg)
    text = (response.text or "").strip()
    return text[:300] if text else "request failed"


def _in(ids: Iterable[str]) -> str:
    return "in.(" + ",".join(ids) + ")"


def to_row(kind: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
    renames = _RENAMES.get(kind, {})
    return {renames.get(k, k): v for k, v in codec.encode_patch(payload).items() if k not in _NOT_COLUMNS}


def from_row(kind: str, row: Mapping[str, Any]) -> Dict[str, Any]:
    back = {v: k for k, v in _RENAMES.get(kind, {}).items()}
    return {back.get(k, k): v for k, v in row.items()}


class SupabaseRestClient:
    """Thin PostgREST client; raises ``SupabaseError`` on HTTP errors."""

    def __init__(self, supabase_url: str, supabase_key: str, access_token: Optional[str] = None,
                 session: Optional[requests.Session] = None, timeout: float = 25):
        self.supabase_url = supabase_url.rstrip("/")
        self.supabase_key = supabase_key
        self.access_token = access_token
        self.timeout = timeout
        self._http = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.access_token or self.supabase_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _call(self, method: str, table: str, params: Optional[Dict[str, str]] = None,
              json: Any = None, prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        response = self._http.request(
            method, f"{self.supabase_url}/rest/v1/{table}",
            headers=self._headers(prefer), params=params, json=json, timeout=self.timeout,
        )
        if response.status_code >= 300:
            raise SupabaseError(response.status_code, _extract_error(response))
        if not response.content:
            return []
        body = response.json()
        return body if isinstance(body, list) else [body]

    def select(self, table: str, **filters: str) -> List[Dict[str, Any]]:
        params = {"select": "*", **filters}
        return self._call("GET", table, params=params)

    def insert(self, table: str, rows: Sequence[Mapping[str, Any]], upsert: bool = False) -> List[Dict[str, Any]]:
        prefer = "return=representation"
        if upsert:
            prefer += ",resolution=merge-duplicates"
        return self._call("POST", table, json=list(rows), prefer=prefer)

    def update(self, table: str, patch: Mapping[str, Any], **filters: str) -> List[Dict[str, Any]]:
        return self._call("PATCH", table, params=dict(filters), json=dict(patch), prefer="return=representation")

    def delete(self, table: str, **filters: str) -> List[Dict[str, Any]]:
        return self._call("DELETE", table, params=dict(filters), prefer="return=representation")


def _guard(label: str, fn: Callable[[], RemoteResult]) -> RemoteResult:
    try:
        return fn()
    except SupabaseError as e:
        code = "not_found" if e.status == 404 else "http"
        log.warning("%s: HTTP %s %s", label, e.status, e.message)
        return RemoteResult.fail(code, e.message, e.status)
    except requests.RequestException as e:
        log.warning("%s: network error %s", label, e)
        return RemoteResult.fail("network", str(e))


class SupabaseBackend:
    def __init__(self, client: SupabaseRestClient, local: SQLiteBlobRepository, runner: Runner,
                 timer_factory: TimerFactory, poll_interval_ms: int = 5000, resync_every: int = 12):
        self._client = client
        self._local = local
        self._runner = runner
        self._timer_factory = timer_factory
        self._poll_ms = poll_interval_ms
        self._resync_every = resync_every

    # ---- tree ----
    def load_tree(self, user_id: str) -> RemoteResult:
        return _guard("load_tree", lambda: RemoteResult(data=self._fetch_tree()))

    def _fetch_tree(self) -> ProjectTree:
        c = self._client
        projects = c.select("projects", order="priority_rank.asc")
        ids = [p["id"] for p in projects]
        if not ids:
            return codec.tree_from_dict({"projects": [], "tags": c.select("tags")})
        members = c.select("project_members", project_id=_in(ids))
        stages = [from_row("stage", s) for s in c.select("stages", project_id=_in(ids), order="order_index.asc")]
        tasks = c.select("tasks", stage_id=_in(s["id"] for s in stages), order="order_index.asc") if stages else []
        task_ids = [t["id"] for t in tasks]
        subtasks = c.select("subtasks", task_id=_in(task_ids), order="order_index.asc") if task_ids else []
        comments = c.select("comments", task_id=_in(task_ids), order="created_at.asc") if task_ids else []

        def group(rows: List[Dict[str, Any]], key: str) -> Dict[str, List[Dict[str, Any]]]:
            out: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
            for r in rows:
                out[r[key]].append(r)
            return out

        by_stage, by_task_s, by_task_c = group(tasks, "stage_id"), group(subtasks, "task_id"), group(comments, "task_id")
        by_project_s, by_project_m = group(stages, "project_id"), group(members, "project_id")
        for t in tasks:
            t["subtasks"] = by_task_s.get(t["id"], [])
            t["comments"] = by_task_c.get(t["id"], [])
        for s in stages:
            s["tasks"] = by_stage.get(s["id"], [])
        for p in projects:
            p["stages"] = by_project_s.get(p["id"], [])
            p["members"] = by_project_m.get(p["id"], [])
        return codec.tree_from_dict({"projects": projects, "tags": c.select("tags")})

    def create_entity(self, kind: str, payload: Any) -> RemoteResult:
        row = to_row(kind, codec.encode(payload))
        return _guard(f"create {kind}", lambda: RemoteResult(data=self._client.insert(TABLES[kind], [row])))

    def patch_entity(self, kind: str, entity_id: str, patch: Mapping[str, Any]) -> RemoteResult:
        def call() -> RemoteResult:
            rows = self._client.update(TABLES[kind], to_row(kind, patch), id=f"eq.{entity_id}")
            if not rows:
                return RemoteResult.fail("not_found", f"{kind} {entity_id}")
            return RemoteResult(data=rows[0])
        return _guard(f"patch {kind}", call)

    def delete_entity(self, kind: str, entity_id: str) -> RemoteResult:
        def call() -> RemoteResult:
            rows = self._client.delete(TABLES[kind], id=f"eq.{entity_id}")
            return RemoteResult() if rows else RemoteResult.fail("not_found", f"{kind} {entity_id}")
        return _guard(f"delete {kind}", call)

    # ---- today ----
    def _today_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._client.select("today_items", user_id=f"eq.{user_id}")
        return rows[0] if rows else None

    def load_today(self, user_id: str) -> RemoteResult:
        return _guard("load_today", lambda: RemoteResult(data=today_from_blob(self._today_row(user_id))))

    def save_today(self, user_id: str, items: Sequence[TodayItem],
                   client_timestamp: Optional[datetime] = None) -> RemoteResult:
        def call() -> RemoteResult:
            stored = self._today_row(user_id)
            stored_ts = parse_iso(stored.get("client_timestamp")) if stored else None
            if client_timestamp is not None and stored_ts is not None and stored_ts > client_timestamp:
                return RemoteResult(data=today_from_blob(stored))
            row = {
                "user_id": user_id,
                "items": codec.today_to_list(items),
                "client_timestamp": to_iso(client_timestamp),
                "updated_at": to_iso(utc_now()),
            }
            self._client.insert("today_items", [row], upsert=True)
            return RemoteResult(data=TodaySnapshot(items=tuple(items), client_timestamp=client_timestamp))
        return _guard("save_today", call)

    # ---- notifications ----
    def load_notifications(self, user_id: str) -> RemoteResult:
        def call() -> RemoteResult:
            rows = self._client.select("notifications", user_id=f"eq.{user_id}", order="created_at.desc")
            return RemoteResult(data=codec.notifications_from_list(rows))
        return _guard("load_notifications", call)

    def _live_keys(self, user_ids: Iterable[str]) -> set:
        rows = self._client.select("notifications", user_id=_in(user_ids))
        return {n.key for n in codec.notifications_from_list(rows)}

    def add_notifications(self, user_id: str, items: Sequence[Notification]) -> RemoteResult:
        def call() -> RemoteResult:
            live = self._live_keys([user_id])
            fresh = [n for n in items if n.key not in live]
            if fresh:
                self._client.insert("notifications", codec.notifications_to_list(fresh))
            return RemoteResult(data=tuple(fresh))
        return _guard("add_notifications", call)

    def patch_notifications(self, user_id: str, ids: Sequence[str], patch: Mapping[str, Any]) -> RemoteResult:
        return _guard("patch_notifications", lambda: RemoteResult(data=self._client.update(
            "notifications", codec.encode_patch(patch), id=_in(ids), user_id=f"eq.{user_id}")))

    def delete_notifications(self, user_id: str, ids: Sequence[str]) -> RemoteResult:
        return _guard("delete_notifications", lambda: RemoteResult(data=self._client.delete(
            "notifications", id=_in(ids), user_id=f"eq.{user_id}")))

    def notify_collaborators(self, project_id: str, exclude_user_id: Optional[str],
                             template: Notification) -> RemoteResult:
        """Fan one notification out to the project's owner and members, once per key."""
        def call() -> RemoteResult:
            projects = self._client.select("projects", id=f"eq.{project_id}")
            if not projects:
                return RemoteResult.fail("not_found", f"project {project_id}")
            members = self._client.select("project_members", project_id=f"eq.{project_id}")
            recipients = {projects[0].get("owner_id")} | {m["user_id"] for m in members}
            recipients -= {None, exclude_user_id}
            if not recipients:
                return RemoteResult(data=0)
            live = self._live_keys(recipients)
            rows = []
            for uid in sorted(recipients):
                key = NotificationKey(uid, template.type, template.task_id, template.subtask_id)
                if key in live:
                    continue
                rows.append(dict(codec.encode(template), user_id=uid, id=new_id()))
            if rows:
                self._client.insert("notifications", rows)
            return RemoteResult(data=len(rows))
        return _guard("notify_collaborators", call)

    # ---- device-local ----
    def load_dismissed(self, user_id: str) -> RemoteResult:
        raw = self._local.get(user_id, blobs.DISMISSED) or []
        return RemoteResult(data=frozenset(NotificationKey.decode(s) for s in raw))

    def save_dismissed(self, user_id: str, keys: Iterable[NotificationKey]) -> RemoteResult:
        self._local.put(user_id, blobs.DISMISSED, sorted(k.encode() for k in keys))
        return RemoteResult()

    # ---- change feed ----
    def subscribe_changes(self, user_id: str, relevant_ids: Iterable[str],
                          on_event: Callable[[ChangeEvent], None]) -> "ChangeFeed":
        feed = ChangeFeed(self._client, user_id, on_event, self._runner, self._timer_factory,
                          self._poll_ms, self._resync_every)
        feed.start()
        return feed

    def unsubscribe(self, handle: Any) -> None:
        handle.stop()


# table -> (entity kind, cursor column, owner-filtered)
_FEED = {
    "projects": ("project", "updated_at", False),
    "stages": ("stage", "created_at", False),
    "tasks": ("task", "updated_at", False),
    "subtasks": ("subtask", "created_at", False),
    "comments": ("comment", "created_at", False),
    "tags": ("tag", "created_at", False),
    "today_items": ("today", "updated_at", True),
    "notifications": ("notification", "created_at", True),
}


class ChangeFeed:
    """Polls every table past its cursor and turns new rows into ``ChangeEvent``s."""

    def __init__(self, client: SupabaseRestClient, user_id: str, on_event: Callable[[ChangeEvent], None],
                 runner: Runner, timer_factory: TimerFactory, interval_ms: int, resync_every: int):
        self._client = client
        self._user_id = user_id
        self._on_event = on_event
        self._runner = runner
        self._interval_ms = interval_ms
        self._resync_every = resync_every
        self._timer = timer_factory(self.poll, True)
        self._cursors: Dict[str, str] = {}
        self._polls = 0
        self._busy = False
        self.active = False

    def start(self) -> None:
        now = to_iso(utc_now())
        self._cursors = {table: now for table in _FEED}
        self.active = True
        self._timer.start(self._interval_ms)

    def stop(self) -> None:
        self.active = False
        self._timer.cancel()

    def _fetch(self) -> Dict[str, List[Dict[str, Any]]]:
        out: Dict[str, List[Dict[str, Any]]] = {}
        for table, (_kind, column, owned) in _FEED.items():
            filters = {column: f"gt.{self._cursors[table]}", "order": f"{column}.asc"}
            if owned:
                filters["user_id"] = f"eq.{self._user_id}"
            out[table] = self._client.select(table, **filters)
        return out

    def poll(self) -> None:
        if not self.active or self._busy:
            return
        self._busy = True
        self._runner.submit(lambda: _guard("poll", lambda: RemoteResult(data=self._fetch())), self._deliver)

    def _deliver(self, result: RemoteResult) -> None:
        self._busy = False
        if not self.active:
            return
        if not result.ok:
            return
        for table, rows in result.data.items():
            kind, column, _owned = _FEED[table]
            for row in rows:
                if row.get(column):
                    self._cursors[table] = max(self._cursors[table], row[column], key=lambda s: parse_iso(s))
                self._on_event(self._event(kind, row))
        self._polls += 1
        if self._resync_every and self._polls % self._resync_every == 0:
            self._on_event(ChangeEvent(kind="project", action="resync", user_id=self._user_id))

    def _event(self, kind: str, row: Mapping[str, Any]) -> ChangeEvent:
        project_id = row.get("id") if kind == "project" else row.get("project_id")
        actor = row.get("modified_by") or row.get("created_by") or (row.get("user_id") if kind == "comment" else None)
        action = "insert" if row.get("created_at") == row.get("updated_at", row.get("created_at")) else "update"
        return ChangeEvent(
            kind=kind, action=action,
            entity_id=row.get("id") if kind != "today" else None,
            project_id=project_id, user_id=row.get("user_id"), actor_id=actor, record=dict(row),
        )
