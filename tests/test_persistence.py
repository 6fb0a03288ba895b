# tests/test_persistence.py
from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import NOW, USER, make_tree
from researchos.models.entities import Notification, NotificationKey, Tag, Task, TodayItem
from researchos.models.errors import RemoteResult
from researchos.repositories import sqlite_blob_repository as blobs
from researchos.services import tree_ops
from researchos.services.persistence import (
    Dispatcher, OptimisticCommand, PendingLedger, TodaySnapshot, today_from_blob,
)
from researchos.services.scheduling import DeferredRunner, InlineRunner


def _command(log, result, **kw):
    return OptimisticCommand(
        label="task change",
        apply=lambda: log.append("apply"),
        compensate=lambda: log.append("compensate"),
        remote=lambda: result,
        **kw,
    )


# --- Dispatcher -----------------------------------------------------------------

def test_failed_remote_rolls_back_and_toasts(qapp):
    d = Dispatcher(InlineRunner())
    toasts, failed, log = [], [], []
    d.toast.connect(toasts.append)
    d.commandFailed.connect(lambda label, err: failed.append(label))
    d.run(_command(log, RemoteResult.fail("http", "conflict", 409)))
    assert log == ["apply", "compensate"]
    assert toasts == ["Couldn't save task change. Your change was undone."]
    assert failed == ["task change"]


def test_not_found_is_benign(qapp):
    d = Dispatcher(InlineRunner())
    toasts, log = [], []
    d.toast.connect(toasts.append)
    d.run(_command(log, RemoteResult.fail("not_found", "gone")))
    assert log == ["apply"]
    assert toasts == []


def test_raising_remote_becomes_a_failure(qapp):
    def boom():
        raise RuntimeError("socket closed")

    d = Dispatcher(InlineRunner())
    log = []
    d.run(OptimisticCommand(label="x", apply=lambda: log.append("apply"),
                            compensate=lambda: log.append("compensate"), remote=boom))
    assert log == ["apply", "compensate"]


def test_success_runs_follow_up(qapp):
    d = Dispatcher(InlineRunner())
    log, seen = [], []
    d.run(_command(log, RemoteResult(data=1), on_success=lambda r: seen.append(r.data)))
    assert log == ["apply"] and seen == [1]


def test_ledger_tracks_in_flight_commands(qapp):
    runner = DeferredRunner()
    d = Dispatcher(runner)
    log = []
    d.run(_command(log, RemoteResult(), pending=("patch", "task", "T1"), pending_patch={"title": "x"}))
    assert len(d.ledger) == 1
    assert runner.drain() == 1
    assert len(d.ledger) == 0
    assert d.ledger.epoch == 1


def test_dispatcher_keeps_the_ledger_it_is_given_even_when_empty(qapp):
    ledger = PendingLedger()
    d = Dispatcher(DeferredRunner(), ledger)
    assert d.ledger is ledger
    d.run(_command([], RemoteResult(), pending=("delete", "task", "T1")))
    assert len(ledger) == 1


def test_background_failure_is_only_logged(qapp, caplog):
    d = Dispatcher(InlineRunner())
    toasts = []
    d.toast.connect(toasts.append)
    d.background("notify", lambda: RemoteResult.fail("network", "offline"))
    assert toasts == []
    assert "notify failed" in caplog.text


# --- PendingLedger ----------------------------------------------------------------

def test_overlay_replays_patches_and_deletes():
    ledger = PendingLedger()
    ledger.track("patch", "task", "T1", {"title": "Local title"})
    ledger.track("delete", "subtask", "ST2")
    ledger.track("patch", "task", "missing", {"title": "x"})
    tree = ledger.overlay(make_tree())
    assert tree_ops.get_at(tree, tree_ops.locate(tree, "task", "T1")).title == "Local title"
    assert tree_ops.locate(tree, "subtask", "ST2") is None


def test_confirmed_creates_are_stamped_with_epoch():
    ledger = PendingLedger()
    a = ledger.track("create", "task", "A")
    b = ledger.track("create", "task", "B")
    c = ledger.track("patch", "task", "T1", {"title": "y"})
    ledger.resolve(a, ok=True)
    ledger.resolve(c, ok=True)
    ledger.resolve(b, ok=False)
    assert ledger.confirmed_before(1) == {"A"}
    assert ledger.confirmed_before(0) == frozenset()
    ledger.forget_confirmed({"A"})
    assert ledger.confirmed_before(10) == frozenset()


def test_pending_tags():
    ledger = PendingLedger()
    tag = Tag(id="tg", name="urgent")
    token = ledger.track("create", "tag", "tg", entity=tag)
    assert ledger.pending_tags() == [tag]
    ledger.resolve(token, ok=True)
    assert ledger.pending_tags() == []


# --- LocalBackend -----------------------------------------------------------------

@pytest.fixture()
def seeded(local_backend):
    local_backend.save_tree(make_tree())
    return local_backend


def test_local_create_is_persisted_and_echoed(seeded):
    events = []
    seeded.subscribe_changes(USER, {"P1"}, events.append)
    task = Task(id="T3", stage_id="S1", title="Analyse", is_local=True)
    assert seeded.create_entity("task", task).ok

    stored = seeded.load_tree(USER).data
    got = tree_ops.get_at(stored, tree_ops.locate(stored, "task", "T3"))
    assert got.title == "Analyse"
    assert got.is_local is False
    assert [(e.kind, e.action, e.entity_id, e.actor_id) for e in events] == [("task", "insert", "T3", USER)]


def test_local_writes_against_missing_rows_are_not_found(seeded):
    orphan = Task(id="T9", stage_id="GONE", title="x")
    assert seeded.create_entity("task", orphan).error.is_not_found
    assert seeded.patch_entity("task", "nope", {"title": "x"}).error.is_not_found
    assert seeded.delete_entity("subtask", "nope").error.is_not_found
    assert seeded.delete_entity("tag", "nope").error.is_not_found


def test_local_patch_and_delete(seeded):
    assert seeded.patch_entity("task", "T2", {"title": "Methods"}).ok
    assert seeded.delete_entity("subtask", "ST1").ok
    tree = seeded.load_tree(USER).data
    assert tree_ops.get_at(tree, tree_ops.locate(tree, "task", "T2")).title == "Methods"
    assert tree_ops.locate(tree, "subtask", "ST1") is None


def test_local_tag_delete_strips_references(seeded):
    seeded.create_entity("tag", Tag(id="tg", name="urgent"))
    seeded.patch_entity("task", "T1", {"tags": frozenset({"tg"})})
    assert seeded.delete_entity("tag", "tg").ok
    tree = seeded.load_tree(USER).data
    assert tree.tags == ()
    assert tree_ops.get_at(tree, tree_ops.locate(tree, "task", "T1")).tags == frozenset()


def test_unsubscribe_stops_echo(seeded):
    events = []
    handle = seeded.subscribe_changes(USER, (), events.append)
    seeded.unsubscribe(handle)
    seeded.patch_entity("task", "T2", {"title": "Methods"})
    assert events == []


def test_today_last_write_wins(local_backend):
    newer = (TodayItem(id="b", title="newer"),)
    older = (TodayItem(id="a", title="older"),)
    local_backend.save_today(USER, newer, NOW + timedelta(minutes=1))
    res = local_backend.save_today(USER, older, NOW)
    assert res.data.items == newer
    assert local_backend.load_today(USER).data.items == newer


def test_notifications_dedupe_patch_and_delete(local_backend):
    def n(nid, task_id):
        return Notification(id=nid, user_id=USER, type="task_overdue", title=nid, task_id=task_id, created_at=NOW)

    local_backend.add_notifications(USER, [n("a", "T1")])
    added = local_backend.add_notifications(USER, [n("b", "T1"), n("c", "T2")]).data
    assert [x.id for x in added] == ["c"]
    local_backend.patch_notifications(USER, ["a"], {"is_read": True})
    local_backend.delete_notifications(USER, ["c"])
    stored = local_backend.load_notifications(USER).data
    assert [(x.id, x.is_read) for x in stored] == [("a", True)]


def test_dismissed_keys_round_trip(local_backend):
    keys = {NotificationKey(USER, "task_overdue", "T1", None), NotificationKey(USER, "subtask_overdue", "T1", "ST1")}
    local_backend.save_dismissed(USER, keys)
    assert local_backend.load_dismissed(USER).data == frozenset(keys)


def test_empty_store_loads_empty_documents(local_backend):
    assert local_backend.load_tree(USER).data.projects == ()
    assert local_backend.load_today(USER).data == TodaySnapshot()
    assert local_backend.load_notifications(USER).data == ()
    assert local_backend.load_dismissed(USER).data == frozenset()


def test_today_blob_accepts_bare_list():
    snap = today_from_blob([{"id": "x", "title": "Read"}])
    assert snap.items[0].title == "Read"
    assert snap.client_timestamp is None


# --- SQLite blob repository -------------------------------------------------------

def test_blob_put_replaces_document(blob_repo):
    blob_repo.put(USER, blobs.TODAY, {"items": [1]})
    blob_repo.put(USER, blobs.TODAY, {"items": [2]})
    assert blob_repo.get(USER, blobs.TODAY) == {"items": [2]}
    assert blob_repo.get("someone-else", blobs.TODAY) is None


def test_blob_unknown_key_is_rejected(blob_repo):
    with pytest.raises(ValueError):
        blob_repo.put(USER, "widgets", {})


def test_migrations_apply_once(db):
    assert db.run_migrations() == []
    assert "0001_blobs.sql" in db.applied()


def test_blob_writes_from_several_threads_do_not_collide(blob_repo):
    errors = []

    def writer(n):
        for i in range(100):
            try:
                blob_repo.put(USER, blobs.DISMISSED, [f"{n}-{i}"])
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert blob_repo.get(USER, blobs.DISMISSED)[0].endswith("-99")
