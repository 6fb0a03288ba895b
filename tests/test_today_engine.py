# tests/test_today_engine.py
from __future__ import annotations

import pytest

from conftest import USER, make_tree
from researchos.models.entities import TodayItem
from researchos.models.errors import RemoteResult, ValidationError
from researchos.models.types import DuplicateChoice
from researchos.services.persistence import TodaySnapshot
from researchos.services.scheduling import DeferredRunner, InlineRunner
from researchos.services.today_engine import TodayEngine, partition
from researchos.services.tree_commands import TreeCommands
from researchos.services.tree_store import ProjectTreeStore


@pytest.fixture()
def store(qapp, session, clock):
    s = ProjectTreeStore(session, clock)
    s.replace_tree(make_tree(), origin="load")
    return s


@pytest.fixture()
def engine(store, backend, session, clock, dispatcher):
    commands = TreeCommands(store, dispatcher, backend, session, clock)
    e = TodayEngine(store, commands, backend, session, InlineRunner(), clock)
    e.load()
    return e


def _task(store, task_id):
    return store.get("task", task_id)


def _ids(engine):
    return [i.id for i in engine.items]


# --- adding -------------------------------------------------------------------

def test_linked_add_is_distinct_from_same_titled_standalone(engine, store, backend):
    backend.today = TodaySnapshot((TodayItem(id="1", title="Run assay", is_local=True),))
    engine.load()
    outcome = engine.add_task(_task(store, "T1"), "P1")
    assert outcome.code == "added"
    assert len(engine.items) == 2
    assert engine.items[0].source_task_id == "T1"
    assert engine.items[0].title == "Run assay"
    assert engine.items[0].is_local is False


def test_second_add_prompts_and_does_not_mutate(engine, store):
    engine.add_task(_task(store, "T1"), "P1")
    before = engine.items
    outcome = engine.add_task(_task(store, "T1"), "P1")
    assert outcome.code == "duplicate_found"
    assert outcome.existing.source_task_id == "T1"
    assert engine.items is before


def test_choose_duplicate_yields_two_independent_entries(engine, store):
    engine.add_task(_task(store, "T1"), "P1")
    outcome = engine.add_task(_task(store, "T1"), "P1", choice=DuplicateChoice.DUPLICATE)
    assert outcome.code == "duplicated"
    linked = [i for i in engine.items if i.source_task_id == "T1"]
    assert len(linked) == 2
    assert linked[0].id != linked[1].id


def test_choose_reactivate_keeps_a_single_entry(engine, store):
    first = engine.add_task(_task(store, "T1"), "P1").item
    engine.toggle_done(first.id)
    outcome = engine.add_task(_task(store, "T1"), "P1", choice=DuplicateChoice.REACTIVATE)
    assert outcome.code == "reactivated"
    assert len(engine.items) == 1
    assert engine.items[0].id == first.id
    assert engine.items[0].is_done is False


def test_reactivating_an_active_entry_is_a_noop(engine, store):
    engine.add_task(_task(store, "T1"), "P1")
    before = engine.items
    outcome = engine.add_task(_task(store, "T1"), "P1", choice="reactivate")
    assert outcome.code == "reactivated"
    assert engine.items is before


def test_cancel_leaves_list_alone(engine, store):
    engine.add_task(_task(store, "T1"), "P1")
    before = engine.items
    assert engine.add_task(_task(store, "T1"), "P1", choice=DuplicateChoice.CANCEL).code == "cancelled"
    assert engine.items is before


def test_subtask_key_includes_subtask_id(engine, store):
    parent = _task(store, "T1")
    engine.add_task(parent, "P1")
    sub = store.get("subtask", "ST1")
    assert engine.add_subtask(sub, parent, "P1").code == "added"
    assert engine.add_subtask(sub, parent, "P1").code == "duplicate_found"
    assert engine.items[0].source_key == ("T1", "ST1")


def test_standalone_dedup_is_case_sensitive(engine):
    assert engine.add_standalone("Read paper").code == "added"
    assert engine.add_standalone("read paper").code == "added"
    assert engine.add_standalone("Read paper").code == "duplicate_found"


def test_blank_standalone_is_rejected(engine):
    with pytest.raises(ValidationError):
        engine.add_standalone("   ")
    assert engine.items == ()


# --- toggle / ordering ---------------------------------------------------------

def test_toggle_keeps_partitions_stable(engine):
    for title in ("d", "c", "b", "a"):
        engine.add_standalone(title)
    # list is newest first: a b c d
    by_title = {i.title: i.id for i in engine.items}
    engine.toggle_done(by_title["b"])
    assert [i.title for i in engine.items] == ["a", "c", "d", "b"]
    engine.toggle_done(by_title["c"])
    assert [i.title for i in engine.items] == ["a", "d", "c", "b"]
    engine.toggle_done(by_title["b"])
    assert [i.title for i in engine.items] == ["a", "d", "b", "c"]
    flags = [i.is_done for i in engine.items]
    assert flags == sorted(flags)


def test_partition_helper():
    items = [TodayItem(id=str(n), title=str(n), is_done=n % 2 == 0) for n in range(5)]
    assert [i.id for i in partition(items)] == ["1", "3", "0", "2", "4"]


def test_toggle_propagates_completion_to_source(engine, store, backend):
    item = engine.add_task(_task(store, "T1"), "P1").item
    outcome = engine.toggle_done(item.id)
    assert outcome.propagated is True
    assert store.get("task", "T1").is_completed is True
    assert ("patch_entity", "task", "T1") == backend.named("patch_entity")[-1][:3]


def test_toggle_subtask_copy_targets_the_subtask(engine, store):
    parent = _task(store, "T1")
    item = engine.add_subtask(store.get("subtask", "ST2"), parent, "P1").item
    engine.toggle_done(item.id)
    assert store.get("subtask", "ST2").is_completed is True
    assert store.get("task", "T1").is_completed is False


def test_toggle_standalone_touches_nothing_else(engine, backend):
    item = engine.add_standalone("Coffee").item
    outcome = engine.toggle_done(item.id)
    assert outcome.propagated is None
    assert backend.named("patch_entity") == []


def test_reorder_moves_one_item(engine):
    for title in ("c", "b", "a"):
        engine.add_standalone(title)
    assert engine.reorder(0, 2) is True
    assert [i.title for i in engine.items] == ["b", "c", "a"]
    assert engine.reorder(0, 9) is False


# --- remove / duplicate / rename -----------------------------------------------

def test_duplicate_prepends_fresh_copies(engine, store, clock):
    item = engine.add_task(_task(store, "T1"), "P1").item
    engine.toggle_done(item.id)
    before_tree = store.tree
    clock.advance(minutes=3)
    copies = engine.duplicate([item.id])
    assert len(copies) == 1
    copy = copies[0]
    assert engine.items[0] is copy
    assert copy.id != item.id
    assert copy.is_done is False
    assert copy.created_at == clock.now
    assert copy.source_task_id == "T1"
    assert store.tree is before_tree


def test_remove_by_ids(engine):
    a = engine.add_standalone("a").item
    engine.add_standalone("b")
    assert engine.remove([a.id, "missing"]) == 1
    assert [i.title for i in engine.items] == ["b"]


def test_rename_propagates_to_linked_source(engine, store):
    item = engine.add_task(_task(store, "T2"), "P1").item
    outcome = engine.rename(item.id, "Write methods v2")
    assert outcome.propagated is True
    assert engine.find(item.id).title == "Write methods v2"
    assert store.get("task", "T2").title == "Write methods v2"


def test_rename_reports_missing_source_without_failing(engine, store):
    item = engine.add_task(_task(store, "T2"), "P1").item
    # bypass the orphan detector to simulate a source that vanished mid-call
    engine.loaded = False
    store.remove("task", "T2")
    outcome = engine.rename(item.id, "Still here")
    assert engine.find(item.id).title == "Still here"
    assert outcome.propagated is False
    assert outcome.error


# --- derivations ----------------------------------------------------------------

def test_orphaned_copy_becomes_standalone(engine, store):
    item = engine.add_task(_task(store, "T2"), "P1").item
    store.remove("task", "T2")
    detached = engine.find(item.id)
    assert detached.is_linked is False
    assert detached.is_local is True
    assert detached.source_project_id is None
    assert detached.title == "Write methods"


def test_deleted_tag_is_stripped_from_items(engine, store):
    store.patch_entity("task", "T1", {"tags": frozenset({"tg"})})
    item = engine.add_task(_task(store, "T1"), "P1").item
    assert item.tags == frozenset({"tg"})
    store.delete_tag("tg")
    assert engine.find(item.id).tags == frozenset()


# --- persistence ----------------------------------------------------------------

def test_every_change_is_saved(engine, backend):
    engine.add_standalone("a")
    saved = backend.named("save_today")[-1]
    assert saved[1] == USER
    assert [i.title for i in saved[2]] == ["a"]


def test_failed_save_emits_toast(engine, backend):
    toasts = []
    engine.toast.connect(toasts.append)
    backend.fail["save_today"] = RemoteResult.fail("http", "boom", 500)
    engine.add_standalone("a")
    assert toasts and "Today" in toasts[0]
    assert [i.title for i in engine.items] == ["a"]


def test_older_remote_list_is_ignored(engine, clock):
    engine.add_standalone("mine")
    older = TodaySnapshot((TodayItem(id="x", title="theirs"),), clock.now.replace(year=2020))
    assert engine.apply_remote(older) is False
    assert [i.title for i in engine.items] == ["mine"]
    clock.advance(minutes=1)
    newer = TodaySnapshot((TodayItem(id="x", title="theirs"),), clock.now)
    assert engine.apply_remote(newer) is True
    assert [i.title for i in engine.items] == ["theirs"]


def test_item_added_while_loading_survives_hydration(store, backend, session, clock, dispatcher):
    backend.today = TodaySnapshot((TodayItem(id="old", title="Old", is_local=True),), clock.now)
    runner = DeferredRunner()
    e = TodayEngine(store, TreeCommands(store, dispatcher, backend, session, clock), backend, session, runner, clock)
    e.load()
    e.add_standalone("Added while loading")
    runner.drain()
    assert [i.title for i in e.items] == ["Added while loading", "Old"]
    assert e.loaded is True
    assert [i.title for i in backend.today.items] == ["Added while loading", "Old"]
