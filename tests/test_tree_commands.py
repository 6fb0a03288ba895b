# tests/test_tree_commands.py
from __future__ import annotations

import pytest

from conftest import NOW, USER, make_tree
from researchos.models.entities import ProjectMember, SessionContext, Tag
from researchos.models.errors import RemoteResult, ValidationError
from researchos.services.tree_commands import TreeCommands
from researchos.services.tree_store import ProjectTreeStore

HTTP_500 = RemoteResult.fail("http", "boom", 500)


def _store(session, clock, tree=None):
    s = ProjectTreeStore(session, clock)
    s.replace_tree(tree or make_tree(), origin="load")
    return s


@pytest.fixture()
def store(qapp, session, clock):
    return _store(session, clock)


@pytest.fixture()
def commands(store, dispatcher, backend, session, clock):
    return TreeCommands(store, dispatcher, backend, session, clock)


@pytest.fixture()
def toasts(dispatcher):
    seen = []
    dispatcher.toast.connect(seen.append)
    return seen


def _task_ids(store):
    return [t.id for t in store.tree.projects[0].stages[0].tasks]


# --- creation -------------------------------------------------------------------

def test_create_task_lands_locally_and_remotely(commands, store, backend, clock):
    task = commands.create_task("S1", "  Analyse data ", reminder_date=NOW, tags=["tg"])
    assert task.title == "Analyse data"
    assert task.is_local is True
    assert task.created_by == USER and task.created_at == clock.now
    assert _task_ids(store) == ["T1", "T2", task.id]
    assert backend.named("create_entity") == [("create_entity", "task", task.id)]


def test_failed_create_is_removed_again(commands, store, backend, toasts):
    backend.fail["create_entity"] = HTTP_500
    task = commands.create_task("S1", "Analyse data")
    assert store.get("task", task.id) is None
    assert toasts == ["Couldn't save new task. Your change was undone."]


def test_create_under_missing_parent_raises(commands, backend):
    with pytest.raises(ValidationError):
        commands.create_task("GONE", "x")
    with pytest.raises(ValidationError):
        commands.create_subtask("GONE", "x")
    with pytest.raises(ValidationError):
        commands.create_stage("GONE", "x")
    with pytest.raises(ValidationError):
        commands.add_comment("T1", "   ")
    assert backend.calls == []


def test_create_project_is_owned_and_ranked_last(commands, store):
    project = commands.create_project("Grant renewal", emoji="📄", publication_target="NIH R01")
    assert project.owner_id == USER
    assert project.priority_rank == 3
    assert project.emoji == "📄"
    assert store.tree.projects[-1].id == project.id


def test_create_subtask_and_comment(commands, store):
    sub = commands.create_subtask("T2", "Outline")
    comment = commands.add_comment("T2", "Looks good")
    t2 = store.get("task", "T2")
    assert [s.id for s in t2.subtasks] == [sub.id]
    assert t2.comments[0].content == "Looks good"
    assert t2.comments[0].user_name == "Ada"
    assert comment.task_id == "T2"


# --- edits ------------------------------------------------------------------------

def test_failed_update_restores_old_values(commands, store, backend, toasts):
    backend.fail["patch_entity"] = HTTP_500
    assert commands.update("task", "T2", {"title": "Methods", "description": "draft"}) is True
    t2 = store.get("task", "T2")
    assert t2.title == "Write methods"
    assert t2.description == ""
    assert len(toasts) == 1


def test_update_of_remotely_deleted_row_keeps_local_state(commands, store, backend, toasts):
    backend.fail["patch_entity"] = RemoteResult.fail("not_found", "gone")
    commands.rename("task", "T2", "Methods")
    assert store.get("task", "T2").title == "Methods"
    assert toasts == []


def test_remote_patch_carries_audit_fields(commands, backend, clock):
    commands.update("subtask", "ST1", {"title": "Collect"})
    _name, kind, eid, patch = backend.named("patch_entity")[-1]
    assert (kind, eid) == ("subtask", "ST1")
    assert patch["title"] == "Collect"
    assert patch["modified_by"] == USER
    assert patch["updated_at"] == clock.now


def test_update_missing_entity_returns_false(commands, backend):
    assert commands.update("task", "nope", {"title": "x"}) is False
    assert backend.calls == []


def test_tag_patch_rejects_other_fields(commands, store):
    store.upsert_tag(Tag(id="tg", name="urgent"))
    with pytest.raises(ValidationError):
        commands.update("tag", "tg", {"id": "other"})
    commands.rename("tag", "tg", "later")
    assert store.tree.tag("tg").name == "later"


def test_set_reminder_signals_rearm(commands):
    seen = []
    commands.reminderChanged.connect(lambda task_id, subtask_id: seen.append((task_id, subtask_id)))
    commands.set_reminder("task", "T1", NOW)
    commands.set_reminder("subtask", "ST2", None)
    commands.set_reminder("project", "P1", NOW)
    assert seen == [("T1", None), ("T1", "ST2")]


# --- deletion ---------------------------------------------------------------------

def test_failed_delete_reinserts_at_old_position(commands, store, backend, toasts):
    backend.fail["delete_entity"] = HTTP_500
    assert commands.delete("task", "T1") is True
    assert _task_ids(store) == ["T1", "T2"]
    assert [s.id for s in store.get("task", "T1").subtasks] == ["ST1", "ST2"]
    assert toasts == ["Couldn't save task deletion. Your change was undone."]


def test_delete_missing_returns_false(commands):
    assert commands.delete("subtask", "nope") is False


def test_delete_tag_cascades(commands, store, backend):
    store.upsert_tag(Tag(id="tg", name="urgent"))
    store.patch_entity("task", "T1", {"tags": frozenset({"tg"})})
    assert commands.delete("tag", "tg") is True
    assert store.tree.tag("tg") is None
    assert store.get("task", "T1").tags == frozenset()
    assert backend.named("delete_entity") == [("delete_entity", "tag", "tg")]


def test_failed_tag_delete_restores_tag_and_references(commands, store, backend):
    store.upsert_tag(Tag(id="tg", name="urgent"))
    store.patch_entity("task", "T1", {"tags": frozenset({"tg"})})
    store.patch_entity("subtask", "ST2", {"tags": frozenset({"tg"})})
    backend.fail["delete_entity"] = HTTP_500
    commands.delete_tag("tg")
    assert store.tree.tag("tg").name == "urgent"
    assert store.get("task", "T1").tags == frozenset({"tg"})
    assert store.get("subtask", "ST2").tags == frozenset({"tg"})


def test_failed_tag_create_is_removed(commands, store, backend):
    backend.fail["create_entity"] = HTTP_500
    tag = commands.create_tag("urgent")
    assert store.tree.tag(tag.id) is None


# --- ordering ---------------------------------------------------------------------

def test_reorder_patches_changed_ranks_only(commands, store, backend):
    commands.reorder_projects(["P2", "P1"])
    assert [p.id for p in store.tree.projects] == ["P2", "P1"]
    assert backend.named("patch_entity") == [("patch_entity", "project", "P2", {"priority_rank": 1})]


def test_failed_reorder_restores_order(commands, store, backend):
    backend.fail["patch_entity"] = HTTP_500
    commands.reorder_projects(["P2", "P1"])
    assert [p.id for p in store.tree.projects] == ["P1", "P2"]


# --- collaborator fan-out ---------------------------------------------------------

@pytest.fixture()
def connected():
    return SessionContext(USER, is_demo_mode=False, display_name="Ada")


def _fan_out_commands(connected, clock, dispatcher, backend, tree):
    return TreeCommands(_store(connected, clock, tree), dispatcher, backend, connected, clock)


def test_shared_project_edits_notify_collaborators(qapp, connected, clock, dispatcher, backend):
    tree = make_tree(members=(ProjectMember("u-2"),))
    commands = _fan_out_commands(connected, clock, dispatcher, backend, tree)
    commands.create_task("S1", "Analyse")
    commands.rename("task", "T2", "Methods")
    commands.set_completed("subtask", "ST1")
    commands.delete("task", "T1")
    sent = [(c[1], c[2], c[3]) for c in backend.named("notify_collaborators")]
    assert sent == [
        ("P1", USER, "task_created"),
        ("P1", USER, "task_modified"),
        ("P1", USER, "subtask_completed"),
        ("P1", USER, "task_deleted"),
    ]


def test_project_shared_with_me_counts_as_shared(qapp, connected, clock, dispatcher, backend):
    commands = _fan_out_commands(connected, clock, dispatcher, backend, make_tree(owner="u-2"))
    commands.set_completed("task", "T2")
    assert [c[3] for c in backend.named("notify_collaborators")] == ["task_completed"]


def test_private_project_does_not_notify(qapp, connected, clock, dispatcher, backend):
    commands = _fan_out_commands(connected, clock, dispatcher, backend, make_tree())
    commands.rename("task", "T2", "Methods")
    assert backend.named("notify_collaborators") == []


def test_demo_mode_never_notifies(commands, store, backend):
    store.patch_entity("project", "P1", {"members": (ProjectMember("u-2"),)})
    commands.rename("task", "T2", "Methods")
    assert backend.named("notify_collaborators") == []


def test_failed_write_sends_no_notification(qapp, connected, clock, dispatcher, backend):
    commands = _fan_out_commands(connected, clock, dispatcher, backend, make_tree(owner="u-2"))
    backend.fail["patch_entity"] = HTTP_500
    commands.rename("task", "T2", "Methods")
    assert backend.named("notify_collaborators") == []
