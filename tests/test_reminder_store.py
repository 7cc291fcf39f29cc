import json
import os
from datetime import timedelta

import pytest

import relaybot.storage.reminder as reminder_module
from relaybot.datamodel import Priority, Reminder
from relaybot.storage.json_store import JsonCollection, StorageError
from relaybot.storage.reminder import ReminderStore


def test_create_persists_and_round_trips(store, clock, tmp_path):
    created = store.create(
        task="call mom",
        original_time_expression="tomorrow at 9am",
        conversation_id="telegram:100",
        target_date_time=clock() + timedelta(hours=13),
        priority=Priority.HIGH,
        auto_created=True,
        label="Alice",
    )

    reloaded = ReminderStore(tmp_path / "reminders.json").find_by_id(created.id)
    assert reloaded == created

    raw = json.loads((tmp_path / "reminders.json").read_text(encoding="utf-8"))
    assert raw[0]["conversationId"] == "telegram:100"
    assert raw[0]["originalTimeExpression"] == "tomorrow at 9am"
    assert raw[0]["autoCreated"] is True


def test_unresolved_reminder_round_trips_with_null_target(store, tmp_path):
    created = store.create(task="someday", original_time_expression="someday", conversation_id="qq:1")
    raw = json.loads((tmp_path / "reminders.json").read_text(encoding="utf-8"))
    assert raw[0]["targetDateTime"] is None
    assert "label" not in raw[0]
    assert ReminderStore(tmp_path / "reminders.json").find_by_id(created.id) == created


def test_rapid_creations_get_distinct_ids(store, new_reminder):
    first = new_reminder(timedelta(minutes=5), task="a")
    second = new_reminder(timedelta(minutes=5), task="b")
    assert first.id != second.id
    assert {r.task for r in store.reload()} == {"a", "b"}


def test_create_regenerates_colliding_id(store, monkeypatch):
    values = iter(["01AAAAAAAAAAAAAAAAAAAAAAAA", "01AAAAAAAAAAAAAAAAAAAAAAAA", "01BBBBBBBBBBBBBBBBBBBBBBBB"])

    class FakeULID:
        def __init__(self):
            self.value = next(values)

        def __str__(self):
            return self.value

    monkeypatch.setattr(reminder_module, "ULID", FakeULID)
    first = store.create(task="a", original_time_expression="x", conversation_id="telegram:1")
    second = store.create(task="b", original_time_expression="x", conversation_id="telegram:1")
    assert first.id == "01AAAAAAAAAAAAAAAAAAAAAAAA"
    assert second.id == "01BBBBBBBBBBBBBBBBBBBBBBBB"


def test_deactivate_persists_and_unknown_id_returns_none(store, new_reminder, tmp_path):
    reminder = new_reminder(timedelta(hours=1))
    assert store.deactivate(reminder.id).active is False
    assert ReminderStore(tmp_path / "reminders.json").find_by_id(reminder.id).active is False
    assert store.deactivate("missing") is None


def test_mutation_rereads_changes_from_sibling_process(store, new_reminder, tmp_path):
    first = new_reminder(timedelta(hours=1), task="first")
    second = new_reminder(timedelta(hours=2), task="second")

    sibling = ReminderStore(tmp_path / "reminders.json")
    sibling.deactivate(first.id)
    sibling.create(task="from sibling", original_time_expression="x", conversation_id="qq:1")

    # 本进程的快照已经过期，但修改操作会先重新读盘
    store.deactivate(second.id)
    tasks = {r.task: r.active for r in ReminderStore(tmp_path / "reminders.json").list_all()}
    assert tasks == {"first": False, "second": False, "from sibling": True}


def test_deactivate_many_writes_once(store, new_reminder, monkeypatch):
    ids = [new_reminder(timedelta(hours=h)).id for h in (1, 2, 3)]
    saves = []
    original_save = JsonCollection.save
    monkeypatch.setattr(JsonCollection, "save", lambda self, data: saves.append(1) or original_save(self, data))

    changed = store.deactivate_many(ids[:2])
    assert [r.id for r in changed] == ids[:2]
    assert len(saves) == 1
    assert [r.id for r in store.list_active()] == [ids[2]]


def test_list_active_with_predicate(store, new_reminder):
    new_reminder(timedelta(hours=1), conversation_id="telegram:100")
    qq = new_reminder(timedelta(hours=1), conversation_id="qq:200")
    assert store.list_active(lambda r: r.conversation_id.startswith("qq:")) == [qq]


def test_remove_and_clear_all(store, new_reminder):
    a = new_reminder(timedelta(hours=1))
    b = new_reminder(timedelta(hours=2))
    new_reminder(timedelta(hours=3))
    store.deactivate(b.id)

    assert store.remove(a.id) is True
    assert store.remove(a.id) is False
    assert store.clear_all() == 1
    assert store.reload() == []


def test_write_failure_raises_and_keeps_snapshot(store, new_reminder, monkeypatch):
    reminder = new_reminder(timedelta(hours=1))

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(StorageError):
        store.deactivate(reminder.id)
    assert store.find_by_id(reminder.id).active is True


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / "reminders.json"
    path.write_text("[{not json", encoding="utf-8")

    store = ReminderStore(path)
    assert store.list_all() == []
    assert (tmp_path / "reminders.json.bak").read_text(encoding="utf-8") == "[{not json"


def test_unparseable_records_survive_rewrites(tmp_path, clock):
    path = tmp_path / "reminders.json"
    path.write_text(json.dumps([{"id": "broken"}]), encoding="utf-8")

    store = ReminderStore(path, clock=clock)
    store.create(task="ok", original_time_expression="x", conversation_id="telegram:1")

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert {"id": "broken"} in raw
    assert len(raw) == 2


def test_reminder_from_dict_defaults():
    reminder = Reminder.from_dict({
        "id": "1",
        "task": "t",
        "createdAt": "2025-01-01T10:00:00+05:30",
        "conversationId": "telegram:1",
        "priority": "urgent",
    })
    assert reminder.active is True
    assert reminder.priority is Priority.MEDIUM
    assert reminder.target_date_time is None
