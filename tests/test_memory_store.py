from datetime import timedelta

from relaybot.datamodel import Priority
from relaybot.storage.memory import ChatHistory, MemoryStore, UpdateStore


def test_memories_add_remove_clear(tmp_path, clock):
    memories = MemoryStore(tmp_path / "saved_memories.json", clock=clock)
    first = memories.add("wifi password is hunter2", "telegram:100")
    memories.add("parking spot B12", "qq:5", priority=Priority.LOW, auto_created=True)

    listed = MemoryStore(tmp_path / "saved_memories.json").list()
    assert [m.content for m in listed] == ["wifi password is hunter2", "parking spot B12"]
    assert listed[1].auto_created is True
    assert listed[1].priority is Priority.LOW

    assert memories.remove(first.id).content == "wifi password is hunter2"
    assert memories.remove(first.id) is None
    assert memories.clear() == 1
    assert memories.list() == []


def test_updates_mark_all_read(tmp_path, clock):
    updates = UpdateStore(tmp_path / "important_updates.json", clock=clock)
    updates.add("server migrated", "qq:5", priority=Priority.HIGH)
    updates.add("new office hours", "qq:5")

    assert updates.mark_all_read() == 2
    assert updates.mark_all_read() == 0
    assert all(u.read for u in updates.list())
    assert updates.clear() == 2


def test_chat_history_keeps_latest_entries(tmp_path, clock):
    history = ChatHistory(tmp_path / "chat_history.json", limit=3, clock=clock)
    for i in range(5):
        history.append("telegram:100", "user", f"msg {i}")
        clock.advance(timedelta(seconds=1))
    history.append("qq:5", "user", "other conversation")

    assert [e["content"] for e in history.recent("telegram:100")] == ["msg 2", "msg 3", "msg 4"]
    assert [e["content"] for e in history.recent("telegram:100", limit=1)] == ["msg 4"]
    assert history.recent("telegram:999") == []
