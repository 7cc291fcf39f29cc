import itertools
import json
from datetime import datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from relaybot.core.classifier import MessageClassifier
from relaybot.core.commands import CommandHandler
from relaybot.llm.base import LLMClient, LLMUnavailableError
from relaybot.storage.contacts import ContactBook
from relaybot.storage.memory import ChatHistory, MemoryStore, UpdateStore
from relaybot.storage.reminder import ReminderStore
from relaybot.utils import shift, to_utc
from relaybot.world.dispatcher import NotificationDispatcher, NotificationSink
from relaybot.world.reminder import ReminderService
from relaybot.world.scheduler import StageScheduler
from relaybot.world.sweep import RecoverySweep, owned_by_transports
from relaybot.world.time_resolver import TimeResolver

TZ = "Asia/Kolkata"


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = shift(self.now, delta)


class FakeTimer:
    """记录布防的回调；advance() 推进模拟时间并按到期顺序执行回调。时间一律按真实时长推进"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.pending = []
        self.delays = []
        self._seq = itertools.count()

    def call_later(self, delay_seconds, callback):
        assert delay_seconds > 0, "non-positive delay handed to the timer"
        self.delays.append(delay_seconds)
        fire_at = shift(self.clock(), timedelta(seconds=delay_seconds))
        self.pending.append((fire_at, next(self._seq), callback))

    def fire_times(self):
        return sorted((fire_at for fire_at, _, _ in self.pending), key=to_utc)

    async def advance(self, delta: timedelta) -> None:
        end = shift(self.clock(), delta)
        while True:
            due = [p for p in self.pending if to_utc(p[0]) <= to_utc(end)]
            due.sort(key=lambda p: (to_utc(p[0]), p[1]))
            if not due:
                break
            entry = due[0]
            self.pending.remove(entry)
            self.clock.now = entry[0]
            await entry[2]()
        self.clock.now = end


class RecordingSink(NotificationSink):
    def __init__(self, name: str, home: str | None = None, prefix: str | None = None):
        self.name = name
        self.prefix = prefix or name
        self._home = home
        self.sent = []

    @property
    def home_conversation_id(self):
        return self._home

    async def send(self, conversation_id, text):
        self.sent.append((conversation_id, text))

    @property
    def texts(self):
        return [text for _, text in self.sent]


class FailingSink(RecordingSink):
    async def send(self, conversation_id, text):
        raise ConnectionError(f"{self.name} is down")


class ScriptedLLM(LLMClient):
    """按顺序返回预设回复；回复是异常实例时抛出它"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    async def generate_text(self, prompt, system=None):
        self.prompts.append(prompt)
        if not self.responses:
            raise LLMUnavailableError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def chat(self, history, system=None):
        return await self.generate_text(history[-1]["content"], system)


def resolver_reply(task, target, priority="MEDIUM", fenced=True):
    body = json.dumps({
        "task": task,
        "targetDateTime": target.isoformat() if isinstance(target, datetime) else target,
        "priority": priority,
    }, indent=2)
    return f"```json\n{body}\n```" if fenced else body


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 20, 0, tzinfo=ZoneInfo(TZ)))


@pytest.fixture
def timer(clock):
    return FakeTimer(clock)


@pytest.fixture
def store(tmp_path, clock):
    return ReminderStore(tmp_path / "reminders.json", clock=clock)


@pytest.fixture
def telegram_sink():
    return RecordingSink("telegram", home="telegram:100")


@pytest.fixture
def dispatcher(telegram_sink):
    return NotificationDispatcher([telegram_sink])


@pytest.fixture
def scheduler(store, dispatcher, timer, clock):
    return StageScheduler(store, dispatcher, timer=timer, clock=clock)


@pytest.fixture
def sweep(store, scheduler, clock):
    return RecoverySweep(store, scheduler, owned_by_transports(["telegram"]), clock=clock)


@pytest.fixture
def llm():
    """测试中通过 llm.responses.extend(...) 追加预设回复"""
    return ScriptedLLM()


@pytest.fixture
def services(tmp_path, clock, store, scheduler, llm):
    reminders = ReminderService(store, TimeResolver(llm, TZ), scheduler, TZ, clock=clock)
    return SimpleNamespace(
        reminders=reminders,
        memories=MemoryStore(tmp_path / "saved_memories.json", clock=clock),
        updates=UpdateStore(tmp_path / "important_updates.json", clock=clock),
        history=ChatHistory(tmp_path / "chat_history.json", clock=clock),
        contacts=ContactBook(
            tmp_path / "blocked_contacts.json",
            tmp_path / "priority_contacts.json",
            owner_conversation_ids=["telegram:100"],
            clock=clock,
        ),
        classifier=MessageClassifier(llm, ["REMINDER", "MEMORY", "IMPORTANT"]),
    )


@pytest.fixture
def commands(services, llm):
    return CommandHandler(
        services.reminders, services.memories, services.updates, services.contacts,
        services.history, services.classifier, llm, timezone=TZ, user_name="Sam",
    )


@pytest.fixture
def new_reminder(store, clock):
    def _create(delta: timedelta | None, task="stretch", conversation_id="telegram:100"):
        return store.create(
            task=task,
            original_time_expression=f"in {delta}",
            conversation_id=conversation_id,
            target_date_time=shift(clock(), delta) if delta is not None else None,
        )
    return _create
