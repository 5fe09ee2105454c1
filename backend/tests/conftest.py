"""Shared test fixtures for chatsync."""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime, timedelta, timezone
from functools import partial

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from chatsync.core.database import init_db, verify_indexes
from chatsync.integrations.completion_client import CompletionClient
from chatsync.models.conversation import Conversation, Sender, Turn
from chatsync.services.container import Services
from chatsync.services.conversation_registry import ConversationRegistry
from chatsync.services.deletion import DeletionController
from chatsync.services.message_log import MessageLog
from chatsync.services.sync_engine import SyncEngine

BACKEND_URL = "http://backend.test/api"


def completion_body(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class FakeBackend:
    """Stands in for the completion backend behind an httpx.MockTransport.

    Queue responses with ``reply``/``fail``/``network_error``; once the queue
    is empty every request gets ``default_text``.
    """

    def __init__(self, default_text: str = "Hello from the model"):
        self.default_text = default_text
        self.requests: list[httpx.Request] = []
        self._queue: list = []
        self.gate = None

    def reply(self, text: str, times: int = 1):
        for _ in range(times):
            self._queue.append(httpx.Response(200, json=completion_body(text)))

    def reply_json(self, body, times: int = 1):
        for _ in range(times):
            self._queue.append(httpx.Response(200, json=body))

    def fail(self, status: int, times: int = 1):
        for _ in range(times):
            self._queue.append(httpx.Response(status, text=f"status {status}"))

    def network_error(self, times: int = 1):
        for _ in range(times):
            self._queue.append("network")

    def payload(self, index: int = -1):
        return json.loads(self.requests[index].content)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        item = self._queue.pop(0) if self._queue else httpx.Response(
            200, json=completion_body(self.default_text)
        )
        if isinstance(item, str):
            raise httpx.ConnectError("connection refused", request=request)
        return item


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class StepClock:
    """Deterministic clock: every call moves forward by ``step``."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(seconds=1)):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        self.now = self.now + self.step
        return self.now


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chatsync.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def index_check(db_engine):
    return partial(verify_indexes, db_engine)


@pytest.fixture
def message_log(session_factory, index_check):
    return MessageLog(session_factory, index_check=index_check)


@pytest.fixture
def registry(session_factory, index_check):
    return ConversationRegistry(session_factory, clock=StepClock(), index_check=index_check)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
async def completion_client(backend, sleeps):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend.handle)) as http_client:
        yield CompletionClient(BACKEND_URL, http_client=http_client, sleep=sleeps)


@pytest.fixture
def engine(message_log, registry, completion_client):
    return SyncEngine(message_log, registry, completion_client)


@pytest.fixture
def deletion(message_log, registry, engine):
    return DeletionController(message_log, registry, page_size=200, max_batch=500, engine=engine)


@pytest.fixture
def services(message_log, registry, engine, deletion):
    return Services(message_log=message_log, registry=registry, engine=engine, deletion=deletion)


@pytest.fixture
def add_conversations(session_factory):
    """Insert bare conversation records with the given ids."""

    async def _add(*conversation_ids: str, owner_id: str = "owner-1") -> None:
        now = datetime(2025, 1, 15, 8, 0, 0, tzinfo=timezone.utc)
        async with session_factory() as db:
            db.add_all([
                Conversation(id=cid, owner_id=owner_id, created_at=now, updated_at=now)
                for cid in conversation_ids
            ])
            await db.commit()

    return _add


@pytest.fixture
def seed_turns(session_factory):
    """Insert ``count`` turns straight into the store, bypassing the log."""

    async def _seed(conversation_id: str, count: int) -> None:
        base = datetime(2025, 1, 15, 9, 0, 0, tzinfo=timezone.utc)
        async with session_factory() as db:
            db.add_all([
                Turn(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    sender=Sender.USER.value if i % 2 == 0 else Sender.ASSISTANT.value,
                    text=f"turn {i}",
                    created_at=base + timedelta(seconds=i),
                )
                for i in range(count)
            ])
            await db.commit()

    return _seed
