import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


_UPSTREAM_ENV = (
    "COZE_API_URL",
    "COZE_API_TOKEN",
    "COZE_BOT_ID",
    "COZE_BOT_ID_ADVISOR",
    "COZE_BOT_ID_POSTER",
    "COZE_BOT_ID_RECIPE",
    "COZE_BOT_ID_ANALYSIS",
    "ADVISOR_CHAT_ON_TRANSPORT_ERROR",
    "ADVISOR_POSTER_POLL_INTERVAL",
    "ADVISOR_POSTER_MAX_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def _isolated_stores(monkeypatch):
    """Every test gets fresh in-memory records and no upstream configuration."""
    from src.advisor.infrastructure import poster_log
    from src.advisor.infrastructure import record_store
    from src.advisor.infrastructure import session_store
    from src.advisor.infrastructure import user_store

    for name in _UPSTREAM_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ADVISOR_RECORD_STORE_IMPL", "memory")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setattr(record_store, "_memory_store", None, raising=False)
    session_store.reset_session_stores()
    poster_log.reset_poster_log()
    user_store.reset_user_store()
    yield
    session_store.reset_session_stores()
    poster_log.reset_poster_log()
    user_store.reset_user_store()


class FakeStream:
    """Byte chunks standing in for an upstream SSE body."""

    def __init__(self, chunks: Iterable[Any], fail_with: Optional[Exception] = None) -> None:
        self._chunks = list(chunks)
        self._fail_with = fail_with
        self.closed = False

    def __iter__(self):
        for chunk in self._chunks:
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
        if self._fail_with is not None:
            raise self._fail_with

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, chunks: Iterable[Any] = (), fail_with: Optional[Exception] = None, open_error: Optional[Exception] = None) -> None:
        self._chunks = list(chunks)
        self._fail_with = fail_with
        self._open_error = open_error
        self.payloads: List[Dict[str, Any]] = []
        self.streams: List[FakeStream] = []

    def open_chat_stream(self, payload: Dict[str, Any]) -> FakeStream:
        self.payloads.append(payload)
        if self._open_error is not None:
            raise self._open_error
        stream = FakeStream(self._chunks, self._fail_with)
        self.streams.append(stream)
        return stream


class FakeTaskClient:
    """Scripted create / retrieve / message-list responses."""

    def __init__(self, statuses: Iterable[str] = ("completed",), messages: Optional[List[Dict[str, Any]]] = None, create_status: str = "created") -> None:
        from src.advisor.services.bot_client import ChatTask

        self._task_cls = ChatTask
        self._statuses = list(statuses)
        self._messages = messages if messages is not None else []
        self._create_status = create_status
        self.created: List[Dict[str, Any]] = []
        self.retrieve_calls = 0
        self.list_calls = 0

    def create_chat(self, payload):
        self.created.append(payload)
        return self._task_cls(id=f"chat-{len(self.created)}", conversation_id="conv-1", status=self._create_status)

    def retrieve_status(self, task):
        self.retrieve_calls += 1
        if self._statuses:
            return self._statuses.pop(0)
        return "in_progress"

    def list_messages(self, task):
        self.list_calls += 1
        return list(self._messages)


def sse(event: Optional[str], data: str) -> str:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n"


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def fake_task_client():
    return FakeTaskClient


@pytest.fixture
def sse_frame():
    return sse
