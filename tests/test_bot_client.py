from typing import Any, Dict, List, Optional

import pytest
import requests

from src.advisor.domain.errors import ConfigError, TransportError
from src.advisor.services.bot_client import (
    BotApiClient,
    ChatTask,
    GatewayClient,
    UpstreamConfig,
    build_chat_payload,
)


class _Resp:
    def __init__(self, status: int = 200, body: Any = None, chunks: Optional[List[bytes]] = None, reason: str = "OK") -> None:
        self.status_code = status
        self.ok = 200 <= status < 300
        self.reason = reason
        self._body = body
        self._chunks = chunks or []
        self.closed = False
        self.text = "" if body is None else str(body)

    def json(self):
        if isinstance(self._body, (dict, list)):
            return self._body
        raise ValueError("not json")

    def iter_content(self, chunk_size=None):
        for c in self._chunks:
            yield c

    def close(self):
        self.closed = True


class _Session:
    def __init__(self, post: Optional[_Resp] = None, get: Optional[List[_Resp]] = None, error: Optional[Exception] = None) -> None:
        self._post = post
        self._get = list(get or [])
        self._error = error
        self.calls: List[Dict[str, Any]] = []

    def post(self, url, **kwargs):
        self.calls.append({"method": "POST", "url": url, **kwargs})
        if self._error:
            raise self._error
        return self._post

    def get(self, url, **kwargs):
        self.calls.append({"method": "GET", "url": url, **kwargs})
        return self._get.pop(0)


CONFIG = UpstreamConfig(api_url="https://upstream.test/v3/chat", token="tok")


def test_config_requires_token():
    with pytest.raises(ConfigError, match="Missing API Token"):
        UpstreamConfig.from_env({})
    cfg = UpstreamConfig.from_env({"COZE_API_TOKEN": "t", "COZE_API_URL": "https://x/v3/chat/"})
    assert cfg.api_url == "https://x/v3/chat"


def test_build_chat_payload_defaults():
    payload = build_chat_payload("b1", message="你好")
    assert payload == {
        "bot_id": "b1",
        "user_id": "user_default",
        "stream": True,
        "auto_save_history": True,
        "additional_messages": [{"role": "user", "content": "你好", "content_type": "text"}],
    }


def test_open_chat_stream_strips_alias_and_relays_bytes():
    resp = _Resp(chunks=[b"data: a\n", b"", b"data: b\n"])
    session = _Session(post=resp)
    client = BotApiClient(CONFIG, session=session)
    stream = client.open_chat_stream({"bot_id": "b", "bot_alias": "recipe", "stream": False})
    assert list(stream) == [b"data: a\n", b"data: b\n"]
    sent = session.calls[0]
    assert sent["json"] == {"bot_id": "b", "stream": True}
    assert sent["headers"]["Authorization"] == "Bearer tok"
    assert sent["stream"] is True
    assert resp.closed


def test_non_2xx_maps_to_transport_error_with_status():
    session = _Session(post=_Resp(status=401, body="bad token", reason="Unauthorized"))
    with pytest.raises(TransportError) as exc_info:
        BotApiClient(CONFIG, session=session).open_chat_stream({"bot_id": "b"})
    assert exc_info.value.status_code == 401
    assert "401" in str(exc_info.value)


def test_network_error_maps_to_transport_error():
    session = _Session(error=requests.exceptions.ConnectionError("refused"))
    with pytest.raises(TransportError):
        BotApiClient(CONFIG, session=session).create_chat({"bot_id": "b"})


def test_create_retrieve_and_list():
    session = _Session(
        post=_Resp(body={"code": 0, "data": {"id": "c1", "conversation_id": "v1", "status": "created"}}),
        get=[
            _Resp(body={"code": 0, "data": {"status": "completed"}}),
            _Resp(body={"code": 0, "data": [{"role": "assistant", "type": "answer", "content": "ok"}]}),
        ],
    )
    client = BotApiClient(CONFIG, session=session)
    task = client.create_chat({"bot_id": "b", "stream": True})
    assert task == ChatTask(id="c1", conversation_id="v1", status="created")
    assert session.calls[0]["json"]["stream"] is False
    assert client.retrieve_status(task) == "completed"
    assert client.list_messages(task)[0]["content"] == "ok"
    assert session.calls[1]["url"].endswith("/v3/chat/retrieve")
    assert session.calls[1]["params"] == {"chat_id": "c1", "conversation_id": "v1"}
    assert session.calls[2]["url"].endswith("/v3/chat/message/list")


def test_nonzero_code_is_transport_error():
    session = _Session(post=_Resp(body={"code": 4000, "msg": "bot not published"}))
    with pytest.raises(TransportError) as exc_info:
        BotApiClient(CONFIG, session=session).create_chat({"bot_id": "b"})
    assert exc_info.value.status_code == 502


def test_gateway_client_posts_to_chat_relay():
    session = _Session(post=_Resp(chunks=[b"data: x\n"]))
    client = GatewayClient("http://gw.test/", session=session)
    stream = client.open_chat_stream(build_chat_payload("", message="问", user_id="u"))
    assert list(stream) == [b"data: x\n"]
    call = session.calls[0]
    assert call["url"] == "http://gw.test/api/chat"
    assert call["json"]["bot_id"] is None
    assert call["json"]["stream"] is True
    assert call["json"]["additional_messages"][0]["content"] == "问"
