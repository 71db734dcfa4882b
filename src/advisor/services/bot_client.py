from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Iterable

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.errors import ConfigError, TransportError


LOG = logging.getLogger("advisor.upstream")

DEFAULT_API_URL = "https://api.coze.cn/v3/chat"
DEFAULT_USER_ID = "user_default"
_DEBUG_CHUNKS = 3


@dataclass
class UpstreamConfig:
    api_url: str
    token: str
    connect_timeout: float = 5.0
    read_timeout: float = 60.0

    @staticmethod
    def from_env(env: Optional[Mapping[str, str]] = None) -> "UpstreamConfig":
        env = env if env is not None else os.environ
        token = (env.get("COZE_API_TOKEN") or "").strip()
        if not token:
            raise ConfigError("Server configuration error: Missing API Token")
        return UpstreamConfig(
            api_url=(env.get("COZE_API_URL") or DEFAULT_API_URL).rstrip("/"),
            token=token,
            connect_timeout=float(env.get("COZE_CONNECT_TIMEOUT", "5")),
            read_timeout=float(env.get("COZE_READ_TIMEOUT", "60")),
        )


class ChatTransport(Protocol):
    def open_chat_stream(self, payload: Dict[str, Any]) -> Iterable[bytes]: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    # Status polling is idempotent; task creation must never be replayed.
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def build_chat_payload(
    bot_id: str,
    user_id: Optional[str] = None,
    message: Optional[str] = None,
    additional_messages: Optional[List[Dict[str, Any]]] = None,
    stream: bool = True,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "bot_id": bot_id,
        "user_id": user_id or DEFAULT_USER_ID,
        "stream": stream,
        "auto_save_history": True,
    }
    if additional_messages:
        payload["additional_messages"] = additional_messages
    elif message:
        payload["additional_messages"] = [
            {"role": "user", "content": message, "content_type": "text"},
        ]
    return payload


def _upstream_body(payload: Dict[str, Any], stream: bool) -> Dict[str, Any]:
    body = {k: v for k, v in payload.items() if k != "bot_alias"}
    body["stream"] = stream
    return body


def _error_text(resp: requests.Response) -> str:
    try:
        return resp.text[:500]
    except Exception:
        return ""


class ChatStream:
    """Iterable over the raw bytes of an accepted streaming response.

    The HTTP status has already been checked when this object exists. Closing
    it (explicitly, via ``with``, or by abandoning iteration) releases the
    connection; the decoder sees that as an ordinary end of stream.
    """

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = False

    def __iter__(self) -> Iterator[bytes]:
        count = 0
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if not chunk:
                    continue
                if count < _DEBUG_CHUNKS:
                    LOG.debug("upstream_stream_chunk", extra={"index": count, "preview": chunk[:100]})
                    count += 1
                yield chunk
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Stream interrupted: {exc}") from exc
        finally:
            self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._response.close()

    def __enter__(self) -> "ChatStream":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass
class ChatTask:
    id: str
    conversation_id: str
    status: str


class BotApiClient:
    """Thin client for the hosted bot API (chat, retrieve, message list)."""

    def __init__(self, config: Optional[UpstreamConfig] = None, session: Optional[requests.Session] = None) -> None:
        self.config = config or UpstreamConfig.from_env()
        self._session = session or _build_session()

    @property
    def _timeout(self) -> tuple:
        return (self.config.connect_timeout, self.config.read_timeout)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.token}",
            "Content-Type": "application/json",
        }

    def _post(self, payload: Dict[str, Any], stream: bool) -> requests.Response:
        try:
            resp = self._session.post(
                self.config.api_url,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
                stream=stream,
            )
        except requests.exceptions.RequestException as exc:
            LOG.warning("upstream_request_failed", extra={"err": str(exc)})
            raise TransportError(f"Upstream request failed: {exc}") from exc
        if not resp.ok:
            detail = _error_text(resp)
            LOG.error("upstream_error_status", extra={"status": resp.status_code, "body": detail})
            resp.close()
            raise TransportError(f"Upstream API Error: {resp.status_code} {resp.reason or ''}".strip(), status_code=resp.status_code)
        return resp

    def _get_json(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        url = f"{self.config.api_url}/{path}"
        try:
            resp = self._session.get(url, params=params, headers=self._headers(), timeout=self._timeout)
        except requests.exceptions.RequestException as exc:
            LOG.warning("upstream_request_failed", extra={"url": url, "err": str(exc)})
            raise TransportError(f"Upstream request failed: {exc}") from exc
        if not resp.ok:
            LOG.error("upstream_error_status", extra={"url": url, "status": resp.status_code, "body": _error_text(resp)})
            raise TransportError(f"Upstream API Error: {resp.status_code} {resp.reason or ''}".strip(), status_code=resp.status_code)
        return self._unwrap(resp)

    @staticmethod
    def _unwrap(resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransportError("Upstream returned a non-JSON body", status_code=502) from exc
        if not isinstance(body, dict):
            raise TransportError("Upstream returned an unexpected body", status_code=502)
        code = body.get("code", 0)
        if code not in (0, None):
            raise TransportError(f"Upstream error code {code}: {body.get('msg', '')}".strip(), status_code=502)
        return body

    def open_chat_stream(self, payload: Dict[str, Any]) -> ChatStream:
        body = _upstream_body(payload, stream=True)
        LOG.info("upstream_chat_stream", extra={"bot_id": body.get("bot_id"), "user_id": body.get("user_id")})
        return ChatStream(self._post(body, stream=True))

    def create_chat(self, payload: Dict[str, Any]) -> ChatTask:
        body = _upstream_body(payload, stream=False)
        resp = self._post(body, stream=False)
        data = self._unwrap(resp).get("data") or {}
        task = ChatTask(
            id=str(data.get("id") or ""),
            conversation_id=str(data.get("conversation_id") or ""),
            status=str(data.get("status") or "created"),
        )
        if not task.id or not task.conversation_id:
            raise TransportError("Upstream did not return a task id", status_code=502)
        LOG.info("upstream_task_created", extra={"chat_id": task.id, "status": task.status})
        return task

    def retrieve_status(self, task: ChatTask) -> str:
        body = self._get_json("retrieve", {"chat_id": task.id, "conversation_id": task.conversation_id})
        data = body.get("data") or {}
        return str(data.get("status") or "")

    def list_messages(self, task: ChatTask) -> List[Dict[str, Any]]:
        body = self._get_json("message/list", {"chat_id": task.id, "conversation_id": task.conversation_id})
        data = body.get("data")
        if not isinstance(data, list):
            raise TransportError("Upstream returned no message list", status_code=502)
        return data


class GatewayClient:
    """Client-side transport that goes through the gateway's ``/api/chat``."""

    def __init__(self, base_url: Optional[str] = None, session: Optional[requests.Session] = None, timeout: tuple = (5, 120)) -> None:
        self.base_url = (base_url or os.getenv("ADVISOR_GATEWAY_URL") or "http://127.0.0.1:8080").rstrip("/")
        self._session = session or requests.Session()
        self._timeout = timeout

    def open_chat_stream(self, payload: Dict[str, Any]) -> ChatStream:
        body = {
            "stream": True,
            "user_id": payload.get("user_id"),
            "bot_id": payload.get("bot_id") or None,
            "bot_alias": payload.get("bot_alias"),
            "additional_messages": payload.get("additional_messages"),
        }
        try:
            resp = self._session.post(f"{self.base_url}/api/chat", json=body, timeout=self._timeout, stream=True)
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Gateway unreachable: {exc}") from exc
        if not resp.ok:
            resp.close()
            raise TransportError(f"API Error {resp.status_code}", status_code=resp.status_code)
        return ChatStream(resp)

    def generate_poster(self, area: str, season: Optional[str] = None, token: Optional[str] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = self._session.post(
                f"{self.base_url}/api/generate-poster",
                json={"area": area, "season": season},
                headers=headers,
                timeout=(5, 180),
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Gateway unreachable: {exc}") from exc
        if not resp.ok:
            raise TransportError(f"API Error {resp.status_code}: {_error_text(resp)}", status_code=resp.status_code)
        return resp.json()
