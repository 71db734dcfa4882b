"""Drives one chat turn from upstream SSE to session state.

The coordinator owns the answer accumulator; render callbacks only ever see a
projection of it (the full text rendered to markup), never a diff. The store
receives exactly one ``finalize_message`` per turn, whether the stream
completes, fails or is abandoned by the consumer.
"""

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional, Set, Tuple

from ..domain.errors import ProtocolError, TransportError, TurnInProgressError
from ..infrastructure.session_store import SessionStore
from ..observability.metrics import CHAT_TURNS
from .bot_client import ChatTransport, build_chat_payload
from .bot_registry import ResolvedBot
from .mock_replies import mock_reply
from .streaming import SseFrame, iter_frames
from .summary import extract_topic, render_markdown, summarize


LOG = logging.getLogger("advisor.stream")

DELTA_EVENT = "conversation.message.delta"
MESSAGE_COMPLETED_EVENT = "conversation.message.completed"
CHAT_COMPLETED_EVENT = "conversation.chat.completed"
ANSWER_TYPE = "answer"

THINKING_PLACEHOLDER = '<span class="thinking">思考中...</span>'
CARD_LOADING = '<div class="brand-loader">正在基于报告生成定制方案...</div>'
CARD_FAILED = '<div class="card-error">生成失败</div>'


class TransportErrorPolicy(str, Enum):
    FALLBACK = "fallback"
    PROPAGATE = "propagate"


@dataclass
class StreamPolicy:
    on_transport_error: TransportErrorPolicy = TransportErrorPolicy.FALLBACK
    card_refresh_every: int = 50

    @staticmethod
    def from_env() -> "StreamPolicy":
        raw = (os.getenv("ADVISOR_CHAT_ON_TRANSPORT_ERROR") or "fallback").strip().lower()
        try:
            mode = TransportErrorPolicy(raw)
        except ValueError:
            LOG.warning("unknown_transport_error_policy", extra={"value": raw})
            mode = TransportErrorPolicy.FALLBACK
        return StreamPolicy(on_transport_error=mode)


@dataclass
class TurnResult:
    session_id: str
    user_message_id: str
    assistant_message_id: str
    card_id: str
    content: str
    summary: str
    completed: bool
    fallback_used: bool = False
    error: Optional[str] = None


@dataclass
class TurnEvent:
    kind: str  # render | card | done | error
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Turn:
    session_id: str
    user_text: str
    user_message_id: str
    reply_id: str
    card_id: str
    accumulated: str = ""
    last_bucket: int = 0
    finalized: bool = False


_INFLIGHT: Set[Tuple[int, str]] = set()
_INFLIGHT_LOCK = Lock()


def _decode_payload(frame: SseFrame) -> Dict[str, Any]:
    try:
        parsed = frame.json()
    except ValueError as exc:
        raise ProtocolError(f"Malformed frame payload: {frame.data[:80]}") from exc
    if not isinstance(parsed, dict):
        raise ProtocolError("Frame payload is not an object")
    return parsed


def is_completion(event: Optional[str], payload: Dict[str, Any]) -> bool:
    if event == CHAT_COMPLETED_EVENT:
        return True
    if event == MESSAGE_COMPLETED_EVENT:
        # Tool calls and follow-up suggestions complete as messages too.
        return payload.get("type") in (None, ANSWER_TYPE)
    return False


def is_answer_delta(event: Optional[str], payload: Dict[str, Any]) -> bool:
    kind = payload.get("type")
    if kind is not None and kind != ANSWER_TYPE:
        return False
    return event == DELTA_EVENT or kind == ANSWER_TYPE


class ChatStreamCoordinator:
    def __init__(
        self,
        store: SessionStore,
        transport: ChatTransport,
        bot: ResolvedBot,
        policy: Optional[StreamPolicy] = None,
        render: Callable[[str], str] = render_markdown,
    ) -> None:
        self._store = store
        self._transport = transport
        self._bot = bot
        self.policy = policy or StreamPolicy.from_env()
        self._render = render

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def stream_turn(self, session_id: str, user_text: str, user_id: Optional[str] = None) -> Iterator[TurnEvent]:
        key = (id(self._store), session_id)
        with _INFLIGHT_LOCK:
            if key in _INFLIGHT:
                raise TurnInProgressError(f"A turn is already streaming for session {session_id}")
            _INFLIGHT.add(key)
        try:
            yield from self._run(session_id, user_text, user_id)
        finally:
            with _INFLIGHT_LOCK:
                _INFLIGHT.discard(key)

    def run_turn(
        self,
        session_id: str,
        user_text: str,
        *,
        on_render: Optional[Callable[[str], None]] = None,
        on_done: Optional[Callable[[TurnResult], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        on_card: Optional[Callable[[str, str], None]] = None,
        user_id: Optional[str] = None,
    ) -> Optional[TurnResult]:
        result: Optional[TurnResult] = None
        for event in self.stream_turn(session_id, user_text, user_id=user_id):
            if event.kind == "render" and on_render:
                on_render(event.data["html"])
            elif event.kind == "card" and on_card:
                on_card(event.data["card_id"], event.data["html"])
            elif event.kind == "error" and on_error:
                on_error(event.data["reason"])
            elif event.kind == "done":
                result = event.data["result"]
                if on_done:
                    on_done(result)
        return result

    # ------------------------------------------------------------------
    # Turn internals
    # ------------------------------------------------------------------
    def _open_turn(self, session_id: str, user_text: str) -> _Turn:
        store = self._store
        user_msg_id = store.append_message(session_id, "user", user_text)
        reply_id = store.append_message(session_id, "assistant", THINKING_PLACEHOLDER, is_markup=True, pending=True)
        card_id = store.add_card(session_id, extract_topic(user_text), CARD_LOADING, user_msg_id)
        return _Turn(
            session_id=session_id,
            user_text=user_text,
            user_message_id=user_msg_id,
            reply_id=reply_id,
            card_id=card_id,
        )

    def _run(self, session_id: str, user_text: str, user_id: Optional[str]) -> Iterator[TurnEvent]:
        turn = self._open_turn(session_id, user_text)
        payload = build_chat_payload(self._bot.bot_id, user_id, message=user_text, stream=True)
        if self._bot.alias:
            payload["bot_alias"] = self._bot.alias
        LOG.info("chat_turn_started", extra={"session_id": session_id, "bot_kind": self._bot.kind.value})
        try:
            stream = self._transport.open_chat_stream(payload)
            try:
                for frame in iter_frames(stream):
                    try:
                        parsed = _decode_payload(frame)
                    except ProtocolError as exc:
                        LOG.warning("sse_frame_skipped", extra={"err": str(exc)})
                        continue
                    event = frame.event or parsed.get("event")
                    if is_completion(event, parsed):
                        if not turn.accumulated and parsed.get("type") == ANSWER_TYPE:
                            turn.accumulated = str(parsed.get("content") or "")
                        yield from self._complete(turn)
                        return
                    if is_answer_delta(event, parsed):
                        yield from self._on_delta(turn, parsed.get("content"))
            finally:
                close = getattr(stream, "close", None)
                if callable(close):
                    close()
            raise TransportError("Stream closed before completion")
        except TransportError as exc:
            yield from self._fail(turn, exc)
        except GeneratorExit:
            # Consumer went away mid-stream; do not leave the placeholder pending.
            self._abandon(turn, "Turn abandoned by client")
            raise
        except Exception as exc:
            LOG.exception("chat_turn_crashed", extra={"session_id": session_id})
            self._abandon(turn, str(exc))
            raise

    def _on_delta(self, turn: _Turn, piece: Any) -> Iterator[TurnEvent]:
        if not isinstance(piece, str) or not piece:
            return
        turn.accumulated += piece
        yield TurnEvent("render", {"html": self._render(turn.accumulated)})
        every = max(1, self.policy.card_refresh_every)
        bucket = len(turn.accumulated) // every
        if bucket > turn.last_bucket:
            turn.last_bucket = bucket
            summary = summarize(turn.accumulated)
            self._store.update_card(turn.card_id, summary)
            yield TurnEvent("card", {"card_id": turn.card_id, "html": summary})

    def _complete(self, turn: _Turn) -> Iterator[TurnEvent]:
        summary = summarize(turn.accumulated)
        self._store.finalize_message(turn.reply_id, turn.accumulated, is_markup=True)
        self._store.update_card(turn.card_id, summary)
        turn.finalized = True
        CHAT_TURNS.labels(outcome="completed").inc()
        LOG.info("chat_turn_completed", extra={"session_id": turn.session_id, "chars": len(turn.accumulated)})
        result = self._result(turn, turn.accumulated, summary, completed=True)
        yield TurnEvent("card", {"card_id": turn.card_id, "html": summary})
        yield TurnEvent("done", {"result": result})

    def _fail(self, turn: _Turn, exc: TransportError) -> Iterator[TurnEvent]:
        reason = str(exc)
        LOG.warning("chat_turn_failed", extra={"session_id": turn.session_id, "err": reason})

        fallback_used = False
        propagate = self.policy.on_transport_error == TransportErrorPolicy.PROPAGATE
        if turn.accumulated:
            content = f"{turn.accumulated}\n\n> 连接中断: {reason}"
            is_markup = True
            summary = summarize(turn.accumulated)
            outcome = "partial"
        elif not propagate:
            content = mock_reply(self._bot.kind, turn.user_text)
            is_markup = True
            summary = summarize(content)
            fallback_used = True
            outcome = "fallback"
        else:
            content = f"[Error] {reason}"
            is_markup = False
            summary = CARD_FAILED
            outcome = "failed"

        self._store.finalize_message(turn.reply_id, content, is_markup=is_markup)
        self._store.update_card(turn.card_id, summary)
        turn.finalized = True
        CHAT_TURNS.labels(outcome=outcome).inc()

        rendered = self._render(content) if is_markup else f'<span class="error">{html.escape(content)}</span>'
        yield TurnEvent("error", {"reason": reason})
        yield TurnEvent("render", {"html": rendered})
        yield TurnEvent("card", {"card_id": turn.card_id, "html": summary})
        if propagate:
            raise exc
        result = self._result(turn, content, summary, completed=False, fallback_used=fallback_used, error=reason)
        yield TurnEvent("done", {"result": result})

    def _abandon(self, turn: _Turn, reason: str) -> None:
        if turn.finalized:
            return
        content = f"{turn.accumulated}\n\n> 连接中断: {reason}" if turn.accumulated else f"[Error] {reason}"
        try:
            self._store.finalize_message(turn.reply_id, content, is_markup=bool(turn.accumulated))
            self._store.update_card(turn.card_id, summarize(turn.accumulated) if turn.accumulated else CARD_FAILED)
        except (KeyError, ValueError):
            LOG.warning("chat_turn_abandon_skipped", extra={"session_id": turn.session_id})
        turn.finalized = True
        CHAT_TURNS.labels(outcome="abandoned").inc()

    def _result(
        self,
        turn: _Turn,
        content: str,
        summary: str,
        completed: bool,
        fallback_used: bool = False,
        error: Optional[str] = None,
    ) -> TurnResult:
        return TurnResult(
            session_id=turn.session_id,
            user_message_id=turn.user_message_id,
            assistant_message_id=turn.reply_id,
            card_id=turn.card_id,
            content=content,
            summary=summary,
            completed=completed,
            fallback_used=fallback_used,
            error=error,
        )
