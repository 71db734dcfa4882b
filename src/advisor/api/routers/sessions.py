from __future__ import annotations

import logging
import re
from dataclasses import asdict
from typing import Iterator, Optional

from fastapi import APIRouter, Header, HTTPException, Query, Response, status
from fastapi.responses import StreamingResponse

from ...domain.errors import AdvisorError, ConfigError
from ...domain.models import CardPatch, SessionListResponse, SessionPatch, SessionSummary, TurnRequest
from ...infrastructure.session_store import SessionStore, get_session_store
from ...services.bot_client import BotApiClient, ChatTransport
from ...services.bot_registry import BotRegistry
from ...services.chat_stream import ChatStreamCoordinator, StreamPolicy, TurnEvent
from ...services.streaming import encode_frame
from ..errors import to_http_exception
from .chat import SSE_HEADERS


LOG = logging.getLogger("advisor.stream")

router = APIRouter(prefix="/sessions", tags=["sessions"])

_PROFILE_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def get_chat_transport() -> ChatTransport:
    return BotApiClient()


def _store(profile_id: Optional[str]) -> SessionStore:
    profile = (profile_id or "default").strip()
    if not _PROFILE_RE.match(profile):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Profile-Id")
    return get_session_store(profile)


def _require_session(store: SessionStore, session_id: str):
    sess = store.get_session(session_id)
    if sess is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return sess


@router.get("", response_model=SessionListResponse, response_model_by_alias=True)
def list_sessions(
    filter_text: str = Query("", alias="filter", description="Substring of title or first message"),
    x_profile_id: Optional[str] = Header(None),
) -> SessionListResponse:
    store = _store(x_profile_id)
    active = store.active_session_id
    items = [
        SessionSummary(
            id=s.id,
            title=s.title,
            timestamp=s.timestamp,
            pinned=s.pinned,
            message_count=len(s.messages),
            active=s.id == active,
        )
        for s in store.list_sessions(filter_text)
    ]
    return SessionListResponse(active_session_id=active, sessions=items)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_session(x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    session_id = store.create_session()
    return _require_session(store, session_id).model_dump(by_alias=True)


@router.get("/{session_id}")
def get_session(session_id: str, x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    return _require_session(store, session_id).model_dump(by_alias=True)


@router.patch("/{session_id}")
def patch_session(session_id: str, patch: SessionPatch, x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    _require_session(store, session_id)
    store.set_session_pinned(session_id, patch.pinned)
    return _require_session(store, session_id).model_dump(by_alias=True)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_session(session_id: str, x_profile_id: Optional[str] = Header(None)) -> Response:
    store = _store(x_profile_id)
    try:
        store.delete_session(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{session_id}/activate")
def activate_session(session_id: str, x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    try:
        store.switch_active(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"activeSessionId": store.active_session_id}


def _encode_event(event: TurnEvent) -> str:
    if event.kind == "done":
        return encode_frame("done", asdict(event.data["result"]))
    if event.kind == "card":
        return encode_frame("card", {"cardId": event.data["card_id"], "html": event.data["html"]})
    return encode_frame(event.kind, dict(event.data))


@router.post("/{session_id}/turns")
def post_turn(session_id: str, req: TurnRequest, x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    _require_session(store, session_id)
    try:
        bot = BotRegistry().resolve(alias=req.bot_alias)
        transport = get_chat_transport()
    except ConfigError as exc:
        raise to_http_exception(exc)

    coordinator = ChatStreamCoordinator(store, transport, bot, policy=StreamPolicy.from_env())
    events = coordinator.stream_turn(session_id, req.content, user_id=req.user_id)
    # Pull the first event here so a busy session or an early failure is an HTTP error.
    try:
        first = next(events)
    except StopIteration:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Turn produced no events")
    except AdvisorError as exc:
        raise to_http_exception(exc)

    def event_stream() -> Iterator[str]:
        yield _encode_event(first)
        try:
            for event in events:
                yield _encode_event(event)
        except AdvisorError as exc:
            # The error frame has already been sent; end the stream.
            LOG.warning("turn_stream_ended_with_error", extra={"session_id": session_id, "err": str(exc)})

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.patch("/{session_id}/cards/{card_id}")
def patch_card(session_id: str, card_id: str, patch: CardPatch, x_profile_id: Optional[str] = Header(None)):
    store = _store(x_profile_id)
    sess = _require_session(store, session_id)
    if not any(c.id == card_id for c in sess.cards):
        raise HTTPException(status_code=404, detail="Card not found")
    if patch.pinned is not None:
        store.set_card_pinned(card_id, patch.pinned)
    if patch.collapsed is not None:
        store.set_card_collapsed(card_id, patch.collapsed)
    card = store.get_card(card_id)
    return card.model_dump(by_alias=True) if card else {}


@router.delete("/{session_id}/cards/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_card(session_id: str, card_id: str, x_profile_id: Optional[str] = Header(None)) -> Response:
    store = _store(x_profile_id)
    sess = _require_session(store, session_id)
    if not any(c.id == card_id for c in sess.cards):
        raise HTTPException(status_code=404, detail="Card not found")
    store.remove_card(card_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
