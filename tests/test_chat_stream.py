import json

import pytest

from src.advisor.domain.errors import TransportError, TurnInProgressError
from src.advisor.infrastructure.record_store import InMemoryRecordStore
from src.advisor.infrastructure.session_store import SessionStore
from src.advisor.services.bot_registry import BotKind, ResolvedBot
from src.advisor.services.chat_stream import (
    CARD_LOADING,
    ChatStreamCoordinator,
    StreamPolicy,
    TransportErrorPolicy,
)
from src.advisor.services.mock_replies import mock_reply


DELTA = "conversation.message.delta"
DONE = "conversation.message.completed"


def _delta(sse, text):
    return sse(DELTA, json.dumps({"content": text, "type": "answer"}, ensure_ascii=False))


def _coordinator(transport, policy=None, kind=BotKind.ADVISOR, alias=None):
    store = SessionStore(InMemoryRecordStore(), profile_id="t")
    bot = ResolvedBot(bot_id="bot-1", kind=kind, alias=alias)
    coord = ChatStreamCoordinator(store, transport, bot, policy=policy or StreamPolicy(), render=lambda t: t)
    return store, coord


def test_deltas_then_completed_finalize_once(fake_transport, sse_frame):
    transport = fake_transport([_delta(sse_frame, "A"), _delta(sse_frame, "B"), _delta(sse_frame, "C"), sse_frame(DONE, "{}")])
    store, coord = _coordinator(transport)
    sid = store.active_session_id
    renders, done = [], []

    result = coord.run_turn(sid, "你好", on_render=renders.append, on_done=done.append)

    assert renders == ["A", "AB", "ABC"]
    assert len(done) == 1 and result is done[0]
    assert result.completed and result.content == "ABC"
    messages = store.get_session(sid).messages
    assert [m.role for m in messages] == ["user", "assistant"]
    assert messages[1].content == "ABC"
    assert messages[1].pending is False
    card = store.get_card(result.card_id)
    assert card.target_message_id == result.user_message_id
    assert card.content == "ABC"
    assert transport.streams[0].closed


def test_frames_after_completion_are_ignored(fake_transport, sse_frame):
    transport = fake_transport([
        _delta(sse_frame, "答"),
        sse_frame(DONE, '{"type":"answer"}'),
        _delta(sse_frame, "多余"),
        sse_frame("conversation.chat.completed", "{}"),
    ])
    store, coord = _coordinator(transport)
    done = []
    result = coord.run_turn(store.active_session_id, "问", on_done=done.append)
    assert result.content == "答"
    assert len(done) == 1


def test_non_answer_payloads_and_malformed_frames_are_skipped(fake_transport, sse_frame):
    transport = fake_transport([
        sse_frame(DELTA, '{"content":"调用工具","type":"function_call"}'),
        sse_frame(DELTA, "{not json"),
        sse_frame(DONE, '{"type":"verbose","content":"x"}'),
        _delta(sse_frame, "正文"),
        sse_frame("conversation.chat.completed", "{}"),
    ])
    store, coord = _coordinator(transport)
    result = coord.run_turn(store.active_session_id, "问")
    assert result.completed
    assert result.content == "正文"


def test_answer_type_without_event_line_counts_as_delta(fake_transport, sse_frame):
    transport = fake_transport([
        sse_frame(None, '{"content":"无事件名","type":"answer"}'),
        sse_frame("conversation.chat.completed", "{}"),
    ])
    store, coord = _coordinator(transport)
    assert coord.run_turn(store.active_session_id, "问").content == "无事件名"


def test_card_refreshes_on_each_threshold_crossing(fake_transport, sse_frame):
    chunks = [_delta(sse_frame, "字" * 30) for _ in range(4)] + [sse_frame(DONE, "{}")]
    store, coord = _coordinator(fake_transport(chunks))
    cards = []
    coord.run_turn(store.active_session_id, "问", on_card=lambda cid, html: cards.append(len(html)))
    # crossings at 60 and 120 chars, then the final summary
    assert len(cards) == 3


def test_payload_carries_alias_and_user_message(fake_transport, sse_frame):
    transport = fake_transport([sse_frame(DONE, "{}")])
    store, coord = _coordinator(transport, kind=BotKind.RECIPE, alias="recipe")
    coord.run_turn(store.active_session_id, "陈皮红豆沙", user_id="u-9")
    payload = transport.payloads[0]
    assert payload["bot_id"] == "bot-1"
    assert payload["bot_alias"] == "recipe"
    assert payload["user_id"] == "u-9"
    assert payload["additional_messages"][0]["content"] == "陈皮红豆沙"


def test_transport_failure_before_text_uses_mock_reply(fake_transport):
    transport = fake_transport(open_error=TransportError("Upstream API Error: 503", status_code=503))
    store, coord = _coordinator(transport, kind=BotKind.ANALYSIS)
    errors, done = [], []
    result = coord.run_turn(store.active_session_id, "我是什么体质", on_error=errors.append, on_done=done.append)

    assert errors == ["Upstream API Error: 503"]
    assert result.fallback_used and not result.completed
    assert result.content == mock_reply(BotKind.ANALYSIS, "我是什么体质")
    reply = store.get_message(result.assistant_message_id)
    assert reply.pending is False and reply.content == result.content
    assert store.get_card(result.card_id).content != CARD_LOADING


def test_stream_closed_early_keeps_partial_text(fake_transport, sse_frame):
    store, coord = _coordinator(fake_transport([_delta(sse_frame, "部分回答")]))
    errors = []
    result = coord.run_turn(store.active_session_id, "问", on_error=errors.append)
    assert errors and "closed before completion" in errors[0]
    assert result.content.startswith("部分回答")
    assert not result.fallback_used


def test_midstream_failure_after_text_keeps_partial(fake_transport, sse_frame):
    transport = fake_transport([_delta(sse_frame, "前半")], fail_with=TransportError("Stream interrupted"))
    store, coord = _coordinator(transport)
    result = coord.run_turn(store.active_session_id, "问")
    assert result.content.startswith("前半")
    assert "Stream interrupted" in result.content
    assert transport.streams[0].closed


def test_propagate_policy_finalizes_then_raises(fake_transport):
    transport = fake_transport(open_error=TransportError("boom", status_code=502))
    policy = StreamPolicy(on_transport_error=TransportErrorPolicy.PROPAGATE)
    store, coord = _coordinator(transport, policy=policy)
    sid = store.active_session_id
    with pytest.raises(TransportError):
        coord.run_turn(sid, "问")
    reply = store.get_session(sid).messages[-1]
    assert reply.pending is False
    assert reply.content == "[Error] boom"
    assert reply.is_markup is False


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("ADVISOR_CHAT_ON_TRANSPORT_ERROR", "propagate")
    assert StreamPolicy.from_env().on_transport_error == TransportErrorPolicy.PROPAGATE
    monkeypatch.setenv("ADVISOR_CHAT_ON_TRANSPORT_ERROR", "bogus")
    assert StreamPolicy.from_env().on_transport_error == TransportErrorPolicy.FALLBACK


def test_second_turn_on_same_session_is_rejected_while_streaming(fake_transport, sse_frame):
    transport = fake_transport([_delta(sse_frame, "A"), sse_frame(DONE, "{}")])
    store, coord = _coordinator(transport)
    sid = store.active_session_id
    first = coord.stream_turn(sid, "一")
    next(first)
    with pytest.raises(TurnInProgressError):
        next(coord.stream_turn(sid, "二"))
    list(first)
    # released once the first turn is over
    assert coord.run_turn(sid, "三").completed


def test_abandoned_turn_does_not_leave_placeholder_pending(fake_transport, sse_frame):
    transport = fake_transport([_delta(sse_frame, "A"), _delta(sse_frame, "B"), sse_frame(DONE, "{}")])
    store, coord = _coordinator(transport)
    sid = store.active_session_id
    events = coord.stream_turn(sid, "问")
    next(events)
    events.close()
    reply = store.get_session(sid).messages[-1]
    assert reply.pending is False
    assert reply.content.startswith("A")
