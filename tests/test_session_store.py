import threading
import time
import warnings

import pytest

from src.advisor.domain.errors import PersistenceWarning
from src.advisor.infrastructure import record_store
from src.advisor.infrastructure.record_store import InMemoryRecordStore
from src.advisor.infrastructure.session_store import DEFAULT_TITLE, SessionStore, get_session_store


class _Clock:
    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


def _store(records=None, clock=None) -> SessionStore:
    return SessionStore(records or InMemoryRecordStore(), profile_id="p1", clock=clock or _Clock())


def test_fresh_store_has_one_active_empty_session():
    store = _store()
    sessions = store.list_sessions()
    assert len(sessions) == 1
    assert sessions[0].id == store.active_session_id
    assert sessions[0].title == DEFAULT_TITLE


def test_first_user_message_sets_title():
    store = _store()
    sid = store.active_session_id
    store.append_message(sid, "user", "最近总是失眠，怎么办？")
    store.append_message(sid, "user", "另外一个问题")
    assert store.get_session(sid).title == "最近总是失眠"


def test_load_prunes_empty_non_active_sessions():
    records = InMemoryRecordStore()
    store = _store(records)
    kept = store.active_session_id
    store.append_message(kept, "user", "有内容")
    store.create_session()  # empty, not active after the next line
    active = store.create_session()

    reloaded = SessionStore(records, profile_id="p1")
    ids = [s.id for s in reloaded.list_sessions()]
    assert set(ids) == {kept, active}
    assert reloaded.active_session_id == active
    # the prune is written back, not only applied in memory
    assert {s["id"] for s in records.load("sessions_p1")["sessions"]} == {kept, active}


def test_missing_active_id_is_healed():
    records = InMemoryRecordStore()
    store = _store(records)
    sid = store.active_session_id
    store.append_message(sid, "user", "你好")
    doc = records.load("sessions_p1")
    doc["activeSessionId"] = "session_gone"
    records.save("sessions_p1", doc)

    reloaded = SessionStore(records, profile_id="p1")
    assert reloaded.active_session_id == sid


def test_list_sessions_filters_and_orders_by_recency():
    clock = _Clock()
    store = _store(clock=clock)
    first = store.active_session_id
    store.append_message(first, "user", "脾胃虚弱怎么调理")
    second = store.create_session()
    store.append_message(second, "user", "失眠多梦")
    store.append_message(first, "assistant", "先说饮食")

    assert [s.id for s in store.list_sessions()] == [first, second]
    assert [s.id for s in store.list_sessions("失眠")] == [second]
    assert store.list_sessions("不存在") == []


def test_switch_active_unknown_raises_and_same_is_noop():
    store = _store()
    sid = store.active_session_id
    store.switch_active(sid)
    assert store.active_session_id == sid
    with pytest.raises(KeyError):
        store.switch_active("session_nope")



def test_pinned_flag_survives_reload():
    records = InMemoryRecordStore()
    store = _store(records)
    sid = store.active_session_id
    store.append_message(sid, "user", "置顶")
    store.set_session_pinned(sid, True)
    assert _store(records).get_session(sid).pinned is True
    with pytest.raises(KeyError):
        store.set_session_pinned("session_nope", True)

def test_delete_active_session_reselects_or_creates():
    store = _store()
    only = store.active_session_id
    store.delete_session(only)
    assert store.active_session_id != only
    assert len(store.list_sessions()) == 1

    other = store.active_session_id
    store.append_message(other, "user", "保留")
    newest = store.create_session()
    store.delete_session(newest)
    assert store.active_session_id == other


def test_finalize_message_only_once():
    store = _store()
    sid = store.active_session_id
    mid = store.append_message(sid, "assistant", "思考中...", is_markup=True, pending=True)
    msg = store.finalize_message(mid, "## 完成")
    assert msg.content == "## 完成"
    assert msg.pending is False
    with pytest.raises(ValueError):
        store.finalize_message(mid, "again")
    with pytest.raises(KeyError):
        store.finalize_message("msg-missing", "x")


def test_cards_are_prepended_and_link_back():
    store = _store()
    sid = store.active_session_id
    m1 = store.append_message(sid, "user", "问题一")
    c1 = store.add_card(sid, "问题一", "<p>a</p>", m1)
    m2 = store.append_message(sid, "user", "问题二")
    c2 = store.add_card(sid, "问题二", "<p>b</p>", m2)

    sess = store.get_session(sid)
    assert [c.id for c in sess.cards] == [c2, c1]
    assert [c.id for c in store.cards_chronological(sid)] == [c1, c2]
    assert store.message_for_card(c1).id == m1

    store.update_card(c1, "<p>new</p>")
    store.set_card_pinned(c1, True)
    store.set_card_collapsed(c1, True)
    card = store.get_card(c1)
    assert (card.content, card.pinned, card.collapsed) == ("<p>new</p>", True, True)

    store.remove_card(c2)
    assert store.get_card(c2) is None
    assert store.message_for_card(c2) is None


def test_persisted_document_uses_camel_case_keys():
    records = InMemoryRecordStore()
    store = _store(records)
    sid = store.active_session_id
    mid = store.append_message(sid, "user", "你好")
    store.add_card(sid, "你好", "x", mid)
    doc = records.load("sessions_p1")
    assert doc["activeSessionId"] == sid
    sess = doc["sessions"][0]
    assert "createdAt" in sess
    assert sess["messages"][0]["isMarkup"] is False
    assert sess["cards"][0]["targetMessageId"] == mid


class _BrokenRecords(InMemoryRecordStore):
    def save(self, key, document):
        raise OSError("disk full")


def test_write_failure_keeps_state_in_memory_and_warns():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        store = SessionStore(_BrokenRecords(), profile_id="p1")
        sid = store.active_session_id
        store.append_message(sid, "user", "仍然可用")
    assert store.get_session(sid).messages[0].content == "仍然可用"
    assert store.last_persist_error == "disk full"
    assert any(issubclass(w.category, PersistenceWarning) for w in caught)


class _UnreadableRecords(InMemoryRecordStore):
    def load(self, key):
        raise PermissionError("permission denied")


def test_read_failure_starts_fresh_document_and_warns():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        store = SessionStore(_UnreadableRecords(), profile_id="p1")
    assert len(store.list_sessions()) == 1
    assert store.get_session(store.active_session_id).messages == []
    assert any(issubclass(w.category, PersistenceWarning) for w in caught)


def test_lost_active_id_heals_to_most_recent_session():
    store = _store()
    first = store.active_session_id
    store._active_id = None
    assert store.active_session_id == first


class _SlowRecords(InMemoryRecordStore):
    def load(self, key):
        doc = super().load(key)
        time.sleep(0.01)
        return doc

    def save(self, key, document):
        time.sleep(0.01)
        super().save(key, document)


def test_concurrent_appends_through_factory_are_all_persisted(monkeypatch):
    records = _SlowRecords()
    monkeypatch.setattr(record_store, "_memory_store", records)
    sid = get_session_store("shared").active_session_id
    barrier = threading.Barrier(6)

    def _append(i):
        barrier.wait()
        get_session_store("shared").append_message(sid, "user", f"消息{i}")

    threads = [threading.Thread(target=_append, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    reloaded = SessionStore(records, profile_id="shared")
    contents = sorted(m.content for m in reloaded.get_session(sid).messages)
    assert contents == sorted(f"消息{i}" for i in range(6))
