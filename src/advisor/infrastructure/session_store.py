from __future__ import annotations

import logging
import time
import uuid
import warnings
from threading import RLock
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..domain.errors import PersistenceWarning
from ..domain.models import Card, Message, Role, Session, SessionDocument
from ..services.summary import extract_topic
from .record_store import RecordStore, get_record_store


LOG = logging.getLogger("advisor.store")

DEFAULT_TITLE = "新会话"


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionStore:
    """Conversation sessions, messages and insight cards for one profile.

    The whole profile is one document (``{sessions, activeSessionId}``) that
    is rewritten on every mutation. Mutations are serialized with an RLock.
    Sessions are kept most-recent-first; messages are appended; cards are
    prepended.
    """

    def __init__(
        self,
        records: RecordStore,
        profile_id: str = "default",
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._records = records
        self.profile_id = profile_id
        self._clock = clock or _now_ms
        self._lock = RLock()
        self._sessions: List[Session] = []
        self._active_id: Optional[str] = None
        self.last_persist_error: Optional[str] = None
        self._load()

    @property
    def record_key(self) -> str:
        return f"sessions_{self.profile_id}"

    # ------------------------------------------------------------------
    # Load / persist
    # ------------------------------------------------------------------
    def _load(self) -> None:
        with self._lock:
            doc: Optional[SessionDocument] = None
            try:
                raw = self._records.load(self.record_key)
                if raw:
                    doc = SessionDocument.model_validate(raw)
            except (ValueError, ValidationError) as exc:
                LOG.warning("session_document_unreadable", extra={"profile": self.profile_id, "err": str(exc)})
                doc = None
            except OSError as exc:
                LOG.warning("session_document_read_failed", extra={"profile": self.profile_id, "err": str(exc)})
                warnings.warn(PersistenceWarning(f"Session store read failed: {exc}"), stacklevel=3)
                doc = None

            if doc is None or not doc.sessions:
                self._sessions = []
                self._active_id = None
                self.create_session()
                return

            self._sessions = list(doc.sessions)
            self._active_id = doc.active_session_id
            before = len(self._sessions)
            self._sessions = [s for s in self._sessions if s.messages or s.id == self._active_id]
            pruned = before - len(self._sessions)
            if pruned:
                LOG.info("pruned_empty_sessions", extra={"profile": self.profile_id, "pruned": pruned})
            if not self._heal_active() and pruned:
                self._persist()

    def _heal_active(self) -> bool:
        """Point the active id at an existing session. True when it had to write."""
        if self._active_id and self._find_session(self._active_id) is not None:
            return False
        if self._sessions:
            self._active_id = self._sessions[0].id
            self._persist()
        else:
            self.create_session()
        return True

    def _document(self) -> SessionDocument:
        return SessionDocument(sessions=self._sessions, active_session_id=self._active_id)

    def _persist(self) -> None:
        try:
            self._records.save(self.record_key, self._document().model_dump(by_alias=True))
            self.last_persist_error = None
        except Exception as exc:
            # Keep the in-memory mutation; the caller's operation still succeeds.
            self.last_persist_error = str(exc)
            LOG.warning("session_persist_failed", extra={"profile": self.profile_id, "err": str(exc)})
            warnings.warn(PersistenceWarning(f"Session store write failed: {exc}"), stacklevel=3)

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    def _find_session(self, session_id: str) -> Optional[Session]:
        for s in self._sessions:
            if s.id == session_id:
                return s
        return None

    def _require_session(self, session_id: str) -> Session:
        sess = self._find_session(session_id)
        if sess is None:
            raise KeyError("Session not found")
        return sess

    def _find_message(self, message_id: str) -> Optional[Tuple[Session, Message]]:
        for s in self._sessions:
            for m in s.messages:
                if m.id == message_id:
                    return s, m
        return None

    def _find_card(self, card_id: str) -> Optional[Tuple[Session, Card]]:
        for s in self._sessions:
            for c in s.cards:
                if c.id == card_id:
                    return s, c
        return None

    def _require_card(self, card_id: str) -> Tuple[Session, Card]:
        found = self._find_card(card_id)
        if found is None:
            raise KeyError("Card not found")
        return found

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    @property
    def active_session_id(self) -> str:
        with self._lock:
            if self._active_id is None:
                self._heal_active()
            return self._active_id

    def active_session(self) -> Session:
        with self._lock:
            return self._require_session(self.active_session_id).model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            sess = self._find_session(session_id)
            return sess.model_copy(deep=True) if sess else None

    def create_session(self) -> str:
        with self._lock:
            now = self._clock()
            sess = Session(
                id=f"session_{uuid.uuid4().hex}",
                title=DEFAULT_TITLE,
                created_at=now,
                timestamp=now,
            )
            self._sessions.insert(0, sess)
            self._active_id = sess.id
            self._persist()
            return sess.id

    def list_sessions(self, filter_text: str = "") -> List[Session]:
        with self._lock:
            needle = filter_text or ""
            out = [
                s.model_copy(deep=True)
                for s in self._sessions
                if needle in s.title or (s.messages and needle in s.messages[0].content)
            ]
            # Stable sort keeps list order for equal timestamps.
            return sorted(out, key=lambda s: s.timestamp, reverse=True)

    def switch_active(self, session_id: str) -> None:
        with self._lock:
            if self._active_id == session_id:
                return
            self._require_session(session_id)
            self._active_id = session_id
            self._persist()

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._require_session(session_id)
            self._sessions = [s for s in self._sessions if s.id != session_id]
            if self._active_id == session_id:
                if self._sessions:
                    self._active_id = self._sessions[0].id
                else:
                    self.create_session()
                    return
            self._persist()

    def set_session_pinned(self, session_id: str, pinned: bool) -> None:
        with self._lock:
            self._require_session(session_id).pinned = pinned
            self._persist()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    def append_message(
        self,
        session_id: str,
        role: Role,
        content: str,
        is_markup: bool = False,
        pending: bool = False,
    ) -> str:
        with self._lock:
            sess = self._require_session(session_id)
            now = self._clock()
            first_user_message = role == "user" and not any(m.role == "user" for m in sess.messages)
            msg = Message(
                id=f"msg-{uuid.uuid4().hex}",
                role=role,
                content=content,
                is_markup=is_markup,
                pending=pending,
                timestamp=now,
            )
            sess.messages.append(msg)
            sess.timestamp = now
            if first_user_message:
                sess.title = extract_topic(content)
            self._persist()
            return msg.id

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            found = self._find_message(message_id)
            return found[1].model_copy() if found else None

    def finalize_message(self, message_id: str, content: str, is_markup: bool = True) -> Message:
        """Replace a pending placeholder's content, exactly once."""
        with self._lock:
            found = self._find_message(message_id)
            if found is None:
                raise KeyError("Message not found")
            sess, msg = found
            if not msg.pending:
                raise ValueError("Message already finalized")
            msg.content = content
            msg.is_markup = is_markup
            msg.pending = False
            now = self._clock()
            msg.timestamp = now
            sess.timestamp = now
            self._persist()
            return msg.model_copy()

    # ------------------------------------------------------------------
    # Cards
    # ------------------------------------------------------------------
    def add_card(self, session_id: str, topic: str, content: str, target_message_id: str) -> str:
        with self._lock:
            sess = self._require_session(session_id)
            card = Card(
                id=f"card-{uuid.uuid4().hex}",
                topic=topic,
                content=content,
                target_message_id=target_message_id,
                timestamp=self._clock(),
            )
            sess.cards.insert(0, card)
            self._persist()
            return card.id

    def update_card(self, card_id: str, content: str) -> None:
        with self._lock:
            _, card = self._require_card(card_id)
            card.content = content
            self._persist()

    def set_card_pinned(self, card_id: str, pinned: bool) -> None:
        with self._lock:
            _, card = self._require_card(card_id)
            card.pinned = pinned
            self._persist()

    def set_card_collapsed(self, card_id: str, collapsed: bool) -> None:
        with self._lock:
            _, card = self._require_card(card_id)
            card.collapsed = collapsed
            self._persist()

    def remove_card(self, card_id: str) -> None:
        with self._lock:
            sess, _ = self._require_card(card_id)
            sess.cards = [c for c in sess.cards if c.id != card_id]
            self._persist()

    def get_card(self, card_id: str) -> Optional[Card]:
        with self._lock:
            found = self._find_card(card_id)
            return found[1].model_copy() if found else None

    def cards_chronological(self, session_id: str) -> List[Card]:
        with self._lock:
            sess = self._require_session(session_id)
            return [c.model_copy() for c in reversed(sess.cards)]

    def message_for_card(self, card_id: str) -> Optional[Message]:
        """Follow a card's back-reference; None when either side is gone."""
        with self._lock:
            found = self._find_card(card_id)
            if found is None:
                return None
            sess, card = found
            for m in sess.messages:
                if m.id == card.target_message_id:
                    return m.model_copy()
            return None


_stores: Dict[str, SessionStore] = {}
_stores_lock = RLock()


def get_session_store(profile_id: str = "default") -> SessionStore:
    with _stores_lock:
        store = _stores.get(profile_id)
        if store is None:
            store = SessionStore(get_record_store(), profile_id=profile_id)
            _stores[profile_id] = store
        return store


def reset_session_stores() -> None:
    with _stores_lock:
        _stores.clear()
