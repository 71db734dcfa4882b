from __future__ import annotations

from threading import Lock, RLock
from typing import Any, List, Optional

from pydantic import ValidationError

from ..domain.models import PosterHistoryEntry, UserRecord
from .record_store import RecordStore, get_record_store


POSTER_HISTORY_LIMIT = 20


class UserStore:
    """User records as far as the gateway needs them (poster history).

    Registration and credentials live with the external auth service; a
    record is created here on first write for an authenticated user id.
    """

    RECORD_KEY = "users"

    def __init__(self, records: RecordStore) -> None:
        self._records = records
        self._lock = RLock()

    @staticmethod
    def _parse(raw: Any) -> List[UserRecord]:
        raw = raw or {}
        out: List[UserRecord] = []
        for item in raw.get("users", []) if isinstance(raw, dict) else []:
            try:
                out.append(UserRecord.model_validate(item))
            except ValidationError:
                continue
        return out

    def _load(self) -> List[UserRecord]:
        return self._parse(self._records.load(self.RECORD_KEY))

    def get(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self._load():
                if user.id == user_id:
                    return user
            return None

    def add_poster(
        self,
        user_id: str,
        entry: PosterHistoryEntry,
        email: Optional[str] = None,
        nick: Optional[str] = None,
    ) -> List[PosterHistoryEntry]:
        """Prepend to the user's history, keeping the newest 20."""
        history: List[PosterHistoryEntry] = []

        def _prepend(raw: Any) -> dict:
            users = self._parse(raw)
            user = next((u for u in users if u.id == user_id), None)
            if user is None:
                user = UserRecord(id=user_id, email=email, nick=nick)
                users.append(user)
            user.poster_history.insert(0, entry)
            del user.poster_history[POSTER_HISTORY_LIMIT:]
            history[:] = user.poster_history
            return {"users": [u.model_dump(by_alias=True) for u in users]}

        with self._lock:
            self._records.update(self.RECORD_KEY, _prepend)
        return list(history)

    def poster_history(self, user_id: str) -> List[PosterHistoryEntry]:
        user = self.get(user_id)
        return list(user.poster_history) if user else []


_user_store: Optional[UserStore] = None
_user_store_lock = Lock()


def get_user_store() -> UserStore:
    global _user_store
    with _user_store_lock:
        if _user_store is None:
            _user_store = UserStore(get_record_store())
        return _user_store


def reset_user_store() -> None:
    global _user_store
    with _user_store_lock:
        _user_store = None
