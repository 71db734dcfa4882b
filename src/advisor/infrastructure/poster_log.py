from __future__ import annotations

import logging
import re
import time
import uuid
import warnings
from threading import Lock, RLock
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from ..domain.errors import PersistenceWarning
from ..domain.models import PosterLogEntry
from .record_store import RecordStore, get_record_store


LOG = logging.getLogger("advisor.store")

RETENTION_DAYS = 30
_DAY_MS = 24 * 60 * 60 * 1000
_WS_RE = re.compile(r"\s+")


def normalize_input_key(area: str, season: Optional[str] = None) -> str:
    def _norm(value: Optional[str]) -> str:
        return _WS_RE.sub(" ", (value or "").strip()).casefold()

    return f"{_norm(area)}|{_norm(season)}"


class PosterLog:
    """Generation log doubling as a cache keyed by normalized input.

    Appends go through ``RecordStore.update`` so concurrent writers (even
    separate ``PosterLog`` instances) never drop each other's entries.
    """

    RECORD_KEY = "poster_log"

    def __init__(
        self,
        records: RecordStore,
        clock: Optional[Callable[[], int]] = None,
        retention_days: int = RETENTION_DAYS,
    ) -> None:
        self._records = records
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._retention_ms = retention_days * _DAY_MS
        self._lock = RLock()

    def _load(self) -> List[PosterLogEntry]:
        return self._parse(self._records.load(self.RECORD_KEY))

    @staticmethod
    def _parse(raw: Any) -> List[PosterLogEntry]:
        raw = raw or {}
        out: List[PosterLogEntry] = []
        for item in raw.get("entries", []) if isinstance(raw, dict) else []:
            try:
                out.append(PosterLogEntry.model_validate(item))
            except ValidationError:
                continue
        return out

    def _fresh(self, entry: PosterLogEntry, now: int) -> bool:
        return now - entry.timestamp < self._retention_ms

    def entries(self) -> List[PosterLogEntry]:
        with self._lock:
            return self._load()

    def lookup(self, input_key: str) -> Optional[PosterLogEntry]:
        """Newest non-expired entry for the key that carries an artifact."""
        with self._lock:
            now = self._clock()
            hits = [
                e
                for e in self._load()
                if e.input_key == input_key and e.result_artifact and self._fresh(e, now)
            ]
            if not hits:
                return None
            return max(hits, key=lambda e: e.timestamp)

    def append(
        self,
        input_key: str,
        area: str,
        season: Optional[str],
        result_artifact: Optional[str],
        raw_response_text: str,
    ) -> PosterLogEntry:
        with self._lock:
            now = self._clock()
            entry = PosterLogEntry(
                id=uuid.uuid4().hex,
                input_key=input_key,
                area=area,
                season=season,
                timestamp=now,
                result_artifact=result_artifact,
                raw_response_text=raw_response_text,
            )

            def _add(raw: Any) -> dict:
                kept = [e for e in self._parse(raw) if self._fresh(e, now)]
                kept.append(entry)
                return {"entries": [e.model_dump(by_alias=True) for e in kept]}

            try:
                self._records.update(self.RECORD_KEY, _add)
            except Exception as exc:
                LOG.warning("poster_log_persist_failed", extra={"err": str(exc)})
                warnings.warn(PersistenceWarning(f"Poster log write failed: {exc}"), stacklevel=2)
            return entry


_poster_log: Optional[PosterLog] = None
_poster_log_lock = Lock()


def get_poster_log() -> PosterLog:
    global _poster_log
    with _poster_log_lock:
        if _poster_log is None:
            _poster_log = PosterLog(get_record_store())
        return _poster_log


def reset_poster_log() -> None:
    global _poster_log
    with _poster_log_lock:
        _poster_log = None
