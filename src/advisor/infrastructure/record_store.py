from __future__ import annotations

import copy
import json
import os
import re
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, Optional, Protocol


_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class RecordStore(Protocol):
    def load(self, key: str) -> Optional[Any]: ...
    def save(self, key: str, document: Any) -> None: ...
    def delete(self, key: str) -> bool: ...
    def update(self, key: str, fn: Callable[[Optional[Any]], Any]) -> Any: ...


def _check_key(key: str) -> str:
    if not key or not _KEY_RE.match(key) or key in (".", ".."):
        raise ValueError(f"Invalid record key: {key!r}")
    return key


class InMemoryRecordStore:
    """Keyed documents held in process memory; copies on the way in and out."""

    def __init__(self) -> None:
        self._docs: Dict[str, Any] = {}
        self._lock = RLock()

    def load(self, key: str) -> Optional[Any]:
        with self._lock:
            doc = self._docs.get(_check_key(key))
            return copy.deepcopy(doc) if doc is not None else None

    def save(self, key: str, document: Any) -> None:
        # Same serializability contract as the file store.
        encoded = json.dumps(document, default=str)
        with self._lock:
            self._docs[_check_key(key)] = json.loads(encoded)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._docs.pop(_check_key(key), None) is not None

    def update(self, key: str, fn: Callable[[Optional[Any]], Any]) -> Any:
        """Load, transform and save one document as a single step."""
        with self._lock:
            document = fn(self.load(key))
            self.save(key, document)
            return document


class FileRecordStore:
    """One JSON file per key under a data directory.

    Every save rewrites the whole document. Thread-safe with a coarse RLock;
    suitable for a single gateway process, not for several writers sharing
    the directory.
    """

    def __init__(self, root_dir: Optional[str] = None) -> None:
        self._lock = RLock()
        root = Path(__file__).resolve().parents[3]
        default_dir = root / "run" / "data"
        self._dir = Path(root_dir or os.getenv("ADVISOR_DATA_DIR", str(default_dir)))
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        return self._dir / f"{_check_key(key)}.json"

    def load(self, key: str) -> Optional[Any]:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))

    def save(self, key: str, document: Any) -> None:
        path = self._path(key)
        text = json.dumps(document, ensure_ascii=False, indent=2, default=str)
        with self._lock:
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, path)

    def delete(self, key: str) -> bool:
        path = self._path(key)
        with self._lock:
            if not path.exists():
                return False
            path.unlink()
            return True

    def update(self, key: str, fn: Callable[[Optional[Any]], Any]) -> Any:
        with self._lock:
            document = fn(self.load(key))
            self.save(key, document)
            return document


_memory_store: RecordStore | None = None
_file_store: RecordStore | None = None


def get_record_store() -> RecordStore:
    global _memory_store
    global _file_store
    impl = os.getenv("ADVISOR_RECORD_STORE_IMPL", "file").lower()
    if impl == "memory":
        if _memory_store is None:
            _memory_store = InMemoryRecordStore()
        return _memory_store
    if _file_store is None:
        _file_store = FileRecordStore()
    return _file_store
