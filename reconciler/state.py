"""
reconciler/state.py

State Store — last-applied attributes per resource identity.

The store is the only mutable resource shared between planning and apply.
`session()` holds the store's lock for the duration of an apply; `save()`
always replaces the whole record set atomically (temp file + os.replace), so
a crash mid-apply leaves either the previous file or the new one, never a
torn write.

On-disk format (state.json):

    {
      "version": 1,
      "serial": 7,
      "resources": [
        {"kind": "Instance", "name": "web", "provider_id": "i-0f3a…",
         "attributes": {...}, "dependencies": ["KeyPair.lab"]}
      ]
    }
"""

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping

from reconciler.errors import StateStoreIOError
from reconciler.model import Identity

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class StateRecord:
    identity: Identity
    provider_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[Identity] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "kind": self.identity.kind,
            "name": self.identity.name,
            "provider_id": self.provider_id,
            "attributes": self.attributes,
            "dependencies": [str(d) for d in self.dependencies],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateRecord":
        return cls(
            identity=Identity(data["kind"], data["name"]),
            provider_id=data["provider_id"],
            attributes=dict(data.get("attributes") or {}),
            dependencies=[Identity.parse(d) for d in data.get("dependencies") or []],
        )


Records = Dict[Identity, StateRecord]


class StateStore(ABC):
    """
    Contract for state backends.

    load() returns every record; save() atomically replaces them all.
    Implementations raise StateStoreIOError for any backend failure.
    """

    def __init__(self):
        self._session_lock = threading.Lock()
        self._write_lock = threading.Lock()

    @abstractmethod
    def load(self) -> Records:
        ...

    @abstractmethod
    def save(self, records: Mapping[Identity, StateRecord]) -> None:
        ...

    @contextmanager
    def session(self) -> Iterator["StateSession"]:
        """
        Scoped access for one apply; only one session may be open at a time.
        Unflushed records are written on every exit path, including errors
        raised by the caller. A backend failure is never retried.
        """
        with self._session_lock:
            session = StateSession(self, self.load())
            try:
                yield session
            except StateStoreIOError:
                raise
            except BaseException:
                if session.dirty:
                    session.flush()
                raise
            else:
                if session.dirty:
                    session.flush()


class StateSession:
    """Working copy of the records. Writes are serialized through the lock."""

    def __init__(self, store: StateStore, records: Records):
        self._store = store
        self._lock = threading.Lock()
        self.records: Records = records
        self.dirty = False

    def put(self, record: StateRecord, flush: bool = True) -> None:
        with self._lock:
            self.records[record.identity] = record
            self.dirty = True
            if flush:
                self._flush_locked()

    def remove(self, identity: Identity, flush: bool = True) -> None:
        with self._lock:
            self.records.pop(identity, None)
            self.dirty = True
            if flush:
                self._flush_locked()

    def snapshot(self) -> Records:
        with self._lock:
            return dict(self.records)

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        self._store.save(self.records)
        self.dirty = False


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class MemoryStateStore(StateStore):
    """In-process store. Records are deep-copied in and out."""

    def __init__(self, records: Mapping[Identity, StateRecord] = None):
        super().__init__()
        self._records: Records = copy.deepcopy(dict(records or {}))
        self.saves = 0

    def load(self) -> Records:
        return copy.deepcopy(self._records)

    def save(self, records: Mapping[Identity, StateRecord]) -> None:
        with self._write_lock:
            self._records = copy.deepcopy(dict(records))
            self.saves += 1


class JsonStateStore(StateStore):
    """state.json on the local filesystem."""

    def __init__(self, path: str):
        super().__init__()
        self.path = os.path.abspath(path)
        self._serial = 0

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Records:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as ex:
            raise StateStoreIOError(f"Cannot read state file {self.path}: {ex}") from ex

        if not isinstance(data, dict):
            raise StateStoreIOError(
                f"Malformed state file {self.path}: expected a JSON object, got {type(data).__name__}"
            )
        if data.get("version") != STATE_VERSION:
            raise StateStoreIOError(
                f"Unsupported state version {data.get('version')!r} in {self.path}"
            )
        self._serial = int(data.get("serial", 0))
        try:
            records = [StateRecord.from_dict(r) for r in data.get("resources", [])]
        except (KeyError, ValueError, TypeError) as ex:
            raise StateStoreIOError(f"Malformed state file {self.path}: {ex}") from ex
        return {r.identity: r for r in records}

    def save(self, records: Mapping[Identity, StateRecord]) -> None:
        with self._write_lock:
            self._serial += 1
            payload = {
                "version": STATE_VERSION,
                "serial": self._serial,
                "resources": [records[i].to_dict() for i in sorted(records)],
            }
            directory = os.path.dirname(self.path) or "."
            tmp_path = None
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=4)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
                tmp_path = None
            except (OSError, TypeError, ValueError) as ex:
                raise StateStoreIOError(f"Cannot write state file {self.path}: {ex}") from ex
            finally:
                if tmp_path and os.path.exists(tmp_path):
                    os.remove(tmp_path)
        logger.debug("saved %d records to %s (serial %d)", len(records), self.path, self._serial)

    def remove(self) -> None:
        """Delete the state file (after a full destroy)."""
        try:
            if os.path.exists(self.path):
                os.remove(self.path)
        except OSError as ex:
            raise StateStoreIOError(f"Cannot remove state file {self.path}: {ex}") from ex
