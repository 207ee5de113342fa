"""
State stores: last-known mapping from declared resource to remote identifier.

Each address has its own lock so read-modify-write of one entry is atomic
while independent entries are written concurrently.
"""
import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from iamgraph.errors import StateError
from iamgraph.models.state import RemoteResourceState

STATE_VERSION = 1


class StateStore(ABC):
    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock(self, address: str) -> Iterator[None]:
        with self._locks_guard:
            lk = self._locks.setdefault(address, threading.RLock())
        with lk:
            yield

    @abstractmethod
    def get(self, address: str) -> Optional[RemoteResourceState]:
        ...

    @abstractmethod
    def put(self, entry: RemoteResourceState) -> None:
        ...

    @abstractmethod
    def delete(self, address: str) -> None:
        ...

    @abstractmethod
    def entries(self) -> List[RemoteResourceState]:
        ...

    def addresses(self) -> List[str]:
        return [e.address for e in self.entries()]

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.get(address) is not None

    def update(
        self,
        address: str,
        fn: Callable[[Optional[RemoteResourceState]], Optional[RemoteResourceState]],
    ) -> Optional[RemoteResourceState]:
        """
        Atomically replace the entry for ``address`` with ``fn(current)``.
        Returning None from ``fn`` removes the entry.
        """
        with self.lock(address):
            new = fn(self.get(address))
            if new is None:
                self.delete(address)
            else:
                self.put(new)
            return new


class MemoryStateStore(StateStore):
    def __init__(self, entries: Optional[List[RemoteResourceState]] = None):
        super().__init__()
        self._guard = threading.Lock()
        self._entries: Dict[str, RemoteResourceState] = {}
        for e in entries or []:
            self._entries[e.address] = e

    def get(self, address: str) -> Optional[RemoteResourceState]:
        with self._guard:
            return self._entries.get(address)

    def put(self, entry: RemoteResourceState) -> None:
        with self._guard:
            self._entries[entry.address] = entry

    def delete(self, address: str) -> None:
        with self._guard:
            self._entries.pop(address, None)

    def entries(self) -> List[RemoteResourceState]:
        with self._guard:
            return list(self._entries.values())


class JsonStateStore(MemoryStateStore):
    """
    State persisted as a JSON document. Every write rewrites the whole file
    through a temporary file and an atomic rename, and bumps ``serial``.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        self.serial = 0
        self._write_lock = threading.Lock()
        if os.path.exists(path):
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as fh:
                doc = json.load(fh)
        except (OSError, ValueError) as exc:
            raise StateError(f"cannot read state file {self.path}: {exc}") from exc

        if not isinstance(doc, dict) or doc.get("version") != STATE_VERSION:
            raise StateError(
                f"state file {self.path} has unsupported version {doc.get('version') if isinstance(doc, dict) else None!r}"
            )
        self.serial = int(doc.get("serial", 0))
        try:
            for raw in doc.get("resources", []):
                entry = RemoteResourceState.from_dict(raw)
                self._entries[entry.address] = entry
        except (KeyError, ValueError, TypeError) as exc:
            raise StateError(f"corrupt state entry in {self.path}: {exc}") from exc

    def _flush(self) -> None:
        with self._write_lock:
            serial = self.serial + 1
            doc = {
                "version": STATE_VERSION,
                "serial": serial,
                "resources": [e.to_dict() for e in self.entries()],
            }
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                    json.dump(doc, fh, indent=2, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
            self.serial = serial

    def _write(self, address: str, change: Callable[[], None]) -> None:
        """Apply ``change`` in memory, then flush; undo it if the file write fails."""
        previous = super().get(address)
        change()
        try:
            self._flush()
        except BaseException:
            if previous is None:
                super().delete(address)
            else:
                super().put(previous)
            raise

    def put(self, entry: RemoteResourceState) -> None:
        self._write(entry.address, lambda: super(JsonStateStore, self).put(entry))

    def delete(self, address: str) -> None:
        self._write(address, lambda: super(JsonStateStore, self).delete(address))
