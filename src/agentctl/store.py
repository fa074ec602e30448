"""Document-per-concern JSON persistence.

Each concern (tasks, plans, runs, audit log, merge queue, scheduler state,
checkpoints, command policies) lives in exactly one JSON document.  Writes go to a
uniquely named sibling temp file which is fsync'd and then atomically renamed over the
target, so readers only ever observe a complete old or a complete new
document.

Granularity is the whole document: two writers that load, modify and save
the same store concurrently race last-writer-wins.  Callers that need
stronger guarantees must serialize externally.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from agentctl.errors import StoreError

log = logging.getLogger(__name__)

STORE_VERSION = 1


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds (sortable as text)."""
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def read_json_document(path: Path) -> Any | None:
    """Read and parse *path*. Returns None if the file does not exist.

    Any other failure (permissions, malformed JSON) raises StoreError.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise StoreError(f"Failed to read {path}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StoreError(f"Failed to parse {path}: {exc}") from exc


_write_locks: dict[Path, threading.Lock] = {}
_write_locks_guard = threading.Lock()


def _write_lock(path: Path) -> threading.Lock:
    key = path.absolute()
    with _write_locks_guard:
        lock = _write_locks.get(key)
        if lock is None:
            lock = _write_locks[key] = threading.Lock()
        return lock


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write *payload* to *path* via temp file + fsync + rename.

    Each write gets its own temp file in the target directory, so concurrent
    writers (threads or processes) never share an inode; writers in the same
    process are also serialized per path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, indent=2, sort_keys=True) + "\n"
    with _write_lock(path):
        tmp_path: Path | None = None
        try:
            fd, name = tempfile.mkstemp(dir=path.parent, prefix=f"{path.name}.", suffix=".tmp")
            tmp_path = Path(name)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {path}: {exc}") from exc


class JsonDocumentStore:
    """One versioned JSON document holding a single top-level collection.

    The on-disk shape is ``{"version": 1, "<key>": <collection>}``.  *default*
    builds the empty collection used when the file is missing or when the
    document lacks *key*.
    """

    def __init__(self, path: Path, key: str, default: Callable[[], Any] = dict) -> None:
        self.path = Path(path)
        self.key = key
        self._default = default

    def load(self) -> Any:
        document = read_json_document(self.path)
        if not isinstance(document, dict):
            if document is not None:
                log.warning("Ignoring non-object document in %s", self.path)
            return self._default()
        value = document.get(self.key)
        empty = self._default()
        if value is None or not isinstance(value, type(empty)):
            return empty
        return value

    def _document(self, value: Any) -> dict[str, Any]:
        return {"version": STORE_VERSION, self.key: copy.deepcopy(value)}

    def save(self, value: Any) -> None:
        atomic_write_json(self.path, self._document(value))

    async def aload(self) -> Any:
        return await asyncio.to_thread(self.load)

    async def asave(self, value: Any) -> None:
        # Snapshot on the loop thread; the caller may keep mutating *value*.
        document = self._document(value)
        await asyncio.to_thread(atomic_write_json, self.path, document)
