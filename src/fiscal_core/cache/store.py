"""Cache stores used by the catalog service and the response handler.

Entries are ``{"created_at": <epoch seconds>, "value": <json>}``. Staleness
is computed at read time: an entry is stale once ``now - created_at``
exceeds the ``ttl`` passed to ``get``. Nothing is ever evicted; a stale
entry stays readable so callers can degrade to it when the remote side is
down.
"""

from __future__ import annotations

from collections.abc import Callable
import dataclasses
import hashlib
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
import time
from typing import Any, Protocol, runtime_checkable

log = logging.getLogger(__name__)

type Clock = Callable[[], float]


@dataclasses.dataclass(frozen=True, slots=True)
class CacheLookup:
    """A cached value plus whether it outlived the requested freshness window."""

    value: Any
    stale: bool
    created_at: float


@runtime_checkable
class CacheStore(Protocol):
    """Minimal interface shared by cache backends."""

    def get(self, key: str, ttl: float) -> CacheLookup | None: ...  # noqa: D102
    def put(self, key: str, value: Any) -> bool: ...  # noqa: D102


def _lookup_from_record(record: Any, ttl: float, now: float) -> CacheLookup | None:
    if not isinstance(record, dict) or "value" not in record:
        return None
    created_at = record.get("created_at")
    if isinstance(created_at, bool) or not isinstance(created_at, int | float):
        return None
    return CacheLookup(
        value=record["value"],
        stale=(now - created_at) > ttl,
        created_at=float(created_at),
    )


class FileCacheStore:
    """Flat directory of JSON files, one per key, named by ``sha1(key)``.

    Writes go to a temporary file in the same directory and are moved into
    place with ``os.replace``, so readers never see partial content.

    Args:
        directory: Cache root. Defaults to ``<tmp>/fiscal-core-cache``.
        clock: Returns the current epoch seconds; injectable for tests.
    """

    def __init__(self, directory: str | Path | None = None, *, clock: Clock = time.time):
        self.directory = Path(
            directory or Path(tempfile.gettempdir()) / "fiscal-core-cache"
        )
        self._clock = clock

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha1(key.encode("utf-8"), usedforsecurity=False).hexdigest()
        return self.directory / f"{digest}.json"

    def get(self, key: str, ttl: float) -> CacheLookup | None:
        path = self.path_for(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.debug("Cache miss for %r", key)
            return None
        except OSError as e:
            log.warning("Unreadable cache entry %s treated as miss: %s", path.name, e)
            return None

        try:
            record = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Corrupted cache entry %s treated as miss", path.name)
            return None

        lookup = _lookup_from_record(record, ttl, self._clock())
        if lookup is None:
            log.warning("Malformed cache entry %s treated as miss", path.name)
        else:
            log.debug("Cache hit for %r (stale=%s)", key, lookup.stale)
        return lookup

    def put(self, key: str, value: Any) -> bool:
        """Persist ``value`` under ``key``. Returns False if the write failed.

        The directory is created on first write. Values that JSON cannot
        encode are not cached.
        """
        target = self.path_for(key)
        tmp_name: str | None = None
        try:
            payload = json.dumps(
                {"created_at": int(self._clock()), "value": value},
                ensure_ascii=False,
                indent=2,
            )
            self.directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.directory,
                prefix=".tmp-",
                suffix=".json",
                delete=False,
            ) as fh:
                tmp_name = fh.name
                fh.write(payload)
            os.replace(tmp_name, target)
        except (TypeError, ValueError, OSError) as e:
            log.warning("Could not write cache entry for %r: %s", key, e)
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            return False
        return True


class MemoryCacheStore:
    """Process-local cache with the same semantics as ``FileCacheStore``."""

    def __init__(self, *, clock: Clock = time.time):
        self._clock = clock
        self._entries: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str, ttl: float) -> CacheLookup | None:
        with self._lock:
            record = self._entries.get(key)
        if record is None:
            return None
        return _lookup_from_record(record, ttl, self._clock())

    def put(self, key: str, value: Any) -> bool:
        with self._lock:
            self._entries[key] = {"created_at": self._clock(), "value": value}
        return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
