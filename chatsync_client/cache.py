# =============================================================================
# ChatSync Client -- Query Cache
# =============================================================================
#
# Consumer-held cache entries keyed by logical resource, e.g.
# ("messages", "42").  The reconciler never owns entries; it changes
# them only through QueryCache.update, which bumps the revision.
# =============================================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable

from ._logging import logger

CacheKey = Hashable
CacheWatcher = Callable[["CacheEntry"], Any]


@dataclass
class CacheEntry:
    """Cached value of one logical resource.

    Attributes:
        key: Cache key.
        items: Visible items: the authoritative base with pending
            optimistic mutations applied on top.
        base: Last authoritative items (snapshot plus server events).
        revision: Local revision counter.  Never decreases.
        snapshot_at: Logical time of the last applied full snapshot.
        updated_at: ``time.monotonic()`` of the last update.
    """

    key: CacheKey
    items: list[Any] = field(default_factory=list)
    base: list[Any] = field(default_factory=list)
    revision: int = 0
    snapshot_at: float | None = None
    updated_at: float | None = None


class QueryCache:
    """In-memory store of :class:`CacheEntry` objects with change watchers."""

    def __init__(self) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._watchers: dict[CacheKey, list[CacheWatcher]] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(key)

    def items(self, key: CacheKey) -> list[Any]:
        """Visible items for *key* (empty when the key is unknown)."""
        entry = self._entries.get(key)
        return list(entry.items) if entry else []

    def ensure(self, key: CacheKey) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(key=key)
            self._entries[key] = entry
        return entry

    def update(self, key: CacheKey, fn: Callable[[CacheEntry], None]) -> CacheEntry:
        """Apply *fn* to the entry for *key* and bump its revision.

        Runs synchronously on the event loop, so no other update can
        interleave between *fn* and the revision bump.
        """
        entry = self.ensure(key)
        fn(entry)
        entry.revision += 1
        entry.updated_at = time.monotonic()
        self._notify(entry)
        return entry

    def remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    # -- Watchers -------------------------------------------------------------

    def watch(self, key: CacheKey, watcher: CacheWatcher) -> None:
        """Call *watcher* with the entry after every update of *key*."""
        self._watchers.setdefault(key, []).append(watcher)

    def unwatch(self, key: CacheKey, watcher: CacheWatcher) -> None:
        watchers = self._watchers.get(key)
        if watchers and watcher in watchers:
            watchers.remove(watcher)

    def _notify(self, entry: CacheEntry) -> None:
        for watcher in list(self._watchers.get(entry.key, ())):
            try:
                watcher(entry)
            except Exception:
                logger.exception("Cache watcher error for %r", entry.key)


def messages_key(conversation_id: Any) -> tuple[str, str]:
    """Cache key of the message list of one conversation."""
    return ("messages", str(conversation_id))


def conversation_channel(conversation_id: Any) -> str:
    """Realtime channel name of one conversation."""
    return f"conv:{conversation_id}"
