# =============================================================================
# ChatSync Client -- Optimistic Reconciliation
# =============================================================================
#
# Speculative local mutations on top of authoritative cache state.
#
#   apply_optimistic  -> pending mutation, visible immediately
#   reconcile         -> server event wins; pending mutations for the key
#                        are resolved and dropped
#   invalidate        -> speculative delta dropped, full refetch scheduled;
#                        the snapshot wins over any earlier point event
# =============================================================================

from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from uuid import uuid4

from ._logging import logger
from .cache import CacheEntry, CacheKey, QueryCache
from .constants import PENDING_MUTATION_TIMEOUT
from .errors import RequestError
from .events import ConversationEvent, MessageEvent, ReactionEvent, ServerEvent

Transform = Callable[[list[Any]], list[Any]]
Merge = Callable[[list[Any], ServerEvent], list[Any]]
Fetcher = Callable[[CacheKey], Awaitable[Any]]


@dataclass
class PendingMutation:
    """A speculative change awaiting server confirmation.

    Attributes:
        correlation_id: Client-generated id returned to the caller.
        cache_key: Entry the mutation applies to.
        transform: Function from the current item list to the new one.
        created_at: ``time.monotonic()`` at creation.
        seq: Global creation order, compared against refetch issue points.
    """

    correlation_id: str
    cache_key: CacheKey
    transform: Transform
    created_at: float
    seq: int


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Full refetch result.  *timestamp* is logical server time, if known."""

    items: list[Any]
    timestamp: float | None = None


class Reconciler:
    """Reconciles optimistic cache mutations with authoritative state.

    Args:
        cache: The consumer-held cache to mutate.
        fetcher: Default coroutine function returning the full state of a
            key, as a :class:`Snapshot` or a plain iterable of items.
        pending_timeout: Seconds after which an unresolved mutation is
            superseded by a refetch (see :meth:`sweep`).
        clock: Monotonic clock for mutation age.
    """

    def __init__(
        self,
        cache: QueryCache,
        *,
        fetcher: Fetcher | None = None,
        pending_timeout: float = PENDING_MUTATION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cache = cache
        self._default_fetcher = fetcher
        self._fetchers: dict[CacheKey, Fetcher] = {}
        self._merges: dict[CacheKey, Merge] = {}
        self._pending: dict[str, PendingMutation] = {}
        self._seq = itertools.count(1)
        self._last_seq = 0
        # per key: mutations with seq <= this value are superseded
        self._superseded: dict[CacheKey, int] = {}
        self._generations: dict[CacheKey, int] = {}
        self._refetch_tasks: set[asyncio.Task[Any]] = set()
        self._pending_timeout = pending_timeout
        self._clock = clock
        self._stale_discarded = 0

    # -- Properties -----------------------------------------------------------

    @property
    def cache(self) -> QueryCache:
        return self._cache

    @property
    def stale_discarded(self) -> int:
        """Point events dropped because a newer snapshot was applied."""
        return self._stale_discarded

    def pending_for(self, cache_key: CacheKey) -> list[PendingMutation]:
        return [p for p in self._pending.values() if p.cache_key == cache_key]

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._pending),
            "refetching": len(self._refetch_tasks),
            "stale_discarded": self._stale_discarded,
            "cache_entries": len(self._cache),
        }

    # -- Registration ---------------------------------------------------------

    def register_fetcher(
        self, cache_key: CacheKey, fetcher: Fetcher, *, merge: Merge | None = None
    ) -> None:
        """Use *fetcher* to refetch *cache_key*, and *merge* for its events."""
        self._fetchers[cache_key] = fetcher
        if merge is not None:
            self._merges[cache_key] = merge

    def unregister_fetcher(self, cache_key: CacheKey) -> None:
        self._fetchers.pop(cache_key, None)
        self._merges.pop(cache_key, None)

    def has_fetcher(self, cache_key: CacheKey) -> bool:
        return cache_key in self._fetchers or self._default_fetcher is not None

    def bind(
        self,
        dispatcher: Any,
        event_type: str,
        key_for: Callable[[ServerEvent], CacheKey | None],
        merge: Merge | None = None,
    ) -> Callable[[ServerEvent], None]:
        """Reconcile every *event_type* event into the key *key_for* names.

        Returns the registered listener so it can be removed with
        ``dispatcher.off``.
        """

        def listener(event: ServerEvent) -> None:
            cache_key = key_for(event)
            if cache_key is not None:
                self.reconcile(cache_key, event, merge=merge)

        dispatcher.on(event_type, listener)
        return listener

    # -- Optimistic mutations -------------------------------------------------

    def apply_optimistic(
        self,
        cache_key: CacheKey,
        transform: Transform,
        *,
        correlation_id: str | None = None,
    ) -> str:
        """Apply *transform* to the visible items now and track it.

        Returns the correlation id, used to :meth:`rollback` if the
        originating request fails.
        """
        correlation_id = correlation_id or uuid4().hex
        if correlation_id in self._pending:
            raise ValueError(f"Correlation id {correlation_id!r} is already pending")

        self._last_seq = next(self._seq)
        mutation = PendingMutation(
            correlation_id=correlation_id,
            cache_key=cache_key,
            transform=transform,
            created_at=self._clock(),
            seq=self._last_seq,
        )
        self._pending[correlation_id] = mutation

        def apply(entry: CacheEntry) -> None:
            entry.items = list(transform(list(entry.items)))

        self._cache.update(cache_key, apply)
        return correlation_id

    def rollback(self, correlation_id: str) -> bool:
        """Drop a pending mutation whose request failed.

        Returns False if the mutation was already resolved or superseded.
        """
        mutation = self._pending.pop(correlation_id, None)
        if mutation is None:
            return False
        if mutation.seq <= self._superseded.get(mutation.cache_key, 0):
            # already hidden; the in-flight refetch replaces it
            return False
        logger.debug("Rolling back %s on %r", correlation_id, mutation.cache_key)
        self._cache.update(mutation.cache_key, self._recompute)
        return True

    async def mutate(
        self,
        cache_key: CacheKey,
        transform: Transform,
        request: Callable[[], Awaitable[Any]],
        *,
        correlation_id: str | None = None,
        invalidate_on_success: bool = True,
    ) -> Any:
        """Apply optimistically, run *request*, roll back if it fails.

        On success a refetch of *cache_key* is scheduled when a fetcher
        is available; otherwise the mutation stays pending until the
        server event arrives or :meth:`sweep` expires it.

        Raises:
            RequestError: Re-raised from *request* after rollback.
        """
        correlation_id = self.apply_optimistic(
            cache_key, transform, correlation_id=correlation_id
        )
        try:
            result = await request()
        except RequestError:
            self.rollback(correlation_id)
            raise
        if invalidate_on_success and self.has_fetcher(cache_key):
            self.invalidate(cache_key)
        return result

    # -- Server events --------------------------------------------------------

    def reconcile(
        self, cache_key: CacheKey, event: ServerEvent, *, merge: Merge | None = None
    ) -> bool:
        """Fold an authoritative server event into *cache_key*.

        Every pending mutation on the key is resolved and the visible
        items become the authoritative ones.  Events whose envelope
        timestamp is older than the last server-stamped snapshot are
        discarded.

        Returns False if the event was discarded as stale.
        """
        entry = self._cache.ensure(cache_key)
        if (
            event.timestamp is not None
            and entry.snapshot_at is not None
            and event.timestamp < entry.snapshot_at
        ):
            self._stale_discarded += 1
            logger.debug(
                "Stale '%s' for %r discarded (%.3f < snapshot %.3f)",
                event.type,
                cache_key,
                event.timestamp,
                entry.snapshot_at,
            )
            return False

        merge = merge or self._merges.get(cache_key) or upsert_item
        resolved = self._resolve_pending(cache_key)
        if resolved:
            logger.debug("Resolved %d pending mutations on %r", resolved, cache_key)

        def apply(entry: CacheEntry) -> None:
            entry.base = list(merge(list(entry.base), event))
            entry.items = list(entry.base)

        self._cache.update(cache_key, apply)
        return True

    # -- Refetch --------------------------------------------------------------

    def invalidate(self, cache_key: CacheKey) -> asyncio.Task[CacheEntry | None] | None:
        """Drop the speculative delta of *cache_key* and refetch it.

        Pending mutations created before this call are discarded once the
        refetch resolves; later ones are re-applied on top of the
        snapshot.  Returns the refetch task, or None when no fetcher is
        registered (pending mutations are then discarded immediately).
        """
        issued_seq = self._last_seq
        self._superseded[cache_key] = max(self._superseded.get(cache_key, 0), issued_seq)
        self._cache.update(cache_key, self._recompute)

        fetcher = self._fetchers.get(cache_key) or self._default_fetcher
        if fetcher is None:
            logger.debug("No fetcher for %r; dropping superseded mutations", cache_key)
            self._drop_pending(cache_key, issued_seq)
            self._superseded.pop(cache_key, None)
            return None

        generation = self._generations.get(cache_key, 0) + 1
        self._generations[cache_key] = generation
        task = asyncio.ensure_future(self._refetch(cache_key, fetcher, generation, issued_seq))
        self._refetch_tasks.add(task)
        task.add_done_callback(self._refetch_tasks.discard)
        return task

    def invalidate_all(self) -> list[asyncio.Task[CacheEntry | None]]:
        """Refetch every key that can be refetched."""
        keys = list(self._fetchers)
        if self._default_fetcher is not None:
            keys += [k for k in self._cache.keys() if k not in self._fetchers]
        tasks = []
        for cache_key in keys:
            task = self.invalidate(cache_key)
            if task is not None:
                tasks.append(task)
        return tasks

    async def refresh(self, cache_key: CacheKey) -> CacheEntry | None:
        """Invalidate *cache_key* and wait for the refetch to land."""
        task = self.invalidate(cache_key)
        if task is None:
            return self._cache.get(cache_key)
        return await task

    async def _refetch(
        self,
        cache_key: CacheKey,
        fetcher: Fetcher,
        generation: int,
        issued_seq: int,
    ) -> CacheEntry | None:
        try:
            result = await fetcher(cache_key)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Refetch of %r failed: %s", cache_key, exc)
            if self._generations.get(cache_key) == generation:
                # no refetch left in flight; pending mutations become live
                # again so sweep can expire them and retry
                self._superseded.pop(cache_key, None)
                if cache_key in self._cache:
                    self._cache.update(cache_key, self._recompute)
            return None

        if self._generations.get(cache_key) != generation:
            logger.debug("Superseded refetch of %r discarded", cache_key)
            return None

        snapshot = result if isinstance(result, Snapshot) else Snapshot(list(result or ()))
        dropped = self._drop_pending(cache_key, issued_seq)
        if dropped:
            logger.debug("Refetch of %r superseded %d pending mutations", cache_key, dropped)
        self._superseded.pop(cache_key, None)

        def apply(entry: CacheEntry) -> None:
            entry.base = list(snapshot.items)
            # only server-stamped snapshots order later point events
            if snapshot.timestamp is not None and (
                entry.snapshot_at is None or snapshot.timestamp > entry.snapshot_at
            ):
                entry.snapshot_at = snapshot.timestamp
            self._recompute(entry)

        return self._cache.update(cache_key, apply)

    async def drain(self) -> None:
        """Wait for every in-flight refetch."""
        while self._refetch_tasks:
            await asyncio.gather(*list(self._refetch_tasks), return_exceptions=True)

    # -- Expiry ---------------------------------------------------------------

    def sweep(self, now: float | None = None) -> list[CacheKey]:
        """Invalidate keys holding mutations older than *pending_timeout*.

        Expiry is silent reconciliation, not an error: the next snapshot
        supersedes the mutation.  Returns the invalidated keys.
        """
        now = self._clock() if now is None else now
        expired: list[CacheKey] = []
        for mutation in self._pending.values():
            if mutation.seq <= self._superseded.get(mutation.cache_key, 0):
                continue  # a refetch is already on its way
            if now - mutation.created_at <= self._pending_timeout:
                continue
            if mutation.cache_key not in expired:
                expired.append(mutation.cache_key)
        for cache_key in expired:
            logger.warning("Pending mutations on %r expired, refetching", cache_key)
            self.invalidate(cache_key)
        return expired

    # -- Internal -------------------------------------------------------------

    def _live_pending(self, cache_key: CacheKey) -> Iterable[PendingMutation]:
        floor = self._superseded.get(cache_key, 0)
        return (
            p for p in self._pending.values()
            if p.cache_key == cache_key and p.seq > floor
        )

    def _recompute(self, entry: CacheEntry) -> None:
        items = list(entry.base)
        for mutation in self._live_pending(entry.key):
            items = list(mutation.transform(items))
        entry.items = items

    def _resolve_pending(self, cache_key: CacheKey) -> int:
        resolved = [cid for cid, p in self._pending.items() if p.cache_key == cache_key]
        for cid in resolved:
            del self._pending[cid]
        return len(resolved)

    def _drop_pending(self, cache_key: CacheKey, up_to_seq: int) -> int:
        dropped = [
            cid for cid, p in self._pending.items()
            if p.cache_key == cache_key and p.seq <= up_to_seq
        ]
        for cid in dropped:
            del self._pending[cid]
        return len(dropped)


# -- Merge strategies ---------------------------------------------------------


def _item_of(event: ServerEvent) -> dict[str, Any] | None:
    if isinstance(event, MessageEvent):
        return event.message or None
    if isinstance(event, ConversationEvent):
        return event.conversation or None
    item = event.payload.get("item")
    return item if isinstance(item, dict) else None


def upsert_item(items: list[Any], event: ServerEvent) -> list[Any]:
    """Insert, replace or delete the event's item by ``id``.

    Items are dicts with an ``id`` key.  An item whose ``id`` equals the
    event's ``clientMsgId`` is replaced too, so a confirmed send takes
    the place of its placeholder.
    """
    item = _item_of(event)
    if item is None or item.get("id") is None:
        return items
    item_id = str(item["id"])
    client_id = getattr(event, "client_msg_id", None)
    matches = {item_id} if client_id is None else {item_id, client_id}
    deleted = getattr(event, "deleted", False) or event.type.endswith("_deleted")

    result: list[Any] = []
    replaced = False
    for existing in items:
        if isinstance(existing, dict) and str(existing.get("id")) in matches:
            if not deleted and not replaced:
                result.append(item)
                replaced = True
            continue
        result.append(existing)
    if not deleted and not replaced:
        result.append(item)
    return result


def replace_items(items: list[Any], event: ServerEvent) -> list[Any]:
    """Take the event's ``items`` list wholesale."""
    new_items = event.payload.get("items")
    if not isinstance(new_items, list):
        return items
    return list(new_items)


def merge_reactions(items: list[Any], event: ServerEvent) -> list[Any]:
    """Replace the reactions of the message a :class:`ReactionEvent` names."""
    if not isinstance(event, ReactionEvent) or event.message_id is None:
        return items
    return [
        {**m, "reactions": list(event.reactions)}
        if isinstance(m, dict) and str(m.get("id")) == event.message_id
        else m
        for m in items
    ]
