"""Storage for computed reconciliation results.

Entries are keyed by a typed composite :class:`CacheKey` and are only ever
replaced by an explicit refresh; there is no expiry. Two stores share the same
interface: :class:`ReconciliationCache` keeps entries in memory and
:class:`SQLiteReconciliationCache` persists them in a SQLite database so the
next viewer of a job does not re-trigger the expensive analysis.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import hashlib
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import InputError
from .models import normalise_mode, utc_now_iso

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = Path.home() / ".bidrecon" / "reconciliation_cache.sqlite"


@dataclass(frozen=True)
class CacheKey:
    """Identity of one reconciliation view.

    ``comparison_ids`` are sorted on construction so the order in which the
    caller selected comparison bids (or takeoff items) does not matter.
    """

    subject_bid_id: str
    comparison_ids: Tuple[str, ...]
    job_id: str
    mode: str

    def __post_init__(self) -> None:
        if not self.subject_bid_id:
            raise InputError("Cache key requires a subject bid id")
        object.__setattr__(self, "comparison_ids", tuple(sorted(str(i) for i in self.comparison_ids)))
        object.__setattr__(self, "mode", normalise_mode(self.mode))

    @classmethod
    def build(
        cls,
        subject_bid_id: str,
        comparison_ids: Iterable[str],
        job_id: str,
        mode: str,
    ) -> "CacheKey":
        return cls(str(subject_bid_id), tuple(comparison_ids), str(job_id or ""), mode)

    def involves(self, bid_id: str) -> bool:
        return self.subject_bid_id == bid_id or bid_id in self.comparison_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_bid_id": self.subject_bid_id,
            "comparison_ids": list(self.comparison_ids),
            "job_id": self.job_id,
            "mode": self.mode,
        }


@dataclass
class CacheEntry:
    """Stored value: serialised matches, the analysis summary and a timestamp."""

    matches: List[Dict[str, Any]]
    analysis: Dict[str, Any]
    computed_at: str = field(default_factory=utc_now_iso)
    content_digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": self.matches,
            "analysis": self.analysis,
            "computed_at": self.computed_at,
            "content_digest": self.content_digest,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            matches=list(data.get("matches") or []),
            analysis=dict(data.get("analysis") or {}),
            computed_at=str(data.get("computed_at") or utc_now_iso()),
            content_digest=data.get("content_digest"),
        )


@dataclass
class CachedResult:
    """An entry plus whether it was served from the store.

    ``stale`` is set when a served entry was computed from inputs that no
    longer match the caller's snapshot; callers should offer a refresh.
    """

    entry: CacheEntry
    cached: bool
    stale: bool = False


def content_digest(payload: Any) -> str:
    """Stable hash of JSON-serialisable inputs."""

    text = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


ComputeFn = Callable[[], CacheEntry]
AsyncComputeFn = Callable[[], Awaitable[CacheEntry]]


@dataclass
class _Inflight:
    """A running computation and the thread-safe future mirroring its outcome.

    Callers on the owning event loop await ``task``; callers on any other loop
    (another thread running its own ``asyncio.run``) await ``future``.
    """

    loop: asyncio.AbstractEventLoop
    task: "asyncio.Task[CacheEntry]"
    future: "concurrent.futures.Future[CacheEntry]" = field(default_factory=concurrent.futures.Future)


class ReconciliationCache:
    """In-memory cache guarded by a single lock. Last writer wins."""

    def __init__(self) -> None:
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._inflight: Dict[CacheKey, _Inflight] = {}
        self._inflight_lock = threading.Lock()

    # ------------ Storage primitives ------------
    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: CacheKey, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_bid(self, bid_id: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.involves(bid_id)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.info("Invalidated %d cached reconciliations for bid %s", len(doomed), bid_id)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[CacheKey]:
        with self._lock:
            return list(self._entries)

    # ------------ Resolution ------------
    def resolve(
        self,
        key: CacheKey,
        force_refresh: bool,
        compute_fn: ComputeFn,
        digest: Optional[str] = None,
    ) -> CachedResult:
        """Serve the cached entry unless it is missing or a refresh is forced."""

        if not force_refresh:
            hit = self._serve(key, digest)
            if hit is not None:
                return hit

        logger.debug("Computing reconciliation for %s (force_refresh=%s)", key, force_refresh)
        entry = compute_fn()
        self.put(key, entry)
        return CachedResult(entry=entry, cached=False)

    async def resolve_async(
        self,
        key: CacheKey,
        force_refresh: bool,
        compute_fn: AsyncComputeFn,
        digest: Optional[str] = None,
    ) -> CachedResult:
        """Async variant of :meth:`resolve` with per-key request coalescing.

        A request for a key that is already being computed joins the running
        computation instead of starting another one. The computation is
        shielded: a caller that goes away does not cancel it, and the result
        still lands in the cache for the next viewer.
        """

        if not force_refresh:
            hit = self._serve(key, digest)
            if hit is not None:
                return hit

        loop = asyncio.get_running_loop()
        with self._inflight_lock:
            running = self._inflight.get(key)
            if running is None or running.future.done():
                task = loop.create_task(self._compute_and_store(key, compute_fn))
                running = _Inflight(loop=loop, task=task)
                self._inflight[key] = running
                task.add_done_callback(lambda done, k=key, r=running: self._forget(k, r))
            else:
                logger.debug("Joining in-flight reconciliation for %s", key)

        if running.loop is loop:
            entry = await asyncio.shield(running.task)
            return CachedResult(entry=entry, cached=False)

        try:
            entry = await asyncio.shield(asyncio.wrap_future(running.future))
        except asyncio.CancelledError:
            if not running.future.cancelled():
                raise
            # the owning loop shut down before finishing; compute here instead
            logger.debug("In-flight reconciliation for %s was cancelled on its loop; retrying", key)
            return await self.resolve_async(key, force_refresh, compute_fn, digest)
        return CachedResult(entry=entry, cached=False)

    def is_inflight(self, key: CacheKey) -> bool:
        with self._inflight_lock:
            running = self._inflight.get(key)
        return running is not None and not running.task.done()

    async def _compute_and_store(self, key: CacheKey, compute_fn: AsyncComputeFn) -> CacheEntry:
        entry = await compute_fn()
        self.put(key, entry)
        return entry

    def _forget(self, key: CacheKey, running: _Inflight) -> None:
        with self._inflight_lock:
            if self._inflight.get(key) is running:
                del self._inflight[key]

        task = running.task
        if task.cancelled():
            running.future.cancel()
        elif task.exception() is not None:
            logger.error("Reconciliation for %s failed: %s", key, task.exception())
            running.future.set_exception(task.exception())
        else:
            running.future.set_result(task.result())

    def _serve(self, key: CacheKey, digest: Optional[str]) -> Optional[CachedResult]:
        entry = self.get(key)
        if entry is None:
            return None
        stale = bool(digest and entry.content_digest and digest != entry.content_digest)
        if stale:
            logger.info("Serving cached reconciliation for %s computed from older inputs", key)
        return CachedResult(entry=entry, cached=True, stale=stale)


class SQLiteReconciliationCache(ReconciliationCache):
    """Cache that persists entries in a SQLite database."""

    def __init__(self, path: Optional[Path] = None) -> None:
        super().__init__()
        self.path = Path(path) if path else DEFAULT_DATABASE_PATH
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def _ensure_schema(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            conn = self._connect()
            try:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS reconciliation_cache (
                        comparison_type TEXT NOT NULL,
                        subject_bid_id TEXT NOT NULL,
                        comparison_ids TEXT NOT NULL,
                        job_id TEXT NOT NULL,
                        matches TEXT NOT NULL,
                        analysis TEXT NOT NULL,
                        content_digest TEXT,
                        computed_at TEXT NOT NULL,
                        PRIMARY KEY (comparison_type, subject_bid_id, comparison_ids, job_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_reconciliation_cache_subject
                        ON reconciliation_cache(subject_bid_id);
                    """
                )
                conn.commit()
            finally:
                conn.close()
            self._initialized = True

    @staticmethod
    def _key_params(key: CacheKey) -> Tuple[str, str, str, str]:
        return (key.mode, key.subject_bid_id, json.dumps(list(key.comparison_ids)), key.job_id)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        self._ensure_schema()
        with self._lock:
            conn = self._connect()
            conn.row_factory = sqlite3.Row
            try:
                row = conn.execute(
                    """
                    SELECT matches, analysis, content_digest, computed_at
                    FROM reconciliation_cache
                    WHERE comparison_type = ? AND subject_bid_id = ?
                      AND comparison_ids = ? AND job_id = ?
                    """,
                    self._key_params(key),
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return None
        return CacheEntry(
            matches=json.loads(row["matches"]),
            analysis=json.loads(row["analysis"]),
            computed_at=row["computed_at"],
            content_digest=row["content_digest"],
        )

    def put(self, key: CacheKey, entry: CacheEntry) -> None:
        self._ensure_schema()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO reconciliation_cache (
                        comparison_type, subject_bid_id, comparison_ids, job_id,
                        matches, analysis, content_digest, computed_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(comparison_type, subject_bid_id, comparison_ids, job_id)
                    DO UPDATE SET
                        matches = excluded.matches,
                        analysis = excluded.analysis,
                        content_digest = excluded.content_digest,
                        computed_at = excluded.computed_at
                    """,
                    (
                        *self._key_params(key),
                        json.dumps(entry.matches, ensure_ascii=False),
                        json.dumps(entry.analysis, ensure_ascii=False),
                        entry.content_digest,
                        entry.computed_at,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def invalidate(self, key: CacheKey) -> bool:
        self._ensure_schema()
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    """
                    DELETE FROM reconciliation_cache
                    WHERE comparison_type = ? AND subject_bid_id = ?
                      AND comparison_ids = ? AND job_id = ?
                    """,
                    self._key_params(key),
                )
                conn.commit()
                removed = cursor.rowcount
            finally:
                conn.close()
        return removed > 0

    def keys(self) -> List[CacheKey]:
        self._ensure_schema()
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT comparison_type, subject_bid_id, comparison_ids, job_id FROM reconciliation_cache"
                ).fetchall()
            finally:
                conn.close()
        return [
            CacheKey(subject_bid_id=subject, comparison_ids=tuple(json.loads(ids)), job_id=job, mode=mode)
            for mode, subject, ids, job in rows
        ]

    def invalidate_bid(self, bid_id: str) -> int:
        removed = 0
        for key in self.keys():
            if key.involves(bid_id) and self.invalidate(key):
                removed += 1
        if removed:
            logger.info("Invalidated %d cached reconciliations for bid %s", removed, bid_id)
        return removed

    def clear(self) -> None:
        self._ensure_schema()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("DELETE FROM reconciliation_cache")
                conn.commit()
            finally:
                conn.close()


def create_cache(backend: str = "memory", path: Optional[Path] = None) -> ReconciliationCache:
    """Instantiate a cache store by name, falling back to the in-memory store."""

    backend = (backend or "memory").lower()
    if backend in {"sqlite", "sqlite3", "database"}:
        return SQLiteReconciliationCache(path)
    if backend not in {"memory", "local"}:
        logger.warning("Unknown cache backend '%s'; falling back to in-memory cache", backend)
    return ReconciliationCache()


__all__ = [
    "CacheEntry",
    "CacheKey",
    "CachedResult",
    "ReconciliationCache",
    "SQLiteReconciliationCache",
    "content_digest",
    "create_cache",
]
