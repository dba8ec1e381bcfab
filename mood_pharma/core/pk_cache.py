"""
Concentration cache: memoises curves and point concentrations.

Keys are fingerprints of everything the result depends on:
  v{version}:{kind}:{medication_id}:{pk params}:{dose id:timestamp:amount|...}:{window}:{weight}
so any dose add/edit/delete or PK edit produces a new key and the old entry
simply becomes unreachable. Explicit invalidation (all, or per medication)
bounds the growth caused by that key churn. LRU-bounded, TTL-expired,
in-memory only, rebuilt lazily.

Concurrent callers share one in-flight computation per key. Threads (sync
routes run in the server's threadpool) wait on a per-key Future; async
callers await a per-key task, which itself goes through the same Future
table, so a sync and an async request for one key also compute once.
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from collections import OrderedDict
from functools import partial
from typing import Callable, Iterable, NamedTuple, Optional

from mood_pharma.config import (
    CONCENTRATION_NOISE_FLOOR,
    CURVE_DEFAULT_POINTS,
    DEFAULT_BODY_WEIGHT_KG,
    PK_CACHE_MAX_ENTRIES,
    PK_CACHE_TTL_SEC,
    PK_CACHE_VERSION,
)
from mood_pharma.core import pk_engine
from mood_pharma.core.models import ConcentrationPoint, Medication, MedicationDose

log = logging.getLogger("pk.cache")


class _Entry(NamedTuple):
    value: object
    stored_at: float
    medication_id: str


def _pk_digest(medication: Medication) -> str:
    return (f"{medication.half_life!r},{medication.volume_of_distribution!r},"
            f"{medication.bioavailability!r},{medication.absorption_rate!r}")


def _dose_digest(medication: Medication, doses: Iterable[MedicationDose]) -> str:
    own = sorted(
        (d for d in doses if d.medication_id == medication.id),
        key=lambda d: (d.timestamp, d.id),
    )
    return "|".join(f"{d.id}:{d.timestamp}:{d.dose_amount!r}" for d in own)


def curve_fingerprint(medication: Medication, doses: Iterable[MedicationDose],
                      start_time: int, end_time: int, points: int,
                      body_weight: float) -> str:
    return (f"v{PK_CACHE_VERSION}:curve:{medication.id}:{_pk_digest(medication)}:"
            f"{_dose_digest(medication, doses)}:{start_time}:{end_time}:{points}:{body_weight!r}")


def point_fingerprint(medication: Medication, doses: Iterable[MedicationDose],
                      time_ms: int, body_weight: float) -> str:
    return (f"v{PK_CACHE_VERSION}:point:{medication.id}:{_pk_digest(medication)}:"
            f"{_dose_digest(medication, doses)}:{time_ms}:{body_weight!r}")


class ConcentrationCache:
    """
    Process-local cache object. Build one per process (or per test) and pass
    it to consumers; there is no module-level instance.
    """

    def __init__(self, max_entries: int = PK_CACHE_MAX_ENTRIES,
                 ttl_seconds: float = PK_CACHE_TTL_SEC,
                 clock: Callable[[], float] = time.monotonic,
                 noise_floor: float = CONCENTRATION_NOISE_FLOOR):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.noise_floor = noise_floor
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._by_medication: dict[str, set[str]] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self._pending: dict[str, concurrent.futures.Future] = {}
        # bumped on invalidation so late computations don't repopulate
        self._global_epoch = 0
        self._medication_epochs: dict[str, int] = {}
        self.hits = 0
        self.misses = 0
        self.computations = 0
        self.evictions = 0

    # ── store primitives (all under the lock) ────────────────────────

    def _fresh(self, key: str):
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            self._remove(key)
            return None
        self._entries.move_to_end(key)
        return entry.value

    def _lookup(self, key: str):
        with self._lock:
            value = self._fresh(key)
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
            return value

    def _epoch(self, medication_id: str) -> tuple[int, int]:
        with self._lock:
            return self._global_epoch, self._medication_epochs.get(medication_id, 0)

    def _store(self, key: str, medication_id: str, value, epoch: tuple[int, int]) -> None:
        with self._lock:
            if self._epoch(medication_id) != epoch:
                log.debug("Dropping result computed before invalidation: %s", medication_id)
                return
            self._entries[key] = _Entry(value, self._clock(), medication_id)
            self._entries.move_to_end(key)
            self._by_medication.setdefault(medication_id, set()).add(key)
            while len(self._entries) > self.max_entries:
                oldest = next(iter(self._entries))
                self._remove(oldest)
                self.evictions += 1
                log.debug("Evicted LRU entry %s", oldest[:80])

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        keys = self._by_medication.get(entry.medication_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_medication[entry.medication_id]

    # ── computations ─────────────────────────────────────────────────

    def _compute_curve(self, key, epoch, medication, doses, start_time, end_time,
                       points, body_weight, cancel_token=None) -> tuple:
        curve = tuple(pk_engine.build_concentration_curve(
            medication, doses, start_time, end_time, points, body_weight,
            noise_floor=self.noise_floor, cancel_token=cancel_token,
        ))
        with self._lock:
            self.computations += 1
        self._store(key, medication.id, curve, epoch)
        return curve

    def _compute_shared(self, key, medication, doses, start_time, end_time,
                        points, body_weight, cancel_token=None) -> tuple:
        """
        Single-flight curve computation across threads. The first thread to
        miss a key computes it; the others block on its Future. A waiter is
        woken with ComputationCancelled only by its own token: if the owner
        was cancelled, the waiter takes over and computes the curve itself.
        """
        while True:
            with self._lock:
                # stored while we were between lookup and here
                cached = self._fresh(key)
                if cached is not None:
                    return cached
                future = self._pending.get(key)
                owner = future is None
                if owner:
                    future = concurrent.futures.Future()
                    self._pending[key] = future
                    epoch = self._epoch(medication.id)

            if owner:
                try:
                    curve = self._compute_curve(key, epoch, medication, doses, start_time,
                                                end_time, points, body_weight, cancel_token)
                except BaseException as exc:
                    future.set_exception(exc)
                    raise
                else:
                    future.set_result(curve)
                    return curve
                finally:
                    with self._lock:
                        if self._pending.get(key) is future:
                            del self._pending[key]

            try:
                return self._wait(future, cancel_token)
            except pk_engine.ComputationCancelled:
                if cancel_token is not None and cancel_token.cancelled:
                    raise
                log.debug("Owner of %s was cancelled, retrying", key[:80])

    @staticmethod
    def _wait(future: concurrent.futures.Future,
              cancel_token: Optional[pk_engine.CancellationToken]) -> tuple:
        if cancel_token is None:
            return future.result()
        while True:
            cancel_token.raise_if_cancelled()
            try:
                return future.result(timeout=0.05)
            except concurrent.futures.TimeoutError:
                continue

    # ── public API ───────────────────────────────────────────────────

    def get_curve(self, medication: Medication, doses: Iterable[MedicationDose],
                  start_time: int, end_time: int,
                  points: int = CURVE_DEFAULT_POINTS,
                  body_weight: float = DEFAULT_BODY_WEIGHT_KG,
                  cancel_token: Optional[pk_engine.CancellationToken] = None,
                  ) -> list[ConcentrationPoint]:
        doses = list(doses)
        key = curve_fingerprint(medication, doses, start_time, end_time, points, body_weight)
        cached = self._lookup(key)
        if cached is not None:
            return list(cached)
        return list(self._compute_shared(key, medication, doses, start_time,
                                         end_time, points, body_weight, cancel_token))

    def get_concentration(self, medication: Medication, doses: Iterable[MedicationDose],
                          time_ms: int,
                          body_weight: float = DEFAULT_BODY_WEIGHT_KG) -> float:
        doses = list(doses)
        key = point_fingerprint(medication, doses, time_ms, body_weight)
        cached = self._lookup(key)
        if cached is not None:
            return cached
        epoch = self._epoch(medication.id)
        value = pk_engine.compute_concentration(medication, doses, time_ms, body_weight)
        with self._lock:
            self.computations += 1
        self._store(key, medication.id, value, epoch)
        return value

    async def get_curve_async(self, medication: Medication, doses: Iterable[MedicationDose],
                              start_time: int, end_time: int,
                              points: int = CURVE_DEFAULT_POINTS,
                              body_weight: float = DEFAULT_BODY_WEIGHT_KG,
                              cancel_token: Optional[pk_engine.CancellationToken] = None,
                              ) -> list[ConcentrationPoint]:
        """
        Like get_curve, but the computation runs in a worker thread and is
        shared by every concurrent caller asking for the same key.

        A caller's cancel_token only affects that caller: it raises
        ComputationCancelled instead of returning a late result, while the
        shared computation finishes for the other waiters.
        """
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        doses = list(doses)
        key = curve_fingerprint(medication, doses, start_time, end_time, points, body_weight)
        cached = self._lookup(key)
        if cached is not None:
            return list(cached)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(asyncio.to_thread(
                self._compute_shared, key, medication, doses,
                start_time, end_time, points, body_weight,
            ))
            self._inflight[key] = task
            task.add_done_callback(partial(self._inflight_done, key))

        curve = await asyncio.shield(task)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return list(curve)

    def _inflight_done(self, key: str, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            log.debug("Curve computation failed for %s: %s", key[:80], task.exception())

    def invalidate(self, medication_id: Optional[str] = None) -> int:
        """Drop every entry, or every entry of one medication. Returns count."""
        with self._lock:
            if medication_id is None:
                count = len(self._entries)
                self._entries.clear()
                self._by_medication.clear()
                self._global_epoch += 1
                log.info("Concentration cache cleared (%d entries)", count)
                return count
            keys = list(self._by_medication.get(medication_id, ()))
            for key in keys:
                self._remove(key)
            self._medication_epochs[medication_id] = (
                self._medication_epochs.get(medication_id, 0) + 1
            )
            log.info("Invalidated %d cache entries for medication %s", len(keys), medication_id)
            return len(keys)

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items()
                       if now - e.stored_at >= self.ttl_seconds]
            for key in expired:
                self._remove(key)
        if expired:
            log.debug("Cleared %d expired cache entries", len(expired))
        return len(expired)

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "medications": len(self._by_medication),
                "inflight": len(self._inflight),
                "pending": len(self._pending),
                "hits": self.hits,
                "misses": self.misses,
                "computations": self.computations,
                "evictions": self.evictions,
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
            }


class RequestGeneration:
    """
    Request-generation counter for superseded requests: take a generation
    with begin(), and drop the result later if is_current() says a newer
    request has started meanwhile (e.g. a time range being dragged).
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current = 0

    def begin(self) -> int:
        with self._lock:
            self._current += 1
            return self._current

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._current
