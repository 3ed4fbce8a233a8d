"""
Model Cache

Maps a model identifier to a shared, load-once ModelHandle.

Features:
- Single-flight loading: concurrent acquire() calls for the same id wait on
  one backend load and all receive the same handle
- Reference counting with deferred eviction (a handle in use is freed on
  its last release)
- LRU bound on the number of cached models (only idle handles are evicted)
- Per-handle FIFO generation lock and usage stats

Example:
    ```python
    cache = ModelCache(loader_fn, max_cached_models=2)

    handle = cache.acquire("model.gguf", load_params)
    try:
        engine = InferenceEngine(handle)
        ...
    finally:
        cache.release(handle)
    ```
"""

import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from edge_serving.errors import EdgeRuntimeError, ModelLoadError
from edge_serving.models.backend import ModelBackend
from edge_serving.models.loader import LoadedModel, unload_model
from edge_serving.telemetry import UsageStats

logger = logging.getLogger(__name__)

LoaderFn = Callable[[str, Dict[str, Any]], LoadedModel]


class LoadState(Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class FifoLock:
    """
    Ticket lock that grants ownership strictly in arrival order

    threading.Lock makes no fairness guarantee; generations against one
    model context must run in the order they were requested.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._next_ticket = 0
        self._now_serving = 0

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._now_serving:
                self._cond.wait()

    def release(self) -> None:
        with self._cond:
            self._now_serving += 1
            self._cond.notify_all()

    @property
    def queued(self) -> int:
        """Holder plus waiters"""
        with self._cond:
            return self._next_ticket - self._now_serving

    def __enter__(self) -> "FifoLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class ModelHandle:
    """Shared reference to a loaded model and its generation context"""

    model_id: str
    backend: Optional[ModelBackend] = None
    state: LoadState = LoadState.UNLOADED
    ref_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    generation_lock: FifoLock = field(default_factory=FifoLock)
    stats: UsageStats = field(default_factory=UsageStats)
    evict_pending: bool = False
    retired: bool = False
    last_access: float = field(default_factory=time.time)
    access_count: int = 0

    @property
    def in_flight(self) -> bool:
        return self.generation_lock.queued > 0

    def info(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "state": self.state.value,
            "ref_count": self.ref_count,
            "evict_pending": self.evict_pending,
            "access_count": self.access_count,
            "last_access": self.last_access,
            "metadata": dict(self.metadata),
        }


class _PendingLoad:
    """In-flight load shared by the loading thread and its waiters"""

    def __init__(self, handle: ModelHandle):
        self.handle = handle
        self.done = threading.Event()
        self.waiters = 0
        self.error: Optional[EdgeRuntimeError] = None


class ModelCache:
    """
    Load-once model cache with reference counting

    The id -> handle map is guarded by its own lock, independent of any
    handle's generation lock. Backend load and free always run outside it.
    """

    def __init__(
        self,
        loader_fn: LoaderFn,
        max_cached_models: int = 3,
        stats_window_size: int = 1000,
    ):
        self.loader_fn = loader_fn
        self.max_cached_models = max_cached_models
        self.stats_window_size = stats_window_size

        self._lock = threading.Lock()
        # OrderedDict for LRU ordering
        self._entries: "OrderedDict[str, ModelHandle]" = OrderedDict()
        self._loading: Dict[str, _PendingLoad] = {}

        # Statistics
        self.cache_hits = 0
        self.cache_misses = 0
        self.load_count = 0
        self.load_failures = 0
        self.eviction_count = 0
        self.total_load_time = 0.0

        logger.info(f"ModelCache initialized (max_models={max_cached_models})")

    def acquire(self, model_id: str, load_params: Optional[Dict[str, Any]] = None) -> ModelHandle:
        """
        Get a ready handle, loading the model on first use

        The returned handle has had its reference count incremented; pair
        every acquire() with release().

        Raises:
            ModelLoadError: If loading fails (no cache entry is left behind)
        """
        victims: List[ModelHandle] = []
        with self._lock:
            handle = self._entries.get(model_id)
            if handle is not None:
                self.cache_hits += 1
                # A new user cancels a deferred manual eviction
                handle.evict_pending = False
                self._touch(handle)
                logger.debug(f"Cache hit: {model_id}")
                return handle

            pending = self._loading.get(model_id)
            owner = pending is None
            if owner:
                self.cache_misses += 1
                pending = _PendingLoad(ModelHandle(
                    model_id=model_id,
                    state=LoadState.LOADING,
                    stats=UsageStats(self.stats_window_size),
                ))
                self._loading[model_id] = pending
                victims = self._select_lru_victims()
                logger.debug(f"Cache miss: {model_id} - loading")
            else:
                pending.waiters += 1
                logger.debug(f"Waiting for in-flight load of {model_id}")

        if not owner:
            pending.done.wait()
            if pending.error is not None:
                raise ModelLoadError(model_id, getattr(pending.error, "reason", pending.error.message))
            return pending.handle

        for victim in victims:
            self._free(victim, reason="lru")

        self._load(model_id, load_params or {}, pending)
        if pending.error is not None:
            raise pending.error
        return pending.handle

    def _load(self, model_id: str, load_params: Dict[str, Any], pending: _PendingLoad) -> None:
        handle = pending.handle
        start = time.perf_counter()
        try:
            loaded = self.loader_fn(model_id, load_params)
        except ModelLoadError as exc:
            error: Optional[EdgeRuntimeError] = exc
        except Exception as exc:
            logger.exception(f"Unexpected error loading {model_id}")
            error = ModelLoadError(model_id, f"Unexpected loader error: {exc}")
        else:
            error = None

        load_time = time.perf_counter() - start
        with self._lock:
            del self._loading[model_id]
            if error is None:
                handle.backend = loaded.backend
                handle.metadata = dict(loaded.metadata)
                handle.state = LoadState.READY
                handle.ref_count = 1 + pending.waiters
                handle.access_count = 1 + pending.waiters
                handle.last_access = time.time()
                self._entries[model_id] = handle
                self.load_count += 1
                self.total_load_time += load_time
            else:
                handle.state = LoadState.FAILED
                pending.error = error
                self.load_failures += 1
            cached = len(self._entries)
        pending.done.set()

        if error is None:
            logger.info(f"Model loaded: {model_id} (load_time={load_time:.2f}s, cached_models={cached})")
        else:
            logger.error(f"Model load failed: {model_id}: {error.message}")

    def release(self, handle: ModelHandle) -> None:
        """
        Drop one reference; frees the handle if an eviction was deferred

        Raises:
            ValueError: If the handle has no outstanding references
        """
        free_now = False
        with self._lock:
            if handle.ref_count <= 0:
                raise ValueError(f"release() without matching acquire() for {handle.model_id}")
            handle.ref_count -= 1
            if handle.ref_count == 0 and (handle.evict_pending or handle.retired):
                if self._entries.get(handle.model_id) is handle:
                    del self._entries[handle.model_id]
                free_now = True
        if free_now:
            self._free(handle, reason="deferred")

    @contextmanager
    def lease(self, model_id: str, load_params: Optional[Dict[str, Any]] = None) -> Iterator[ModelHandle]:
        """acquire() / release() as a context manager"""
        handle = self.acquire(model_id, load_params)
        try:
            yield handle
        finally:
            self.release(handle)

    def evict(self, model_id: str) -> bool:
        """
        Evict a model

        Returns:
            True if the handle was freed now, False if it is not cached or
            still in use (eviction then happens on its last release)
        """
        with self._lock:
            handle = self._entries.get(model_id)
            if handle is None:
                return False
            if handle.ref_count > 0:
                handle.evict_pending = True
                logger.info(f"Eviction of {model_id} deferred ({handle.ref_count} references held)")
                return False
            del self._entries[model_id]
        self._free(handle, reason="manual")
        return True

    def invalidate(self, handle: ModelHandle, reason: str = "context corrupted") -> None:
        """
        Retire a handle whose context can no longer be trusted

        The id is unmapped immediately so the next acquire() reloads; the old
        backend is freed once its last reference is released.
        """
        free_now = False
        with self._lock:
            if self._entries.get(handle.model_id) is handle:
                del self._entries[handle.model_id]
            if handle.retired:
                return
            handle.retired = True
            logger.warning(f"Invalidating model {handle.model_id}: {reason}")
            free_now = handle.ref_count == 0
        if free_now:
            self._free(handle, reason="invalidated")

    def clear(self) -> None:
        """Free every idle handle and defer the rest to their last release"""
        with self._lock:
            idle = [h for h in self._entries.values() if h.ref_count == 0]
            for handle in self._entries.values():
                if handle.ref_count > 0:
                    handle.evict_pending = True
            for handle in idle:
                del self._entries[handle.model_id]
        for handle in idle:
            self._free(handle, reason="clear")

    def get(self, model_id: str) -> Optional[ModelHandle]:
        """Peek at a cached handle without taking a reference"""
        with self._lock:
            return self._entries.get(model_id)

    def is_cached(self, model_id: str) -> bool:
        with self._lock:
            return model_id in self._entries

    def list_cached_models(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [handle.info() for handle in self._entries.values()]

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self.cache_hits + self.cache_misses
            return {
                "cached_models": len(self._entries),
                "loading_models": len(self._loading),
                "max_cached_models": self.max_cached_models,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "cache_hit_rate": self.cache_hits / total_requests if total_requests > 0 else 0,
                "loads": self.load_count,
                "load_failures": self.load_failures,
                "evictions": self.eviction_count,
                "avg_load_time": self.total_load_time / self.load_count if self.load_count > 0 else 0,
            }

    # ==================== Private Methods ====================

    def _touch(self, handle: ModelHandle) -> None:
        handle.ref_count += 1
        handle.access_count += 1
        handle.last_access = time.time()
        self._entries.move_to_end(handle.model_id)

    def _select_lru_victims(self) -> List[ModelHandle]:
        """Unmap idle least-recently-used handles until a new load fits (lock held)"""
        victims = []
        while len(self._entries) + len(self._loading) > self.max_cached_models:
            candidate = next((h for h in self._entries.values() if h.ref_count == 0), None)
            if candidate is None:
                logger.warning(
                    f"Cache over capacity ({len(self._entries)} cached, {len(self._loading)} loading) "
                    "but every cached model is in use"
                )
                break
            del self._entries[candidate.model_id]
            victims.append(candidate)
        return victims

    def _free(self, handle: ModelHandle, reason: str) -> None:
        logger.info(f"Evicting model: {handle.model_id} (reason={reason})")
        backend = handle.backend
        handle.backend = None
        handle.state = LoadState.UNLOADED
        with self._lock:
            self.eviction_count += 1
        if backend is not None:
            unload_model(backend)
