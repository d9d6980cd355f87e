#!/usr/bin/env python3
"""
🔐 Thread-Safety Primitives for Concord
Provides the locking used to keep the engine consistent between:
- Flask request handlers (one thread per request under waitress)
- The scheduler loop (background thread)
- Actuation workers (thread pool)

Per-target mutations are serialised with ``KeyedLocks``; configuration
access goes through ``ThreadSafeConfigManager``.
"""

import copy
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterator, Optional


class KeyedLocks:
    """Lazily created re-entrant lock per key (one per target).

    Locks are never discarded while the registry lives, so two threads
    always agree on which lock guards a key.
    """

    def __init__(self, name: str = "keyed"):
        self._name = name
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._contention = 0

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable, timeout: Optional[float] = None) -> Iterator[None]:
        """Acquire the lock for ``key``; raise ``TimeoutError`` after ``timeout``."""
        lock = self.get(key)
        if not lock.acquire(blocking=False):
            with self._guard:
                self._contention += 1
            acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise TimeoutError(f"Timed out waiting for {self._name} lock {key!r}")
        try:
            yield
        finally:
            lock.release()

    def get_stats(self) -> Dict[str, Any]:
        with self._guard:
            return {"name": self._name, "keys": len(self._locks), "contention": self._contention}


class ReadWriteLock:
    """
    Reader-writer lock implementation for optimized concurrent access.
    Allows multiple readers OR one writer (but not both simultaneously).
    """

    def __init__(self):
        self._read_ready = threading.Condition(threading.RLock())
        self._readers = 0

    @contextmanager
    def read_lock(self):
        """Acquire read lock (allows multiple concurrent readers)."""
        with self._read_ready:
            self._readers += 1
        try:
            yield
        finally:
            with self._read_ready:
                self._readers -= 1
                if self._readers == 0:
                    self._read_ready.notify_all()

    @contextmanager
    def write_lock(self):
        """Acquire write lock (exclusive access)."""
        with self._read_ready:
            while self._readers > 0:
                self._read_ready.wait()
            yield


class ThreadSafeConfigManager:
    """
    Thread-safe wrapper around ``ConfigManager``.

    Features:
    - Read-write lock so concurrent readers never see a half-written save
    - Short-lived cache to avoid re-validating JSON on every request
    - Change listeners (the scheduler wakes up when settings change)
    """

    def __init__(self, base_config_manager, *, cache_ttl: float = 1.0):
        self._base_manager = base_config_manager
        self._lock = threading.RLock()
        self._read_write_lock = ReadWriteLock()
        self._config_cache: Optional[Dict[str, Any]] = None
        self._cache_timestamp: float = 0
        self._cache_ttl = cache_ttl
        self._change_listeners: list[Callable[[Dict[str, Any]], None]] = []
        self._logger = logging.getLogger("concord.config")

    def add_change_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            self._change_listeners.append(callback)
            self._logger.debug("📢 Added config change listener: %s", getattr(callback, "__name__", callback))

    def remove_change_listener(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        with self._lock:
            if callback in self._change_listeners:
                self._change_listeners.remove(callback)

    def _notify_listeners(self, new_config: Dict[str, Any]) -> None:
        for listener in list(self._change_listeners):
            try:
                listener(copy.deepcopy(new_config))
            except Exception as e:
                self._logger.error("❌ Error in config change listener %s: %s", getattr(listener, "__name__", listener), e)

    def _is_cache_valid(self) -> bool:
        return (
            self._config_cache is not None and
            time.time() - self._cache_timestamp < self._cache_ttl
        )

    def load_config(self, use_cache: bool = True) -> Dict[str, Any]:
        """Load configuration (deep copy, safe to mutate)."""
        with self._read_write_lock.read_lock():
            with self._lock:
                if use_cache and self._is_cache_valid():
                    return copy.deepcopy(self._config_cache)
            config = self._base_manager.load_config()
            with self._lock:
                self._config_cache = copy.deepcopy(config)
                self._cache_timestamp = time.time()
            return config

    def save_config(self, config: Dict[str, Any], notify_listeners: bool = True) -> bool:
        with self._read_write_lock.write_lock():
            success = self._base_manager.save_config(config)
            if not success:
                self._logger.error("❌ Config save failed")
                return False
            with self._lock:
                self._config_cache = copy.deepcopy(config)
                self._cache_timestamp = time.time()
        self._logger.info("✅ Config saved")
        if notify_listeners:
            self._notify_listeners(config)
        return True

    def invalidate_cache(self) -> None:
        with self._lock:
            self._config_cache = None
            self._cache_timestamp = 0

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "cache_valid": self._is_cache_valid(),
                "cache_age_seconds": time.time() - self._cache_timestamp if self._config_cache else None,
                "change_listeners_count": len(self._change_listeners),
                "active_threads": threading.active_count(),
            }
