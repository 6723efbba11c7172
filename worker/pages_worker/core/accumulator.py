"""Per-page state shared by all crawler threads."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from pages_worker.core.storage import StateStore
from pages_worker.models import PageRecord

logger = logging.getLogger(__name__)

STATE_KEY = "STATE"

MergeFn = Callable[[PageRecord], PageRecord]


class KeyedAccumulator:
    """Map of entity key to ``PageRecord`` with a serialized merge per key.

    ``append`` holds the lock of a single key for the whole merge, including any
    scraping the merge function does, so merges for one page never interleave
    while merges for different pages run in parallel. The registry lock only
    guards dictionary access and is never held while a merge runs.
    """

    def __init__(self, store: Optional[StateStore] = None, *, state_key: str = STATE_KEY) -> None:
        self._store = store
        self._state_key = state_key
        self._records: Dict[str, PageRecord] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._dirty = False
        self._autosave_stop: Optional[threading.Event] = None
        self._autosave_thread: Optional[threading.Thread] = None

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def append(self, key: str, merge_fn: MergeFn) -> PageRecord:
        """Read, merge and store the record for ``key`` while holding that key's lock."""
        if not key:
            raise ValueError("A non-empty key is required")

        with self._lock_for(key):
            with self._registry_lock:
                current = self._records.get(key)
            updated = merge_fn(current if current is not None else PageRecord())
            if not isinstance(updated, PageRecord):
                raise TypeError(f"merge function for {key} returned {type(updated).__name__}, expected PageRecord")
            with self._registry_lock:
                self._records[key] = updated
                self._dirty = True
            return updated

    def get(self, key: str) -> Optional[PageRecord]:
        with self._registry_lock:
            return self._records.get(key)

    def values(self) -> List[PageRecord]:
        with self._registry_lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def export(self) -> Dict[str, dict]:
        """Point-in-time copy of every record as plain dictionaries."""
        with self._registry_lock:
            items = list(self._records.items())
        return {key: record.to_dict() for key, record in items}

    def load(self) -> int:
        """Resume from the last checkpoint in the store; returns the number of records loaded."""
        if self._store is None:
            return 0
        data = self._store.load(self._state_key) or {}
        records = {key: PageRecord.from_dict(value) for key, value in data.items()}
        with self._registry_lock:
            self._records.update(records)
        if records:
            logger.info("Restored %d page records from checkpoint", len(records))
        return len(records)

    def checkpoint(self) -> None:
        if self._store is None:
            return
        with self._registry_lock:
            self._dirty = False
        try:
            self._store.save(self._state_key, self.export())
        except Exception:
            with self._registry_lock:
                self._dirty = True
            raise
        logger.debug("Checkpointed %d page records", len(self))

    def start_autosave(self, interval_secs: float) -> None:
        if self._store is None or self._autosave_thread is not None:
            return
        stop = threading.Event()
        self._autosave_stop = stop

        def _loop() -> None:
            while not stop.wait(interval_secs):
                with self._registry_lock:
                    dirty = self._dirty
                if not dirty:
                    continue
                try:
                    self.checkpoint()
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Periodic checkpoint failed: %s", exc)

        self._autosave_thread = threading.Thread(target=_loop, name="accumulator-autosave", daemon=True)
        self._autosave_thread.start()

    def stop_autosave(self) -> None:
        if self._autosave_thread is None:
            return
        self._autosave_stop.set()
        self._autosave_thread.join()
        self._autosave_thread = None
        self._autosave_stop = None
