from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from collections.abc import Iterator, Mapping

from ._model import VersionedDataKind, VersionedItem


class _RWLock:
    """
    Reader/writer lock. Any number of readers may hold it at once; a writer
    holds it alone. Acquisition waits at most the given timeout and reports
    whether the lock was actually acquired.
    """

    __slots__ = ("_cond", "_readers", "_writer")

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self, timeout: float) -> bool:
        with self._cond:
            ok = self._cond.wait_for(lambda: not self._writer, timeout)
            if ok:
                self._readers += 1
            return ok

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: float) -> bool:
        with self._cond:
            ok = self._cond.wait_for(lambda: not self._writer and self._readers == 0, timeout)
            if ok:
                self._writer = True
            return ok

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class InMemoryFeatureStore:
    """
    Holds the latest known version of every flag and segment. One writer
    (the update processor) and any number of readers (evaluations) may use
    the store concurrently. Deleted items are kept as tombstones so that
    stale updates arriving out of order are rejected by version.

    Lock acquisition is bounded by lock_timeout seconds. When it times out
    the operation goes ahead without the lock rather than stalling request
    serving.
    """

    def __init__(self, lock_timeout: float = 1.0, logger: logging.Logger | None = None):
        self._lock = _RWLock()
        self._lock_timeout = lock_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._items: dict[str, dict[str, VersionedItem]] = {}
        self._initialized = False

    @contextmanager
    def _read(self, op: str) -> Iterator[None]:
        acquired = self._lock.acquire_read(self._lock_timeout)
        if not acquired:
            self._logger.warning("timed out waiting for read lock in %s, proceeding without it", op)
        try:
            yield
        finally:
            if acquired:
                self._lock.release_read()

    @contextmanager
    def _write(self, op: str) -> Iterator[None]:
        acquired = self._lock.acquire_write(self._lock_timeout)
        if not acquired:
            self._logger.warning("timed out waiting for write lock in %s, proceeding without it", op)
        try:
            yield
        finally:
            if acquired:
                self._lock.release_write()

    def get(self, kind: VersionedDataKind, key: str) -> VersionedItem | None:
        """
        The item with the given key or None if it's unknown or deleted.
        """
        with self._read("get"):
            item = self._items.get(kind.namespace, {}).get(key)
        if item is None:
            self._logger.debug("%s %s not found in store", kind.namespace, key)
            return None
        if item.deleted:
            self._logger.debug("%s %s is deleted", kind.namespace, key)
            return None
        return item

    def all(self, kind: VersionedDataKind) -> dict[str, VersionedItem]:
        """
        All items of the given kind keyed by their key, without tombstones.
        """
        with self._read("all"):
            items = self._items.get(kind.namespace, {})
            return {k: v for k, v in items.items() if not v.deleted}

    def init(self, all_data: Mapping[VersionedDataKind, Mapping[str, VersionedItem]]):
        """
        Replace the entire content of the store.
        """
        items = {kind.namespace: dict(data) for kind, data in all_data.items()}
        with self._write("init"):
            self._items = items
            self._initialized = True

    def upsert(self, kind: VersionedDataKind, item: VersionedItem):
        """
        Install the item unless the store already has the same key at the
        same or a higher version.

        Dicts already published to readers are never mutated; a new one is
        built and swapped in.
        """
        with self._write("upsert"):
            items = self._items.get(kind.namespace, {})
            old = items.get(item.key)
            if old is None or old.version < item.version:
                new = dict(items)
                new[item.key] = item
                self._items = {**self._items, kind.namespace: new}
                return
        self._logger.debug(
            "ignoring %s %s version %d, store has version %d",
            kind.namespace,
            item.key,
            item.version,
            old.version,
        )

    def delete(self, kind: VersionedDataKind, key: str, version: int):
        """
        Mark the item deleted as of the given version.
        """
        self.upsert(kind, kind.make_deleted_item(key, version))

    @property
    def initialized(self) -> bool:
        with self._read("initialized"):
            return self._initialized
