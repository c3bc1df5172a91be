"""
Persistent Store

In-process record store with the contract the services rely on:
- reads return private copies, so nothing mutates stored state by accident
- writes only happen through a transaction, committed all-or-nothing
- every update is a compare-and-swap on the record's `version`
- per-key locks serialize work on one lead, commission or seller

Callers must acquire all the keys they need in a single `lock()` call.
"""

import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, ContextManager, Dict, Iterator, List, Optional

from .errors import NotFoundError, PersistenceError, StateConflictError


COLLECTIONS = ("accounts", "listings", "leads", "commissions", "subscriptions", "payments")


class Transaction:
    """Staged inserts and updates, applied by the store on commit."""

    def __init__(self):
        self.inserts: List[tuple] = []
        self.updates: List[tuple] = []

    def insert(self, collection: str, record) -> None:
        self.inserts.append((collection, record))

    def update(self, collection: str, record) -> None:
        """Stage an update. `record.version` must be the version that was read."""
        self.updates.append((collection, record))


class RecordStore(ABC):
    """Persistence contract the services are written against."""

    @abstractmethod
    def get(self, collection: str, record_id: str):
        """A private copy of the record, or None."""

    @abstractmethod
    def query(self, collection: str, predicate: Optional[Callable] = None) -> list:
        """Private copies of every record matching `predicate`."""

    @abstractmethod
    def transaction(self) -> ContextManager[Transaction]:
        """Stage writes; commit all-or-nothing when the block exits cleanly."""

    @abstractmethod
    def lock(self, *keys: str) -> ContextManager[None]:
        """Hold the per-key locks for `keys` for the duration of the block."""

    def require(self, collection: str, record_id: str, label: str = "Record"):
        record = self.get(collection, record_id)
        if record is None:
            raise NotFoundError(f"{label} not found: {record_id}")
        return record

    def add(self, collection: str, record) -> None:
        """Insert a single record outside any business transaction (seeding)."""
        with self.transaction() as tx:
            tx.insert(collection, record)


class MemoryStore(RecordStore):
    """Versioned record store with atomic multi-record commits."""

    def __init__(self):
        self._tables: Dict[str, dict] = {name: {} for name in COLLECTIONS}
        self._commit_lock = threading.Lock()
        self._key_locks: Dict[str, threading.RLock] = {}
        self._key_locks_guard = threading.Lock()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, collection: str, record_id: str):
        record = self._table(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def query(self, collection: str, predicate: Optional[Callable] = None) -> list:
        with self._commit_lock:
            rows = list(self._table(collection).values())
        return [copy.deepcopy(r) for r in rows if predicate is None or predicate(r)]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """
        Stage writes and commit them atomically when the block exits cleanly.

        Raises StateConflictError if any updated record changed since it was
        read; in that case nothing is written.
        """
        tx = Transaction()
        yield tx
        self._commit(tx)

    def _commit(self, tx: Transaction) -> None:
        with self._commit_lock:
            for collection, record in tx.inserts:
                if record.id in self._table(collection):
                    raise StateConflictError(f"Duplicate {collection} id: {record.id}")
            for collection, record in tx.updates:
                current = self._table(collection).get(record.id)
                if current is None:
                    raise PersistenceError(f"Cannot update missing {collection} record: {record.id}")
                if current.version != record.version:
                    raise StateConflictError(
                        f"{collection} record {record.id} was modified concurrently "
                        f"(expected version {record.version}, found {current.version})"
                    )

            for collection, record in tx.inserts:
                self._table(collection)[record.id] = copy.deepcopy(record)
            for collection, record in tx.updates:
                record.version += 1
                self._table(collection)[record.id] = copy.deepcopy(record)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    @contextmanager
    def lock(self, *keys: str) -> Iterator[None]:
        """Hold the per-key locks for `keys`, acquired in sorted order."""
        locks = [self._key_lock(key) for key in sorted(set(keys))]
        acquired = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _key_lock(self, key: str) -> threading.RLock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.RLock()
            return lock

    def _table(self, collection: str) -> dict:
        try:
            return self._tables[collection]
        except KeyError:
            raise PersistenceError(f"Unknown collection: {collection}") from None
