"""Persistence collaborator for the orchestration core.

The core only talks to the ``WorkflowStore`` protocol: CRUD keyed by
opaque ids, create-if-absent on a record's unique key, compare-and-swap
updates on ``version``, append-only logs, and a transaction scope in which
a failure leaves no partial state. ``InMemoryWorkflowStore`` is the
reference implementation used by tests and embedded callers.
"""

import copy
import dataclasses
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple, Type, TypeVar, runtime_checkable

from .exceptions import UniqueConstraintViolation, VersionConflictError
from .models import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)

TRANSITION_LOG = "workflow_transitions"


@runtime_checkable
class WorkflowStore(Protocol):
    """What the core requires from persistence."""

    def transaction(self) -> Any:
        ...

    def insert(self, record: R) -> R:
        ...

    def get(self, record_type: Type[R], record_id: str) -> Optional[R]:
        ...

    def update(self, record: R, expected_version: int) -> R:
        ...

    def find(self, record_type: Type[R], predicate: Optional[Callable[[R], bool]] = None) -> List[R]:
        ...

    def find_by_key(self, record_type: Type[R], key: Any) -> Optional[R]:
        ...

    def append(self, log_name: str, owner_id: str, entry: Any) -> Any:
        ...

    def read_log(self, log_name: str, owner_id: str) -> List[Any]:
        ...


class InMemoryWorkflowStore:
    """Thread-safe in-memory store with snapshot rollback.

    Records are copied on the way in and out, so callers never share
    mutable state with the store. Nested ``transaction()`` scopes join the
    outermost one; an exception escaping the outermost scope restores every
    table the transaction wrote to.

    Each table is snapshotted on its first write inside a transaction, so a
    transaction costs a copy of the tables it touches, not of the whole
    store. Reads copy the records they return; ``find`` without a predicate
    copies the whole table, which is what ``RecordQuery`` does.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._local = threading.local()
        self._records: Dict[type, Dict[str, Record]] = {}
        self._keys: Dict[type, Dict[Any, str]] = {}
        self._logs: Dict[str, Dict[str, List[Any]]] = {}

    # ── Transactions ─────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            depth = getattr(self._local, "depth", 0)
            self._local.depth = depth + 1
            if depth == 0:
                self._local.journal = {}
            try:
                yield
            except BaseException:
                if depth == 0:
                    self._restore(self._local.journal)
                    logger.debug("Store transaction rolled back (%d tables)", len(self._local.journal))
                raise
            finally:
                self._local.depth = depth
                if depth == 0:
                    self._local.journal = None

    def _snapshot(self, kind: str, name: Any) -> None:
        """Copy one table before its first write in the current transaction."""
        journal = getattr(self._local, "journal", None)
        if journal is None or (kind, name) in journal:
            return
        if kind == "records":
            saved = (
                copy.deepcopy(self._records.get(name)),
                copy.deepcopy(self._keys.get(name)),
            )
        else:
            saved = copy.deepcopy(self._logs.get(name))
        journal[(kind, name)] = saved

    def _restore(self, journal: Dict[Tuple[str, Any], Any]) -> None:
        for (kind, name), saved in journal.items():
            if kind == "records":
                records, keys = saved
                _put(self._records, name, records)
                _put(self._keys, name, keys)
            else:
                _put(self._logs, name, saved)

    # ── Records ──────────────────────────────────────────────────────

    def insert(self, record: R) -> R:
        """Store a new record; fails if its unique key is already held."""
        with self._lock:
            key = record.unique_key()
            if key is not None:
                holder = self._keys.get(type(record), {}).get(key)
                if holder is not None:
                    raise UniqueConstraintViolation(key, holder)
            self._snapshot("records", type(record))
            table = self._records.setdefault(type(record), {})
            stored = copy.deepcopy(record)
            table[stored.id] = stored
            if key is not None:
                self._keys.setdefault(type(record), {})[key] = stored.id
            return copy.deepcopy(stored)

    def get(self, record_type: Type[R], record_id: str) -> Optional[R]:
        with self._lock:
            record = self._records.get(record_type, {}).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def update(self, record: R, expected_version: int) -> R:
        """Replace a record only if the stored version is *expected_version*."""
        with self._lock:
            table = self._records.get(type(record), {})
            current = table.get(record.id)
            if current is None:
                raise VersionConflictError(record.id, expected_version, -1)
            if current.version != expected_version:
                raise VersionConflictError(record.id, expected_version, current.version)

            old_key = current.unique_key()
            new_key = record.unique_key()
            if new_key is not None and new_key != old_key:
                holder = self._keys.get(type(record), {}).get(new_key)
                if holder is not None and holder != record.id:
                    raise UniqueConstraintViolation(new_key, holder)

            self._snapshot("records", type(record))
            keys = self._keys.setdefault(type(record), {})
            stored = copy.deepcopy(record)
            stored.version = expected_version + 1
            table[stored.id] = stored
            if old_key is not None and keys.get(old_key) == record.id:
                del keys[old_key]
            if new_key is not None:
                keys[new_key] = record.id
            return copy.deepcopy(stored)

    def find(self, record_type: Type[R], predicate: Optional[Callable[[R], bool]] = None) -> List[R]:
        """Copies of the matching records; the predicate must not mutate."""
        with self._lock:
            records = list(self._records.get(record_type, {}).values())
            if predicate is not None:
                records = [r for r in records if predicate(r)]
            return copy.deepcopy(records)

    def find_by_key(self, record_type: Type[R], key: Any) -> Optional[R]:
        with self._lock:
            record_id = self._keys.get(record_type, {}).get(key)
            if record_id is None:
                return None
            return self.get(record_type, record_id)

    # ── Append-only logs ─────────────────────────────────────────────

    def append(self, log_name: str, owner_id: str, entry: Any) -> Any:
        """Append *entry* to the owner's log, stamping its sequence number."""
        with self._lock:
            self._snapshot("logs", log_name)
            log = self._logs.setdefault(log_name, {}).setdefault(owner_id, [])
            if dataclasses.is_dataclass(entry) and any(f.name == "sequence" for f in dataclasses.fields(entry)):
                entry = dataclasses.replace(entry, sequence=len(log) + 1)
            log.append(entry)
            return entry

    def read_log(self, log_name: str, owner_id: str) -> List[Any]:
        with self._lock:
            return list(self._logs.get(log_name, {}).get(owner_id, []))


def _put(tables: Dict[Any, Any], name: Any, saved: Optional[Any]) -> None:
    if saved is None:
        tables.pop(name, None)
    else:
        tables[name] = saved
