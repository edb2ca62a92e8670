from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Bumped whenever the persisted record layout changes.
SCHEMA_VERSION = 1


class StorageError(Exception):
    """Durable read/write failed; in-memory and persisted state were left unchanged."""

    def __init__(self, message: str, *, store: str = "", operation: str = ""):
        super().__init__(message)
        self.store = store
        self.operation = operation


class StorageTimeoutError(StorageError):
    """A storage operation did not complete within its time bound."""


class StorageCorruptedError(StorageError):
    """Persisted data exists but cannot be parsed (or has an unsupported schema version)."""


class DuplicateRecordError(StorageError):
    """A uniqueness constraint rejected the write."""


@dataclass(frozen=True)
class RecordQuery:
    """
    Backend-neutral filter/sort/paginate request.

    - equals: exact-match predicates; keys may be dotted paths (e.g. "metadata.threshold").
    - since / before: inclusive lower and exclusive upper bound on time_field.
    - results are always ordered by time_field, newest first.
    """

    equals: Dict[str, Any] = field(default_factory=dict)
    time_field: str = "createdAt"
    since: Optional[datetime] = None
    before: Optional[datetime] = None
    offset: int = 0
    limit: Optional[int] = None


class RecordBackend(ABC):
    """Durable storage for one entity kind. Records are plain dicts keyed by their "id" field."""

    kind: str = ""

    @abstractmethod
    def insert(self, doc: Dict[str, Any]) -> None:
        """Persist a new record; raises DuplicateRecordError if a unique key is taken."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the record or None."""

    @abstractmethod
    def update_fields(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Atomically set `fields` on one record and return the updated copy, or None if it does not exist."""

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a record by id. Returns False if it does not exist."""

    @abstractmethod
    def find(self, query: RecordQuery) -> Tuple[List[Dict[str, Any]], int]:
        """Return (page, total_matching); total is computed before offset/limit."""

    @abstractmethod
    def count(self, query: RecordQuery) -> int:
        """Count matching records."""

    @abstractmethod
    def update_many(self, query: RecordQuery, fields: Dict[str, Any]) -> int:
        """Set fields on every matching record in one durable write. Returns the count updated."""

    @abstractmethod
    def delete_many(self, query: RecordQuery) -> int:
        """Delete every matching record in one durable write. Returns the count removed."""

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """Diagnostics for the storage health endpoint (no secrets)."""

    def close(self) -> None:
        """Release resources held by the backend."""
        return None


class DedupLedger(ABC):
    """
    Cross-process claim registry for alert deduplication.

    A claim on `key` is held until its `until` time passes; only one caller can hold it.
    """

    @abstractmethod
    def claim(self, key: str, now: datetime, until: datetime) -> bool:
        """Take the claim on `key` until `until`. False if another live claim holds it."""

    @abstractmethod
    def release(self, key: str, until: datetime) -> None:
        """Give back a claim taken with the same `until` (no-op if it was replaced)."""
