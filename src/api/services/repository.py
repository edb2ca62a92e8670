from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel

from src.api.db.base import RecordBackend, RecordQuery
from src.api.schemas.common import utc_now

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Repository(Generic[ModelT]):
    """
    CRUD + filter/paginate + retention over one RecordBackend.

    Subclasses set the entity model, id prefix, the timestamp field used for ordering and
    retention, and the read-state field. Storage errors propagate as StorageError.
    """

    model: Type[ModelT]
    id_prefix: str = "rec"
    time_field: str = "createdAt"
    read_field: str = "read"
    # Field bumped on every mutation (None when the entity has no such field).
    updated_field: Optional[str] = None

    def __init__(self, backend: RecordBackend, clock: Callable[[], datetime] = utc_now):
        self.backend = backend
        self._clock = clock
        # Serializes mutations (update, mark_read, mark_all_read, purge) on top of the backend's own lock.
        self._rmw_lock = RLock()

    @property
    def kind(self) -> str:
        return self.backend.kind

    def now(self) -> datetime:
        return self._clock()

    def _new_id(self) -> str:
        return f"{self.id_prefix}_{uuid4().hex}"

    def _to_model(self, doc: Dict[str, Any]) -> ModelT:
        return self.model.model_validate(doc)

    @staticmethod
    def _to_doc(entity: BaseModel) -> Dict[str, Any]:
        return entity.model_dump(by_alias=True)

    def _insert(self, fields: Dict[str, Any]) -> ModelT:
        entity = self.model.model_validate({"id": self._new_id(), **fields})
        self.backend.insert(self._to_doc(entity))
        return entity

    def _page(self, query: RecordQuery) -> Tuple[List[ModelT], int]:
        docs, total = self.backend.find(query)
        return [self._to_model(d) for d in docs], total

    # PUBLIC_INTERFACE
    def get(self, record_id: str) -> Optional[ModelT]:
        """Fetch by id; None if not found."""
        doc = self.backend.get(record_id)
        return self._to_model(doc) if doc else None

    def _merge(self, record_id: str, changes: Dict[str, Any]) -> Optional[ModelT]:
        with self._rmw_lock:
            existing = self.backend.get(record_id)
            if not existing:
                return None
            fields = dict(changes)
            if self.updated_field:
                fields[self.updated_field] = self.now()
            # Validated as a whole record; only the changed fields are written back.
            validated = self._to_doc(self._to_model({**existing, **fields}))
            doc = self.backend.update_fields(record_id, {k: validated[k] for k in fields})
            return self._to_model(doc) if doc else None

    # PUBLIC_INTERFACE
    def delete(self, record_id: str) -> bool:
        """Delete by id; False if not found."""
        return self.backend.delete(record_id)

    # PUBLIC_INTERFACE
    def mark_read(self, record_id: str) -> Optional[ModelT]:
        """Set the read flag on one record; None if not found."""
        return self._merge(record_id, {self.read_field: True})

    # PUBLIC_INTERFACE
    def mark_all_read(self, organization_id: str) -> int:
        """Mark every unread record of an organization as read in one durable write."""
        fields: Dict[str, Any] = {self.read_field: True}
        if self.updated_field:
            fields[self.updated_field] = self.now()
        with self._rmw_lock:
            count = self.backend.update_many(
                RecordQuery(
                    equals={"organizationId": organization_id, self.read_field: False}, time_field=self.time_field
                ),
                fields,
            )
        logger.info("Marked %d %s read for organizationId=%s", count, self.kind, organization_id)
        return count

    # PUBLIC_INTERFACE
    def purge(self, days_to_keep: int) -> int:
        """Drop records older than now - days_to_keep. Returns the number removed."""
        cutoff = self.now() - timedelta(days=max(0, int(days_to_keep)))
        with self._rmw_lock:
            removed = self.backend.delete_many(RecordQuery(time_field=self.time_field, before=cutoff))
        if removed:
            logger.info("Purged %d %s older than %s", removed, self.kind, cutoff.isoformat())
        return removed

    def describe(self) -> Dict[str, Any]:
        return self.backend.describe()
