from __future__ import annotations

import copy
import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from src.api.db.base import (
    SCHEMA_VERSION,
    DuplicateRecordError,
    RecordBackend,
    RecordQuery,
    StorageCorruptedError,
    StorageError,
    StorageTimeoutError,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def _json_default(v: Any) -> Any:
    if isinstance(v, datetime):
        return v.isoformat()
    raise TypeError(f"Object of type {type(v).__name__} is not JSON serializable")


def _parse_dt(v: Any) -> Any:
    """Parse an ISO-8601 string into an aware datetime; naive values are assumed UTC."""
    if not isinstance(v, str):
        return v
    dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    return _aware(dt)


def _get_path(doc: Dict[str, Any], dotted: str) -> Any:
    cur: Any = doc
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _matches(doc: Dict[str, Any], query: RecordQuery) -> bool:
    for key, expected in query.equals.items():
        if _get_path(doc, key) != expected:
            return False
    if query.since is not None or query.before is not None:
        ts = doc.get(query.time_field)
        if not isinstance(ts, datetime):
            return False
        if query.since is not None and _aware(ts) < _aware(query.since):
            return False
        if query.before is not None and _aware(ts) >= _aware(query.before):
            return False
    return True


class JsonlFileBackend(RecordBackend):
    """
    Append-only JSON-lines log for one entity kind.

    File layout:
      line 1: {"schemaVersion": 1, "kind": "<kind>"}
      then:   {"op": "put", "record": {...}}  or  {"op": "del", "id": "..."}

    - The whole collection is indexed in memory; each mutation appends only the changed records.
    - Once the log carries more than `compact_after` superseded operations it is rewritten
      (temp file + os.replace) to one "put" per live record.
    - A single RLock serializes all access; acquisition is bounded by `lock_timeout_sec`.
    - A legacy file holding a bare JSON array of records is migrated on open.
    """

    def __init__(
        self,
        path: str | os.PathLike,
        kind: str,
        *,
        datetime_fields: Sequence[str] = ("createdAt", "updatedAt"),
        lock_timeout_sec: float = 5.0,
        compact_after: int = 500,
    ):
        self.kind = kind
        self._path = Path(path)
        self._datetime_fields = tuple(datetime_fields)
        self._lock_timeout = float(lock_timeout_sec)
        self._compact_after = max(1, int(compact_after))
        self._lock = RLock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._log_ops = 0
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._lock.acquire(timeout=self._lock_timeout):
            raise StorageTimeoutError(
                f"timed out after {self._lock_timeout}s waiting for {self.kind} store lock",
                store=self.kind,
                operation=operation,
            )
        try:
            yield
        finally:
            self._lock.release()

    # ---- encoding ----

    def _decode(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(raw)
        for name in self._datetime_fields:
            if name in doc:
                doc[name] = _parse_dt(doc[name])
        return doc

    @staticmethod
    def _line(payload: Dict[str, Any]) -> str:
        return json.dumps(payload, ensure_ascii=False, default=_json_default) + "\n"

    def _header(self) -> Dict[str, Any]:
        return {"schemaVersion": SCHEMA_VERSION, "kind": self.kind}

    # ---- load ----

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No %s store at %s; starting empty", self.kind, self._path)
            return

        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"cannot read {self._path}: {exc}", store=self.kind, operation="load") from exc

        if not text.strip():
            return

        if text.lstrip().startswith("["):
            self._load_legacy_array(text)
            return

        lines = text.splitlines()
        try:
            header = json.loads(lines[0])
        except ValueError as exc:
            raise StorageCorruptedError(
                f"{self._path}: unreadable header", store=self.kind, operation="load"
            ) from exc
        version = header.get("schemaVersion") if isinstance(header, dict) else None
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise StorageCorruptedError(
                f"{self._path}: unsupported schemaVersion={version!r}", store=self.kind, operation="load"
            )

        # Anything after the last newline is an interrupted append; the log is rewritten below
        # so later appends never land on the same line as the fragment.
        needs_rewrite = not text.endswith("\n")
        body = lines[1:]
        for lineno, line in enumerate(body, start=2):
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
                self._apply_entry(entry)
            except (ValueError, KeyError, TypeError) as exc:
                if lineno == len(lines):
                    # Torn final append (crash mid-write); everything before it is intact.
                    logger.warning("Discarding truncated last line of %s", self._path)
                    needs_rewrite = True
                    break
                raise StorageCorruptedError(
                    f"{self._path}:{lineno}: unparsable log entry", store=self.kind, operation="load"
                ) from exc
            self._log_ops += 1

        if needs_rewrite:
            self._compact()

        logger.info("Loaded %d %s record(s) from %s", len(self._records), self.kind, self._path)

    def _load_legacy_array(self, text: str) -> None:
        try:
            items = json.loads(text)
            for raw in items:
                doc = self._decode(raw)
                self._records[str(doc["id"])] = doc
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageCorruptedError(
                f"{self._path}: unparsable legacy array", store=self.kind, operation="load"
            ) from exc
        logger.info("Migrating %d legacy %s record(s) in %s", len(self._records), self.kind, self._path)
        self._compact()

    def _apply_entry(self, entry: Dict[str, Any]) -> None:
        op = entry["op"]
        if op == "put":
            doc = self._decode(entry["record"])
            self._records[str(doc["id"])] = doc
        elif op == "del":
            self._records.pop(str(entry["id"]), None)
        else:
            raise ValueError(f"unknown op {op!r}")

    # ---- write path ----

    def _append(self, entries: List[Dict[str, Any]], operation: str) -> None:
        """Durably append log entries. Raises StorageError without touching in-memory state."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fresh = not self._path.exists() or self._path.stat().st_size == 0
            with open(self._path, "a", encoding="utf-8") as f:
                if fresh:
                    f.write(self._line(self._header()))
                for entry in entries:
                    f.write(self._line(entry))
                f.flush()
                os.fsync(f.fileno())
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(
                f"cannot append to {self._path}: {exc}", store=self.kind, operation=operation
            ) from exc

    def _after_write(self, n_entries: int) -> None:
        self._log_ops += n_entries
        if self._log_ops - len(self._records) > self._compact_after:
            try:
                self._compact()
            except StorageError:
                # The log itself is still complete; compaction is retried on the next write.
                logger.exception("Compaction of %s failed", self._path)

    def _compact(self) -> None:
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(self._line(self._header()))
                for doc in self._records.values():
                    f.write(self._line({"op": "put", "record": doc}))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except OSError as exc:
            raise StorageError(f"cannot compact {self._path}: {exc}", store=self.kind, operation="compact") from exc
        logger.info("Compacted %s store %s (%d -> %d entries)", self.kind, self._path, self._log_ops, len(self._records))
        self._log_ops = len(self._records)

    # ---- RecordBackend ----

    def insert(self, doc: Dict[str, Any]) -> None:
        with self._locked("insert"):
            record_id = str(doc["id"])
            if record_id in self._records:
                raise DuplicateRecordError(f"{self.kind} id {record_id} already exists", store=self.kind, operation="insert")
            stored = copy.deepcopy(doc)
            self._append([{"op": "put", "record": stored}], "insert")
            self._records[record_id] = stored
            self._after_write(1)

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._locked("get"):
            doc = self._records.get(record_id)
            return copy.deepcopy(doc) if doc is not None else None

    def update_fields(self, record_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._locked("update_fields"):
            existing = self._records.get(record_id)
            if existing is None:
                return None
            stored = copy.deepcopy(existing)
            stored.update(copy.deepcopy(fields))
            self._append([{"op": "put", "record": stored}], "update_fields")
            self._records[record_id] = stored
            self._after_write(1)
            return copy.deepcopy(stored)

    def delete(self, record_id: str) -> bool:
        with self._locked("delete"):
            if record_id not in self._records:
                return False
            self._append([{"op": "del", "id": record_id}], "delete")
            del self._records[record_id]
            self._after_write(1)
            return True

    def _select(self, query: RecordQuery) -> List[Dict[str, Any]]:
        # Iterate newest-inserted first so equal timestamps keep newest-first order under the stable sort.
        hits = [d for d in reversed(list(self._records.values())) if _matches(d, query)]
        floor = datetime.min.replace(tzinfo=timezone.utc)
        hits.sort(key=lambda d: d.get(query.time_field) or floor, reverse=True)
        return hits

    def find(self, query: RecordQuery) -> Tuple[List[Dict[str, Any]], int]:
        with self._locked("find"):
            hits = self._select(query)
            total = len(hits)
            start = max(0, int(query.offset))
            end = None if query.limit is None else start + max(0, int(query.limit))
            return copy.deepcopy(hits[start:end]), total

    def count(self, query: RecordQuery) -> int:
        with self._locked("count"):
            return sum(1 for d in self._records.values() if _matches(d, query))

    def update_many(self, query: RecordQuery, fields: Dict[str, Any]) -> int:
        with self._locked("update_many"):
            updated = []
            for doc in self._records.values():
                if _matches(doc, query):
                    new_doc = copy.deepcopy(doc)
                    new_doc.update(copy.deepcopy(fields))
                    updated.append(new_doc)
            if not updated:
                return 0
            self._append([{"op": "put", "record": d} for d in updated], "update_many")
            for d in updated:
                self._records[str(d["id"])] = d
            self._after_write(len(updated))
            return len(updated)

    def delete_many(self, query: RecordQuery) -> int:
        with self._locked("delete_many"):
            doomed = [rid for rid, d in self._records.items() if _matches(d, query)]
            if not doomed:
                return 0
            self._append([{"op": "del", "id": rid} for rid in doomed], "delete_many")
            for rid in doomed:
                del self._records[rid]
            self._after_write(len(doomed))
            return len(doomed)

    def describe(self) -> Dict[str, Any]:
        with self._locked("describe"):
            return {
                "backend": "file",
                "kind": self.kind,
                "path": str(self._path),
                "schemaVersion": SCHEMA_VERSION,
                "records": len(self._records),
                "logEntries": self._log_ops,
            }
