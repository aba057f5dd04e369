"""Workspace-backed document and record stores.

Documents are one JSON file per key; record collections are JSONL files
partitioned by an owner key (user id or thread id). File names are the
hex-encoded key, so two distinct keys never share a file. Whole-file writes
go through ``atomic_write_text``; record appends are a single fsynced write.
Concurrent writers for the same key race with last-write-wins semantics.
"""

from __future__ import annotations

import copy
import json
import time
from pathlib import Path
from typing import Any, Callable, Generic, Protocol, TypeVar

from imibot.logging import get_logger
from imibot.utils.helpers import append_text, atomic_write_text, ensure_dir, filename_to_key, key_to_filename

logger = get_logger(__name__)


class Serializable(Protocol):
    def to_dict(self) -> dict[str, Any]: ...


T = TypeVar("T", bound=Serializable)


def _keys_in(directory: Path, suffix: str) -> list[str]:
    keys = []
    for path in directory.glob(f"*{suffix}"):
        key = filename_to_key(path.stem)
        if key is not None:
            keys.append(key)
    return sorted(keys)


class DocumentStore(Generic[T]):
    """One JSON document per key, cached in memory after first read.

    The cache holds serialized data, so callers always get a fresh object and
    a failed write leaves both cache and file at their previous state.
    ``key_of`` names the field a loaded document must carry as its key.
    """

    def __init__(
        self,
        root: Path,
        name: str,
        from_dict: Callable[[dict[str, Any]], T],
        key_of: Callable[[T], str] | None = None,
    ) -> None:
        self.name = name
        self.dir = ensure_dir(root / name)
        self._from_dict = from_dict
        self._key_of = key_of
        self._cache: dict[str, dict[str, Any]] = {}

    def _path(self, key: str) -> Path:
        return self.dir / f"{key_to_filename(key)}.json"

    def get(self, key: str) -> T | None:
        data = self._cache.get(key)
        if data is not None:
            return self._from_dict(copy.deepcopy(data))
        path = self._path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            doc = self._from_dict(copy.deepcopy(data))
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning("document_load_failed", store=self.name, key=key, error=str(e))
            return None
        if self._key_of is not None and self._key_of(doc) != key:
            logger.warning("document_key_mismatch", store=self.name, key=key, found=self._key_of(doc))
            return None
        self._cache[key] = data
        return doc

    def put(self, key: str, doc: T) -> None:
        if self._key_of is not None and self._key_of(doc) != key:
            raise ValueError(f"{self.name}: document key {self._key_of(doc)!r} does not match {key!r}")
        started = time.perf_counter()
        data = doc.to_dict()
        atomic_write_text(self._path(key), json.dumps(data, ensure_ascii=False, indent=2))
        self._cache[key] = copy.deepcopy(data)
        logger.debug(
            "document_written",
            store=self.name,
            key=key,
            elapsed_ms=round((time.perf_counter() - started) * 1000, 3),
        )

    def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self) -> list[str]:
        return _keys_in(self.dir, ".json")

    def list_all(self) -> list[T]:
        docs = []
        for key in self.keys():
            doc = self.get(key)
            if doc is not None:
                docs.append(doc)
        return docs


class RecordStore(Generic[T]):
    """Append-mostly JSONL collections partitioned by an owner key."""

    def __init__(self, root: Path, name: str, from_dict: Callable[[dict[str, Any]], T]) -> None:
        self.name = name
        self.dir = ensure_dir(root / name)
        self._from_dict = from_dict

    def _path(self, partition: str) -> Path:
        return self.dir / f"{key_to_filename(partition)}.jsonl"

    def list(self, partition: str) -> list[T]:
        """All records of *partition* in insertion order."""
        path = self._path(partition)
        if not path.exists():
            return []
        records: list[T] = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(self._from_dict(json.loads(line)))
                except (ValueError, TypeError, KeyError) as e:
                    logger.warning("record_skipped", store=self.name, partition=partition, error=str(e))
        return records

    def append(self, partition: str, record: T) -> T:
        line = json.dumps(record.to_dict(), ensure_ascii=False, default=str)
        append_text(self._path(partition), line + "\n")
        return record

    def replace_all(self, partition: str, records: list[T]) -> None:
        body = "".join(json.dumps(r.to_dict(), ensure_ascii=False, default=str) + "\n" for r in records)
        atomic_write_text(self._path(partition), body)

    def update(self, partition: str, record_id: str, mutate: Callable[[T], None]) -> T | None:
        """Apply *mutate* to the record whose ``id`` matches and persist. Returns None when absent."""
        records = self.list(partition)
        for record in records:
            if getattr(record, "id", None) == record_id:
                mutate(record)
                self.replace_all(partition, records)
                return record
        return None

    def partitions(self) -> list[str]:
        return _keys_in(self.dir, ".jsonl")
