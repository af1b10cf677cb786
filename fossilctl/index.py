"""
Fossil Index — denormalized lookup structures over entry files

index.json layout:
    entries      id -> {id, type, title, tags, source, createdAt, updatedAt}
    tags         tag -> [id, ...]
    types        type -> [id, ...]
    sources      source -> [id, ...]
    lastUpdated  ISO-8601 timestamp
    version      index format version string

The index is a cache of the entry files, not the source of truth for
content. Every store mutation rewrites it synchronously. A crash between
an entry write and the index rewrite leaves an orphaned entry file that
index-driven enumeration does not see; no directory-scan rebuild exists.

Id order in ``entries`` and in every bucket is insertion order. Query
results follow it: stable, but not sorted by any field.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from fossilctl.types import (
    FossilEntry,
    FossilQuery,
    IndexSummary,
    MalformedFossilError,
    _now_iso,
)

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = "1.0.0"


def _bucket_add(buckets: Dict[str, List[str]], key: str, entry_id: str) -> None:
    ids = buckets.setdefault(key, [])
    if entry_id not in ids:
        ids.append(entry_id)


def _bucket_remove(buckets: Dict[str, List[str]], key: str, entry_id: str) -> None:
    ids = buckets.get(key)
    if ids is None:
        return
    buckets[key] = [i for i in ids if i != entry_id]
    if not buckets[key]:
        del buckets[key]


class FossilIndex:
    """In-memory view of index.json with bucket maintenance helpers."""

    def __init__(
        self,
        entries: Optional[Dict[str, Dict[str, Any]]] = None,
        tags: Optional[Dict[str, List[str]]] = None,
        types: Optional[Dict[str, List[str]]] = None,
        sources: Optional[Dict[str, List[str]]] = None,
        last_updated: Optional[str] = None,
        version: str = INDEX_FORMAT_VERSION,
    ):
        self.entries: Dict[str, Dict[str, Any]] = entries if entries is not None else {}
        self.tags: Dict[str, List[str]] = tags if tags is not None else {}
        self.types: Dict[str, List[str]] = types if types is not None else {}
        self.sources: Dict[str, List[str]] = sources if sources is not None else {}
        self.last_updated: str = last_updated or _now_iso()
        self.version = version

    # -- Persistence -------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "tags": self.tags,
            "types": self.types,
            "sources": self.sources,
            "lastUpdated": self.last_updated,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> FossilIndex:
        return cls(
            entries=dict(d.get("entries") or {}),
            tags=dict(d.get("tags") or {}),
            types=dict(d.get("types") or {}),
            sources=dict(d.get("sources") or {}),
            last_updated=d.get("lastUpdated"),
            version=d.get("version", INDEX_FORMAT_VERSION),
        )

    @classmethod
    def load(cls, path: Path) -> FossilIndex:
        """Read index.json.

        Raises:
            MalformedFossilError: If the file is not a JSON object.
            OSError: If the file cannot be read.
        """
        text = Path(path).read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedFossilError(str(path), str(exc)) from exc
        if not isinstance(data, dict) or not isinstance(data.get("entries", {}), dict):
            raise MalformedFossilError(str(path), "index is not a JSON object with 'entries'")
        return cls.from_dict(data)

    def save(self, path: Path) -> None:
        Path(path).write_text(
            json.dumps(self.to_dict(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )

    # -- Mutations ---------------------------------------------------------

    def add(self, entry: FossilEntry) -> None:
        """Register a new entry in the row map and every bucket."""
        self.entries[entry.id] = entry.summary().to_dict()
        for tag in entry.tags:
            _bucket_add(self.tags, tag, entry.id)
        _bucket_add(self.types, entry.type, entry.id)
        _bucket_add(self.sources, entry.source, entry.id)
        self.last_updated = entry.updated_at or _now_iso()

    def refresh(
        self,
        entry: FossilEntry,
        previous: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Rewrite the row for an updated entry and move changed buckets.

        Args:
            entry: The entry in its new state.
            previous: The pre-update entry dict (on-disk shape). Tag, type
                and source buckets are only touched when they changed.
        """
        if entry.id not in self.entries:
            # Orphaned file: adopt it rather than leave index and file apart
            logger.warning(f"Entry {entry.id} missing from index; re-adding")
            self.add(entry)
            return

        row = self.entries[entry.id]
        row.update({
            "title": entry.title,
            "tags": list(entry.tags),
            "type": entry.type,
            "source": entry.source,
            "updatedAt": entry.updated_at,
        })

        if previous is not None:
            old_tags = list(previous.get("tags") or [])
            if old_tags != list(entry.tags):
                for tag in old_tags:
                    _bucket_remove(self.tags, tag, entry.id)
                for tag in entry.tags:
                    _bucket_add(self.tags, tag, entry.id)
            old_type = previous.get("type")
            if old_type and old_type != entry.type:
                _bucket_remove(self.types, old_type, entry.id)
                _bucket_add(self.types, entry.type, entry.id)
            old_source = previous.get("source")
            if old_source and old_source != entry.source:
                _bucket_remove(self.sources, old_source, entry.id)
                _bucket_add(self.sources, entry.source, entry.id)

        self.last_updated = entry.updated_at or _now_iso()

    def remove(self, entry_id: str) -> bool:
        """Purge an id from the row map and every bucket."""
        row = self.entries.pop(entry_id, None)
        for buckets in (self.tags, self.types, self.sources):
            for key in list(buckets.keys()):
                _bucket_remove(buckets, key, entry_id)
        if row is not None:
            self.last_updated = _now_iso()
        return row is not None

    # -- Lookups -----------------------------------------------------------

    def ids(self) -> List[str]:
        """All indexed ids, in insertion order."""
        return list(self.entries.keys())

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self.entries

    def row(self, entry_id: str) -> Optional[IndexSummary]:
        data = self.entries.get(entry_id)
        return IndexSummary.from_dict(data) if data is not None else None

    def matching_ids(self, query: Optional[FossilQuery] = None) -> List[str]:
        """Ids passing the index-only filters (type, tags, source, dateRange).

        ``search`` and pagination are left to the caller: search needs the
        entry files, and pagination must run after search.
        """
        ids: Iterable[str] = self.entries.keys()
        if query is None:
            return list(ids)

        result: List[str] = []
        wanted_tags = set(query.tags) if query.tags else None
        for entry_id in ids:
            row = self.entries[entry_id]
            if query.type and row.get("type") != query.type:
                continue
            if wanted_tags is not None and not wanted_tags.intersection(row.get("tags") or []):
                continue
            if query.source and row.get("source") != query.source:
                continue
            if query.date_range and not query.date_range.contains(row.get("createdAt", "")):
                continue
            result.append(entry_id)
        return result
