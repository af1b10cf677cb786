"""
Fossil Store — file-backed, content-addressed knowledge base

Layout (root configurable, default ``.context-fossil``):
    entries/<id>.json        one file per entry
    index.json               denormalized index (see fossilctl.index)
    snapshots/<snapshotId>/  point-in-time copies (see fossilctl.snapshot)
    exports/                 rendered exports (see fossilctl.export_import)

Insert pipeline (add_entry):
    1. Exact match on metadata.contentHash  -> version bump, no new file
    2. Fuzzy match among same-title entries -> content/metadata update
    3. Otherwise a new entry file + index rows

Single writer assumed: every mutation is a read-modify-write of index.json
with no locking and no journal. Bulk scans skip unreadable entry files.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, Iterator, List, Optional, Tuple, Union

from fossilctl.config import FossilConfig
from fossilctl.index import FossilIndex
from fossilctl.similarity import similarity
from fossilctl.types import (
    EntryValidationError,
    FossilEntry,
    FossilQuery,
    MalformedFossilError,
    _now_iso,
    content_hash,
    field_name,
    generate_id,
)

logger = logging.getLogger(__name__)

# Entry ids are used as file names: no separators, no traversal
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")

# Fields a caller may never overwrite through update_entry
_IMMUTABLE_FIELDS = {"id", "created_at", "previous_versions", "version"}


class FossilStore:
    """
    Explicit store handle over one fossil directory.

    Lifecycle: construct, ``initialize()``, then call operations freely.
    Every operation persists before returning; no teardown is needed.
    """

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        config: Optional[FossilConfig] = None,
    ):
        """
        Args:
            root: Store directory. Defaults to ``config.store.root``.
            config: FossilConfig; compiled defaults when None.
        """
        self._config = config or FossilConfig()
        self.root = Path(root if root is not None else self._config.store.root)
        self.entries_dir = self.root / "entries"
        self.snapshots_dir = self.root / "snapshots"
        self.exports_dir = self.root / "exports"
        self.index_path = self.root / "index.json"

    @property
    def config(self) -> FossilConfig:
        return self._config

    def initialize(self) -> FossilStore:
        """Create the directory layout and a default index. Idempotent."""
        for d in (self.root, self.entries_dir, self.snapshots_dir, self.exports_dir):
            d.mkdir(parents=True, exist_ok=True)
        if not self.index_path.exists():
            FossilIndex(version=self._config.store.index_version).save(self.index_path)
            logger.info(f"FossilStore initialized: {self.root}")
        return self

    # -- Low-level persistence ---------------------------------------------

    def load_index(self) -> FossilIndex:
        """Read index.json. Raises MalformedFossilError if corrupt."""
        return FossilIndex.load(self.index_path)

    def save_index(self, index: FossilIndex) -> None:
        index.save(self.index_path)

    def entry_path(self, entry_id: str) -> Optional[Path]:
        """Path of an entry file, or None for ids unusable as file names."""
        if not isinstance(entry_id, str) or not entry_id:
            return None
        if not _SAFE_ID_RE.match(entry_id) or entry_id.startswith("."):
            return None
        return self.entries_dir / f"{entry_id}.json"

    def _read_entry_file(self, path: Path) -> FossilEntry:
        text = path.read_text(encoding="utf-8")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedFossilError(str(path), str(exc)) from exc
        if not isinstance(data, dict):
            raise MalformedFossilError(str(path), "entry is not a JSON object")
        try:
            return FossilEntry.from_dict(data)
        except TypeError as exc:
            raise MalformedFossilError(str(path), str(exc)) from exc

    def save_entry(self, entry: FossilEntry) -> None:
        """Write an entry file as-is (no versioning, no index update)."""
        path = self.entry_path(entry.id)
        if path is None:
            raise EntryValidationError(f"Invalid entry id: {entry.id!r}")
        path.write_text(entry.to_json(), encoding="utf-8")

    def purge_entry_file(self, entry_id: str) -> int:
        """Delete an entry file. Returns the bytes freed (0 if absent)."""
        path = self.entry_path(entry_id)
        if path is None or not path.exists():
            return 0
        size = path.stat().st_size
        path.unlink()
        return size

    # -- Entry operations --------------------------------------------------

    def add_entry(
        self,
        draft: Union[FossilEntry, Dict[str, Any]],
        *,
        similarity_threshold: Optional[float] = None,
        link_to_parent: bool = False,
    ) -> FossilEntry:
        """
        Insert a draft, deduplicating against stored entries.

        Args:
            draft: Entry without id/createdAt/updatedAt (FossilEntry or dict).
            similarity_threshold: Fuzzy threshold (0-100). Defaults to
                ``config.dedup.similarity_threshold``.
            link_to_parent: If True and the draft names an existing parent,
                append the new id to the parent's ``children``.

        Returns:
            The created entry, or the existing entry after its update.

        Raises:
            EntryValidationError: Invalid draft (nothing is written).
        """
        if isinstance(draft, dict):
            forbidden = {"id", "createdAt", "created_at", "updatedAt", "updated_at"}
            present = sorted(forbidden.intersection(draft.keys()))
            if present:
                raise EntryValidationError(
                    f"draft must not carry {', '.join(present)}"
                )
            draft = FossilEntry.from_dict(draft)
        draft.validate(draft=True)

        ch = content_hash(draft.content, draft.type, draft.title)

        # 1. Exact duplicate: same (content, type, title)
        existing = self.find_by_content_hash(ch)
        if existing is not None:
            logger.debug(f"Exact duplicate of {existing.id} (hash {ch})")
            updated = self.update_entry(existing.id, {})
            assert updated is not None
            return updated

        # 2. Fuzzy duplicate among same-title entries
        if self._config.dedup.enabled:
            threshold = (
                similarity_threshold if similarity_threshold is not None
                else self._config.dedup.similarity_threshold
            )
            similar = self.find_similar(draft.title, draft.content, threshold)
            if similar:
                match, score = similar[0]
                logger.info(
                    f"Found similar fossil ({score}% similarity): {match.id}"
                )
                metadata = dict(match.metadata)
                metadata.update(draft.metadata)
                metadata["contentHash"] = ch
                metadata["similarityScore"] = score
                updated = self.update_entry(
                    match.id, {"content": draft.content, "metadata": metadata},
                )
                assert updated is not None
                return updated

        # 3. New entry
        now = _now_iso()
        entry = FossilEntry(
            id=generate_id(draft.content, draft.type, draft.title),
            type=draft.type,
            title=draft.title,
            content=draft.content,
            tags=list(draft.tags),
            source=draft.source,
            version=1,
            parent_id=draft.parent_id,
            children=list(draft.children),
            metadata={**draft.metadata, "contentHash": ch},
            created_at=now,
            updated_at=now,
        )
        index = self.load_index()
        self.save_entry(entry)
        index.add(entry)
        self.save_index(index)
        logger.info(f"Fossil created: {entry.id} ({entry.type}) {entry.title!r}")

        if link_to_parent and entry.parent_id:
            parent = self.get_entry(entry.parent_id)
            if parent is not None and entry.id not in parent.children:
                self.update_entry(parent.id, {"children": parent.children + [entry.id]})
            elif parent is None:
                logger.warning(f"Parent {entry.parent_id} not found; link skipped")
        return entry

    def get_entry(self, entry_id: str) -> Optional[FossilEntry]:
        """Read one entry. None when absent (not an error).

        Raises:
            MalformedFossilError: If the entry file is corrupt.
        """
        path = self.entry_path(entry_id)
        if path is None or not path.exists():
            return None
        return self._read_entry_file(path)

    def update_entry(
        self, entry_id: str, updates: Dict[str, Any],
    ) -> Optional[FossilEntry]:
        """
        Apply a partial update, recording the prior state as a version.

        Keys may be camelCase or snake_case. ``id``, ``createdAt``,
        ``version`` and ``previousVersions`` are ignored. The content hash
        is recomputed from the resulting (content, type, title).

        Returns:
            The updated entry, or None if the id is unknown.
        """
        entry = self.get_entry(entry_id)
        if entry is None:
            return None

        previous = entry.to_dict(include_history=False)
        known = set(FossilEntry.__dataclass_fields__.keys())
        for key, val in updates.items():
            name = field_name(key)
            if name in _IMMUTABLE_FIELDS or name not in known:
                continue
            setattr(entry, name, val)

        metadata = dict(entry.metadata) if isinstance(entry.metadata, dict) else entry.metadata
        if isinstance(metadata, dict):
            metadata["contentHash"] = content_hash(entry.content, entry.type, entry.title)
        entry.metadata = metadata
        entry.validate()

        entry.previous_versions = list(entry.previous_versions) + [previous]
        entry.version = int(previous["version"]) + 1
        entry.updated_at = _now_iso()

        index = self.load_index()
        self.save_entry(entry)
        index.refresh(entry, previous)
        self.save_index(index)
        logger.debug(f"Fossil updated: {entry.id} -> v{entry.version}")
        return entry

    def get_all_entries(self) -> Iterator[FossilEntry]:
        """Lazily load every indexed entry, skipping unreadable files."""
        for entry_id in self.load_index().ids():
            try:
                entry = self.get_entry(entry_id)
            except (MalformedFossilError, OSError) as exc:
                logger.warning(f"Skipping unreadable entry {entry_id}: {exc}")
                continue
            if entry is not None:
                yield entry

    # -- Query operations --------------------------------------------------

    def query_entries(
        self, query: Optional[Union[FossilQuery, Dict[str, Any]]] = None,
    ) -> List[FossilEntry]:
        """Filter via the index, then search, paginate and load.

        Result order is index insertion order, not recency.
        """
        if query is None:
            query = FossilQuery()
        elif isinstance(query, dict):
            query = FossilQuery.from_dict(query)

        index = self.load_index()
        ids = index.matching_ids(query)

        if query.search:
            needle = query.search.lower()
            searched: List[str] = []
            for entry_id in ids:
                entry = self.get_entry(entry_id)
                if entry is None:
                    continue
                if (
                    needle in entry.title.lower()
                    or needle in entry.content.lower()
                    or any(needle in tag.lower() for tag in entry.tags)
                ):
                    searched.append(entry_id)
            ids = searched

        page = ids[query.offset:query.offset + query.limit]
        entries: List[FossilEntry] = []
        for entry_id in page:
            entry = self.get_entry(entry_id)
            if entry is not None:
                entries.append(entry)
        return entries

    def find_by_content_hash(self, hash_value: str) -> Optional[FossilEntry]:
        """First stored entry whose metadata.contentHash equals hash_value."""
        for entry in self.get_all_entries():
            if entry.metadata.get("contentHash") == hash_value:
                return entry
        return None

    def find_similar(
        self,
        title: str,
        content: str,
        threshold: float = 60.0,
    ) -> List[Tuple[FossilEntry, float]]:
        """Same-title entries whose content similarity >= threshold.

        Only exact title matches are scored. Sorted by score, highest first.
        """
        matches: List[Tuple[FossilEntry, float]] = []
        for entry in self.get_all_entries():
            if entry.title != title:
                continue
            score = similarity(entry.content, content)
            if score >= threshold:
                matches.append((entry, score))
        matches.sort(key=lambda pair: pair[1], reverse=True)
        return matches

    def get_related_entries(self, entry_id: str, max_depth: int = 2) -> List[FossilEntry]:
        """
        Entries reachable through parent/child links within max_depth.

        Breadth-first with a visited set (the graph may be cyclic). Parents
        are followed only while depth < max_depth. The start entry is
        excluded; order is discovery order.
        """
        related: List[FossilEntry] = []
        visited = set()
        queue: Deque[Tuple[str, int]] = deque([(entry_id, 0)])

        while queue:
            current_id, depth = queue.popleft()
            if depth > max_depth or current_id in visited:
                continue
            visited.add(current_id)

            try:
                entry = self.get_entry(current_id)
            except (MalformedFossilError, OSError) as exc:
                logger.warning(f"Skipping unreadable entry {current_id}: {exc}")
                continue
            if entry is None:
                continue
            if current_id != entry_id:
                related.append(entry)

            if entry.parent_id and depth < max_depth:
                queue.append((entry.parent_id, depth + 1))
            for child_id in entry.children:
                queue.append((child_id, depth + 1))

        return related

    # -- Reporting ---------------------------------------------------------

    def get_statistics(self) -> Dict[str, Any]:
        """Counts by type/source/tag from the index plus entry bytes on disk."""
        index = self.load_index()
        stats: Dict[str, Any] = {
            "totalEntries": len(index),
            "byType": {},
            "bySource": {},
            "byTag": {},
            "lastUpdated": index.last_updated,
            "storageSize": 0,
        }
        for row in index.entries.values():
            if not isinstance(row, dict) or "type" not in row or "source" not in row:
                continue
            stats["byType"][row["type"]] = stats["byType"].get(row["type"], 0) + 1
            stats["bySource"][row["source"]] = stats["bySource"].get(row["source"], 0) + 1
            for tag in row.get("tags") or []:
                stats["byTag"][tag] = stats["byTag"].get(tag, 0) + 1

        try:
            for path in self.entries_dir.glob("*.json"):
                stats["storageSize"] += path.stat().st_size
        except OSError as exc:
            logger.warning(f"Storage size scan incomplete: {exc}")
        return stats

    def generate_context_summary(
        self, query: Optional[Union[FossilQuery, Dict[str, Any]]] = None,
    ) -> str:
        """JSON summary of a filtered entry set, shaped for LLM prompts."""
        cfg = self._config.summary
        if query is None:
            query = FossilQuery(limit=self._config.export.default_limit)
        entries = self.query_entries(query)

        summary: Dict[str, Any] = {
            "totalEntries": len(entries),
            "byType": {},
            "bySource": {},
            "recentEntries": [],
            "keyInsights": [],
        }
        for entry in entries:
            summary["byType"][entry.type] = summary["byType"].get(entry.type, 0) + 1
            summary["bySource"][entry.source] = summary["bySource"].get(entry.source, 0) + 1
            if len(summary["recentEntries"]) < cfg.recent_limit:
                summary["recentEntries"].append({
                    "id": entry.id,
                    "title": entry.title,
                    "type": entry.type,
                    "createdAt": entry.created_at,
                })

        newest = sorted(entries, key=lambda e: e.created_at, reverse=True)
        for entry in newest[:cfg.insight_window]:
            if entry.type in ("insight", "decision"):
                summary["keyInsights"].append(
                    f"{entry.title}: {entry.content[:cfg.excerpt_chars]}..."
                )

        return json.dumps(summary, indent=2, ensure_ascii=False)

    # -- Enrichment --------------------------------------------------------

    def enhance_entry_with_tags(self, entry_id: str, provider=None) -> Optional[FossilEntry]:
        """
        Attach semantic tags, relationship tags and an excerpt to an entry.

        The provider sees the entry and the whole corpus. Results land in
        ``metadata.semanticTags``, ``metadata.relationships`` and
        ``metadata.excerpt``; concepts and the category are appended to
        ``tags`` as ``concept:<x>`` / ``category:<y>``. The change goes
        through update_entry, so it is versioned.

        Args:
            entry_id: Entry to enrich.
            provider: EnrichmentProvider; defaults to the configured one.

        Returns:
            Updated entry, or None if the id is unknown.
        """
        from fossilctl.enrichment import provider_from_config

        entry = self.get_entry(entry_id)
        if entry is None:
            return None
        if provider is None:
            provider = provider_from_config(self._config.enrichment)

        corpus = list(self.get_all_entries())
        semantic = provider.semantic_tags(entry, corpus)
        relationships = provider.relationship_tags(entry, corpus)
        excerpt = provider.excerpt(entry)

        metadata = dict(entry.metadata)
        metadata["semanticTags"] = semantic.to_dict()
        metadata["relationships"] = relationships
        metadata["excerpt"] = excerpt

        tags = list(entry.tags)
        derived = [f"concept:{c}" for c in semantic.concepts]
        if semantic.semantic_category:
            derived.append(f"category:{semantic.semantic_category}")
        for tag in derived:
            if tag not in tags:
                tags.append(tag)

        return self.update_entry(entry_id, {"metadata": metadata, "tags": tags})

    # -- Batch operations (delegating) -------------------------------------

    def create_snapshot(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        """Copy every entry file and the index into snapshots/<id>/."""
        from fossilctl.snapshot import create_snapshot

        return create_snapshot(self, name, description)

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """Snapshot metadata, newest first."""
        from fossilctl.snapshot import list_snapshots

        return list_snapshots(self)

    def export(
        self,
        fmt: str,
        query: Optional[Union[FossilQuery, Dict[str, Any]]] = None,
        stable: Optional[bool] = None,
    ) -> Path:
        """Render a filtered entry set to exports/. Returns the file path."""
        from fossilctl.export_import import export_entries

        return export_entries(self, fmt, query, stable=stable)

    def cleanup_duplicates(
        self,
        dry_run: bool = False,
        similarity_threshold: Optional[float] = None,
        fuzzy: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Find and merge duplicate groups missed at insert time."""
        from fossilctl.consolidate import ConsolidationPipeline

        pipeline = ConsolidationPipeline(self, self._config.consolidate)
        return pipeline.run(
            dry_run=dry_run,
            similarity_threshold=similarity_threshold,
            fuzzy=fuzzy,
        )
